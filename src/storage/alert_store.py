"""
Relational store for alerts, their audit history and confirmations.

SQLAlchemy Core over an AsyncEngine. Every public coroutine:
  - runs under asyncio.wait_for(STORE_TIMEOUT_S)
  - maps driver failures onto storage.errors (duplicate / not found / unavailable / timeout)
  - validates rows into records before returning them

State changes go through `transition()`, a single guarded UPDATE
(`WHERE id = :id AND state = :expected`) whose rowcount decides the winner.
"""
from __future__ import annotations

import asyncio
import functools
from typing import Any, Optional

import sqlalchemy as sa
import structlog
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from pricealert.utils.time import utc_now_s
from pricealert.utils.types import (
    Alert,
    AlertState,
    Confirmation,
    HistoryEvent,
    validate_symbol,
    validate_window,
)
from storage.errors import (
    DuplicateKeyError,
    InvalidRecordError,
    NotFoundError,
    StoreError,
    StoreTimeoutError,
    StoreUnavailableError,
)

log = structlog.get_logger("alert_store")

metadata = sa.MetaData()

alerts = sa.Table(
    "alerts", metadata,
    sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
    sa.Column("symbol", sa.String(16), nullable=False),
    sa.Column("threshold_percent", sa.Float, nullable=False),
    sa.Column("window_minutes", sa.Integer, nullable=False),
    sa.Column("enabled", sa.Boolean, nullable=False, default=True),
    sa.Column("requires_confirmation", sa.Boolean, nullable=False, default=False),
    sa.Column("owner_id", sa.String(64), nullable=False),
    sa.Column("state", sa.String(16), nullable=False, default=AlertState.IDLE.value),
    sa.Column("last_triggered_at", sa.Float, nullable=True),
    sa.Column("baseline_price", sa.Float, nullable=True),
    sa.Column("notification_handle", sa.String(64), nullable=True),
    sa.Column("created_at", sa.Float, nullable=False),
    sa.Column("updated_at", sa.Float, nullable=False),
    sa.Index("idx_alerts_enabled", "enabled"),
    sa.Index("idx_alerts_owner", "owner_id"),
)

alert_history = sa.Table(
    "alert_history", metadata,
    sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
    sa.Column("alert_id", sa.Integer, nullable=True),
    sa.Column("event_type", sa.String(32), nullable=False),
    sa.Column("old_state", sa.String(16), nullable=True),
    sa.Column("new_state", sa.String(16), nullable=True),
    sa.Column("metadata", sa.JSON, nullable=True),
    sa.Column("created_at", sa.Float, nullable=False),
    sa.Index("idx_history_alert", "alert_id"),
)

confirmations = sa.Table(
    "confirmations", metadata,
    sa.Column("alert_id", sa.Integer, sa.ForeignKey("alerts.id", ondelete="CASCADE"), primary_key=True),
    sa.Column("confirmed_at", sa.Float, nullable=False),
    sa.Column("delivery_handle", sa.String(64), nullable=True),
)

# columns the state machine may write alongside a transition
TRANSITION_FIELDS = frozenset({"last_triggered_at", "baseline_price", "notification_handle"})
CONFIG_FIELDS = frozenset({"symbol", "threshold_percent", "window_minutes", "requires_confirmation"})


class _Rollback(Exception):
    """Raised inside engine.begin() to discard a transition that lost its guard."""


def _guarded(fn):
    """Bound a store coroutine by the store timeout and translate driver errors."""
    @functools.wraps(fn)
    async def wrapper(self: "SqlAlertStore", *args, **kwargs):
        try:
            return await asyncio.wait_for(fn(self, *args, **kwargs), self.timeout_s)
        except asyncio.TimeoutError as e:
            raise StoreTimeoutError(f"{fn.__name__} timed out after {self.timeout_s}s") from e
        except StoreError:
            raise
        except IntegrityError as e:
            raise DuplicateKeyError(str(e.orig)) from e
        except (OperationalError, DBAPIError, OSError) as e:
            raise StoreUnavailableError(f"{fn.__name__}: {e}") from e
    return wrapper


def _history_values(event: HistoryEvent) -> dict[str, Any]:
    return {
        "alert_id": event.alert_id,
        "event_type": event.event_type.value,
        "old_state": event.old_state.value if event.old_state else None,
        "new_state": event.new_state.value if event.new_state else None,
        "metadata": event.metadata or None,
        "created_at": event.created_at or utc_now_s(),
    }


class SqlAlertStore:
    def __init__(self, engine: AsyncEngine, *, timeout_s: float = 5.0):
        self.engine = engine
        self.timeout_s = timeout_s

    @classmethod
    def from_url(cls, url: str, *, timeout_s: float = 5.0) -> "SqlAlertStore":
        return cls(create_async_engine(url, future=True), timeout_s=timeout_s)

    @_guarded
    async def init_schema(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(metadata.create_all)

    async def close(self) -> None:
        await self.engine.dispose()

    # ==================== Alerts ====================

    @_guarded
    async def list_enabled(self) -> list[Alert]:
        """Enabled alerts by id. Rows that fail validation are logged and left out of the batch."""
        async with self.engine.connect() as conn:
            res = await conn.execute(sa.select(alerts).where(alerts.c.enabled.is_(True)).order_by(alerts.c.id))
            out: list[Alert] = []
            for r in res.mappings():
                try:
                    out.append(Alert.from_row(r))
                except InvalidRecordError as e:
                    log.error("alert_row_invalid", alert_id=r.get("id"), err=str(e))
            return out

    @_guarded
    async def list_by_owner(self, owner_id: str) -> list[Alert]:
        async with self.engine.connect() as conn:
            res = await conn.execute(
                sa.select(alerts).where(alerts.c.owner_id == owner_id).order_by(alerts.c.id.desc())
            )
            return [Alert.from_row(r) for r in res.mappings()]

    @_guarded
    async def get(self, alert_id: int) -> Optional[Alert]:
        async with self.engine.connect() as conn:
            res = await conn.execute(sa.select(alerts).where(alerts.c.id == alert_id))
            row = res.mappings().first()
            return Alert.from_row(row) if row is not None else None

    @_guarded
    async def create(
        self,
        *,
        symbol: str,
        threshold_percent: float,
        window_minutes: int,
        owner_id: str,
        enabled: bool = True,
        requires_confirmation: bool = False,
        event: Optional[HistoryEvent] = None,
    ) -> Alert:
        """Insert an idle alert; `event` (alert_id filled in here) is appended in the same transaction."""
        symbol = validate_symbol(symbol.upper())
        window_minutes = validate_window(window_minutes)
        now = utc_now_s()
        async with self.engine.begin() as conn:
            res = await conn.execute(
                alerts.insert().values(
                    symbol=symbol,
                    threshold_percent=float(threshold_percent),
                    window_minutes=window_minutes,
                    enabled=enabled,
                    requires_confirmation=requires_confirmation,
                    owner_id=str(owner_id),
                    state=AlertState.IDLE.value,
                    created_at=now,
                    updated_at=now,
                )
            )
            alert_id = res.inserted_primary_key[0]
            if event is not None:
                event.alert_id = alert_id
                await conn.execute(alert_history.insert().values(**_history_values(event)))
            row = (await conn.execute(sa.select(alerts).where(alerts.c.id == alert_id))).mappings().one()
            return Alert.from_row(row)

    @_guarded
    async def update_config(self, alert_id: int, fields: dict[str, Any], event: Optional[HistoryEvent] = None) -> Alert:
        """Edit configuration columns only; `state` and trigger metadata are untouched."""
        unknown = set(fields) - CONFIG_FIELDS
        if unknown:
            raise ValueError(f"not configuration fields: {sorted(unknown)}")
        values = dict(fields)
        if "symbol" in values:
            values["symbol"] = validate_symbol(str(values["symbol"]).upper())
        if "window_minutes" in values:
            values["window_minutes"] = validate_window(values["window_minutes"])
        values["updated_at"] = utc_now_s()
        async with self.engine.begin() as conn:
            res = await conn.execute(alerts.update().where(alerts.c.id == alert_id).values(**values))
            if res.rowcount == 0:
                raise NotFoundError(f"alert {alert_id} not found")
            if event is not None:
                await conn.execute(alert_history.insert().values(**_history_values(event)))
            row = (await conn.execute(sa.select(alerts).where(alerts.c.id == alert_id))).mappings().one()
            return Alert.from_row(row)

    @_guarded
    async def set_enabled(self, alert_id: int, enabled: bool, event: Optional[HistoryEvent] = None) -> bool:
        async with self.engine.begin() as conn:
            res = await conn.execute(
                alerts.update()
                .where(alerts.c.id == alert_id, alerts.c.enabled != enabled)
                .values(enabled=enabled, updated_at=utc_now_s())
            )
            if res.rowcount == 0:
                return False
            if event is not None:
                await conn.execute(alert_history.insert().values(**_history_values(event)))
            return True

    @_guarded
    async def transition(
        self,
        alert_id: int,
        expected: AlertState,
        new: AlertState,
        *,
        fields: Optional[dict[str, Any]] = None,
        event: Optional[HistoryEvent] = None,
        confirmation: Optional[Confirmation] = None,
        clear_confirmation: bool = False,
    ) -> bool:
        """
        Compare-and-swap on alerts.state. Only the caller whose UPDATE matched a row
        gets True; everything else in the call (confirmation insert/delete, history
        append) commits in the same transaction or not at all.

        A confirmation that already exists makes the whole transition a no-op (False).
        """
        values: dict[str, Any] = dict(fields or {})
        bad = set(values) - TRANSITION_FIELDS
        if bad:
            raise ValueError(f"not transition fields: {sorted(bad)}")
        values["state"] = new.value
        values["updated_at"] = utc_now_s()

        try:
            async with self.engine.begin() as conn:
                res = await conn.execute(
                    alerts.update()
                    .where(alerts.c.id == alert_id, alerts.c.state == expected.value)
                    .values(**values)
                )
                if res.rowcount != 1:
                    raise _Rollback()
                if clear_confirmation:
                    await conn.execute(confirmations.delete().where(confirmations.c.alert_id == alert_id))
                if confirmation is not None and not await self._insert_confirmation(conn, confirmation):
                    raise _Rollback()
                if event is not None:
                    await conn.execute(alert_history.insert().values(**_history_values(event)))
        except _Rollback:
            return False
        return True

    @_guarded
    async def set_notification_handle(self, alert_id: int, handle: Optional[str]) -> None:
        async with self.engine.begin() as conn:
            await conn.execute(
                alerts.update().where(alerts.c.id == alert_id).values(notification_handle=handle)
            )

    @_guarded
    async def delete(self, alert_id: int, event: Optional[HistoryEvent] = None) -> bool:
        """Remove the alert and its confirmation; `event` is written in the same transaction."""
        async with self.engine.begin() as conn:
            if event is not None:
                await conn.execute(alert_history.insert().values(**_history_values(event)))
            await conn.execute(confirmations.delete().where(confirmations.c.alert_id == alert_id))
            res = await conn.execute(alerts.delete().where(alerts.c.id == alert_id))
            if res.rowcount == 0:
                raise NotFoundError(f"alert {alert_id} not found")
            return True

    # ==================== History ====================

    @_guarded
    async def history(self, alert_id: Optional[int] = None, limit: int = 100) -> list[HistoryEvent]:
        """Newest first. With no alert_id, returns the most recent events across all alerts."""
        q = sa.select(alert_history).order_by(alert_history.c.created_at.desc(), alert_history.c.id.desc())
        if alert_id is not None:
            q = q.where(alert_history.c.alert_id == alert_id)
        async with self.engine.connect() as conn:
            res = await conn.execute(q.limit(limit))
            return [HistoryEvent.from_row(r) for r in res.mappings()]

    # ==================== Confirmations ====================

    async def _insert_confirmation(self, conn: AsyncConnection, c: Confirmation) -> bool:
        # insert-if-absent inside the caller's transaction
        res = await conn.execute(
            sa.select(confirmations.c.alert_id).where(confirmations.c.alert_id == c.alert_id)
        )
        if res.first() is not None:
            return False
        await conn.execute(
            confirmations.insert().values(
                alert_id=c.alert_id, confirmed_at=c.confirmed_at, delivery_handle=c.delivery_handle
            )
        )
        return True

    @_guarded
    async def confirmation_exists(self, alert_id: int) -> bool:
        async with self.engine.connect() as conn:
            res = await conn.execute(
                sa.select(confirmations.c.alert_id).where(confirmations.c.alert_id == alert_id)
            )
            return res.first() is not None

    @_guarded
    async def get_confirmation(self, alert_id: int) -> Optional[Confirmation]:
        async with self.engine.connect() as conn:
            res = await conn.execute(sa.select(confirmations).where(confirmations.c.alert_id == alert_id))
            row = res.mappings().first()
            return Confirmation.from_row(row) if row is not None else None

    @_guarded
    async def insert_confirmation(self, confirmation: Confirmation) -> bool:
        """True when inserted, False when a row for the alert already existed."""
        try:
            async with self.engine.begin() as conn:
                return await self._insert_confirmation(conn, confirmation)
        except IntegrityError:
            # lost an insert race to another writer
            return False

    @_guarded
    async def delete_confirmation(self, alert_id: int) -> None:
        async with self.engine.begin() as conn:
            await conn.execute(confirmations.delete().where(confirmations.c.alert_id == alert_id))
