from __future__ import annotations

from typing import Any, Callable, Optional, Protocol

import structlog

from pricealert.alerts.confirmations import ConfirmationTracker
from pricealert.utils.time import utc_now_s
from pricealert.utils.types import (
    Alert,
    AlertState,
    Confirmation,
    DeliveryContext,
    EventType,
    HistoryEvent,
    TriggerContext,
)
from storage.errors import NotFoundError, StoreError

log = structlog.get_logger("state_machine")


class AlertStore(Protocol):
    async def get(self, alert_id: int) -> Optional[Alert]: ...
    async def create(self, **kwargs: Any) -> Alert: ...
    async def update_config(self, alert_id: int, fields: dict[str, Any], event: Optional[HistoryEvent] = None) -> Alert: ...
    async def set_enabled(self, alert_id: int, enabled: bool, event: Optional[HistoryEvent] = None) -> bool: ...
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
    ) -> bool: ...
    async def set_notification_handle(self, alert_id: int, handle: Optional[str]) -> None: ...
    async def delete(self, alert_id: int, event: Optional[HistoryEvent] = None) -> bool: ...


class Notifier(Protocol):
    async def send(self, recipient: str, ctx: TriggerContext) -> Optional[str]: ...


class AlertStateMachine:
    """
    Single writer of Alert.state and its trigger metadata.

        idle --trigger--> triggered --confirm--> confirmed
          ^                   |                      |
          +------ reset ------+---------- reset -----+

    Every edge is a state-guarded write in the store; a caller that loses the
    guard gets False and must treat it as "nothing happened".
    """

    RESET_ATTEMPTS = 3

    def __init__(
        self,
        store: AlertStore,
        tracker: ConfirmationTracker,
        notifier: Notifier,
        *,
        clock: Callable[[], float] = utc_now_s,
    ):
        self.store = store
        self.tracker = tracker
        self.notifier = notifier
        self._clock = clock

    def _event(self, alert_id, etype: EventType, old, new, metadata: Optional[dict] = None) -> HistoryEvent:
        return HistoryEvent(
            alert_id=alert_id,
            event_type=etype,
            old_state=old,
            new_state=new,
            metadata=metadata or {},
            created_at=self._clock(),
        )

    # --- lifecycle edges ---

    async def trigger(self, alert: Alert, current_price: float, pct: float, baseline: float) -> bool:
        if alert.state is not AlertState.IDLE:
            return False
        now = self._clock()
        won = await self.store.transition(
            alert.id,
            AlertState.IDLE,
            AlertState.TRIGGERED,
            fields={"last_triggered_at": now, "baseline_price": baseline, "notification_handle": None},
            event=self._event(
                alert.id, EventType.TRIGGERED, AlertState.IDLE, AlertState.TRIGGERED,
                {"price": current_price, "pct": pct, "baseline": baseline},
            ),
        )
        if not won:
            log.info("trigger_guard_lost", alert_id=alert.id, symbol=alert.symbol)
            return False

        # only the guard winner notifies; a failed delivery still leaves the alert triggered
        ctx = TriggerContext(
            alert_id=alert.id,
            symbol=alert.symbol,
            current_price=current_price,
            baseline_price=baseline,
            pct=pct,
            window_minutes=alert.window_minutes,
            requires_confirmation=alert.requires_confirmation,
        )
        handle: Optional[str] = None
        try:
            handle = await self.notifier.send(alert.owner_id, ctx)
        except Exception as e:
            log.warning("notification_send_failed", alert_id=alert.id, err=str(e))
        if handle is not None:
            try:
                await self.store.set_notification_handle(alert.id, handle)
            except StoreError as e:
                # the transition and its history row are already committed
                log.warning("notification_handle_write_failed", alert_id=alert.id, handle=handle, err=str(e))
        log.info("alert_triggered", alert_id=alert.id, symbol=alert.symbol, pct=round(pct, 4), handle=handle)
        return True

    async def confirm(self, alert_id: int, delivery: Optional[DeliveryContext] = None) -> bool:
        alert = await self.store.get(alert_id)
        if alert is None:
            log.info("confirm_not_found", alert_id=alert_id)
            return False
        if alert.state is not AlertState.TRIGGERED:
            log.info("confirm_wrong_state", alert_id=alert_id, state=alert.state.value)
            return False
        if await self.tracker.exists(alert_id):
            log.info("confirm_already_confirmed", alert_id=alert_id)
            return False

        handle = delivery.handle if delivery else None
        ok = await self.store.transition(
            alert_id,
            AlertState.TRIGGERED,
            AlertState.CONFIRMED,
            confirmation=self.tracker.build(alert_id, handle),
            event=self._event(
                alert_id, EventType.CONFIRMED, AlertState.TRIGGERED, AlertState.CONFIRMED,
                {"handle": handle, "user_id": delivery.user_id if delivery else None},
            ),
        )
        if ok:
            log.info("alert_confirmed", alert_id=alert_id)
        return ok

    async def reset(self, alert_id: int) -> bool:
        """Any state -> idle. False only when the alert does not exist."""
        for _ in range(self.RESET_ATTEMPTS):
            alert = await self.store.get(alert_id)
            if alert is None:
                return False
            old = alert.state
            ok = await self.store.transition(
                alert_id,
                old,
                AlertState.IDLE,
                fields={"baseline_price": None, "notification_handle": None},
                clear_confirmation=True,
                event=self._event(alert_id, EventType.RESET, old, AlertState.IDLE),
            )
            if ok:
                log.info("alert_reset", alert_id=alert_id, old_state=old.value)
                return True
            # state moved under us; re-read and try again against the new state
        log.warning("alert_reset_contended", alert_id=alert_id)
        return False

    async def delete(self, alert_id: int) -> bool:
        alert = await self.store.get(alert_id)
        if alert is None:
            return False
        event = self._event(
            None, EventType.DELETED, alert.state, None,
            {"alert_id": alert.id, "symbol": alert.symbol, "owner_id": alert.owner_id},
        )
        try:
            await self.store.delete(alert_id, event=event)
        except NotFoundError:
            return False
        log.info("alert_deleted", alert_id=alert_id, symbol=alert.symbol)
        return True

    # --- configuration lifecycle (owner edits never touch state) ---

    async def create(
        self,
        *,
        symbol: str,
        threshold_percent: float,
        window_minutes: int,
        owner_id: str,
        enabled: bool = True,
        requires_confirmation: bool = False,
    ) -> Alert:
        event = self._event(
            None, EventType.CREATED, None, AlertState.IDLE,
            {"symbol": symbol.upper(), "threshold_percent": threshold_percent, "window_minutes": window_minutes},
        )
        return await self.store.create(
            symbol=symbol,
            threshold_percent=threshold_percent,
            window_minutes=window_minutes,
            owner_id=owner_id,
            enabled=enabled,
            requires_confirmation=requires_confirmation,
            event=event,
        )

    async def update(self, alert_id: int, **fields: Any) -> Alert:
        alert = await self.store.get(alert_id)
        if alert is None:
            raise NotFoundError(f"alert {alert_id} not found")
        event = self._event(alert_id, EventType.UPDATED, alert.state, alert.state, {"changes": fields})
        return await self.store.update_config(alert_id, fields, event=event)

    async def set_enabled(self, alert_id: int, enabled: bool) -> bool:
        alert = await self.store.get(alert_id)
        if alert is None:
            return False
        etype = EventType.ENABLED if enabled else EventType.DISABLED
        return await self.store.set_enabled(
            alert_id, enabled, event=self._event(alert_id, etype, alert.state, alert.state)
        )
