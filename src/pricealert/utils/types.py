from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional

from storage.errors import InvalidRecordError

MAX_WINDOW_MINUTES = 1440


class AlertState(str, Enum):
    IDLE = "idle"
    TRIGGERED = "triggered"
    CONFIRMED = "confirmed"


class EventType(str, Enum):
    CREATED = "CREATED"
    UPDATED = "UPDATED"
    ENABLED = "ENABLED"
    DISABLED = "DISABLED"
    TRIGGERED = "TRIGGERED"
    CONFIRMED = "CONFIRMED"
    RESET = "RESET"
    DELETED = "DELETED"


def _state_or_none(v) -> Optional[AlertState]:
    if v is None:
        return None
    try:
        return AlertState(v)
    except ValueError:
        raise InvalidRecordError(f"unknown alert state {v!r}") from None


def _opt_float(v) -> Optional[float]:
    return None if v is None else float(v)


# ---- alerting domain ----

@dataclass(slots=True)
class Alert:
    id: int
    symbol: str
    threshold_percent: float            # signed: > 0 rise, <= 0 fall
    window_minutes: int
    owner_id: str
    enabled: bool = True
    requires_confirmation: bool = False
    state: AlertState = AlertState.IDLE
    last_triggered_at: Optional[float] = None
    baseline_price: Optional[float] = None
    notification_handle: Optional[str] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Alert":
        """
        Build an Alert from a store row, rejecting rows that break the field rules
        instead of letting a malformed shape leak into evaluation.
        """
        try:
            symbol = str(row["symbol"])
            window = int(row["window_minutes"])
            alert = cls(
                id=int(row["id"]),
                symbol=symbol,
                threshold_percent=float(row["threshold_percent"]),
                window_minutes=window,
                owner_id=str(row["owner_id"]),
                enabled=bool(row["enabled"]),
                requires_confirmation=bool(row["requires_confirmation"]),
                state=_state_or_none(row["state"]) or AlertState.IDLE,
                last_triggered_at=_opt_float(row.get("last_triggered_at")),
                baseline_price=_opt_float(row.get("baseline_price")),
                notification_handle=(
                    None if row.get("notification_handle") is None else str(row["notification_handle"])
                ),
            )
        except (KeyError, TypeError, ValueError) as e:
            if isinstance(e, InvalidRecordError):
                raise
            raise InvalidRecordError(f"malformed alert row: {e}") from e
        validate_symbol(alert.symbol)
        validate_window(alert.window_minutes)
        return alert


@dataclass(slots=True)
class PriceSample:
    symbol: str
    value: float
    observed_at: float  # epoch seconds


@dataclass(slots=True)
class HistoryEvent:
    alert_id: Optional[int]
    event_type: EventType
    old_state: Optional[AlertState]
    new_state: Optional[AlertState]
    metadata: dict = field(default_factory=dict)
    created_at: float = 0.0
    id: Optional[int] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "HistoryEvent":
        try:
            return cls(
                id=row.get("id"),
                alert_id=None if row["alert_id"] is None else int(row["alert_id"]),
                event_type=EventType(row["event_type"]),
                old_state=_state_or_none(row["old_state"]),
                new_state=_state_or_none(row["new_state"]),
                metadata=dict(row.get("metadata") or {}),
                created_at=float(row["created_at"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            if isinstance(e, InvalidRecordError):
                raise
            raise InvalidRecordError(f"malformed history row: {e}") from e


@dataclass(slots=True)
class Confirmation:
    alert_id: int
    confirmed_at: float
    delivery_handle: Optional[str] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Confirmation":
        try:
            handle = row.get("delivery_handle")
            return cls(
                alert_id=int(row["alert_id"]),
                confirmed_at=float(row["confirmed_at"]),
                delivery_handle=None if handle is None else str(handle),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidRecordError(f"malformed confirmation row: {e}") from e


@dataclass(slots=True)
class TriggerContext:
    """Everything a notification gateway needs to render one trigger message."""
    alert_id: int
    symbol: str
    current_price: float
    baseline_price: float
    pct: float
    window_minutes: int
    requires_confirmation: bool = False


@dataclass(slots=True)
class DeliveryContext:
    """Where a user action came from (chat message id, acting user)."""
    handle: Optional[str] = None
    user_id: Optional[str] = None


# ---- field rules shared by records and the store ----

def validate_symbol(symbol: str) -> str:
    if not symbol or symbol != symbol.upper() or not symbol.strip():
        raise InvalidRecordError(f"symbol must be a non-empty uppercase ticker, got {symbol!r}")
    return symbol


def validate_window(window_minutes: int) -> int:
    if not 1 <= int(window_minutes) <= MAX_WINDOW_MINUTES:
        raise InvalidRecordError(
            f"window_minutes must be within 1..{MAX_WINDOW_MINUTES}, got {window_minutes}"
        )
    return int(window_minutes)
