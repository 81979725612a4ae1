"""
User actions coming back from a delivery channel (button taps under a trigger
message), reduced to a finite message type and dispatched through one handler.

The state machine never sees the channel's wire format: the webhook parses
`confirm:<id>` / `del:<id>` into a UserAction and the handler returns an
ActionOutcome the channel can render however it likes.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Optional

import structlog

from pricealert.utils.types import DeliveryContext

if TYPE_CHECKING:
    from pricealert.alerts.state import AlertStateMachine

log = structlog.get_logger("actions")


class ActionKind(str, Enum):
    CONFIRM = "confirm"
    DELETE = "del"


class ActionOutcome(str, Enum):
    OK = "ok"
    ALREADY_DONE = "already_done"
    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"


@dataclass(slots=True, frozen=True)
class UserAction:
    kind: ActionKind
    alert_id: int
    delivery: DeliveryContext


def encode_callback(kind: ActionKind, alert_id: int) -> str:
    return f"{kind.value}:{alert_id}"


def parse_callback(data: str, delivery: Optional[DeliveryContext] = None) -> Optional[UserAction]:
    """`confirm:12` -> UserAction(CONFIRM, 12). Anything else (menus, junk) -> None."""
    if not data or ":" not in data:
        return None
    prefix, _, raw_id = data.partition(":")
    try:
        kind = ActionKind(prefix)
        alert_id = int(raw_id)
    except ValueError:
        return None
    if alert_id <= 0:
        return None
    return UserAction(kind=kind, alert_id=alert_id, delivery=delivery or DeliveryContext())


OUTCOME_TEXT = {
    (ActionKind.CONFIRM, ActionOutcome.OK): "✅ Alert confirmed",
    (ActionKind.CONFIRM, ActionOutcome.ALREADY_DONE): "Already confirmed",
    (ActionKind.DELETE, ActionOutcome.OK): "🗑️ Alert removed",
    (ActionKind.DELETE, ActionOutcome.ALREADY_DONE): "Already removed",
}


def outcome_text(kind: ActionKind, outcome: ActionOutcome) -> str:
    if outcome is ActionOutcome.NOT_FOUND:
        return "Alert not found"
    if outcome is ActionOutcome.FORBIDDEN:
        return "Not your alert"
    return OUTCOME_TEXT[(kind, outcome)]


class ActionHandler:
    def __init__(self, machine: "AlertStateMachine"):
        self.machine = machine

    async def handle(self, action: UserAction) -> ActionOutcome:
        alert = await self.machine.store.get(action.alert_id)
        if alert is None:
            return ActionOutcome.NOT_FOUND
        user = action.delivery.user_id
        if user is not None and str(user) != alert.owner_id:
            log.warning("action_forbidden", alert_id=alert.id, user_id=user, kind=action.kind.value)
            return ActionOutcome.FORBIDDEN

        if action.kind is ActionKind.CONFIRM:
            ok = await self.machine.confirm(action.alert_id, action.delivery)
        else:
            ok = await self.machine.delete(action.alert_id)
        outcome = ActionOutcome.OK if ok else ActionOutcome.ALREADY_DONE
        log.info("action_handled", alert_id=action.alert_id, kind=action.kind.value, outcome=outcome.value)
        return outcome
