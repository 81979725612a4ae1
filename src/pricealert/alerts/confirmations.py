from __future__ import annotations

from typing import Callable, Optional, Protocol

from pricealert.utils.time import utc_now_s
from pricealert.utils.types import Confirmation


class ConfirmationStore(Protocol):
    async def confirmation_exists(self, alert_id: int) -> bool: ...
    async def insert_confirmation(self, confirmation: Confirmation) -> bool: ...
    async def delete_confirmation(self, alert_id: int) -> None: ...


class ConfirmationTracker:
    """
    Idempotency ledger for confirmations, kept apart from the alert row.
    A row existing for an alert id is the only thing that says "already confirmed";
    `create` is insert-if-absent so duplicated callbacks are safe to retry.
    """

    def __init__(self, store: ConfirmationStore, *, clock: Callable[[], float] = utc_now_s):
        self.store = store
        self._clock = clock

    async def exists(self, alert_id: int) -> bool:
        return await self.store.confirmation_exists(alert_id)

    def build(self, alert_id: int, handle: Optional[str]) -> Confirmation:
        return Confirmation(alert_id=alert_id, confirmed_at=self._clock(), delivery_handle=handle)

    async def create(self, alert_id: int, handle: Optional[str] = None) -> None:
        await self.store.insert_confirmation(self.build(alert_id, handle))

    async def delete(self, alert_id: int) -> None:
        await self.store.delete_confirmation(alert_id)
