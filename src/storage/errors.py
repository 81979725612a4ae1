from __future__ import annotations


class StoreError(Exception):
    """Base for every persistent-store failure."""


class DuplicateKeyError(StoreError):
    pass


class NotFoundError(StoreError):
    pass


class StoreUnavailableError(StoreError):
    """Connection refused, database locked past its timeout, driver gone."""


class StoreTimeoutError(StoreError):
    pass


class InvalidRecordError(StoreError, ValueError):
    """A row read from the store does not satisfy the record's field rules."""
