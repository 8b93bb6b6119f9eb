from __future__ import annotations


class LocalStoreError(RuntimeError):
    """The local mirror refused a read or write for a single item."""


class MalformedRecord(ValueError):
    """An ERP entity is missing its identifier or carries unconvertible values."""

    def __init__(self, message: str, *, external_id: object = None) -> None:
        super().__init__(message)
        self.external_id = external_id


class UnpushableOrder(ValueError):
    """A local order that cannot be sent to the ERP as it stands."""
