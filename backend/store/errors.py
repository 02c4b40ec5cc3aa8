from __future__ import annotations


class StoreError(Exception):
    """
    Base class for everything the feature store raises on purpose.

    `code` is the stable, client-facing identifier used by the HTTP layer.
    """

    code = "StoreError"


class ClientError(StoreError):
    """A single query was malformed or asked for something absent; the snapshot is fine."""

    code = "ClientError"


class InvalidBoundingBox(ClientError):
    code = "InvalidBoundingBox"


class InvalidFilter(ClientError):
    code = "InvalidFilter"


class InvalidQuery(ClientError):
    code = "InvalidQuery"


class UnindexedField(ClientError):
    code = "UnindexedField"

    def __init__(self, field: str, message: str | None = None):
        self.field = field
        super().__init__(message or f"Attribute '{field}' is not indexed")


class UnsupportedFormat(ClientError):
    code = "UnsupportedFormat"

    def __init__(self, fmt: str, supported: list[str] | None = None):
        self.format = fmt
        self.supported = list(supported or [])
        hint = f" (supported: {', '.join(self.supported)})" if self.supported else ""
        super().__init__(f"Unsupported output format '{fmt}'{hint}")


class NotFound(ClientError):
    code = "NotFound"


class CorruptRecord(StoreError):
    """Bytes in the snapshot failed a bounds, length or tag check."""

    code = "CorruptRecord"


class BuildFailed(StoreError):
    """An offline build could not produce a consistent snapshot; nothing was published."""

    code = "BuildFailed"


class SnapshotRetired(StoreError):
    """The snapshot no longer accepts readers (retired, or nothing published yet)."""

    code = "SnapshotRetired"
