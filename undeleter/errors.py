"""Exceptions raised by the deletion monitor."""


class UndeleterError(Exception):
    """Base class for all monitor errors."""


class ConfigError(UndeleterError):
    """Invalid configuration; raised before the polling loop starts."""


class StoreError(UndeleterError):
    """The message store could not answer a query."""


class TransientStoreError(StoreError):
    """The store is temporarily unreadable (locked, busy, I/O hiccup).

    The snapshot for the affected scope is left unchanged and the query is
    retried on the next poll.
    """


class FatalStoreError(StoreError):
    """The store is unreachable, unreadable or has an unknown schema."""


class AttachmentError(UndeleterError):
    """Attachment content could not be staged or promoted."""

    def __init__(self, attachment_id: int, message: str):
        super().__init__(message)
        self.attachment_id = attachment_id


class AttachmentStageError(AttachmentError):
    """Copying attachment content to the staging area failed."""


class AttachmentPromoteError(AttachmentError):
    """Moving staged content to permanent output failed."""


class ReporterWriteError(UndeleterError):
    """A confirmed deletion could not be written after all retries."""

    def __init__(self, record_id: str, message: str):
        super().__init__(message)
        self.record_id = record_id
