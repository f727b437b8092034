from __future__ import annotations


class WatchError(RuntimeError):
    """Base class for errors raised by the calendar watcher."""


class IntegrityError(WatchError):
    """Raised when a snapshot violates uid uniqueness; the snapshot is rejected."""

    def __init__(self, message: str, uids: tuple[str, ...] = ()) -> None:
        super().__init__(message)
        self.uids = uids


class FeedError(WatchError):
    """Raised when the calendar feed cannot be fetched, parsed or trusted."""


class CycleInProgressError(WatchError):
    """Raised when a poll cycle is started while another one is still running."""


class HandlerError(WatchError):
    """Wraps the failure of a single change handler during dispatch."""

    def __init__(self, handler_name: str, cause: BaseException) -> None:
        super().__init__(f"Handler {handler_name!r} failed: {cause}")
        self.handler_name = handler_name
        self.cause = cause


class RemoteOperationError(WatchError):
    """A single create/update/delete against the remote calendar failed."""

    def __init__(self, action: str, uid: str, message: str) -> None:
        super().__init__(f"{action} {uid}: {message}")
        self.action = action
        self.uid = uid
