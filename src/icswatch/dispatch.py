from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional
import logging
import threading

from .diff import Diff
from .errors import HandlerError

logger = logging.getLogger(__name__)

SUCCEEDED = "succeeded"
FAILED = "failed"
SKIPPED = "skipped"
INTERRUPTED = "interrupted"


class Handler(ABC):
    """A consumer of diffs. Returning an exception counts as a failure, like raising one."""

    # Handlers that only care about actual changes set this to False.
    wants_empty: bool = True

    @abstractmethod
    def handle(self, diff: Diff) -> Any:
        ...


class FunctionHandler(Handler):
    def __init__(self, func: Callable[[Diff], Any], wants_empty: bool = True) -> None:
        self.func = func
        self.wants_empty = wants_empty

    def handle(self, diff: Diff) -> Any:
        return self.func(diff)


@dataclass
class HandlerOutcome:
    name: str
    status: str
    result: Any = None
    error: Optional[HandlerError] = None

    @property
    def ok(self) -> bool:
        return self.status in {SUCCEEDED, SKIPPED}


@dataclass
class DispatchReport:
    outcomes: List[HandlerOutcome] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(o.ok for o in self.outcomes)

    def by_name(self, name: str) -> HandlerOutcome:
        for outcome in self.outcomes:
            if outcome.name == name:
                return outcome
        raise KeyError(name)

    def names_with_status(self, status: str) -> List[str]:
        return [o.name for o in self.outcomes if o.status == status]

    def pairs(self) -> List[tuple[str, str]]:
        return [(o.name, o.status) for o in self.outcomes]


class ChangeDispatcher:
    """Runs registered handlers in registration order, isolating their failures."""

    def __init__(self) -> None:
        self._handlers: List[tuple[str, Handler]] = []

    def register(self, name: str, handler: Handler | Callable[[Diff], Any]) -> None:
        if any(existing == name for existing, _ in self._handlers):
            raise ValueError(f"Handler {name!r} is already registered")
        if not isinstance(handler, Handler):
            handler = FunctionHandler(handler)
        self._handlers.append((name, handler))

    @property
    def names(self) -> List[str]:
        return [name for name, _ in self._handlers]

    def dispatch(self, diff: Diff, cancel: Optional[threading.Event] = None) -> DispatchReport:
        report = DispatchReport()
        for name, handler in self._handlers:
            if cancel is not None and cancel.is_set():
                logger.warning("Dispatch interrupted before handler %s ran", name)
                report.outcomes.append(HandlerOutcome(name=name, status=INTERRUPTED))
                continue
            if diff.is_empty() and not handler.wants_empty:
                report.outcomes.append(HandlerOutcome(name=name, status=SKIPPED))
                continue
            try:
                result = handler.handle(diff)
            except Exception as e:
                result = e
            if isinstance(result, BaseException):
                error = HandlerError(name, result)
                logger.error("%s", error, exc_info=result)
                report.outcomes.append(HandlerOutcome(name=name, status=FAILED, error=error))
                continue
            report.outcomes.append(HandlerOutcome(name=name, status=SUCCEEDED, result=result))
        return report
