"""Execution context handed to workflow code, and the replay cursor behind it."""

from dataclasses import dataclass
from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Tuple,
    Union,
)

import structlog

from order_saga.errors import NonDeterministicError
from order_saga.storage.events import (
    ACTIVITY_OUTCOME_EVENTS,
    EventType,
    HistoryEvent,
)

if TYPE_CHECKING:
    from order_saga.models import OrderPayload


@dataclass(frozen=True)
class ActivitySuccess:
    """Resolved value of an activity call that completed."""
    value: Any = None
    succeeded = True


@dataclass(frozen=True)
class ActivityFailure:
    """Resolved value of an activity call that failed.

    Returned to workflow code instead of raised, so compensation is an
    explicit branch on the outcome.
    """
    error_kind: str
    message: str = ""
    succeeded = False


ActivityOutcome = Union[ActivitySuccess, ActivityFailure]


class ReplayCursor:
    """Index of an instance's recorded activity steps by sequence number."""

    def __init__(self, history: List[HistoryEvent]):
        self._steps: Dict[int, Tuple[HistoryEvent, Optional[HistoryEvent]]] = {}
        self.workflow_version: Optional[str] = None

        for event in history:
            if event.event_type == EventType.INSTANCE_CREATED:
                self.workflow_version = event.data.get("workflow_version")
            elif event.event_type == EventType.ACTIVITY_SCHEDULED:
                self._steps[event.sequence_number] = (event, None)
            elif event.event_type in ACTIVITY_OUTCOME_EVENTS:
                scheduled, _ = self._steps[event.sequence_number]
                self._steps[event.sequence_number] = (scheduled, event)

        self.position = 0

    @property
    def resolved_steps(self) -> int:
        return sum(1 for _, outcome in self._steps.values() if outcome is not None)

    def advance(self) -> int:
        self.position += 1
        return self.position

    def recorded(self, sequence_number: int) -> Optional[Tuple[HistoryEvent, Optional[HistoryEvent]]]:
        return self._steps.get(sequence_number)

    def has_outcome(self, sequence_number: int) -> bool:
        step = self._steps.get(sequence_number)
        return step is not None and step[1] is not None

    def ensure_consumed(self, instance_id: str) -> None:
        """Raise when recorded steps remain that the workflow never requested."""
        unconsumed = sorted(n for n in self._steps if n > self.position)
        if unconsumed:
            raise NonDeterministicError(
                f"Instance {instance_id} finished at step {self.position} "
                f"but history records steps {unconsumed}"
            )


Scheduler = Callable[["OrchestrationContext", int, str, Any], Awaitable[ActivityOutcome]]


class ReplaySafeLogger:
    """structlog logger that drops records while the context is replaying."""

    def __init__(self, context: "OrchestrationContext", logger):
        self._context = context
        self._logger = logger

    def _emit(self, method: str, event: str, **kw) -> None:
        if self._context.is_replaying:
            return
        getattr(self._logger, method)(event, **kw)

    def debug(self, event: str, **kw) -> None:
        self._emit("debug", event, **kw)

    def info(self, event: str, **kw) -> None:
        self._emit("info", event, **kw)

    def warning(self, event: str, **kw) -> None:
        self._emit("warning", event, **kw)

    def error(self, event: str, **kw) -> None:
        self._emit("error", event, **kw)


class OrchestrationContext:
    """What workflow code sees: the instance id, its input and the scheduler.

    Workflow code must be a pure function of ``input`` and the outcomes of
    ``call_activity``; anything else non-deterministic breaks replay.
    """

    def __init__(
        self,
        instance_id: str,
        order: "OrderPayload",
        cursor: ReplayCursor,
        scheduler: Scheduler,
        logger_name: str = "order_saga.workflow"
    ):
        self._instance_id = instance_id
        self._input = order
        self._cursor = cursor
        self._scheduler = scheduler
        self._logger = ReplaySafeLogger(
            self,
            structlog.get_logger(logger_name).bind(instance_id=instance_id)
        )

    @property
    def instance_id(self) -> str:
        return self._instance_id

    @property
    def input(self) -> "OrderPayload":
        return self._input

    @property
    def logger(self) -> ReplaySafeLogger:
        return self._logger

    @property
    def is_replaying(self) -> bool:
        """True while the next activity call will be answered from history."""
        return self._cursor.has_outcome(self._cursor.position + 1)

    async def call_activity(self, name: str, request: Any = None) -> ActivityOutcome:
        """Schedule activity ``name`` and wait for its recorded or live outcome."""
        sequence_number = self._cursor.advance()
        return await self._scheduler(self, sequence_number, name, request)

    @property
    def cursor(self) -> ReplayCursor:
        return self._cursor
