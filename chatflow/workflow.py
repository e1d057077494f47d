"""Sequential task-graph runner with shared context and typed progress events.

One task is active at a time. Each task returns a TaskResult and a routing
function picks the next task by name until the graph reaches ``END``.
Cancellation is cooperative: tasks call ``raise_if_aborted`` at their
suspension points.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Literal, Optional

logger = logging.getLogger("uvicorn.error")

END = "end"

EventHandler = Callable[[str, Any], None]


class WorkflowError(Exception):
    pass


class WorkflowAborted(WorkflowError):
    """The run's abort signal was set. Reported as ``aborted``, never ``error``."""


class TaskFailedError(WorkflowError):
    def __init__(self, task_name: str, message: str):
        super().__init__(message)
        self.task_name = task_name


def raise_if_aborted(signal: Optional[asyncio.Event]) -> None:
    if signal is not None and signal.is_set():
        raise WorkflowAborted("Workflow aborted")


class WorkflowContext:
    """Key/value state shared by every task of one run."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._data: Dict[str, Any] = dict(initial or {})

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value

    def update(self, key: str, fn: Callable[[Any], Any]) -> Any:
        value = fn(self._data.get(key))
        self._data[key] = value
        return value

    def merge(self, values: Dict[str, Any]) -> None:
        self._data.update(values)

    def snapshot(self) -> Dict[str, Any]:
        return dict(self._data)


class WorkflowEvents:
    """Latest state per event name, fanned out to subscribers on every update."""

    def __init__(self) -> None:
        self.state: Dict[str, Any] = {}
        self._handlers: Dict[str, List[Callable[[Any], None]]] = {}
        self._all_handlers: List[EventHandler] = []

    def on(self, event: str, handler: Callable[[Any], None]) -> None:
        self._handlers.setdefault(event, []).append(handler)

    def on_all(self, handler: EventHandler) -> None:
        self._all_handlers.append(handler)

    def get_state(self, event: str) -> Any:
        return self.state.get(event)

    def emit(self, event: str, payload: Any) -> None:
        for handler in list(self._handlers.get(event, [])):
            handler(payload)
        for handler in list(self._all_handlers):
            handler(event, payload)

    def update(self, event: str, fn: Callable[[Any], Any]) -> Any:
        value = fn(self.state.get(event))
        self.state[event] = value
        self.emit(event, value)
        return value


@dataclass
class TaskResult:
    result: Literal["success", "error"] = "success"
    retry: bool = False
    error: Optional[str] = None
    data: Any = None


@dataclass
class TaskParams:
    events: WorkflowEvents
    context: WorkflowContext
    signal: asyncio.Event
    config: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Task:
    name: str
    execute: Callable[[TaskParams], Awaitable[TaskResult]]
    route: Callable[[TaskParams, TaskResult], str] = lambda params, result: END
    on_error: Optional[Callable[[Exception, TaskParams], Awaitable[TaskResult]]] = None
    max_retries: int = 2


class Workflow:
    def __init__(
        self,
        tasks: Iterable[Task],
        events: Optional[WorkflowEvents] = None,
        context: Optional[WorkflowContext] = None,
        signal: Optional[asyncio.Event] = None,
        config: Optional[Dict[str, Any]] = None,
        max_steps: int = 25,
    ):
        self.tasks: Dict[str, Task] = {task.name: task for task in tasks}
        self.events = events or WorkflowEvents()
        self.context = context or WorkflowContext()
        self.signal = signal or asyncio.Event()
        self.config = dict(config or {})
        self.max_steps = max_steps
        self.timings: List[Dict[str, Any]] = []
        self._started_at: Optional[float] = None
        self._ended_at: Optional[float] = None

    def on_all(self, handler: EventHandler) -> None:
        self.events.on_all(handler)

    def _params(self) -> TaskParams:
        return TaskParams(events=self.events, context=self.context, signal=self.signal, config=self.config)

    async def _run_task(self, task: Task, params: TaskParams) -> TaskResult:
        attempt = 0
        while True:
            raise_if_aborted(self.signal)
            started = time.perf_counter()
            try:
                result = await task.execute(params)
            except WorkflowAborted:
                self._record(task.name, attempt, started, "aborted")
                raise
            except Exception as exc:
                if self.signal.is_set():
                    self._record(task.name, attempt, started, "aborted")
                    raise WorkflowAborted("Workflow aborted") from exc
                if task.on_error is None:
                    logger.warning("Task %s raised: %s", task.name, exc)
                    result = TaskResult(result="error", error=str(exc))
                else:
                    result = await task.on_error(exc, params)
            self._record(task.name, attempt, started, result.result)
            if result.retry and attempt < task.max_retries:
                attempt += 1
                logger.info("Task %s requested retry (%s/%s)", task.name, attempt, task.max_retries)
                continue
            return result

    def _record(self, name: str, attempt: int, started: float, outcome: str) -> None:
        self.timings.append(
            {
                "task": name,
                "attempt": attempt,
                "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                "result": outcome,
            }
        )

    async def start(self, entry: str, initial: Optional[Dict[str, Any]] = None) -> str:
        """Walk the graph from ``entry``. Returns the name of the last task run."""
        if initial:
            self.context.merge(initial)
        self._started_at = time.perf_counter()
        current = entry
        last = entry
        steps = 0
        params = self._params()
        try:
            while current != END:
                raise_if_aborted(self.signal)
                task = self.tasks.get(current)
                if task is None:
                    raise WorkflowError(f"Unknown task: {current}")
                steps += 1
                if steps > self.max_steps:
                    raise WorkflowError(f"Workflow exceeded {self.max_steps} task transitions")
                result = await self._run_task(task, params)
                if result.result == "error":
                    raise TaskFailedError(task.name, result.error or f"Task {task.name} failed")
                raise_if_aborted(self.signal)
                last = current
                current = task.route(params, result)
        finally:
            self._ended_at = time.perf_counter()
        return last

    def get_timing_summary(self) -> Dict[str, Any]:
        by_task: Dict[str, float] = {}
        for entry in self.timings:
            by_task[entry["task"]] = round(by_task.get(entry["task"], 0.0) + entry["duration_ms"], 2)
        total_ms = 0.0
        if self._started_at is not None:
            end = self._ended_at if self._ended_at is not None else time.perf_counter()
            total_ms = round((end - self._started_at) * 1000, 2)
        return {"total_ms": total_ms, "by_task": by_task, "tasks": list(self.timings)}


class EventSender:
    """Helpers tasks use to publish progress through WorkflowEvents."""

    def __init__(self, events: WorkflowEvents):
        self.events = events

    def update_status(self, status: str) -> None:
        self.events.update("status", lambda prev: status)

    def update_answer(self, answer: Dict[str, Any]) -> None:
        self.events.update("answer", lambda prev: {**(prev or {}), **answer})

    def update_step(self, step_id: str, step: Dict[str, Any]) -> None:
        def merge(prev: Optional[Dict[str, Any]]) -> Dict[str, Any]:
            steps = dict(prev or {})
            existing = dict(steps.get(step_id) or {})
            sub_steps = dict(existing.get("steps") or {})
            for key, value in (step.get("steps") or {}).items():
                sub_steps[key] = {**(sub_steps.get(key) or {}), **value}
            steps[step_id] = {**existing, **step, "steps": sub_steps}
            return steps

        self.events.update("steps", merge)

    def add_sources(self, sources: List[Dict[str, Any]]) -> None:
        def merge(prev: Optional[List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
            existing = list(prev or [])
            seen = {s.get("link") for s in existing}
            for source in sources:
                if source.get("link") in seen:
                    continue
                seen.add(source.get("link"))
                existing.append({**source, "index": len(existing) + 1})
            return existing

        self.events.update("sources", merge)

    def update_metrics(self, metrics: Dict[str, Any]) -> None:
        self.events.update("metrics", lambda prev: {**(prev or {}), **metrics})

    def update_object(self, value: Any) -> None:
        self.events.update("object", lambda prev: value)

    def set_suggestions(self, suggestions: List[str]) -> None:
        self.events.update("suggestions", lambda prev: list(suggestions))

    def add_tool_call(self, call: Dict[str, Any]) -> None:
        self.events.update("toolCalls", lambda prev: [*(prev or []), call])

    def add_tool_result(self, result: Dict[str, Any]) -> None:
        self.events.update("toolResults", lambda prev: [*(prev or []), result])

    def report_error(self, message: str) -> None:
        self.events.update("error", lambda prev: {**(prev or {}), "error": message, "status": "ERROR"})
