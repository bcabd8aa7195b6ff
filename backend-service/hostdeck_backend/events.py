from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from .types import DeployRun, StepState
from .utils import dumps_json

logger = logging.getLogger(__name__)

TERMINAL_EVENT = "done"


@dataclass(frozen=True, slots=True)
class RunEvent:
    type: str
    data: dict[str, Any] = field(default_factory=dict)


def step_start_event(step: StepState) -> RunEvent:
    return RunEvent("step-start", {"step": step.id, "command": step.command})


def step_done_event(step: StepState) -> RunEvent:
    return RunEvent("step-done", {"step": step.id})


def step_error_event(step: StepState) -> RunEvent:
    return RunEvent("step-error", {"step": step.id})


def output_event(stream: str, text: str) -> RunEvent:
    return RunEvent("output", {"text": text, "isStderr": stream == "stderr"})


def done_event(success: bool, error: str | None = None) -> RunEvent:
    if success:
        return RunEvent(TERMINAL_EVENT, {"success": True})
    return RunEvent(TERMINAL_EVENT, {"success": False, "error": error or "Deploy failed"})


def encode_sse(event: RunEvent) -> str:
    return f"event: {event.type}\ndata: {dumps_json(event.data)}\n\n"


class Subscription:
    """Async iterator over one subscriber's events. Ends after the terminal event."""

    def __init__(self, stream: ProgressStream, queue: asyncio.Queue[RunEvent]):
        self._stream = stream
        self._queue = queue
        self._finished = False

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> RunEvent:
        if self._finished:
            raise StopAsyncIteration
        event = await self._queue.get()
        if event.type == TERMINAL_EVENT:
            self.close()
        return event

    def pending(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        if self._finished:
            return
        self._finished = True
        self._stream.detach(self._queue)


class ProgressStream:
    """Fans one run's events out to any number of subscribers.

    The replay for a new subscriber is rebuilt from the run's recorded step
    state, so callers must update the run before publishing the matching
    event. Snapshot and registration happen without yielding to the loop,
    which keeps every subscriber on the same ordering from then on.
    """

    def __init__(self, run: DeployRun):
        self.run = run
        self._subscribers: list[asyncio.Queue[RunEvent]] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def events_so_far(self) -> list[RunEvent]:
        events: list[RunEvent] = []
        for step in self.run.steps:
            if step.status == "pending":
                break
            events.append(step_start_event(step))
            for fragment in step.output:
                events.append(output_event(fragment.stream, fragment.text))
            if step.status == "done":
                events.append(step_done_event(step))
            elif step.status == "error":
                events.append(step_error_event(step))
        if self.run.is_terminal:
            events.append(done_event(self.run.status == "succeeded", self.run.error))
        return events

    def publish(self, event: RunEvent) -> None:
        for queue in list(self._subscribers):
            queue.put_nowait(event)
        if event.type == TERMINAL_EVENT:
            self._subscribers.clear()

    def subscribe(self) -> Subscription:
        queue: asyncio.Queue[RunEvent] = asyncio.Queue()
        for event in self.events_so_far():
            queue.put_nowait(event)
        if not self.run.is_terminal:
            self._subscribers.append(queue)
        logger.debug("Subscriber attached run_id=%s subscribers=%s", self.run.run_id, len(self._subscribers))
        return Subscription(self, queue)

    def detach(self, queue: asyncio.Queue[RunEvent]) -> None:
        try:
            self._subscribers.remove(queue)
        except ValueError:
            return
        logger.debug("Subscriber detached run_id=%s subscribers=%s", self.run.run_id, len(self._subscribers))
