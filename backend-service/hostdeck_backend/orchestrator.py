from __future__ import annotations

import asyncio
import logging

from .events import (
    ProgressStream,
    Subscription,
    done_event,
    output_event,
    step_done_event,
    step_error_event,
    step_start_event,
)
from .runner import SPAWN_FAILURE_EXIT_CODE, CommandRunner
from .slots import DeployRejectedError, SlotLocks
from .steps import StepPolicy, plan_steps
from .types import DeployRun, ExitResult, OutputFragment, RunSpec, StepPlan, StepState
from .utils import make_id, tail_text, utc_now_iso

logger = logging.getLogger(__name__)

ABORTED_ERROR = "aborted"
STDERR_TAIL_CHARS = 4000


class DeployOrchestrator:
    def __init__(
        self,
        *,
        runner: CommandRunner,
        policy: StepPolicy,
        locks: SlotLocks,
        max_step_output_bytes: int = 64 * 1024,
        run_history_limit: int = 50,
    ) -> None:
        self.runner = runner
        self.policy = policy
        self.locks = locks
        self.max_step_output_bytes = max(1024, max_step_output_bytes)
        self.run_history_limit = max(1, run_history_limit)
        self._runs: dict[str, DeployRun] = {}
        self._streams: dict[str, ProgressStream] = {}
        self._abort_events: dict[str, asyncio.Event] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}

    def start_run(self, spec: RunSpec) -> DeployRun:
        plans = plan_steps(spec, self.policy)
        run_id = make_id("deploy")
        if not self.locks.acquire(spec.slot_key, run_id):
            raise DeployRejectedError(
                "slot-occupied",
                f"A deploy for '{spec.slot_key}' is already running ({self.locks.holder(spec.slot_key)})",
            )

        try:
            run = DeployRun(
                run_id=run_id,
                spec=spec,
                steps=[StepState(id=plan.id, command=plan.command, cwd=str(plan.cwd)) for plan in plans],
                created_at=utc_now_iso(),
            )
            self._runs[run_id] = run
            self._streams[run_id] = ProgressStream(run)
            self._abort_events[run_id] = asyncio.Event()
            self._tasks[run_id] = asyncio.create_task(self._execute_run(run, plans))
        except Exception:
            self.locks.release(spec.slot_key, run_id)
            self._forget(run_id)
            raise

        logger.info(
            "Deploy started run_id=%s slot=%s branch=%s port=%s steps=%s",
            run_id,
            spec.slot_key,
            spec.branch,
            spec.port,
            ",".join(plan.id for plan in plans),
        )
        self._evict_finished()
        return run

    async def cancel_run(self, run_id: str) -> DeployRun | None:
        run = self._runs.get(run_id)
        if run is None:
            return None
        if run.is_terminal:
            return run

        logger.info("Deploy cancel requested run_id=%s slot=%s", run_id, run.slot_key)
        self._abort_events[run_id].set()
        task = self._tasks.get(run_id)
        if task is not None and not task.done():
            await asyncio.wait({task})
        return run

    def get_run(self, run_id: str) -> DeployRun | None:
        return self._runs.get(run_id)

    def list_runs(self) -> list[DeployRun]:
        return list(reversed(self._runs.values()))

    def active_runs(self) -> dict[str, str]:
        return self.locks.snapshot()

    def stream(self, run_id: str) -> ProgressStream | None:
        return self._streams.get(run_id)

    def subscribe(self, run_id: str) -> Subscription | None:
        stream = self._streams.get(run_id)
        if stream is None:
            return None
        return stream.subscribe()

    async def shutdown(self) -> None:
        pending = []
        for run_id, task in list(self._tasks.items()):
            if task.done():
                continue
            self._abort_events[run_id].set()
            pending.append(task)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def _execute_run(self, run: DeployRun, plans: list[StepPlan]) -> None:
        stream = self._streams[run.run_id]
        abort = self._abort_events[run.run_id]
        try:
            for step, plan in zip(run.steps, plans):
                if abort.is_set():
                    self._finish(run, "aborted", ABORTED_ERROR)
                    return

                step.status = "running"
                step.started_at = utc_now_iso()
                stream.publish(step_start_event(step))

                result = await self._run_step(run, step, plan, abort)
                step.finished_at = utc_now_iso()
                if result is None:
                    step.status = "error"
                    stream.publish(step_error_event(step))
                    self._finish(run, "aborted", ABORTED_ERROR)
                    return

                step.exit_code = result.exit_code
                step.timed_out = result.timed_out
                if result.exit_code == 0 and not result.timed_out:
                    step.status = "done"
                    stream.publish(step_done_event(step))
                    logger.info("Deploy step done run_id=%s step=%s", run.run_id, step.id)
                    continue

                step.status = "error"
                stream.publish(step_error_event(step))
                logger.warning(
                    "Deploy step failed run_id=%s step=%s exit_code=%s timed_out=%s",
                    run.run_id,
                    step.id,
                    result.exit_code,
                    result.timed_out,
                )
                self._finish(run, "failed", self._failure_reason(step, plan, result))
                return

            self._finish(run, "succeeded", None)
        except asyncio.CancelledError:
            self._close_running_steps(run)
            self._finish(run, "aborted", ABORTED_ERROR)
            raise
        except Exception as exc:
            logger.exception("Deploy executor crashed run_id=%s", run.run_id)
            self._close_running_steps(run)
            self._finish(run, "failed", f"Internal error: {exc}")
        finally:
            if not self.locks.release(run.slot_key, run.run_id):
                logger.error("Slot lock was not held at release run_id=%s slot=%s", run.run_id, run.slot_key)

    async def _run_step(
        self,
        run: DeployRun,
        step: StepState,
        plan: StepPlan,
        abort: asyncio.Event,
    ) -> ExitResult | None:
        """Run one step; None means the operator aborted it mid-flight."""
        stream = self._streams[run.run_id]

        def on_chunk(stream_name: str, text: str) -> None:
            self._record_output(step, stream_name, text)
            stream.publish(output_event(stream_name, text))

        step_task = asyncio.create_task(
            self.runner.run(plan.command, plan.cwd, on_chunk, plan.timeout_seconds, env=plan.env)
        )
        abort_task = asyncio.create_task(abort.wait())
        try:
            done, _pending = await asyncio.wait({step_task, abort_task}, return_when=asyncio.FIRST_COMPLETED)
            if step_task not in done:
                return None
            try:
                return step_task.result()
            except Exception as exc:
                logger.exception("Command runner failed run_id=%s step=%s", run.run_id, step.id)
                return ExitResult(exit_code=SPAWN_FAILURE_EXIT_CODE, error=f"Command runner failed: {exc}")
        finally:
            abort_task.cancel()
            if not step_task.done():
                step_task.cancel()
                await asyncio.gather(step_task, return_exceptions=True)

    def _record_output(self, step: StepState, stream_name: str, text: str) -> None:
        if stream_name == "stderr":
            step.stderr_tail = (step.stderr_tail + text)[-STDERR_TAIL_CHARS:]

        step.output.append(OutputFragment(stream=stream_name, text=text))
        step.output_bytes += len(text.encode("utf-8"))
        while step.output_bytes > self.max_step_output_bytes and len(step.output) > 1:
            dropped = step.output.pop(0)
            dropped_bytes = len(dropped.text.encode("utf-8"))
            step.output_bytes -= dropped_bytes
            step.truncated_bytes += dropped_bytes

        if step.output_bytes > self.max_step_output_bytes:
            # One fragment larger than the cap: keep its newest bytes.
            last = step.output[-1]
            raw = last.text.encode("utf-8")
            kept = raw[-self.max_step_output_bytes:].decode("utf-8", errors="ignore")
            kept_bytes = len(kept.encode("utf-8"))
            step.output[-1] = OutputFragment(stream=last.stream, text=kept)
            step.truncated_bytes += len(raw) - kept_bytes
            step.output_bytes = kept_bytes

    def _failure_reason(self, step: StepState, plan: StepPlan, result: ExitResult) -> str:
        if result.timed_out:
            return f"{step.id} timed out after {plan.timeout_seconds} seconds"
        if result.error:
            return f"{step.id}: {result.error}"
        stderr_tail = tail_text(step.stderr_tail)
        if stderr_tail:
            return stderr_tail
        return f"{step.id} exited with code {result.exit_code}"

    def _close_running_steps(self, run: DeployRun) -> None:
        stream = self._streams[run.run_id]
        for step in run.steps:
            if step.status == "running":
                step.status = "error"
                step.finished_at = utc_now_iso()
                stream.publish(step_error_event(step))

    def _finish(self, run: DeployRun, status: str, error: str | None) -> None:
        if run.is_terminal:
            return
        run.status = status
        run.error = error
        run.finished_at = utc_now_iso()
        self._streams[run.run_id].publish(done_event(status == "succeeded", error))
        logger.info("Deploy finished run_id=%s slot=%s status=%s", run.run_id, run.slot_key, status)

    def _evict_finished(self) -> None:
        finished = [run_id for run_id, run in self._runs.items() if run.is_terminal]
        overflow = len(finished) - self.run_history_limit
        for run_id in finished[: max(0, overflow)]:
            self._forget(run_id)

    def _forget(self, run_id: str) -> None:
        self._runs.pop(run_id, None)
        self._streams.pop(run_id, None)
        self._abort_events.pop(run_id, None)
        self._tasks.pop(run_id, None)
