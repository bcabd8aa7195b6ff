from __future__ import annotations

import json
import unittest
from pathlib import Path

from hostdeck_backend.events import (
    ProgressStream,
    RunEvent,
    done_event,
    encode_sse,
    output_event,
    step_done_event,
    step_start_event,
)
from hostdeck_backend.types import DeployRun, OutputFragment, RunSpec, StepState


def _run() -> DeployRun:
    spec = RunSpec(
        repo="demo-app",
        clone_url="https://github.com/acme/demo-app.git",
        branch="main",
        port=3050,
        slot_key="demo-app",
        www_root=Path("/var/www"),
        working_dir=Path("/var/www/demo-app"),
        fresh_checkout=True,
        registered=False,
        install_command="npm install",
        build_command="npm run build",
    )
    return DeployRun(
        run_id="deploy_test",
        spec=spec,
        steps=[
            StepState(id="clone", command="git clone ...", cwd="/var/www"),
            StepState(id="install", command="npm install", cwd="/var/www/demo-app"),
        ],
    )


class EncodeTests(unittest.TestCase):
    def test_sse_frame_layout(self) -> None:
        frame = encode_sse(output_event("stderr", "warn: ünicode\n"))
        self.assertTrue(frame.startswith("event: output\ndata: "))
        self.assertTrue(frame.endswith("\n\n"))
        data_line = frame.split("\n")[1]
        self.assertEqual(json.loads(data_line[len("data: "):]), {"text": "warn: ünicode\n", "isStderr": True})

    def test_done_payloads(self) -> None:
        self.assertEqual(done_event(True).data, {"success": True})
        self.assertEqual(done_event(False, "boom").data, {"success": False, "error": "boom"})
        self.assertEqual(done_event(False).data["error"], "Deploy failed")


class ProgressStreamTests(unittest.IsolatedAsyncioTestCase):
    async def test_replay_is_rebuilt_from_run_state(self) -> None:
        run = _run()
        stream = ProgressStream(run)
        clone = run.steps[0]
        clone.status = "done"
        clone.output.append(OutputFragment("stdout", "Cloning into 'demo-app'...\n"))
        run.steps[1].status = "running"

        self.assertEqual(
            stream.events_so_far(),
            [
                step_start_event(clone),
                output_event("stdout", "Cloning into 'demo-app'...\n"),
                step_done_event(clone),
                step_start_event(run.steps[1]),
            ],
        )

    async def test_live_events_follow_replay(self) -> None:
        run = _run()
        stream = ProgressStream(run)
        run.steps[0].status = "running"
        subscription = stream.subscribe()
        self.assertEqual(stream.subscriber_count, 1)

        run.steps[0].status = "done"
        stream.publish(step_done_event(run.steps[0]))
        run.status = "succeeded"
        stream.publish(done_event(True))

        received = [event async for event in subscription]
        self.assertEqual(
            [event.type for event in received],
            ["step-start", "step-done", "done"],
        )
        self.assertEqual(stream.subscriber_count, 0)

    async def test_subscribe_after_terminal_gets_replay_only(self) -> None:
        run = _run()
        run.steps[0].status = "error"
        run.status = "failed"
        run.error = "fatal: repository not found"
        stream = ProgressStream(run)

        received = [event async for event in stream.subscribe()]
        self.assertEqual(received[-1], RunEvent("done", {"success": False, "error": "fatal: repository not found"}))
        self.assertEqual(stream.subscriber_count, 0)

    async def test_closed_subscriber_stops_receiving(self) -> None:
        run = _run()
        stream = ProgressStream(run)
        first = stream.subscribe()
        second = stream.subscribe()
        first.close()

        run.steps[0].status = "running"
        stream.publish(step_start_event(run.steps[0]))

        self.assertEqual(first.pending(), 0)
        self.assertEqual(second.pending(), 1)
        self.assertEqual(stream.subscriber_count, 1)
        with self.assertRaises(StopAsyncIteration):
            await first.__anext__()


if __name__ == "__main__":
    unittest.main()
