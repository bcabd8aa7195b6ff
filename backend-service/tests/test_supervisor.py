from __future__ import annotations

import json
import os
import tempfile
import unittest
from pathlib import Path

from hostdeck_backend.supervisor import Pm2Supervisor, SupervisorError, parse_process_list

JLIST = [
    {
        "name": "demo-app",
        "pid": 4242,
        "pm2_env": {"status": "online", "pm_cwd": "/var/www/demo-app", "restart_time": 3},
        "monit": {"cpu": 1.5, "memory": 52428800},
    },
    {
        "name": "worker",
        "pid": 0,
        "pm2_env": {"status": "stopped"},
        "monit": {},
    },
    {"pid": 99},
]


class ParseProcessListTests(unittest.TestCase):
    def test_maps_pm2_fields(self) -> None:
        processes = parse_process_list(json.dumps(JLIST))
        self.assertEqual([process.name for process in processes], ["demo-app", "worker"])

        app = processes[0]
        self.assertEqual(app.status, "online")
        self.assertEqual(app.pid, 4242)
        self.assertEqual(app.cpu, 1.5)
        self.assertEqual(app.memory, 52428800)
        self.assertEqual(app.cwd, "/var/www/demo-app")
        self.assertEqual(app.restarts, 3)

        worker = processes[1]
        self.assertEqual(worker.status, "stopped")
        self.assertIsNone(worker.pid)
        self.assertIsNone(worker.cwd)
        self.assertEqual(worker.memory, 0)

    def test_skips_daemon_banner(self) -> None:
        raw = ">>>> In-memory PM2 is out-of-date, do:\n>>>> $ pm2 update\n" + json.dumps(JLIST[:1])
        self.assertEqual([process.name for process in parse_process_list(raw)], ["demo-app"])

    def test_empty_table(self) -> None:
        self.assertEqual(parse_process_list("[]\n"), [])

    def test_invalid_output_raises(self) -> None:
        for raw in ("", "pm2 is not running", "[{not json"):
            with self.assertRaises(SupervisorError, msg=raw):
                parse_process_list(raw)


class Pm2SupervisorTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.bin_dir = Path(self._tmp.name)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _fake_pm2(self, body: str) -> str:
        path = self.bin_dir / "pm2"
        path.write_text("#!/bin/sh\n" + body + "\n", encoding="utf-8")
        os.chmod(path, 0o755)
        return str(path)

    async def test_lists_processes_from_jlist(self) -> None:
        payload = json.dumps(JLIST)
        supervisor = Pm2Supervisor(pm2_bin=self._fake_pm2(f"cat <<'JSON'\n{payload}\nJSON"))
        self.assertEqual(await supervisor.registered_names(), {"demo-app", "worker"})

    async def test_non_zero_exit_raises(self) -> None:
        supervisor = Pm2Supervisor(pm2_bin=self._fake_pm2("echo 'daemon not reachable' >&2; exit 1"))
        with self.assertRaises(SupervisorError) as ctx:
            await supervisor.list_processes()
        self.assertIn("daemon not reachable", str(ctx.exception))

    async def test_missing_binary_raises(self) -> None:
        supervisor = Pm2Supervisor(pm2_bin=str(self.bin_dir / "missing-pm2"))
        with self.assertRaises(SupervisorError):
            await supervisor.list_processes()

    async def test_slow_jlist_times_out(self) -> None:
        supervisor = Pm2Supervisor(pm2_bin=self._fake_pm2("sleep 10"), timeout_seconds=0.3)
        with self.assertRaises(SupervisorError) as ctx:
            await supervisor.list_processes()
        self.assertIn("timed out", str(ctx.exception))


if __name__ == "__main__":
    unittest.main()
