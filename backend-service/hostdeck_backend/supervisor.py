from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from .integrations import resolve_binary
from .types import ProcessInfo

logger = logging.getLogger(__name__)


class SupervisorError(Exception):
    pass


def parse_process_list(raw: str) -> list[ProcessInfo]:
    # pm2 can print daemon banners before the JSON payload.
    start = raw.find("[")
    if start < 0:
        raise SupervisorError("pm2 jlist did not return a JSON array")
    try:
        parsed = json.loads(raw[start:])
    except json.JSONDecodeError as exc:
        raise SupervisorError(f"pm2 jlist returned invalid JSON: {exc}") from exc
    if not isinstance(parsed, list):
        raise SupervisorError("pm2 jlist did not return a JSON array")

    processes: list[ProcessInfo] = []
    for item in parsed:
        if not isinstance(item, dict) or not item.get("name"):
            continue
        env: dict[str, Any] = item.get("pm2_env") or {}
        monit: dict[str, Any] = item.get("monit") or {}
        pid = item.get("pid")
        processes.append(
            ProcessInfo(
                name=str(item["name"]),
                status=str(env.get("status") or "unknown"),
                pid=int(pid) if isinstance(pid, int) and pid > 0 else None,
                cpu=float(monit.get("cpu") or 0.0),
                memory=int(monit.get("memory") or 0),
                cwd=str(env["pm_cwd"]) if env.get("pm_cwd") else None,
                restarts=int(env.get("restart_time") or 0),
            )
        )
    return processes


class Pm2Supervisor:
    """Read-only view of the pm2 process table.

    Starting, restarting and saving processes happen through pipeline step
    commands; this client only lists what pm2 knows about.
    """

    def __init__(self, *, pm2_bin: str = "pm2", timeout_seconds: float = 15):
        self.pm2_bin = pm2_bin
        self.timeout_seconds = timeout_seconds

    async def list_processes(self) -> list[ProcessInfo]:
        resolved = resolve_binary(self.pm2_bin)
        if not resolved:
            raise SupervisorError(f"pm2 binary '{self.pm2_bin}' was not found")

        try:
            proc = await asyncio.create_subprocess_exec(
                resolved,
                "jlist",
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise SupervisorError(f"Could not run pm2: {exc}") from exc

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as exc:
            proc.kill()
            await proc.wait()
            raise SupervisorError(f"pm2 jlist timed out after {self.timeout_seconds} seconds") from exc

        if proc.returncode != 0:
            detail = stderr.decode("utf-8", errors="replace").strip()[:1000]
            raise SupervisorError(f"pm2 jlist failed with exit code {proc.returncode}: {detail}")
        return parse_process_list(stdout.decode("utf-8", errors="replace"))

    async def registered_names(self) -> set[str]:
        return {process.name for process in await self.list_processes()}
