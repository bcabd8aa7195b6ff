from __future__ import annotations

import asyncio
import codecs
import logging
import os
import signal
from collections.abc import Callable
from pathlib import Path

from .types import ExitResult

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124
SPAWN_FAILURE_EXIT_CODE = 127
READ_CHUNK_BYTES = 4096

ChunkCallback = Callable[[str, str], None]


class CommandRunner:
    """Runs one shell command at a time and streams its output as it arrives.

    A non-zero exit is returned as data. Timeouts and spawn failures come back
    as synthetic results (124 and 127). Cancelling the awaiting task kills the
    whole process group before the cancellation propagates.
    """

    def __init__(
        self,
        *,
        shell_bin: str = "bash",
        kill_grace_seconds: float = 5.0,
        drain_grace_seconds: float = 2.0,
    ) -> None:
        self.shell_bin = shell_bin
        self.kill_grace_seconds = kill_grace_seconds
        self.drain_grace_seconds = drain_grace_seconds

    async def run(
        self,
        command: str,
        cwd: Path | str,
        on_chunk: ChunkCallback,
        timeout: float,
        env: dict[str, str] | None = None,
    ) -> ExitResult:
        cwd_path = Path(cwd)
        if not cwd_path.is_dir():
            return ExitResult(exit_code=SPAWN_FAILURE_EXIT_CODE, error=f"Working directory does not exist: {cwd_path}")

        exec_env = dict(os.environ)
        if env:
            exec_env.update(env)

        logger.info("Executing command cwd=%s timeout=%ss cmd=%s", str(cwd_path), timeout, command.replace("\n", " ")[:300])
        try:
            proc = await asyncio.create_subprocess_exec(
                self.shell_bin,
                "-lc",
                command,
                cwd=str(cwd_path),
                env=exec_env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as exc:
            logger.error("Could not start command cwd=%s error=%s", str(cwd_path), exc)
            return ExitResult(exit_code=SPAWN_FAILURE_EXIT_CODE, error=f"Could not start command: {exc}")

        pumps = (
            asyncio.create_task(self._pump(proc.stdout, "stdout", on_chunk)),
            asyncio.create_task(self._pump(proc.stderr, "stderr", on_chunk)),
        )
        try:
            exit_code = await asyncio.wait_for(proc.wait(), timeout=timeout)
            # Background children can keep the pipes open after the shell exits.
            await asyncio.wait(pumps, timeout=self.drain_grace_seconds)
        except asyncio.TimeoutError:
            logger.warning("Command timed out after %ss pid=%s", timeout, proc.pid)
            await self._terminate(proc)
            return ExitResult(exit_code=TIMEOUT_EXIT_CODE, timed_out=True, error=f"Command timed out after {timeout} seconds")
        except asyncio.CancelledError:
            logger.info("Command cancelled pid=%s", proc.pid)
            await self._terminate(proc)
            raise
        finally:
            for task in pumps:
                if not task.done():
                    task.cancel()
            results = await asyncio.gather(*pumps, return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    logger.error("Output reader failed pid=%s error=%s", proc.pid, result)

        logger.info("Command finished pid=%s exit_code=%s", proc.pid, exit_code)
        return ExitResult(exit_code=int(exit_code))

    async def _pump(self, stream: asyncio.StreamReader | None, name: str, on_chunk: ChunkCallback) -> None:
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            data = await stream.read(READ_CHUNK_BYTES)
            if not data:
                tail = decoder.decode(b"", final=True)
                if tail:
                    on_chunk(name, tail)
                return
            text = decoder.decode(data)
            if text:
                on_chunk(name, text)

    async def _terminate(self, proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is not None:
            return
        self._signal_group(proc, signal.SIGTERM)
        try:
            await asyncio.wait_for(proc.wait(), timeout=self.kill_grace_seconds)
            return
        except asyncio.TimeoutError:
            logger.warning("Process group ignored SIGTERM; killing pid=%s", proc.pid)
        self._signal_group(proc, signal.SIGKILL)
        await proc.wait()

    def _signal_group(self, proc: asyncio.subprocess.Process, sig: signal.Signals) -> None:
        try:
            os.killpg(proc.pid, sig)
        except ProcessLookupError:
            return
        except PermissionError:
            proc.send_signal(sig)
