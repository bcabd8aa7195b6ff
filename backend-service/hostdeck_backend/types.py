from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

RUN_TERMINAL_STATUSES = {"succeeded", "failed", "aborted"}


@dataclass(slots=True)
class RunSpec:
    repo: str
    clone_url: str
    branch: str
    port: int
    slot_key: str
    www_root: Path
    working_dir: Path
    fresh_checkout: bool
    registered: bool
    install_command: str
    build_command: str


@dataclass(slots=True)
class StepPlan:
    id: str
    command: str
    cwd: Path
    timeout_seconds: int
    env: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class ExitResult:
    exit_code: int
    timed_out: bool = False
    error: str | None = None


@dataclass(slots=True)
class OutputFragment:
    stream: str
    text: str


@dataclass(slots=True)
class StepState:
    id: str
    command: str
    cwd: str
    status: str = "pending"
    output: list[OutputFragment] = field(default_factory=list)
    output_bytes: int = 0
    truncated_bytes: int = 0
    # Last stderr text, kept apart from `output` so the cap never evicts it.
    stderr_tail: str = ""
    exit_code: int | None = None
    timed_out: bool = False
    started_at: str | None = None
    finished_at: str | None = None


@dataclass(slots=True)
class DeployRun:
    run_id: str
    spec: RunSpec
    steps: list[StepState]
    status: str = "running"
    error: str | None = None
    created_at: str = ""
    finished_at: str | None = None

    @property
    def slot_key(self) -> str:
        return self.spec.slot_key

    @property
    def is_terminal(self) -> bool:
        return self.status in RUN_TERMINAL_STATUSES


@dataclass(slots=True)
class ProcessInfo:
    name: str
    status: str
    pid: int | None = None
    cpu: float = 0.0
    memory: int = 0
    cwd: str | None = None
    restarts: int = 0
