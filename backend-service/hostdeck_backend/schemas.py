from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class DeployRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    repo: str = Field(min_length=1)
    branch: str | None = None
    # Any JSON value; the API maps everything but a whole number to "invalid-port".
    port: Any = None
    pm2_name: str | None = Field(default=None, alias="pm2Name")


class DeployRejection(BaseModel):
    reason: Literal["slot-occupied", "invalid-name", "invalid-port", "invalid-branch", "repo-unresolvable"]
    message: str


class StepOutputResponse(BaseModel):
    stream: Literal["stdout", "stderr"]
    text: str


class StepResponse(BaseModel):
    id: str
    label: str
    command: str
    cwd: str
    status: Literal["pending", "running", "done", "error"]
    exit_code: int | None = None
    timed_out: bool = False
    started_at: str | None = None
    finished_at: str | None = None
    truncated_bytes: int = 0
    output: list[StepOutputResponse] | None = None


class RunResponse(BaseModel):
    id: str
    slot: str
    repo: str
    branch: str
    port: int
    status: Literal["running", "succeeded", "failed", "aborted"]
    error: str | None = None
    created_at: str
    finished_at: str | None = None
    steps: list[StepResponse]


class ProcessResponse(BaseModel):
    name: str
    status: str
    pid: int | None = None
    cpu: float
    memory: int
    cwd: str | None = None
    restarts: int


class RuntimeConfigResponse(BaseModel):
    default_branch: str
    install_command: str
    build_command: str
    github_owner: str
    config_path: str


class RuntimeConfigUpdateRequest(BaseModel):
    default_branch: str | None = None
    install_command: str | None = None
    build_command: str | None = None
    github_owner: str | None = None
    clear_github_owner: bool = False
