from __future__ import annotations

import shlex
from collections.abc import Callable
from dataclasses import dataclass

from .config import Settings
from .types import RunSpec, StepPlan

STEP_LABELS = {
    "clone": "Clone repository",
    "git-pull": "Git pull",
    "install": "Install dependencies",
    "build": "Build project",
    "pm2-start": "Start in PM2",
    "pm2-restart": "Restart in PM2",
    "pm2-save": "Save PM2 list",
}


@dataclass(frozen=True)
class StepPolicy:
    git_bin: str = "git"
    npm_bin: str = "npm"
    pm2_bin: str = "pm2"
    git_timeout_seconds: int = 120
    install_timeout_seconds: int = 300
    build_timeout_seconds: int = 300
    pm2_timeout_seconds: int = 60

    @classmethod
    def from_settings(cls, settings: Settings) -> StepPolicy:
        return cls(
            git_bin=settings.git_bin or "git",
            npm_bin=settings.npm_bin or "npm",
            pm2_bin=settings.pm2_bin or "pm2",
            git_timeout_seconds=max(1, settings.git_timeout_seconds),
            install_timeout_seconds=max(1, settings.install_timeout_seconds),
            build_timeout_seconds=max(1, settings.build_timeout_seconds),
            pm2_timeout_seconds=max(1, settings.pm2_timeout_seconds),
        )


StepBuilder = Callable[[RunSpec, StepPolicy], "StepPlan | None"]


def _q(value: object) -> str:
    return shlex.quote(str(value))


def _process_env(spec: RunSpec) -> dict[str, str]:
    return {"PORT": str(spec.port), "NODE_ENV": "production"}


def fetch_step(spec: RunSpec, policy: StepPolicy) -> StepPlan | None:
    git = _q(policy.git_bin)
    branch = _q(spec.branch)
    if spec.fresh_checkout:
        command = f"{git} clone --branch {branch} --single-branch {_q(spec.clone_url)} {_q(spec.slot_key)}"
        return StepPlan(id="clone", command=command, cwd=spec.www_root, timeout_seconds=policy.git_timeout_seconds)

    # Explicit refspec so single-branch clones can switch branches.
    refspec = _q(f"+refs/heads/{spec.branch}:refs/remotes/origin/{spec.branch}")
    command = (
        f"{git} fetch origin {refspec} && "
        f"{git} checkout -B {branch} {_q(f'refs/remotes/origin/{spec.branch}')}"
    )
    return StepPlan(id="git-pull", command=command, cwd=spec.working_dir, timeout_seconds=policy.git_timeout_seconds)


def install_step(spec: RunSpec, policy: StepPolicy) -> StepPlan | None:
    if not spec.install_command.strip():
        return None
    return StepPlan(
        id="install",
        command=spec.install_command,
        cwd=spec.working_dir,
        timeout_seconds=policy.install_timeout_seconds,
    )


def build_step(spec: RunSpec, policy: StepPolicy) -> StepPlan | None:
    if not spec.build_command.strip():
        return None
    return StepPlan(
        id="build",
        command=spec.build_command,
        cwd=spec.working_dir,
        timeout_seconds=policy.build_timeout_seconds,
    )


def register_step(spec: RunSpec, policy: StepPolicy) -> StepPlan | None:
    if spec.registered:
        return None
    command = f"{_q(policy.pm2_bin)} start {_q(policy.npm_bin)} --name {_q(spec.slot_key)} --cwd {_q(spec.working_dir)} -- start"
    return StepPlan(
        id="pm2-start",
        command=command,
        cwd=spec.working_dir,
        timeout_seconds=policy.pm2_timeout_seconds,
        env=_process_env(spec),
    )


def activate_step(spec: RunSpec, policy: StepPolicy) -> StepPlan | None:
    if not spec.registered:
        return None
    return StepPlan(
        id="pm2-restart",
        command=f"{_q(policy.pm2_bin)} restart {_q(spec.slot_key)} --update-env",
        cwd=spec.working_dir,
        timeout_seconds=policy.pm2_timeout_seconds,
        env=_process_env(spec),
    )


def persist_step(spec: RunSpec, policy: StepPolicy) -> StepPlan | None:
    return StepPlan(
        id="pm2-save",
        command=f"{_q(policy.pm2_bin)} save",
        cwd=spec.working_dir,
        timeout_seconds=policy.pm2_timeout_seconds,
    )


STEP_CATALOG: tuple[StepBuilder, ...] = (
    fetch_step,
    install_step,
    build_step,
    register_step,
    activate_step,
    persist_step,
)


def plan_steps(spec: RunSpec, policy: StepPolicy) -> list[StepPlan]:
    plans: list[StepPlan] = []
    for builder in STEP_CATALOG:
        plan = builder(spec, policy)
        if plan is not None:
            plans.append(plan)
    return plans
