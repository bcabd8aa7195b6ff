from __future__ import annotations

from dataclasses import dataclass

from .config import Settings
from .orchestrator import DeployOrchestrator
from .runner import CommandRunner
from .runtime_config import RuntimeConfigStore
from .slots import SlotLocks, SlotResolver
from .steps import StepPolicy
from .supervisor import Pm2Supervisor


@dataclass
class Services:
    settings: Settings
    runtime_config: RuntimeConfigStore
    supervisor: Pm2Supervisor
    resolver: SlotResolver
    orchestrator: DeployOrchestrator


def build_services(settings: Settings) -> Services:
    runtime_config = RuntimeConfigStore(settings)
    locks = SlotLocks()
    supervisor = Pm2Supervisor(
        pm2_bin=settings.pm2_bin,
        timeout_seconds=settings.supervisor_list_timeout_seconds,
    )
    resolver = SlotResolver(
        www_root=settings.www_root,
        runtime_config_store=runtime_config,
        locks=locks,
    )
    orchestrator = DeployOrchestrator(
        runner=CommandRunner(shell_bin=settings.shell_bin),
        policy=StepPolicy.from_settings(settings),
        locks=locks,
        max_step_output_bytes=settings.max_step_output_bytes,
        run_history_limit=settings.run_history_limit,
    )

    return Services(
        settings=settings,
        runtime_config=runtime_config,
        supervisor=supervisor,
        resolver=resolver,
        orchestrator=orchestrator,
    )
