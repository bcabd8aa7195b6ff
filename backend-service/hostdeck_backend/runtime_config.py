from __future__ import annotations

import json
import logging
import os
import re
import shlex
import threading
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Any

from .config import Settings

logger = logging.getLogger(__name__)

BRANCH_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._/-]{0,199}$")
OWNER_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9-]{0,38}$")
DEFAULT_BRANCH = "main"
DEFAULT_INSTALL_COMMAND = "npm install"
DEFAULT_BUILD_COMMAND = "npm run build"


def is_valid_branch(value: str) -> bool:
    return bool(BRANCH_RE.match(value)) and ".." not in value and not value.endswith((".lock", "/"))


@dataclass(slots=True)
class RuntimeConfig:
    default_branch: str = DEFAULT_BRANCH
    install_command: str = DEFAULT_INSTALL_COMMAND
    build_command: str = DEFAULT_BUILD_COMMAND
    github_owner: str | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> RuntimeConfig:
        npm = shlex.quote(settings.npm_bin or "npm")
        return cls(
            install_command=f"{npm} install",
            build_command=f"{npm} run build",
            github_owner=settings.github_owner,
        )


def _default_runtime_config_path() -> Path:
    return Path.home() / ".config" / "hostdeck" / "runtime-config.json"


class RuntimeConfigStore:
    """Deploy defaults an operator can change without restarting the service.

    Values are validated on every update and written back as JSON. A file
    that fails to parse or validate is logged and the defaults are kept.
    """

    def __init__(self, settings: Settings):
        self._lock = threading.RLock()
        configured = settings.runtime_config_path
        self._path = Path(configured).expanduser() if configured else _default_runtime_config_path()
        self._config = RuntimeConfig.from_settings(settings)
        self._restore()

    def get(self) -> RuntimeConfig:
        with self._lock:
            return replace(self._config)

    def public_view(self) -> dict[str, Any]:
        view: dict[str, Any] = asdict(self.get())
        view["github_owner"] = view["github_owner"] or ""
        view["config_path"] = str(self._path)
        return view

    def update(
        self,
        *,
        default_branch: str | None = None,
        install_command: str | None = None,
        build_command: str | None = None,
        github_owner: str | None = None,
        clear_github_owner: bool = False,
        persist: bool = True,
    ) -> RuntimeConfig:
        changes: dict[str, Any] = {}
        if default_branch is not None:
            branch = default_branch.strip()
            if not is_valid_branch(branch):
                raise ValueError("default_branch is not a valid branch name")
            changes["default_branch"] = branch

        # Empty install/build commands are allowed and mean "skip this step".
        if install_command is not None:
            changes["install_command"] = install_command.strip()
        if build_command is not None:
            changes["build_command"] = build_command.strip()

        if clear_github_owner:
            changes["github_owner"] = None
        elif github_owner is not None:
            owner = github_owner.strip()
            if owner and not OWNER_RE.match(owner):
                raise ValueError("github_owner is not a valid account name")
            changes["github_owner"] = owner or None

        with self._lock:
            self._config = replace(self._config, **changes)
            if persist:
                self._write()
            logger.info("Runtime config updated fields=%s persisted=%s", ",".join(sorted(changes)) or "-", persist)
            return replace(self._config)

    def _restore(self) -> None:
        try:
            stored = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable runtime config path=%s error=%s", self._path, exc)
            return
        if not isinstance(stored, dict):
            logger.warning("Ignoring runtime config that is not an object path=%s", self._path)
            return

        values = {key: stored.get(key) for key in ("default_branch", "install_command", "build_command", "github_owner")}
        try:
            self.update(**{key: value for key, value in values.items() if isinstance(value, str)}, persist=False)
        except ValueError as exc:
            logger.warning("Ignoring invalid runtime config path=%s error=%s", self._path, exc)

    def _write(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        staging = self._path.with_name(self._path.name + ".tmp")
        staging.write_text(json.dumps(asdict(self._config), indent=2) + "\n", encoding="utf-8")
        os.chmod(staging, 0o600)
        os.replace(staging, self._path)
