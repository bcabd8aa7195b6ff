from __future__ import annotations

import os
import shutil
from pathlib import Path
from typing import Any

from .config import Settings
from .runtime_config import RuntimeConfig

FALLBACK_BIN_DIRS = (
    "/usr/local/bin",
    "/usr/bin",
    "/bin",
    "~/.local/bin",
    "~/.npm-global/bin",
)


def resolve_binary(binary: str) -> str | None:
    candidate = Path(binary).expanduser()
    if "/" in binary or binary.startswith("."):
        if candidate.exists() and os.access(candidate, os.X_OK):
            return str(candidate.resolve())
        return None

    found = shutil.which(binary)
    if found:
        return found

    for raw_dir in FALLBACK_BIN_DIRS:
        base = Path(raw_dir).expanduser()
        path = (base / binary).expanduser()
        if path.exists() and os.access(path, os.X_OK):
            return str(path.resolve())
    return None


def inspect_www_root(path: Path) -> dict[str, Any]:
    exists = path.is_dir()
    writable = exists and os.access(path, os.W_OK | os.X_OK)
    detail: str | None = None
    if not exists:
        detail = f"{path} does not exist or is not a directory"
    elif not writable:
        detail = f"{path} is not writable by the service user"
    return {"path": str(path), "exists": exists, "writable": writable, "detail": detail}


def toolchain_status(settings: Settings, runtime: RuntimeConfig) -> dict[str, Any]:
    binaries = {
        "git": settings.git_bin,
        "npm": settings.npm_bin,
        "pm2": settings.pm2_bin,
        "shell": settings.shell_bin,
    }
    resolved = {name: resolve_binary(binary) for name, binary in binaries.items()}
    www_root = inspect_www_root(Path(settings.www_root))

    blockers: list[str] = []
    for name, path in resolved.items():
        if path is None:
            blockers.append(f"Missing `{binaries[name]}` in the service PATH.")
    if not www_root["writable"]:
        blockers.append(www_root["detail"] or "Deploy root is not usable.")

    recommendations: list[str] = []
    if not runtime.github_owner:
        recommendations.append("Set a default GitHub owner so bare repository names can be deployed.")

    return {
        "binaries": {name: {"configured": binaries[name], "resolved": path} for name, path in resolved.items()},
        "www_root": www_root,
        "default_branch": runtime.default_branch,
        "deploy_ready": not blockers,
        "blockers": blockers,
        "recommendations": recommendations,
    }
