from __future__ import annotations

import os
from dataclasses import dataclass

DEFAULT_WWW_ROOT = "/var/www"


@dataclass(frozen=True)
class Settings:
    host: str = "127.0.0.1"
    port: int = 4000
    www_root: str = DEFAULT_WWW_ROOT
    git_bin: str = "git"
    npm_bin: str = "npm"
    pm2_bin: str = "pm2"
    shell_bin: str = "bash"
    git_timeout_seconds: int = 120
    install_timeout_seconds: int = 300
    build_timeout_seconds: int = 300
    pm2_timeout_seconds: int = 60
    supervisor_list_timeout_seconds: int = 15
    max_step_output_bytes: int = 64 * 1024
    run_history_limit: int = 50
    github_owner: str | None = None
    runtime_config_path: str | None = None
    log_level: str = "INFO"


def load_settings() -> Settings:
    return Settings(
        host=os.getenv("HOSTDECK_HOST", "127.0.0.1"),
        port=int(os.getenv("HOSTDECK_PORT", "4000")),
        www_root=(os.getenv("HOSTDECK_WWW_ROOT") or DEFAULT_WWW_ROOT).strip(),
        git_bin=os.getenv("HOSTDECK_GIT_BIN", "git").strip(),
        npm_bin=os.getenv("HOSTDECK_NPM_BIN", "npm").strip(),
        pm2_bin=os.getenv("HOSTDECK_PM2_BIN", "pm2").strip(),
        shell_bin=os.getenv("HOSTDECK_SHELL_BIN", "bash").strip(),
        git_timeout_seconds=int(os.getenv("HOSTDECK_GIT_TIMEOUT_SECONDS", "120")),
        install_timeout_seconds=int(os.getenv("HOSTDECK_INSTALL_TIMEOUT_SECONDS", "300")),
        build_timeout_seconds=int(os.getenv("HOSTDECK_BUILD_TIMEOUT_SECONDS", "300")),
        pm2_timeout_seconds=int(os.getenv("HOSTDECK_PM2_TIMEOUT_SECONDS", "60")),
        supervisor_list_timeout_seconds=int(os.getenv("HOSTDECK_SUPERVISOR_LIST_TIMEOUT_SECONDS", "15")),
        max_step_output_bytes=int(os.getenv("HOSTDECK_MAX_STEP_OUTPUT_BYTES", str(64 * 1024))),
        run_history_limit=int(os.getenv("HOSTDECK_RUN_HISTORY_LIMIT", "50")),
        github_owner=(os.getenv("HOSTDECK_GITHUB_OWNER") or "").strip() or None,
        runtime_config_path=(os.getenv("HOSTDECK_RUNTIME_CONFIG_PATH") or "").strip() or None,
        log_level=os.getenv("HOSTDECK_LOG_LEVEL", "INFO").strip().upper(),
    )
