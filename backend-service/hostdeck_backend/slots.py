from __future__ import annotations

import logging
import re
from pathlib import Path

from .runtime_config import RuntimeConfigStore, is_valid_branch
from .types import RunSpec

logger = logging.getLogger(__name__)

SLOT_NAME_RE = re.compile(r"^[a-z0-9][a-z0-9-]{0,63}$")
UNSAFE_NAME_CHARS_RE = re.compile(r"[^a-z0-9-]")
URL_PREFIXES = ("https://", "http://", "ssh://", "git@")
OWNER_REPO_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9-]*/[A-Za-z0-9._-]+$")
BARE_REPO_RE = re.compile(r"^[A-Za-z0-9._-]+$")
GITHUB_CLONE_URL = "https://github.com/{owner}/{name}.git"


class DeployRejectedError(Exception):
    """A deploy request refused before any run was created."""

    def __init__(self, reason: str, message: str):
        super().__init__(message)
        self.reason = reason
        self.message = message


class SlotLocks:
    """Slot key to active run id. Only acquire/release mutate the table."""

    def __init__(self) -> None:
        self._held: dict[str, str] = {}

    def holder(self, slot_key: str) -> str | None:
        return self._held.get(slot_key)

    def acquire(self, slot_key: str, run_id: str) -> bool:
        if slot_key in self._held:
            return False
        self._held[slot_key] = run_id
        return True

    def release(self, slot_key: str, run_id: str) -> bool:
        if self._held.get(slot_key) != run_id:
            return False
        del self._held[slot_key]
        return True

    def snapshot(self) -> dict[str, str]:
        return dict(self._held)


def _strip_git_suffix(name: str) -> str:
    return name[:-4] if name.endswith(".git") else name


def derive_slot_name(repo: str) -> str:
    tail = re.split(r"[/:]", repo.strip().rstrip("/"))[-1]
    derived = UNSAFE_NAME_CHARS_RE.sub("-", _strip_git_suffix(tail).lower()).strip("-")
    return derived[:64]


def normalize_slot_name(process_name: str | None, repo: str) -> str:
    if process_name is not None and process_name.strip():
        candidate = process_name.strip().lower()
    else:
        candidate = derive_slot_name(repo)
    if not SLOT_NAME_RE.match(candidate):
        raise DeployRejectedError(
            "invalid-name",
            "Process name must be 1-64 characters of a-z, 0-9 and '-', starting with a letter or digit",
        )
    return candidate


def resolve_clone_url(repo: str, github_owner: str | None) -> str:
    cleaned = repo.strip()
    if not cleaned or any(ch.isspace() for ch in cleaned):
        raise DeployRejectedError("repo-unresolvable", "Repository reference is empty or malformed")

    if cleaned.startswith(URL_PREFIXES):
        return cleaned

    if OWNER_REPO_RE.match(cleaned):
        owner, name = cleaned.split("/", 1)
        return GITHUB_CLONE_URL.format(owner=owner, name=_strip_git_suffix(name))

    if BARE_REPO_RE.match(cleaned):
        if not github_owner:
            raise DeployRejectedError(
                "repo-unresolvable",
                f"Repository '{cleaned}' has no owner and no default GitHub owner is configured",
            )
        return GITHUB_CLONE_URL.format(owner=github_owner, name=_strip_git_suffix(cleaned))

    raise DeployRejectedError("repo-unresolvable", f"Cannot resolve repository reference '{cleaned}'")


class SlotResolver:
    def __init__(self, *, www_root: Path | str, runtime_config_store: RuntimeConfigStore, locks: SlotLocks):
        self.www_root = Path(www_root)
        self.runtime_config_store = runtime_config_store
        self.locks = locks

    def working_dir(self, slot_key: str) -> Path:
        return self.www_root / slot_key

    def resolve(
        self,
        *,
        repo: str,
        port: int,
        process_name: str | None = None,
        branch: str | None = None,
        registered: set[str] | None = None,
    ) -> RunSpec:
        """Turn an operator request into a RunSpec or raise DeployRejectedError.

        ``registered`` is the set of process names the supervisor currently
        knows about. When it is None the working copy probe also decides
        between registering and restarting the process.
        """
        runtime = self.runtime_config_store.get()

        if isinstance(port, bool) or not isinstance(port, int) or not 1 <= port <= 65535:
            raise DeployRejectedError("invalid-port", "Port must be an integer between 1 and 65535")

        clone_url = resolve_clone_url(repo, runtime.github_owner)
        slot_key = normalize_slot_name(process_name, repo)

        chosen_branch = (branch or "").strip() or runtime.default_branch
        if not is_valid_branch(chosen_branch):
            raise DeployRejectedError("invalid-branch", f"'{chosen_branch}' is not a valid branch name")

        holder = self.locks.holder(slot_key)
        if holder is not None:
            raise DeployRejectedError("slot-occupied", f"A deploy for '{slot_key}' is already running ({holder})")

        working_dir = self.working_dir(slot_key)
        has_working_copy = (working_dir / ".git").exists()
        is_registered = slot_key in registered if registered is not None else has_working_copy

        logger.info(
            "Resolved deploy slot=%s branch=%s port=%s fresh_checkout=%s registered=%s",
            slot_key,
            chosen_branch,
            port,
            not has_working_copy,
            is_registered,
        )
        return RunSpec(
            repo=repo.strip(),
            clone_url=clone_url,
            branch=chosen_branch,
            port=port,
            slot_key=slot_key,
            www_root=self.www_root,
            working_dir=working_dir,
            fresh_checkout=not has_working_copy,
            registered=is_registered,
            install_command=runtime.install_command,
            build_command=runtime.build_command,
        )
