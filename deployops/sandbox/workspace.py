import asyncio
import hashlib
import logging
import os
import re
import shutil
import weakref
from collections.abc import AsyncGenerator
from pathlib import Path

from deployops.models import ModifiedFile
from deployops.projects import Project
from deployops.sandbox.utils import run_command


logger = logging.getLogger("deployops.sandbox.workspace")

EXPOSE_RE = re.compile(r"EXPOSE\s+(\d+)", re.IGNORECASE)
FALLBACK_BRANCHES = ("main", "master")


class WorkspaceError(RuntimeError):
    pass


def workspace_dir(project_id: str, root: str | Path) -> Path:
    """Stable per-project directory so Docker layer caching survives runs."""
    digest = hashlib.md5(project_id.encode("utf-8")).hexdigest()[:12]
    return Path(root) / digest


def authenticated_url(repo_url: str, token: str | None) -> str:
    if token and repo_url.startswith("https://") and "@" not in repo_url.split("/", 3)[2]:
        return repo_url.replace("https://", f"https://{token}@", 1)
    return repo_url


def redact(text: str, token: str | None) -> str:
    return text.replace(token, "***") if token else text


# Entries vanish once no build holds or waits on the lock
_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()


def workspace_lock(workspace: Path) -> asyncio.Lock:
    """One build at a time per workspace directory."""
    key = str(workspace)
    lock = _locks.get(key)
    if lock is None:
        lock = _locks[key] = asyncio.Lock()
    return lock


async def prepare_workspace(
    project: Project, workspace: Path, token: str | None = None
) -> AsyncGenerator[str, None]:
    """Clone on first use, otherwise sync to the remote head. Yields log lines."""
    url = authenticated_url(project.repo_url, token)
    if not workspace.exists():
        yield ">>> First time setup: Cloning repository...\n"
        workspace.parent.mkdir(parents=True, exist_ok=True)
        code, out = await run_command("git", "clone", url, str(workspace))
        if code != 0:
            shutil.rmtree(workspace, ignore_errors=True)
            raise WorkspaceError(f"git clone failed: {redact(out.strip(), token)}")
        return

    yield ">>> Workspace ready (Cache hit). Syncing with GitHub...\n"
    code, out = await run_command("git", "fetch", "origin", cwd=workspace)
    if code != 0:
        yield f">>> Warning: Sync failed ({redact(out.strip(), token)}). Proceeding with cached state...\n"
        return
    branches = (project.default_branch,) if project.default_branch else FALLBACK_BRANCHES
    for branch in branches:
        code, out = await run_command("git", "reset", "--hard", f"origin/{branch}", cwd=workspace)
        if code == 0:
            return
    yield f">>> Warning: Sync failed ({redact(out.strip(), token)}). Proceeding with cached state...\n"


def apply_modified_files(workspace: Path, files: list[ModifiedFile]) -> list[str]:
    """Overlay edits onto the workspace. Returns the paths that were refused."""
    root = workspace.resolve()
    refused: list[str] = []
    for f in files:
        target = (root / f.path.lstrip("/")).resolve()
        if target == root or root not in target.parents:
            refused.append(f.path)
            continue
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(f.content, encoding="utf-8")
    if refused:
        logger.warning("refused %d modified file(s) outside %s", len(refused), root)
    return refused


def detect_exposed_port(dockerfile_text: str) -> int | None:
    match = EXPOSE_RE.search(dockerfile_text)
    return int(match.group(1)) if match else None


def remove_workspace(workspace: Path) -> None:
    if os.path.isdir(workspace):
        shutil.rmtree(workspace, ignore_errors=True)
