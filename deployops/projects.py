import json
import logging
import os
from pathlib import Path

from pydantic import BaseModel


logger = logging.getLogger("deployops.projects")


class Project(BaseModel):
    id: str
    name: str = ""
    repo_url: str
    default_branch: str | None = None


def projects_file() -> str | None:
    return os.getenv("DEPLOYOPS_PROJECTS_FILE") or None


def load_projects(path: str | os.PathLike[str]) -> dict[str, Project]:
    """Read a ``{"<id>": {"name": ..., "repo_url": ...}}`` JSON registry."""
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        raise ValueError(f"{path}: expected a JSON object of projects")
    out: dict[str, Project] = {}
    for pid, entry in raw.items():
        out[str(pid)] = Project(id=str(pid), **entry)
    return out


def get_project(project_id: str) -> Project | None:
    path = projects_file()
    if not path:
        logger.warning("DEPLOYOPS_PROJECTS_FILE is not configured")
        return None
    try:
        return load_projects(path).get(project_id)
    except (OSError, ValueError) as e:
        logger.error("failed to read projects file %s: %s", path, str(e))
        return None
