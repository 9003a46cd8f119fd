from collections.abc import Iterable, Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ModifiedFile(BaseModel):
    """An in-memory edit not yet committed to the repository."""

    model_config = ConfigDict(frozen=True)

    path: str
    content: str


class RunRequest(BaseModel):
    """Payload for one build-and-run attempt.

    Serialized as ``{"modifiedFiles": [{"path": ..., "content": ...}]}``; the
    project id travels in the URL.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    project_id: str = Field(default="", exclude=True)
    modified_files: list[ModifiedFile] = Field(default_factory=list, alias="modifiedFiles")

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


def coerce_modified_files(
    files: Mapping[str, str] | Iterable[ModifiedFile | tuple[str, str] | dict[str, str]] | None,
) -> list[ModifiedFile]:
    """Normalize the shapes callers hold edits in (path->content map, pairs, dicts)."""
    if files is None:
        return []
    if isinstance(files, Mapping):
        return [ModifiedFile(path=p, content=c) for p, c in files.items()]
    out: list[ModifiedFile] = []
    for item in files:
        if isinstance(item, ModifiedFile):
            out.append(item)
        elif isinstance(item, dict):
            out.append(ModifiedFile(**item))
        else:
            path, content = item
            out.append(ModifiedFile(path=path, content=content))
    return out
