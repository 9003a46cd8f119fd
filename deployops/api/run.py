import logging
import time
import uuid
from collections.abc import AsyncGenerator
from typing import Any

from fastapi import APIRouter, HTTPException
from fastapi.responses import StreamingResponse

from deployops import run_store
from deployops.config import RunnerConfig
from deployops.markers import format_system_error
from deployops.models import RunRequest
from deployops.projects import get_project
from deployops.sandbox.docker import release_container, run_project_flow


logger = logging.getLogger("deployops.api.run")


router = APIRouter(prefix="/api/projects", tags=["run"])


STREAM_HEADERS: dict[str, str] = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def make_run_id() -> str:
    return f"{uuid.uuid4().hex[:8]}-{int(time.time() * 1000)}"


@router.post("/{project_id}/run")
async def run_project(project_id: str, request: RunRequest) -> StreamingResponse:
    """Build and run the project with the posted edits, streaming the log."""
    project = get_project(project_id)
    if project is None:
        raise HTTPException(status_code=404, detail="Project not found")

    run_id = make_run_id()
    logger.info(
        "run_project[%s] project=%s files=%d",
        run_id,
        project_id,
        len(request.modified_files),
    )
    config = RunnerConfig.from_env()

    async def log_generator() -> AsyncGenerator[str, None]:
        try:
            async for chunk in run_project_flow(project, request.modified_files, run_id, config):
                yield chunk
        except Exception as e:
            logger.error("run_project[%s] stream error: %s", run_id, str(e))
            yield format_system_error(str(e))

    return StreamingResponse(
        log_generator(),
        media_type="text/event-stream",
        headers={**STREAM_HEADERS, "X-Run-Id": run_id},
    )


@router.delete("/{project_id}/run/{run_id}")
async def stop_run(project_id: str, run_id: str) -> dict[str, Any]:
    """Stop a run's container by id (stateless; the record lives in the run store)."""
    try:
        record = await run_store.get_active_run(run_id)
    except Exception as e:
        return {"ok": False, "error": str(e)}
    if not record or record.get("project_id") != project_id:
        return {"ok": False, "error": "unknown run"}
    try:
        await release_container(str(record["container"]), run_id)
    except Exception as e:
        return {"ok": False, "error": str(e)}
    return {"ok": True, "stopped": True}
