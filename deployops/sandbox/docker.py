import asyncio
import logging
import random
from collections.abc import AsyncGenerator, Coroutine
from typing import Any

from deployops import run_store
from deployops.config import RunnerConfig
from deployops.markers import (
    format_build_failed,
    format_error,
    format_launch,
    format_preview_marker,
    format_runtime_error,
    format_system_error,
)
from deployops.models import ModifiedFile
from deployops.projects import Project
from deployops.sandbox.utils import (
    kill_process,
    run_command,
    start_process,
    stop_container,
    stream_output,
)
from deployops.sandbox.workspace import (
    apply_modified_files,
    detect_exposed_port,
    prepare_workspace,
    redact,
    remove_workspace,
    workspace_dir,
    workspace_lock,
)


logger = logging.getLogger("deployops.sandbox.docker")

HOST_PORT_RANGE = (10000, 60000)

# Cleanup work that must outlive the request that started it
_BACKGROUND: set[asyncio.Task[Any]] = set()


def _spawn(coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
    task = asyncio.get_running_loop().create_task(coro)
    _BACKGROUND.add(task)
    task.add_done_callback(_BACKGROUND.discard)
    return task


def _format_limit(seconds: float) -> str:
    if seconds >= 60 and seconds % 60 == 0:
        return f"{int(seconds // 60)}m"
    return f"{seconds:g}s"


async def release_container(container_name: str, run_id: str) -> None:
    await stop_container(container_name)
    try:
        await run_store.release_run(run_id)
    except Exception as e:
        logger.warning("run[%s] could not update run store: %s", run_id, str(e))


async def _expire_container(container_name: str, run_id: str, delay: float) -> None:
    await asyncio.sleep(max(0.0, delay))
    logger.info("run[%s] session limit reached for detached %s", run_id, container_name)
    await release_container(container_name, run_id)


async def run_project_flow(
    project: Project,
    modified_files: list[ModifiedFile],
    run_id: str,
    config: RunnerConfig | None = None,
) -> AsyncGenerator[str, None]:
    """Build the project's Dockerfile and run it, streaming the log as text.

    Emits the launch sentinel before the container starts and a
    ``[PREVIEW_URL]`` line once a port is published. If the client goes
    away before a preview exists the container is stopped; afterwards it
    lives until the session limit or an explicit stop.
    """
    config = config or RunnerConfig.from_env()
    loop = asyncio.get_running_loop()
    workspace = workspace_dir(project.id, config.workspace_root)
    image_name = f"deployops-run-{run_id.split('-')[0].lower()}"
    container_name = f"container-{run_id}"
    token = config.github_token

    build_proc: asyncio.subprocess.Process | None = None
    logs_proc: asyncio.subprocess.Process | None = None
    launched = False
    preview_sent = False
    released = False
    deadline = 0.0

    logger.info("run[%s] start project=%s files=%d", run_id, project.id, len(modified_files))
    try:
        async with workspace_lock(workspace):
            yield ">>> Preparing cached workspace...\n"
            async for line in prepare_workspace(project, workspace, token):
                yield line

            dockerfile = workspace / "Dockerfile"
            if not dockerfile.is_file():
                yield format_error("Dockerfile not found in repository root.")
                return

            if modified_files:
                yield f">>> Applying {len(modified_files)} local modifications...\n"
                for path in apply_modified_files(workspace, modified_files):
                    yield f">>> Skipping {path}: outside the repository\n"

            yield f"\n>>> Starting Docker Build [{image_name}]...\n"
            build_proc = await start_process("docker", "build", "-t", image_name, str(workspace))
            async for text in stream_output(build_proc):
                yield text
            build_code = await build_proc.wait()
            if build_code != 0:
                logger.warning("run[%s] build failed code=%d", run_id, build_code)
                yield format_build_failed(build_code)
                remove_workspace(workspace)
                return
            target_port = detect_exposed_port(dockerfile.read_text(encoding="utf-8", errors="replace"))

        host_port = random.randrange(*HOST_PORT_RANGE) if target_port else None
        yield format_launch(container_name, config.launch_sentinel)
        if host_port:
            yield f">>> Exposed Port: {target_port} mapped to {host_port}\n"

        run_args = [
            "docker", "run", "-d", "--rm",
            "--name", container_name,
            "--memory", config.container_memory,
            "--cpus", config.container_cpus,
        ]
        if host_port:
            run_args += ["-p", f"{host_port}:{target_port}"]
        run_args.append(image_name)
        run_code, run_out = await run_command(*run_args)
        if run_code != 0:
            detail = run_out.strip() or f"docker run exited with code {run_code}"
            yield format_runtime_error(detail)
            return
        # Session limit is measured from container start
        deadline = loop.time() + config.session_limit_seconds
        launched = True
        try:
            await run_store.set_active_run(
                run_id,
                {"project_id": project.id, "container": container_name, "image": image_name},
            )
        except Exception as e:
            logger.warning("run[%s] could not record active run: %s", run_id, str(e))

        if host_port:
            yield format_preview_marker(f"http://{config.preview_host}:{host_port}")
            preview_sent = True

        logs_proc = await start_process("docker", "logs", "-f", container_name)
        try:
            async for text in stream_output(logs_proc, deadline=deadline):
                yield text
        except asyncio.TimeoutError:
            yield (
                f"\n\n[DeployOps] Session limit reached ({_format_limit(config.session_limit_seconds)})."
                " Terminating...\n"
            )
            yield f"\n>>> Stopping instance [{container_name}]...\n"
            await release_container(container_name, run_id)
            released = True
            return

        wait_code, wait_out = await run_command("docker", "wait", container_name)
        exit_code = wait_out.strip() if wait_code == 0 and wait_out.strip() else "?"
        yield f"\n\n[DeployOps] Instance terminated (Code {exit_code})\n"
        yield f"\n>>> Stopping instance [{container_name}]...\n"
        await release_container(container_name, run_id)
        released = True
    except Exception as e:
        logger.exception("run[%s] failed", run_id)
        message = redact(str(e), token)
        yield format_runtime_error(message) if launched else format_system_error(message)
        remove_workspace(workspace)
    finally:
        kill_process(build_proc)
        kill_process(logs_proc)
        if launched and not released:
            if preview_sent:
                # Client went away with a live preview: keep it until the limit
                _spawn(_expire_container(container_name, run_id, deadline - loop.time()))
            else:
                _spawn(release_container(container_name, run_id))
        logger.info("run[%s] stream closed launched=%s released=%s", run_id, launched, released)
