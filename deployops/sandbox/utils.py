import asyncio
import codecs
import logging
from collections.abc import AsyncGenerator
from pathlib import Path


logger = logging.getLogger("deployops.sandbox")

READ_CHUNK_BYTES = 4096


async def start_process(*args: str, cwd: str | Path | None = None) -> asyncio.subprocess.Process:
    """Spawn a process with stderr folded into stdout."""
    logger.debug("exec %s", " ".join(args[:3]))
    return await asyncio.create_subprocess_exec(
        *args,
        cwd=str(cwd) if cwd else None,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
    )


async def run_command(*args: str, cwd: str | Path | None = None) -> tuple[int, str]:
    """Run to completion and return (exit_code, combined output)."""
    proc = await start_process(*args, cwd=cwd)
    out, _ = await proc.communicate()
    return proc.returncode or 0, (out or b"").decode("utf-8", "replace")


async def stream_output(
    proc: asyncio.subprocess.Process, deadline: float | None = None
) -> AsyncGenerator[str, None]:
    """Yield decoded output as it is produced.

    With a ``deadline`` (loop time), asyncio.TimeoutError is raised once it
    passes without the process closing its output.
    """
    assert proc.stdout is not None
    loop = asyncio.get_running_loop()
    decoder = codecs.getincrementaldecoder("utf-8")("replace")
    while True:
        if deadline is None:
            chunk = await proc.stdout.read(READ_CHUNK_BYTES)
        else:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise asyncio.TimeoutError()
            chunk = await asyncio.wait_for(proc.stdout.read(READ_CHUNK_BYTES), remaining)
        if not chunk:
            break
        text = decoder.decode(chunk)
        if text:
            yield text
    tail = decoder.decode(b"", final=True)
    if tail:
        yield tail


def kill_process(proc: asyncio.subprocess.Process | None) -> None:
    if proc is None or proc.returncode is not None:
        return
    try:
        proc.kill()
    except ProcessLookupError:
        pass


async def stop_container(container_name: str) -> bool:
    code, out = await run_command("docker", "stop", container_name)
    if code != 0:
        logger.warning("docker stop %s failed: %s", container_name, out.strip())
        return False
    return True
