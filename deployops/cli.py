import asyncio
import logging
import os
from pathlib import Path

import click
import httpx

from deployops.client.session import RunSnapshot, RunStatus, StreamingRunSession
from deployops.config import ClientConfig


LOG_LEVEL_CHOICES = ("critical", "error", "warning", "info", "debug")

logger = logging.getLogger("deployops.cli")


class LogPrinter:
    """Echo only what was appended to the displayed log since the last update."""

    def __init__(self) -> None:
        self.printed = ""

    def __call__(self, snap: RunSnapshot) -> None:
        log = snap.log
        if log.startswith(self.printed):
            delta = log[len(self.printed):]
        else:
            delta = log
        if delta:
            click.echo(delta, nl=False)
        self.printed = log


def _collect_files(files: tuple[Path, ...], root: Path) -> dict[str, str]:
    base = root.resolve()
    out: dict[str, str] = {}
    for path in files:
        resolved = path.resolve()
        try:
            rel = resolved.relative_to(base)
        except ValueError as exc:
            raise click.ClickException(f"{path} is not inside {root}") from exc
        try:
            out[rel.as_posix()] = resolved.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise click.ClickException(f"Unable to read {path}: {exc}") from exc
    return out


async def _run(project_id: str, modified: dict[str, str], config: ClientConfig, hold: bool) -> RunSnapshot:
    timeout = httpx.Timeout(15.0, read=None)
    async with httpx.AsyncClient(timeout=timeout) as client:
        session = StreamingRunSession(client, project_id, config)
        session.subscribe(LogPrinter())
        session.start(modified)
        try:
            snap = await session.wait()
            if snap.status is RunStatus.SUCCESS and hold:
                click.echo(f"\nPreview: {snap.preview_url} (Ctrl-C to stop)")
                await asyncio.Event().wait()
            return snap
        except asyncio.CancelledError:
            session.stop()
            await session.aclose()
            raise


@click.group(help="DeployOps sandbox runner.")
@click.option(
    "--log-level",
    default=os.environ.get("DEPLOYOPS_LOG_LEVEL", "warning"),
    show_default=True,
    type=click.Choice(LOG_LEVEL_CHOICES, case_sensitive=False),
)
def main(log_level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@main.command("run", help="Build and run a project with local edits, streaming its log.")
@click.argument("project_id")
@click.argument("files", nargs=-1, type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--server", default=None, help="DeployOps API base URL (defaults to DEPLOYOPS_SERVER_URL).")
@click.option(
    "--root",
    default=".",
    show_default=True,
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    help="Repository root that FILES are relative to.",
)
@click.option("--hold/--no-hold", default=True, show_default=True, help="Keep the preview running until Ctrl-C.")
def run_command(project_id: str, files: tuple[Path, ...], server: str | None, root: Path, hold: bool) -> None:
    config = ClientConfig.from_env()
    if server:
        config = config.model_copy(update={"server_url": server})
    modified = _collect_files(files, root)
    logger.info("run project=%s files=%d server=%s", project_id, len(modified), config.server_url)
    try:
        snap = asyncio.run(_run(project_id, modified, config, hold))
    except KeyboardInterrupt:
        click.echo("\nStopped.", err=True)
        raise SystemExit(130)
    if snap.status is RunStatus.ERROR:
        raise SystemExit(1)
    if snap.preview_url and not hold:
        click.echo(f"\nPreview: {snap.preview_url}")


@main.command("serve", help="Run the DeployOps API server.")
@click.option("--host", default="0.0.0.0", show_default=True)
@click.option("--port", default=8081, show_default=True, type=int)
@click.option("--reload", is_flag=True, default=False)
def serve_command(host: str, port: int, reload: bool) -> None:
    import uvicorn

    uvicorn.run("server:app", host=host, port=port, reload=reload)


if __name__ == "__main__":
    main()
