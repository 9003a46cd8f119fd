import asyncio
import logging
from collections.abc import Callable, Iterable, Mapping
from enum import Enum
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict

from deployops.client.stream import (
    CancellationHandle,
    ChunkedTextStream,
    StreamCancelled,
    TransportFailure,
    open_text_stream,
)
from deployops.config import ClientConfig
from deployops.markers import (
    STOPPED_NOTICE,
    SYSTEM_ERROR_PREFIX,
    LineKind,
    LineScanner,
    ScannedLine,
)
from deployops.models import ModifiedFile, RunRequest, coerce_modified_files


logger = logging.getLogger("deployops.client")


class RunStatus(str, Enum):
    IDLE = "idle"
    BUILDING = "building"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"


TERMINAL_STATUSES = frozenset({RunStatus.SUCCESS, RunStatus.ERROR})

NOT_LAUNCHED_MESSAGE = "Run ended before the instance launched"


class RunSnapshot(BaseModel):
    """Read-only view of a session, handed to UI subscribers."""

    model_config = ConfigDict(frozen=True)

    status: RunStatus
    log: str
    preview_url: str | None = None
    active: bool = False
    run_id: str | None = None


class StreamingRunSession:
    """Drives one build-and-run attempt at a time against the run endpoint.

    ``start()`` posts the modified files and consumes the streamed log on a
    background task. Chunks are applied strictly in arrival order; the
    ``[PREVIEW_URL]`` marker moves the session to SUCCESS, runner error lines
    move it to ERROR (only the namespaced runtime prefix once the container
    is up, since its own output is opaque), and ``stop()`` returns it to IDLE. The
    transport is closed as soon as the session reaches a terminal status.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        project_id: str,
        config: ClientConfig | None = None,
    ) -> None:
        self.client = client
        self.project_id = project_id
        self.config = config or ClientConfig.from_env()
        self._status = RunStatus.IDLE
        self._raw = ""
        self._display = ""
        self._preview_url: str | None = None
        self._run_id: str | None = None
        self._scanner = LineScanner(self.config.launch_sentinel)
        self._handle: CancellationHandle | None = None
        self._task: asyncio.Task[None] | None = None
        self._transport: ChunkedTextStream | None = None
        self._listeners: list[Callable[[RunSnapshot], Any]] = []
        self._background: set[asyncio.Task[Any]] = set()

    @property
    def run_url(self) -> str:
        return f"{self.config.server_url.rstrip('/')}/api/projects/{self.project_id}/run"

    @property
    def status(self) -> RunStatus:
        return self._status

    @property
    def preview_url(self) -> str | None:
        return self._preview_url

    @property
    def raw_log(self) -> str:
        """Everything received from the transport, markers included."""
        return self._raw

    @property
    def log(self) -> str:
        """The log as shown to the user: marker lines stripped."""
        if self._scanner.pending and not self._scanner.pending_is_hidden:
            return self._display + self._scanner.pending
        return self._display

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def transport(self) -> ChunkedTextStream | None:
        return self._transport

    def snapshot(self) -> RunSnapshot:
        return RunSnapshot(
            status=self._status,
            log=self.log,
            preview_url=self._preview_url,
            active=self.active,
            run_id=self._run_id,
        )

    def subscribe(self, callback: Callable[[RunSnapshot], Any]) -> Callable[[], None]:
        """Register a change listener. Returns a function that removes it."""
        self._listeners.append(callback)

        def _unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return _unsubscribe

    def _notify(self) -> None:
        if not self._listeners:
            return
        snap = self.snapshot()
        for cb in list(self._listeners):
            try:
                cb(snap)
            except Exception:
                logger.exception("session listener failed")

    def _reset(self) -> None:
        self._raw = ""
        self._display = ""
        self._preview_url = None
        self._run_id = None
        self._transport = None
        self._scanner = LineScanner(self.config.launch_sentinel)

    def start(
        self,
        modified_files: Mapping[str, str] | Iterable[ModifiedFile | tuple[str, str] | dict[str, str]] | None = None,
    ) -> None:
        """Begin a new run. Any previous attempt is cancelled and discarded."""
        request = RunRequest(
            project_id=self.project_id,
            modified_files=coerce_modified_files(modified_files),
        )
        if self._handle is not None:
            self._handle.cancel()
        self._reset()
        handle = CancellationHandle()
        self._handle = handle
        self._status = RunStatus.BUILDING
        logger.info(
            "run[%s] start files=%d", self.project_id, len(request.modified_files)
        )
        task = asyncio.get_running_loop().create_task(self._consume(request, handle))
        task.add_done_callback(lambda _t: self._notify() if handle is self._handle else None)
        self._task = task
        self._notify()

    async def wait(self) -> RunSnapshot:
        """Wait for the current attempt to finish consuming its stream."""
        task = self._task
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
        return self.snapshot()

    async def run(
        self,
        modified_files: Mapping[str, str] | Iterable[ModifiedFile | tuple[str, str] | dict[str, str]] | None = None,
    ) -> RunSnapshot:
        self.start(modified_files)
        return await self.wait()

    def stop(self) -> None:
        """User stop. No-op when idle, failed, or already stopped."""
        if self._handle is None or self._status in (RunStatus.IDLE, RunStatus.ERROR):
            return
        self._handle.cancel()
        self._drain_pending()
        self._display += "\n" + STOPPED_NOTICE
        self._preview_url = None
        self._status = RunStatus.IDLE
        logger.info("run[%s] stopped by user", self.project_id)
        if self._run_id:
            self._release_remote(self._run_id)
        self._notify()

    async def aclose(self) -> None:
        """Tear down without touching the displayed state (e.g. view unmount)."""
        if self._handle is not None:
            self._handle.cancel()
        await self.wait()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    def apply_chunk(self, text: str) -> None:
        """Apply one decoded chunk, in order. Ignored once the run is terminal."""
        if self._status in TERMINAL_STATUSES or not text:
            return
        self._raw += text
        for line in self._scanner.feed(text):
            self._apply_line(line)
        self._notify()

    def _apply_line(self, line: ScannedLine) -> None:
        if line.kind is LineKind.PREVIEW:
            if line.payload and self._preview_url is None and self._status not in TERMINAL_STATUSES:
                self._preview_url = line.payload
                self._status = RunStatus.SUCCESS
                logger.info("run[%s] preview ready url=%s", self.project_id, line.payload)
            elif not line.payload:
                logger.debug("run[%s] ignoring malformed preview marker", self.project_id)
            return
        self._display += line.text
        if line.kind is LineKind.LAUNCH and self._status is RunStatus.BUILDING:
            self._status = RunStatus.RUNNING
        elif (
            (line.kind is LineKind.ERROR and self._status is RunStatus.BUILDING)
            or (line.kind is LineKind.RUNTIME_ERROR and self._status not in TERMINAL_STATUSES)
        ):
            self._status = RunStatus.ERROR
            logger.warning("run[%s] server reported error: %s", self.project_id, line.payload)

    def _drain_pending(self) -> None:
        # Partial tail at an abnormal end: show it, but it drives no transitions.
        for line in self._scanner.flush():
            if not line.is_control:
                self._display += line.text

    def _finish(self) -> None:
        for line in self._scanner.flush():
            self._apply_line(line)
        if self._status is RunStatus.RUNNING:
            self._status = RunStatus.IDLE
        elif self._status is RunStatus.BUILDING:
            self._fail(NOT_LAUNCHED_MESSAGE)
            return
        self._notify()

    def _fail(self, message: str) -> None:
        self._drain_pending()
        self._display += f"\n{SYSTEM_ERROR_PREFIX} {message}\n"
        if self._status not in TERMINAL_STATUSES:
            self._status = RunStatus.ERROR
        logger.warning("run[%s] failed: %s", self.project_id, message)
        self._notify()

    async def _consume(self, request: RunRequest, handle: CancellationHandle) -> None:
        http_request = self.client.build_request(
            "POST", self.run_url, json=request.to_payload()
        )
        try:
            stream = await open_text_stream(
                self.client, http_request, handle, self.config.idle_timeout
            )
            async with stream:
                if handle is not self._handle:
                    return
                self._transport = stream
                self._run_id = stream.response.headers.get("x-run-id")
                async for text in stream:
                    if handle is not self._handle:
                        return
                    self.apply_chunk(text)
                    if self._status in TERMINAL_STATUSES:
                        break
            if handle is self._handle and self._status not in TERMINAL_STATUSES:
                self._finish()
        except StreamCancelled:
            logger.debug("run[%s] stream cancelled", self.project_id)
        except TransportFailure as exc:
            if handle is self._handle and not handle.cancelled:
                self._fail(str(exc))
        except Exception as exc:
            logger.exception("run[%s] unexpected stream error", self.project_id)
            if handle is self._handle and not handle.cancelled:
                self._fail(str(exc) or exc.__class__.__name__)

    def _release_remote(self, run_id: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("run[%s] cannot release %s outside an event loop", self.project_id, run_id)
            return
        task = loop.create_task(self._delete_run(run_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _delete_run(self, run_id: str) -> None:
        try:
            resp = await self.client.delete(f"{self.run_url}/{run_id}")
            resp.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("run[%s] release %s failed: %s", self.project_id, run_id, str(e))
