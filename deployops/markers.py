import re
from enum import Enum

from pydantic import BaseModel

from deployops.config import DEFAULT_LAUNCH_SENTINEL


PREVIEW_URL_TOKEN = "[PREVIEW_URL]"
PREVIEW_URL_RE = re.compile(r"\[PREVIEW_URL\]\s*(https?://\S+)")
SYSTEM_ERROR_PREFIX = "[SYSTEM ERROR]"
BUILD_FAILED_PREFIX = "[BUILD FAILED]"
ERROR_PREFIX = "[ERROR]"
RUNTIME_ERROR_PREFIX = "[DeployOps] Runtime Error:"
# Runner-only prefixes. Container output may print the same text, so they count
# only before launch; RUNTIME_ERROR_PREFIX counts for the whole run.
ERROR_PREFIXES: tuple[str, ...] = (
    SYSTEM_ERROR_PREFIX,
    BUILD_FAILED_PREFIX,
    ERROR_PREFIX,
)
STOPPED_NOTICE = "[DeployOps] Aborting instance by user request...\n"


# Server-side emitters. Each returns text ready to be written to the stream.


def format_preview_marker(url: str) -> str:
    return f"\n{PREVIEW_URL_TOKEN} {url}\n"


def format_launch(container_name: str, sentinel: str = DEFAULT_LAUNCH_SENTINEL) -> str:
    return f"\n{sentinel} [{container_name}]...\n"


def format_system_error(message: str) -> str:
    return f"\n\n{SYSTEM_ERROR_PREFIX} {message}\n"


def format_build_failed(exit_code: int) -> str:
    return f"\n{BUILD_FAILED_PREFIX} Build process exited with code {exit_code}\n"


def format_error(message: str) -> str:
    return f"\n{ERROR_PREFIX} {message}\n"


def format_runtime_error(message: str) -> str:
    return f"\n\n{RUNTIME_ERROR_PREFIX} {message}\n"


class LineKind(str, Enum):
    TEXT = "text"
    PREVIEW = "preview"
    LAUNCH = "launch"
    ERROR = "error"
    RUNTIME_ERROR = "runtime_error"


class ScannedLine(BaseModel):
    """One complete line of the run log, classified.

    Attributes:
        kind: What the line signals.
        text: The raw line, including its trailing newline when it had one.
        payload: Preview URL for PREVIEW lines (``None`` when malformed),
            error message for ERROR and RUNTIME_ERROR lines.
    """

    kind: LineKind
    text: str
    payload: str | None = None

    @property
    def is_control(self) -> bool:
        """Control lines are never shown to the user."""
        return self.kind is LineKind.PREVIEW


def classify_line(line: str, launch_sentinel: str = DEFAULT_LAUNCH_SENTINEL) -> ScannedLine:
    stripped = line.lstrip()
    if stripped.startswith(PREVIEW_URL_TOKEN):
        match = PREVIEW_URL_RE.search(stripped)
        return ScannedLine(
            kind=LineKind.PREVIEW,
            text=line,
            payload=match.group(1) if match else None,
        )
    if stripped.startswith(RUNTIME_ERROR_PREFIX):
        message = stripped[len(RUNTIME_ERROR_PREFIX):].strip()
        return ScannedLine(kind=LineKind.RUNTIME_ERROR, text=line, payload=message or RUNTIME_ERROR_PREFIX)
    for prefix in ERROR_PREFIXES:
        if stripped.startswith(prefix):
            message = stripped[len(prefix):].strip()
            return ScannedLine(kind=LineKind.ERROR, text=line, payload=message or prefix)
    if launch_sentinel and stripped.startswith(launch_sentinel):
        return ScannedLine(kind=LineKind.LAUNCH, text=line)
    return ScannedLine(kind=LineKind.TEXT, text=line)


class LineScanner:
    """Incremental line splitter for the run log.

    Text is buffered until a newline arrives so that a marker delivered
    across two chunks is still seen as one line.
    """

    def __init__(self, launch_sentinel: str = DEFAULT_LAUNCH_SENTINEL) -> None:
        self.launch_sentinel = launch_sentinel
        self._pending = ""

    @property
    def pending(self) -> str:
        return self._pending

    @property
    def pending_is_hidden(self) -> bool:
        """True while the incomplete tail could still become a marker line."""
        if not self._pending:
            return False
        head = self._pending.lstrip()
        if not head:
            return True
        return head.startswith(PREVIEW_URL_TOKEN) or PREVIEW_URL_TOKEN.startswith(head)

    def feed(self, text: str) -> list[ScannedLine]:
        if not text:
            return []
        buf = self._pending + text
        parts = buf.split("\n")
        self._pending = parts.pop()
        return [classify_line(part + "\n", self.launch_sentinel) for part in parts]

    def flush(self) -> list[ScannedLine]:
        if not self._pending:
            return []
        tail, self._pending = self._pending, ""
        return [classify_line(tail, self.launch_sentinel)]
