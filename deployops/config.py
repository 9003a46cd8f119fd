import os
import tempfile

from dotenv import load_dotenv
from pydantic import BaseModel, Field


current_dir = os.path.dirname(os.path.abspath(__file__))
root_dir = os.path.dirname(current_dir)
# Load env from the project root first, then the package dir, without overriding
load_dotenv(os.path.join(root_dir, ".env"), override=False)
load_dotenv(os.path.join(current_dir, ".env"), override=False)


DEFAULT_SERVER_URL = "http://localhost:8081"
DEFAULT_LAUNCH_SENTINEL = ">>> Launching Container"
DEFAULT_SESSION_LIMIT_SECONDS = 600


def _optional_float(name: str) -> float | None:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return None
    value = float(raw)
    return value if value > 0 else None


class ClientConfig(BaseModel):
    """Settings for the streaming run client.

    Attributes:
        server_url: Base URL of the DeployOps API.
        launch_sentinel: Log text the server prints when the container launches.
        idle_timeout: Seconds without a chunk before the stream is treated as
            failed. ``None`` disables the check.
    """

    server_url: str = DEFAULT_SERVER_URL
    launch_sentinel: str = DEFAULT_LAUNCH_SENTINEL
    idle_timeout: float | None = None

    @classmethod
    def from_env(cls) -> "ClientConfig":
        return cls(
            server_url=os.getenv("DEPLOYOPS_SERVER_URL", DEFAULT_SERVER_URL),
            launch_sentinel=os.getenv("DEPLOYOPS_LAUNCH_SENTINEL", DEFAULT_LAUNCH_SENTINEL),
            idle_timeout=_optional_float("DEPLOYOPS_STREAM_IDLE_TIMEOUT"),
        )


class RunnerConfig(BaseModel):
    """Settings for the server-side build-and-run flow."""

    workspace_root: str = Field(
        default_factory=lambda: os.path.join(tempfile.gettempdir(), "deployops-workspaces")
    )
    preview_host: str = "localhost"
    session_limit_seconds: float = DEFAULT_SESSION_LIMIT_SECONDS
    container_memory: str = "512m"
    container_cpus: str = "1"
    launch_sentinel: str = DEFAULT_LAUNCH_SENTINEL
    github_token: str | None = None

    @classmethod
    def from_env(cls) -> "RunnerConfig":
        defaults = cls()
        return cls(
            workspace_root=os.getenv("DEPLOYOPS_WORKSPACE_ROOT") or defaults.workspace_root,
            preview_host=os.getenv("DEPLOYOPS_PREVIEW_HOST", defaults.preview_host),
            session_limit_seconds=float(
                os.getenv("DEPLOYOPS_SESSION_LIMIT_SECONDS", str(DEFAULT_SESSION_LIMIT_SECONDS))
            ),
            container_memory=os.getenv("DEPLOYOPS_CONTAINER_MEMORY", defaults.container_memory),
            container_cpus=os.getenv("DEPLOYOPS_CONTAINER_CPUS", defaults.container_cpus),
            launch_sentinel=os.getenv("DEPLOYOPS_LAUNCH_SENTINEL", DEFAULT_LAUNCH_SENTINEL),
            github_token=os.getenv("GITHUB_TOKEN") or None,
        )
