from __future__ import annotations

import os
from typing import Any

from vercel.cache import AsyncRuntimeCache


# TTL in seconds for active run records
_TTL_SECONDS: int = int(os.getenv("RUN_STORE_TTL_SECONDS", "900"))
_NAMESPACE = os.getenv("RUN_STORE_NAMESPACE", "deployops-runs")


cache = AsyncRuntimeCache(namespace=_NAMESPACE)


def _cache_key(run_id: str) -> str:
    return f"run:{run_id}"


async def set_active_run(run_id: str, record: dict[str, Any]) -> None:
    """Record the container backing a run so it can be stopped later."""
    await cache.set(
        _cache_key(run_id),
        dict(record),
        {"ttl": _TTL_SECONDS, "tags": [f"run:{run_id}", f"project:{record.get('project_id')}"]},
    )


async def get_active_run(run_id: str) -> dict[str, Any] | None:
    """Fetch the record for a run id; None once it has been released."""
    val = await cache.get(_cache_key(run_id))
    if not isinstance(val, dict) or val.get("released"):
        return None
    return dict(val)


async def release_run(run_id: str) -> None:
    """Mark the run record as released if present."""
    base = await cache.get(_cache_key(run_id))
    if isinstance(base, dict):
        updated = dict(base)
        updated["released"] = True
        await cache.set(
            _cache_key(run_id),
            updated,
            {"ttl": _TTL_SECONDS, "tags": [f"run:{run_id}"]},
        )
