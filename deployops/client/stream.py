import asyncio
import codecs
from collections.abc import AsyncIterator, Awaitable
from typing import Any, TypeVar

import httpx


T = TypeVar("T")


class TransportFailure(Exception):
    """The run stream broke for a reason other than a user stop."""


class StreamCancelled(Exception):
    """The run stream was closed because the user stopped the run."""


class CancellationHandle:
    """Single-use stop token shared by a session and its stream.

    ``cancel()`` may be called any number of times; only the first call
    has an effect. A fresh handle is created for every run.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> bool:
        """Cancel the handle. Returns False if it was already cancelled."""
        if self._event.is_set():
            return False
        self._event.set()
        return True

    async def wait(self) -> None:
        await self._event.wait()


async def _await(aw: Awaitable[T]) -> T:
    return await aw


async def race_cancellation(
    aw: Awaitable[T], handle: CancellationHandle, timeout: float | None = None
) -> T:
    """Await ``aw`` unless the handle is cancelled (or ``timeout`` passes) first.

    Raises StreamCancelled on cancellation and asyncio.TimeoutError on timeout;
    the pending operation is cancelled in both cases.
    """
    if handle.cancelled:
        if asyncio.iscoroutine(aw):
            aw.close()
        raise StreamCancelled()
    work = asyncio.ensure_future(_await(aw))
    stop = asyncio.ensure_future(handle.wait())
    try:
        done, _ = await asyncio.wait(
            {work, stop}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
        )
    finally:
        stop.cancel()
    if work in done:
        return work.result()
    work.cancel()
    await asyncio.gather(work, return_exceptions=True)
    if handle.cancelled:
        raise StreamCancelled()
    raise asyncio.TimeoutError()


class ChunkedTextStream:
    """Decoded text fragments from a streamed HTTP response, as they arrive.

    The response must have been sent with ``stream=True``. Bytes are run
    through an incremental UTF-8 decoder, so a multi-byte character split
    across two network chunks comes out whole. Iteration is single-shot.

    Use as an async context manager; the response is closed on every exit
    path (end of stream, failure, user stop, or the caller breaking out).
    """

    def __init__(
        self,
        response: httpx.Response,
        handle: CancellationHandle,
        idle_timeout: float | None = None,
        encoding: str = "utf-8",
    ) -> None:
        self.response = response
        self.handle = handle
        self.idle_timeout = idle_timeout
        self._decoder = codecs.getincrementaldecoder(encoding)("replace")
        self._bytes: AsyncIterator[bytes] | None = None
        self._chunks: AsyncIterator[str] | None = None

    @property
    def closed(self) -> bool:
        return self.response.is_closed

    async def __aenter__(self) -> "ChunkedTextStream":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._chunks is not None:
            await self._chunks.aclose()  # type: ignore[attr-defined]
        if self._bytes is not None:
            try:
                await self._bytes.aclose()  # type: ignore[attr-defined]
            except (httpx.HTTPError, httpx.StreamError):
                pass
        await self.response.aclose()

    def __aiter__(self) -> AsyncIterator[str]:
        if self._bytes is not None:
            raise RuntimeError("ChunkedTextStream can only be iterated once")
        self._bytes = self.response.aiter_bytes()
        self._chunks = self._iterate(self._bytes)
        return self._chunks

    async def _iterate(self, byte_iter: AsyncIterator[bytes]) -> AsyncIterator[str]:
        try:
            while True:
                try:
                    chunk = await race_cancellation(
                        byte_iter.__anext__(), self.handle, self.idle_timeout
                    )
                except StopAsyncIteration:
                    break
                except asyncio.TimeoutError:
                    raise TransportFailure(
                        f"No output received for {self.idle_timeout:g}s"
                    ) from None
                except (httpx.HTTPError, httpx.StreamError) as exc:
                    if self.handle.cancelled:
                        raise StreamCancelled() from None
                    raise TransportFailure(str(exc) or exc.__class__.__name__) from exc
                if self.handle.cancelled:
                    raise StreamCancelled()
                text = self._decoder.decode(chunk)
                if text:
                    yield text
            tail = self._decoder.decode(b"", final=True)
            if tail:
                yield tail
        finally:
            await self.response.aclose()


async def open_text_stream(
    client: httpx.AsyncClient,
    request: httpx.Request,
    handle: CancellationHandle,
    idle_timeout: float | None = None,
) -> ChunkedTextStream:
    """Send ``request`` and wrap the streamed body once headers arrive.

    Raises TransportFailure for transport errors, HTTP error statuses and
    responses without a body; StreamCancelled if the handle fires first.
    """
    try:
        response = await race_cancellation(client.send(request, stream=True), handle)
    except StreamCancelled:
        raise
    except httpx.HTTPError as exc:
        raise TransportFailure(str(exc) or exc.__class__.__name__) from exc

    if response.status_code >= 400:
        try:
            body = (await response.aread()).decode("utf-8", "replace").strip()
        except (httpx.HTTPError, httpx.StreamError):
            body = ""
        finally:
            await response.aclose()
        detail = f": {body[:500]}" if body else ""
        raise TransportFailure(f"HTTP {response.status_code}{detail}")

    if response.status_code == 204 or response.headers.get("content-length") == "0":
        await response.aclose()
        raise TransportFailure("No response body")

    return ChunkedTextStream(response, handle, idle_timeout=idle_timeout)
