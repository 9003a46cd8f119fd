import asyncio
import json

import httpx
import pytest

from deployops.client.session import NOT_LAUNCHED_MESSAGE, RunStatus, StreamingRunSession
from deployops.config import ClientConfig
from deployops.markers import STOPPED_NOTICE

from conftest import RunServer, SERVER_URL, stream_response, wait_until


HAPPY_PATH = [
    "Cloning repo...\n",
    ">>> Launching Container\n",
    "server started\n",
    "[PREVIEW_URL] https://preview.app/x\nextra\n",
]
HAPPY_LOG = "Cloning repo...\n>>> Launching Container\nserver started\nextra\n"


async def run_chunks(chunks, config=None):
    server = RunServer(stream_response(chunks))
    async with server.client() as client:
        session = StreamingRunSession(client, "p1", config or ClientConfig(server_url=SERVER_URL))
        snap = await session.run({})
    return session, snap


@pytest.mark.asyncio
async def test_happy_path_reaches_success_with_preview(client_config):
    server = RunServer(stream_response(HAPPY_PATH))
    async with server.client() as client:
        session = StreamingRunSession(client, "p1", client_config)
        snap = await session.run({"src/app.py": "print('hi')\n"})

    assert snap.status is RunStatus.SUCCESS
    assert snap.preview_url == "https://preview.app/x"
    assert snap.log == HAPPY_LOG
    assert snap.run_id == "run-1"
    assert not snap.active
    assert session.transport.closed
    assert "[PREVIEW_URL]" in session.raw_log


@pytest.mark.asyncio
async def test_start_posts_all_modified_files_once(client_config):
    server = RunServer(stream_response(HAPPY_PATH))
    async with server.client() as client:
        session = StreamingRunSession(client, "p1", client_config)
        await session.run({"a.txt": "A", "dir/b.txt": "B"})

    (request,) = server.requests
    assert request.method == "POST"
    assert request.url.path == "/api/projects/p1/run"
    assert json.loads(request.content) == {
        "modifiedFiles": [
            {"path": "a.txt", "content": "A"},
            {"path": "dir/b.txt", "content": "B"},
        ]
    }


BEFORE_MARKER = "Cloning repo...\n>>> Launching Container\nserver started\n"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "chunk_size, expected_log",
    [
        # The marker line ends exactly on a chunk boundary: nothing after it is read
        (1, BEFORE_MARKER),
        (7, BEFORE_MARKER),
        # Whatever shares the marker's chunk is still applied
        (3, BEFORE_MARKER + "ex"),
        (64, HAPPY_LOG),
    ],
)
async def test_rechunking_agrees_up_to_the_marker(chunk_size, expected_log):
    text = "".join(HAPPY_PATH)
    chunks = [text[i:i + chunk_size] for i in range(0, len(text), chunk_size)]
    _, snap = await run_chunks(chunks)
    assert snap.status is RunStatus.SUCCESS
    assert snap.preview_url == "https://preview.app/x"
    assert snap.log == expected_log


@pytest.mark.asyncio
async def test_text_after_marker_in_a_later_chunk_is_not_applied():
    text = "".join(HAPPY_PATH)
    split = text.index("extra")
    _, whole = await run_chunks([text])
    session, split_snap = await run_chunks([text[:split], text[split:]])

    assert whole.log == HAPPY_LOG
    assert split_snap.log == BEFORE_MARKER
    assert whole.preview_url == split_snap.preview_url == "https://preview.app/x"
    assert "extra" not in session.raw_log


@pytest.mark.asyncio
async def test_marker_split_across_chunks_is_detected_and_hidden():
    _, snap = await run_chunks(
        ["build ok\n[PREVIEW_U", "RL] https://example.com/pre", "view\n"]
    )
    assert snap.status is RunStatus.SUCCESS
    assert snap.preview_url == "https://example.com/preview"
    assert snap.log == "build ok\n"


@pytest.mark.asyncio
async def test_partial_marker_is_never_displayed(client_config):
    gate = asyncio.Event()
    server = RunServer(stream_response(["step 1\n[PREVIEW_URL] https://exa"], gate=gate))
    async with server.client() as client:
        session = StreamingRunSession(client, "p1", client_config)
        session.start({})
        await wait_until(lambda: "step 1" in session.log)
        assert session.log == "step 1\n"
        assert session.status is RunStatus.BUILDING
        session.stop()
        await session.aclose()


@pytest.mark.asyncio
async def test_launch_sentinel_moves_to_running(client_config):
    gate = asyncio.Event()
    server = RunServer(stream_response(["build\n", ">>> Launching Container [c1]...\n"], gate=gate))
    async with server.client() as client:
        session = StreamingRunSession(client, "p1", client_config)
        session.start({})
        await wait_until(lambda: session.status is RunStatus.RUNNING)
        assert session.preview_url is None
        session.stop()
        await session.aclose()


@pytest.mark.asyncio
async def test_no_marker_never_succeeds_and_replays_identically():
    chunks = ["build\n", ">>> Launching Container [c1]...\n", "hello from app\n", "[DeployOps] Instance terminated (Code 0)\n"]
    _, first = await run_chunks(chunks)
    _, second = await run_chunks(chunks)
    assert first.status is RunStatus.IDLE
    assert first.preview_url is None
    assert first.model_dump(exclude={"run_id"}) == second.model_dump(exclude={"run_id"})


@pytest.mark.asyncio
async def test_stream_ending_before_launch_is_an_error():
    _, snap = await run_chunks(["Preparing...\n", "half a line"])
    assert snap.status is RunStatus.ERROR
    assert snap.log.startswith("Preparing...\nhalf a line")
    assert NOT_LAUNCHED_MESSAGE in snap.log


@pytest.mark.asyncio
async def test_malformed_marker_is_stripped_without_transition():
    _, snap = await run_chunks(
        [">>> Launching Container\n", "[PREVIEW_URL] nowhere\n", "still running\n"]
    )
    assert snap.preview_url is None
    assert "[PREVIEW_URL]" not in snap.log
    assert "still running\n" in snap.log
    assert snap.status is not RunStatus.SUCCESS


@pytest.mark.asyncio
async def test_server_error_line_moves_to_error_and_keeps_output():
    session, snap = await run_chunks(
        ["Step 1/3\n", "\n[BUILD FAILED] Build process exited with code 1\n", "ignored\n"]
    )
    assert snap.status is RunStatus.ERROR
    assert "Step 1/3\n" in snap.log
    assert "[BUILD FAILED]" in snap.log
    assert session.transport.closed


@pytest.mark.asyncio
async def test_transport_failure_is_reported_as_system_error(client_config):
    server = RunServer(stream_response(["Cloning...\n"], fail_with=httpx.ReadError("peer closed")))
    async with server.client() as client:
        session = StreamingRunSession(client, "p1", client_config)
        snap = await session.run({})
    assert snap.status is RunStatus.ERROR
    assert snap.log.startswith("Cloning...\n")
    assert "[SYSTEM ERROR] peer closed" in snap.log


@pytest.mark.asyncio
async def test_http_failure_before_streaming(client_config):
    server = RunServer(lambda _r: httpx.Response(404, json={"detail": "Project not found"}))
    async with server.client() as client:
        session = StreamingRunSession(client, "missing", client_config)
        snap = await session.run({})
    assert snap.status is RunStatus.ERROR
    assert "HTTP 404" in snap.log


@pytest.mark.asyncio
async def test_stop_mid_build(client_config):
    gate = asyncio.Event()
    state = {}
    server = RunServer(stream_response(HAPPY_PATH[:1], gate=gate, state=state))
    async with server.client() as client:
        session = StreamingRunSession(client, "p1", client_config)
        session.start({})
        await wait_until(lambda: session.log == "Cloning repo...\n")
        session.stop()
        snap = await session.wait()
        await session.aclose()

    assert snap.status is RunStatus.IDLE
    assert snap.preview_url is None
    assert snap.log == "Cloning repo...\n\n" + STOPPED_NOTICE
    assert session.transport.closed
    assert state["closed"]


@pytest.mark.asyncio
async def test_stop_is_idempotent(client_config):
    gate = asyncio.Event()
    server = RunServer(stream_response(["working\n"], gate=gate))
    async with server.client() as client:
        session = StreamingRunSession(client, "p1", client_config)
        session.start({})
        await wait_until(lambda: "working" in session.log)
        session.stop()
        session.stop()
        await session.aclose()

    assert session.status is RunStatus.IDLE
    assert session.log.count(STOPPED_NOTICE) == 1
    deletes = [r for r in server.requests if r.method == "DELETE"]
    assert len(deletes) == 1
    assert deletes[0].url.path == "/api/projects/p1/run/run-1"


@pytest.mark.asyncio
async def test_stop_without_a_run_is_a_noop(client_config):
    async with httpx.AsyncClient(base_url=SERVER_URL) as client:
        session = StreamingRunSession(client, "p1", client_config)
        session.stop()
    assert session.status is RunStatus.IDLE
    assert session.log == ""


@pytest.mark.asyncio
async def test_stop_after_success_retracts_preview(client_config):
    server = RunServer(stream_response(HAPPY_PATH))
    async with server.client() as client:
        session = StreamingRunSession(client, "p1", client_config)
        await session.run({})
        session.stop()
        await session.aclose()

    assert session.status is RunStatus.IDLE
    assert session.preview_url is None
    assert session.log.endswith(STOPPED_NOTICE)
    assert [r.method for r in server.requests] == ["POST", "DELETE"]


@pytest.mark.asyncio
async def test_stop_after_error_is_a_noop():
    session, snap = await run_chunks(["[ERROR] Dockerfile not found in repository root.\n"])
    session.stop()
    assert session.status is RunStatus.ERROR
    assert session.log == snap.log


@pytest.mark.asyncio
async def test_restart_discards_previous_attempt(client_config):
    gate = asyncio.Event()
    server = RunServer(
        stream_response(["old output\n"], gate=gate, run_id="run-old"),
        stream_response(["new output\n", ">>> Launching Container\n", "[PREVIEW_URL] http://localhost:5000\n"], run_id="run-new"),
    )
    async with server.client() as client:
        session = StreamingRunSession(client, "p1", client_config)
        session.start({})
        await wait_until(lambda: "old output" in session.log)
        old_transport = session.transport
        session.start({"x": "y"})
        snap = await session.wait()
        await session.aclose()

    assert snap.status is RunStatus.SUCCESS
    assert snap.log == "new output\n>>> Launching Container\n"
    assert snap.run_id == "run-new"
    await wait_until(lambda: old_transport.closed)


@pytest.mark.asyncio
async def test_idle_timeout_fails_the_run():
    gate = asyncio.Event()
    server = RunServer(stream_response(["Cloning...\n"], gate=gate))
    config = ClientConfig(server_url=SERVER_URL, idle_timeout=0.05)
    async with server.client() as client:
        session = StreamingRunSession(client, "p1", config)
        snap = await session.run({})
    assert snap.status is RunStatus.ERROR
    assert "No output received" in snap.log


@pytest.mark.asyncio
async def test_subscribers_see_ordered_updates(client_config):
    server = RunServer(stream_response(HAPPY_PATH))
    seen = []
    async with server.client() as client:
        session = StreamingRunSession(client, "p1", client_config)
        unsubscribe = session.subscribe(lambda snap: seen.append(snap.status))
        await session.run({})
        unsubscribe()
        session.stop()

    assert seen[0] is RunStatus.BUILDING
    assert RunStatus.RUNNING in seen
    assert seen[-1] is RunStatus.SUCCESS
    running_at = seen.index(RunStatus.RUNNING)
    assert RunStatus.SUCCESS not in seen[:running_at]


@pytest.mark.asyncio
async def test_apply_chunk_is_ignored_once_terminal(client_config):
    session, snap = await run_chunks(HAPPY_PATH)
    session.apply_chunk("late line\n")
    assert session.log == snap.log


@pytest.mark.asyncio
async def test_app_output_with_error_prefix_is_plain_log_text():
    chunks = [
        ">>> Launching Container [c1]...\n",
        "[ERROR] cache miss, retrying\n",
        "[SYSTEM ERROR] not really\n",
        "listening on 8080\n",
        "\n\n[DeployOps] Instance terminated (Code 0)\n",
    ]
    session, snap = await run_chunks(chunks)
    assert snap.status is RunStatus.IDLE
    assert snap.log == "".join(chunks)
    assert session.transport.closed


@pytest.mark.asyncio
async def test_runtime_error_after_launch_moves_to_error():
    _, snap = await run_chunks(
        [
            ">>> Launching Container [c1]...\n",
            "\n\n[DeployOps] Runtime Error: port is already allocated\n",
            "ignored\n",
        ]
    )
    assert snap.status is RunStatus.ERROR
    assert snap.log.endswith("[DeployOps] Runtime Error: port is already allocated\n")
    assert "ignored" not in snap.log


@pytest.mark.asyncio
async def test_echoed_sentinel_in_build_output_does_not_launch(client_config):
    gate = asyncio.Event()
    server = RunServer(stream_response(["Step 4/6 : RUN echo '>>> Launching Container'\n"], gate=gate))
    async with server.client() as client:
        session = StreamingRunSession(client, "p1", client_config)
        session.start({})
        await wait_until(lambda: "Step 4/6" in session.log)
        assert session.status is RunStatus.BUILDING
        session.stop()
        await session.aclose()
