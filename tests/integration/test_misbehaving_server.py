import asyncio
import pytest
from lsp_harness.errors import (
    IllegalStateError,
    RequestTimeoutError,
    ResponseError,
    SessionTerminatedError,
    UnmatchedResponseError,
)
from lsp_harness.scenario import CLIENT_CAPABILITIES, DOCUMENT_URI, LANGUAGE_ID
from lsp_harness.session import LanguageServerSession
from lsp_harness.state import SessionState


async def ready_session(command, **kwargs) -> LanguageServerSession:
    session = LanguageServerSession(command, **kwargs)
    await session.start()
    await session.initialize(capabilities=CLIENT_CAPABILITIES)
    await session.initialized()
    await session.did_open(DOCUMENT_URI, "curl --insecure ", LANGUAGE_ID)
    return session


async def gather_requests(session: LanguageServerSession, *calls):
    """Issue several requests concurrently and return results in call order."""
    return await asyncio.gather(
        *(session.send_request(method, params) for method, params in calls)
    )


def position(character=10):
    return {
        "textDocument": {"uri": DOCUMENT_URI},
        "position": {"line": 0, "character": character},
    }


@pytest.mark.asyncio
async def test_responses_in_reverse_order_reach_the_right_request(stub_command):
    session = await ready_session(stub_command("--reverse", "2"))
    try:
        hover, completion = await gather_requests(
            session,
            ("textDocument/hover", position()),
            ("textDocument/completion", position(7)),
        )
        assert hover["contents"]["kind"] == "markdown"
        assert isinstance(completion, list)
        assert {item["label"] for item in completion} >= {"--insecure"}
        assert session.anomalies == []
    finally:
        await session.exit()


@pytest.mark.asyncio
async def test_server_initiated_requests_are_answered(stub_command):
    session = LanguageServerSession(stub_command("--server-request"))
    await session.start()
    try:
        result = await session.initialize(capabilities=CLIENT_CAPABILITIES)
        configuration = result["experimental"]["configuration"]
        unknown = result["experimental"]["unknown"]

        assert configuration == {"jsonrpc": "2.0", "id": "srv-1", "result": [None]}
        assert unknown["error"]["code"] == -32601
        assert [r["method"] for r in session.dispatcher.server_requests] == [
            "workspace/configuration",
            "custom/unknown",
        ]
    finally:
        await session.exit()


@pytest.mark.asyncio
async def test_timeout_fails_one_request_and_sends_cancel(stub_command):
    session = await ready_session(
        stub_command("--silent", "textDocument/hover"), timeout=0.3
    )
    sent = []
    original = session.transport.send

    async def send(message):
        sent.append(message)
        await original(message)

    session.transport.send = send
    try:
        with pytest.raises(RequestTimeoutError) as excinfo:
            await session.hover(DOCUMENT_URI, 0, 10)
        request_id = excinfo.value.request_id
        assert excinfo.value.method == "textDocument/hover"
        assert sent[-1] == {
            "jsonrpc": "2.0",
            "method": "$/cancelRequest",
            "params": {"id": request_id},
        }

        # Other requests keep working after the timeout.
        completion = await session.completion(DOCUMENT_URI, 0, 7)
        assert completion
        assert len(session.table) == 0
    finally:
        await session.exit()


@pytest.mark.asyncio
async def test_error_response_only_fails_its_caller(stub_command):
    session = await ready_session(stub_command("--fail", "textDocument/completion"))
    try:
        results = await asyncio.gather(
            session.completion(DOCUMENT_URI, 0, 7),
            session.hover(DOCUMENT_URI, 0, 10),
            return_exceptions=True,
        )
        assert isinstance(results[0], ResponseError)
        assert results[0].code == -32603
        assert results[1]["contents"]["kind"] == "markdown"
        assert session.state is SessionState.INITIALIZED
    finally:
        await session.exit()


@pytest.mark.asyncio
async def test_server_crash_fails_pending_requests(stub_command):
    session = await ready_session(stub_command("--crash-on", "textDocument/hover"))
    try:
        with pytest.raises(SessionTerminatedError) as excinfo:
            await session.hover(DOCUMENT_URI, 0, 10)
        assert excinfo.value.method == "textDocument/hover"
        assert session.state is SessionState.TERMINATED
        assert session.transport.process.returncode == 3
    finally:
        await session.exit()


@pytest.mark.asyncio
async def test_abort_fails_every_pending_request(stub_command):
    session = await ready_session(
        stub_command("--silent", "textDocument/hover", "--silent", "textDocument/completion")
    )
    pending = [
        asyncio.create_task(session.hover(DOCUMENT_URI, 0, 10)),
        asyncio.create_task(session.completion(DOCUMENT_URI, 0, 7)),
    ]
    while len(session.table) < 2:
        await asyncio.sleep(0.01)

    await session.stop()

    results = await asyncio.gather(*pending, return_exceptions=True)
    assert all(isinstance(r, SessionTerminatedError) for r in results)
    assert len(session.table) == 0
    assert session.state is SessionState.TERMINATED


@pytest.mark.asyncio
async def test_interrupted_abort_still_fails_pending_requests(stub_command):
    session = await ready_session(stub_command("--silent", "textDocument/hover"))
    pending = asyncio.create_task(session.hover(DOCUMENT_URI, 0, 10))
    while len(session.table) < 1:
        await asyncio.sleep(0.01)
    stopping = asyncio.create_task(session.stop())
    await asyncio.sleep(0)
    stopping.cancel()
    with pytest.raises(asyncio.CancelledError):
        await stopping
    await session.stop()

    with pytest.raises(SessionTerminatedError):
        await pending
    assert session.transport.process.returncode is not None
    assert session.state is SessionState.TERMINATED


@pytest.mark.asyncio
async def test_initialize_timeout_allows_retry(stub_command):
    session = LanguageServerSession(stub_command("--silent", "initialize"), timeout=0.3)
    await session.start()
    try:
        with pytest.raises(RequestTimeoutError):
            await session.initialize(capabilities=CLIENT_CAPABILITIES)
        assert session.state is SessionState.UNSTARTED
        assert session.server_capabilities is None

        with pytest.raises(RequestTimeoutError):
            await session.initialize(capabilities=CLIENT_CAPABILITIES)
        assert session.state is SessionState.UNSTARTED
    finally:
        await session.exit()


@pytest.mark.asyncio
async def test_cancelled_initialize_returns_to_unstarted(stub_command):
    session = LanguageServerSession(stub_command("--silent", "initialize"))
    await session.start()
    try:
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(session.initialize(), timeout=0.2)
        assert session.state is SessionState.UNSTARTED
        assert len(session.table) == 0
    finally:
        await session.exit()


@pytest.mark.asyncio
async def test_concurrent_initialize_is_rejected_without_resetting_the_first(stub_command):
    session = LanguageServerSession(stub_command("--silent", "initialize"), timeout=0.5)
    await session.start()
    try:
        first = asyncio.create_task(session.initialize())
        while len(session.table) < 1:
            await asyncio.sleep(0.01)

        with pytest.raises(IllegalStateError):
            await session.initialize()
        assert session.state is SessionState.INITIALIZING

        with pytest.raises(RequestTimeoutError):
            await first
        assert session.state is SessionState.UNSTARTED
    finally:
        await session.exit()


@pytest.mark.asyncio
async def test_duplicate_response_is_recorded_as_unmatched(stub_command):
    session = await ready_session(stub_command("--duplicate"))
    try:
        await session.hover(DOCUMENT_URI, 0, 10)
        # The duplicate trails the first response; one more round trip flushes it.
        await session.completion(DOCUMENT_URI, 0, 7)
        unmatched = [a for a in session.anomalies if isinstance(a, UnmatchedResponseError)]
        assert unmatched
        assert unmatched[0].request_id is not None
    finally:
        await session.exit()
