import asyncio
import hashlib
import json

import httpx
import pytest

from chat_core.domain.exceptions import ApiError, EmptyBodyError, NetworkError, StreamReadError
from chat_core.domain.models import Message, StreamStatus
from chat_core.engine.conversation_engine import ConversationEngine
from chat_core.transport.base import CancelToken
from chat_core.transport.http_client import HttpTransportClient


class SettingsStub:
    endpoint_url = "http://test.local/api/generate"
    http_connect_timeout = 1.0
    site_password = None
    signature_secret = "s3cret"


def _client(handler, credential_source=None):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpTransportClient(SettingsStub(), credential_source=credential_source, client=http)


async def _collect(stream):
    return [chunk async for chunk in stream]


def test_payload_carries_history_time_pass_and_sign():
    captured = {}

    def handler(request: httpx.Request):
        captured["method"] = request.method
        captured["url"] = str(request.url)
        captured["payload"] = json.loads(request.content)
        return httpx.Response(200, content=b"ok")

    client = _client(handler, credential_source=lambda: "hunter2")
    history = [Message("user", "Q"), Message("assistant", "A"), Message("user", "again")]

    async def run():
        _, stream = await client.open_stream(history, "be concise", 1700000000000)
        return await _collect(stream)

    chunks = asyncio.run(run())
    payload = captured["payload"]
    assert chunks == [b"ok"]
    assert captured["method"] == "POST"
    assert captured["url"] == SettingsStub.endpoint_url
    assert payload["messages"][0] == {"role": "system", "content": "be concise"}
    assert [m["content"] for m in payload["messages"][1:]] == ["Q", "A", "again"]
    assert payload["time"] == 1700000000000
    assert payload["pass"] == "hunter2"
    expected = hashlib.sha256(b"1700000000000:again:s3cret").hexdigest()
    assert payload["sign"] == expected


def test_pass_is_null_without_credential_and_sign_uses_empty_content():
    captured = {}

    def handler(request: httpx.Request):
        captured["payload"] = json.loads(request.content)
        return httpx.Response(200, content=b"x")

    client = _client(handler, credential_source=lambda: None)

    async def run():
        _, stream = await client.open_stream([], "", 5)
        await _collect(stream)

    asyncio.run(run())
    assert captured["payload"]["messages"] == []
    assert captured["payload"]["pass"] is None
    assert captured["payload"]["sign"] == hashlib.sha256(b"5::s3cret").hexdigest()


def test_non_ok_status_raises_api_error():
    client = _client(lambda request: httpx.Response(502))

    with pytest.raises(ApiError) as exc:
        asyncio.run(client.open_stream([Message("user", "Q")], "", 1))
    assert exc.value.http_status == 502
    assert exc.value.message == "Bad Gateway"


def test_no_content_raises_empty_body_error():
    client = _client(lambda request: httpx.Response(204))

    with pytest.raises(EmptyBodyError) as exc:
        asyncio.run(client.open_stream([Message("user", "Q")], "", 1))
    assert exc.value.code == "NO_DATA"


def test_connection_failure_raises_network_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = _client(handler)

    with pytest.raises(NetworkError):
        asyncio.run(client.open_stream([Message("user", "Q")], "", 1))


def test_read_failure_raises_stream_read_error():
    async def body():
        yield b"part"
        raise httpx.ReadError("connection reset")

    client = _client(lambda request: httpx.Response(200, content=body()))

    async def run():
        _, stream = await client.open_stream([Message("user", "Q")], "", 1)
        received = []
        with pytest.raises(StreamReadError):
            async for chunk in stream:
                received.append(chunk)
        return received

    assert asyncio.run(run()) == [b"part"]


def test_cancel_ends_pending_stream_promptly():
    async def run():
        reached = asyncio.Event()
        never = asyncio.Event()

        async def body():
            yield b"hello"
            reached.set()
            await never.wait()
            yield b"unreachable"

        client = _client(lambda request: httpx.Response(200, content=body()))
        token = CancelToken()
        returned, stream = await client.open_stream([Message("user", "Q")], "", 1, token)
        assert returned is token
        task = asyncio.create_task(_collect(stream))
        await asyncio.wait_for(reached.wait(), 1)
        token.cancel()
        token.cancel()
        return await asyncio.wait_for(task, 1)

    assert asyncio.run(run()) == [b"hello"]


def test_cancel_before_first_chunk_yields_nothing():
    async def run():
        client = _client(lambda request: httpx.Response(200, content=b"data"))
        token = CancelToken()
        _, stream = await client.open_stream([Message("user", "Q")], "", 1, token)
        token.cancel()
        return await _collect(stream)

    assert asyncio.run(run()) == []


def test_empty_ok_body_ends_stream_normally():
    client = _client(lambda request: httpx.Response(200, content=b""))

    async def run():
        _, stream = await client.open_stream([Message("user", "Q")], "", 1)
        return await _collect(stream)

    assert asyncio.run(run()) == []


def test_cancelling_submit_task_mid_stream_archives_partial():
    async def run():
        never = asyncio.Event()
        closed = []

        async def body():
            try:
                yield b"partial"
                await never.wait()
            finally:
                closed.append(True)

        engine = ConversationEngine(
            _client(lambda request: httpx.Response(200, content=body())),
            render_interval=0,
        )
        seen = asyncio.Event()
        engine.subscribe(lambda ev: seen.set() if ev.kind == "buffer" else None)
        task = asyncio.create_task(engine.submit("Q"))
        await asyncio.wait_for(seen.wait(), 1)
        session = engine.session
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        return engine, session, closed

    engine, session, closed = asyncio.run(run())
    assert engine.messages == (Message("user", "Q"), Message("assistant", "partial"))
    assert session.status is StreamStatus.CANCELLED
    assert engine.last_error is None
    assert closed == [True]


def test_cancelling_submit_task_while_awaiting_headers_closes_client(monkeypatch):
    async def run():
        entered = asyncio.Event()
        gate = asyncio.Event()
        handler_cancelled = []
        closed = []

        async def handler(request):
            entered.set()
            try:
                await gate.wait()
            except asyncio.CancelledError:
                handler_cancelled.append(True)
                raise
            return httpx.Response(200, content=b"late")

        real_client = httpx.AsyncClient

        class RecordingClient(real_client):
            def __init__(self, **kw):
                super().__init__(transport=httpx.MockTransport(handler), **kw)

            async def aclose(self):
                closed.append(True)
                await super().aclose()

        monkeypatch.setattr(httpx, "AsyncClient", RecordingClient)
        engine = ConversationEngine(HttpTransportClient(SettingsStub()), render_interval=0)
        task = asyncio.create_task(engine.submit("Q"))
        await asyncio.wait_for(entered.wait(), 1)
        session = engine.session
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        gate.set()
        await asyncio.sleep(0)
        return engine, session, handler_cancelled, closed

    engine, session, handler_cancelled, closed = asyncio.run(run())
    assert handler_cancelled == [True]
    assert closed == [True]
    assert engine.messages == (Message("user", "Q"),)
    assert session.status is StreamStatus.CANCELLED
    assert engine.loading is False
