"""Tests for the coordination server client, using httpx.MockTransport."""

import json
from typing import Callable, List

import httpx
import pytest

from nexus.coordination.client import CoordinationClient, CoordinationError


class Recorder:
    """MockTransport handler that records requests and replies via ``reply``."""

    def __init__(self, reply: Callable[[httpx.Request], httpx.Response]):
        self.reply = reply
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.reply(request)

    @property
    def last(self) -> httpx.Request:
        return self.requests[-1]

    def last_json(self) -> dict:
        return json.loads(self.last.content)


def _client(recorder: Recorder, token: str = None) -> CoordinationClient:
    return CoordinationClient(
        "http://coord.test/",
        auth_token=token,
        transport=httpx.MockTransport(recorder),
    )


class TestRequests:
    @pytest.mark.asyncio
    async def test_register_sends_bearer_token(self):
        recorder = Recorder(lambda r: httpx.Response(201, json={"id": "n1", "status": "online"}))

        async with _client(recorder, token="secret-token") as client:
            node = await client.register_node({"id": "n1", "address": ""})

        assert node["id"] == "n1"
        assert recorder.last.method == "POST"
        assert recorder.last.url.path == "/api/v1/nodes"
        assert recorder.last.headers["Authorization"] == "Bearer secret-token"
        assert recorder.last_json() == {"id": "n1", "address": ""}

    @pytest.mark.asyncio
    async def test_no_token_no_header(self):
        recorder = Recorder(lambda r: httpx.Response(200, json={"status": "ok"}))

        async with _client(recorder) as client:
            await client.health()

        assert "Authorization" not in recorder.last.headers

    @pytest.mark.asyncio
    async def test_heartbeat_body_only_has_given_fields(self):
        recorder = Recorder(lambda r: httpx.Response(200, json={"id": "n1"}))

        async with _client(recorder) as client:
            await client.heartbeat("n1")
            empty = recorder.last_json()
            await client.heartbeat("n1", status="busy", services={"web": {"port": 1}})

        assert empty == {}
        assert recorder.last_json() == {"status": "busy", "services": {"web": {"port": 1}}}
        assert recorder.last.url.path == "/api/v1/nodes/n1/heartbeat"

    @pytest.mark.asyncio
    async def test_list_nodes_sends_only_set_filters(self):
        recorder = Recorder(lambda r: httpx.Response(200, json={"nodes": [{"id": "a"}], "count": 1}))

        async with _client(recorder) as client:
            nodes = await client.list_nodes(label="zone=eu")

        assert nodes == [{"id": "a"}]
        assert dict(recorder.last.url.params) == {"label": "zone=eu"}

    @pytest.mark.asyncio
    async def test_send_command(self):
        recorder = Recorder(lambda r: httpx.Response(202, json={"id": "cmd_1", "status": "pending"}))

        async with _client(recorder) as client:
            command = await client.send_command("n1", "exec", target="s1", params={"command": "ls"})
            without_timeout = recorder.last_json()
            await client.send_command("n1", "info", type="system", timeout=5)

        assert command["id"] == "cmd_1"
        assert without_timeout == {"type": "session", "action": "exec", "target": "s1", "params": {"command": "ls"}}
        assert recorder.last_json()["timeout"] == 5
        assert recorder.last.url.path == "/api/v1/nodes/n1/commands"

    @pytest.mark.asyncio
    async def test_pending_commands_oldest_first(self):
        body = {"commands": [{"id": "cmd_new"}, {"id": "cmd_old"}], "count": 2}
        recorder = Recorder(lambda r: httpx.Response(200, json=body))

        async with _client(recorder) as client:
            commands = await client.pending_commands("n1")

        assert [c["id"] for c in commands] == ["cmd_old", "cmd_new"]
        assert recorder.last.url.params["status"] == "pending"

    @pytest.mark.asyncio
    async def test_report_result(self):
        recorder = Recorder(lambda r: httpx.Response(200, json={"id": "cmd_1", "accepted": False}))

        async with _client(recorder) as client:
            accepted = await client.report_result(
                "cmd_1", node_id="n1", status="success", output="ok", duration=0.5
            )

        assert accepted is False
        assert recorder.last.url.path == "/api/v1/commands/cmd_1/result"
        assert recorder.last_json() == {
            "id": "cmd_1",
            "node_id": "n1",
            "status": "success",
            "output": "ok",
            "error": "",
            "duration": 0.5,
        }

    @pytest.mark.asyncio
    async def test_unregister(self):
        recorder = Recorder(lambda r: httpx.Response(204))

        async with _client(recorder) as client:
            await client.unregister_node("n1")

        assert recorder.last.method == "DELETE"


class TestErrors:
    """HTTP and transport failures become CoordinationError."""

    @pytest.mark.asyncio
    async def test_not_found(self):
        body = {"error": "not_found", "detail": "Node not found: ghost"}
        recorder = Recorder(lambda r: httpx.Response(404, json=body))

        async with _client(recorder) as client:
            with pytest.raises(CoordinationError) as exc_info:
                await client.get_node("ghost")

        error = exc_info.value
        assert error.not_found
        assert error.status_code == 404
        assert error.message == "Node not found: ghost"
        assert str(error) == "get node ghost: Node not found: ghost"

    @pytest.mark.asyncio
    async def test_plain_text_error(self):
        recorder = Recorder(lambda r: httpx.Response(502, text="Bad Gateway"))

        async with _client(recorder) as client:
            with pytest.raises(CoordinationError) as exc_info:
                await client.list_services()

        assert exc_info.value.status_code == 502
        assert not exc_info.value.not_found
        assert exc_info.value.message == "Bad Gateway"

    @pytest.mark.asyncio
    async def test_unreachable_server(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with _client(Recorder(refuse)) as client:
            with pytest.raises(CoordinationError) as exc_info:
                await client.health()

        assert exc_info.value.status_code is None
        assert "cannot reach coordination server at http://coord.test" in str(exc_info.value)
