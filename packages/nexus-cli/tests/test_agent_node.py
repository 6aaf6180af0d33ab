"""Tests for the node agent loop and its HTTP endpoint."""

import asyncio
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest
from fastapi.testclient import TestClient

from nexus.agent.executor import CommandExecutor
from nexus.agent.node import NodeAgent, load_node_id
from nexus.agent.server import create_agent_app
from nexus.config import Settings
from nexus.coordination.client import CoordinationError


class FakeCoordinationClient:
    """Stands in for CoordinationClient, recording every call."""

    base_url = "http://coord.test"

    def __init__(self):
        self.registrations: List[Dict[str, Any]] = []
        self.heartbeats: List[str] = []
        self.results: List[Dict[str, Any]] = []
        self.pending: List[Dict[str, Any]] = []
        self.unregistered: List[str] = []
        self.closed = False
        self.heartbeat_error: Optional[CoordinationError] = None

    async def register_node(self, registration):
        self.registrations.append(registration)
        return {"id": registration["id"]}

    async def heartbeat(self, node_id, status=None, services=None):
        self.heartbeats.append(node_id)
        if self.heartbeat_error is not None:
            error, self.heartbeat_error = self.heartbeat_error, None
            raise error
        return {"id": node_id}

    async def pending_commands(self, node_id):
        return list(self.pending)

    async def report_result(self, command_id, **report):
        self.results.append({"id": command_id, **report})
        return True

    async def unregister_node(self, node_id):
        self.unregistered.append(node_id)

    async def aclose(self):
        self.closed = True


def _settings(tmp_path: Path, **overrides) -> Settings:
    values = {
        "agent_node_id": "node-1",
        "agent_node_name": "builder",
        "agent_state_dir": tmp_path / "state",
        "agent_workspace_root": tmp_path / "workspaces",
        "heartbeat_interval": 0.5,
        "command_poll_interval": 0.5,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def client() -> FakeCoordinationClient:
    return FakeCoordinationClient()


@pytest.fixture
def agent(tmp_path, client, fake_provider) -> NodeAgent:
    settings = _settings(tmp_path)
    executor = CommandExecutor(
        node_id="node-1",
        providers={"docker": fake_provider},
        workspace_root=settings.agent_workspace_root,
    )
    return NodeAgent(settings, client=client, executor=executor)


def _command(command_id: str = "cmd_1", action: str = "info") -> Dict[str, Any]:
    return {"id": command_id, "type": "system", "action": action, "params": {}}


async def _wait_for(predicate, timeout: float = 5.0) -> None:
    async def _poll():
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(_poll(), timeout=timeout)


# =============================================================================
# Identity and registration
# =============================================================================


class TestNodeIdentity:
    def test_configured_id(self, tmp_path):
        assert load_node_id(_settings(tmp_path)) == "node-1"

    def test_generated_id_is_persisted(self, tmp_path):
        settings = _settings(tmp_path, agent_node_id=None)

        first = load_node_id(settings)

        assert load_node_id(settings) == first
        assert (tmp_path / "state" / "node_id").read_text().strip() == first


class TestRegistration:
    def test_polling_node_has_no_address(self, agent):
        registration = agent.registration()

        assert registration["id"] == "node-1"
        assert registration["name"] == "builder"
        assert registration["address"] == ""
        assert registration["port"] == 0
        assert registration["capabilities"] == {"docker": True}
        assert "session.create" in registration["metadata"]["actions"]
        assert agent.push_enabled is False

    def test_push_node_advertises_address(self, tmp_path, client, fake_provider):
        settings = _settings(tmp_path, agent_advertise_address="10.0.0.5", agent_port=9000)
        agent = NodeAgent(settings, client=client, providers={"docker": fake_provider})

        registration = agent.registration()

        assert registration["address"] == "10.0.0.5"
        assert registration["port"] == 9000
        assert agent.push_enabled is True

    @pytest.mark.asyncio
    async def test_register(self, agent, client):
        await agent.register()

        assert agent.registered is True
        assert client.registrations[0]["id"] == "node-1"


class TestHeartbeat:
    @pytest.mark.asyncio
    async def test_heartbeat(self, agent, client):
        await agent.heartbeat()

        assert client.heartbeats == ["node-1"]
        assert client.registrations == []

    @pytest.mark.asyncio
    async def test_reregisters_when_server_forgot_node(self, agent, client):
        await agent.register()
        client.heartbeat_error = CoordinationError("Node not found", status_code=404)

        await agent.heartbeat()

        assert len(client.registrations) == 2
        assert agent.registered is True

    @pytest.mark.asyncio
    async def test_other_errors_propagate(self, agent, client):
        client.heartbeat_error = CoordinationError("boom", status_code=500)

        with pytest.raises(CoordinationError):
            await agent.heartbeat()


# =============================================================================
# Commands
# =============================================================================


class TestCommands:
    @pytest.mark.asyncio
    async def test_poll_runs_and_reports(self, agent, client):
        client.pending = [_command("cmd_1"), _command("cmd_2", action="bogus")]

        started = await agent.poll()

        assert started == 2
        by_id = {r["id"]: r for r in client.results}
        assert by_id["cmd_1"]["status"] == "success"
        assert by_id["cmd_1"]["node_id"] == "node-1"
        assert by_id["cmd_2"]["status"] == "failed"

    @pytest.mark.asyncio
    async def test_poll_does_not_repeat_commands(self, agent, client):
        client.pending = [_command("cmd_1")]

        await agent.poll()
        second = await agent.poll()

        assert second == 0
        assert len(client.results) == 1

    @pytest.mark.asyncio
    async def test_poll_reports_malformed_command_as_failed(self, agent, client):
        client.pending = [
            {
                "id": "cmd_bad",
                "type": "session",
                "action": "exec",
                "params": {"session_id": "s1", "command": "ls", "timeout": "soon"},
            }
        ]

        started = await agent.poll()

        assert started == 1
        [result] = client.results
        assert result["id"] == "cmd_bad"
        assert result["status"] == "failed"

    def test_accept_deduplicates(self, agent):
        assert agent.accept({"id": "cmd_1"}) is True
        assert agent.accept({"id": "cmd_1"}) is False
        assert agent.accept({}) is False

    def test_seen_ids_are_bounded(self, agent):
        for i in range(600):
            agent.accept({"id": f"cmd_{i}"})

        assert agent.accept({"id": "cmd_0"}) is True
        assert agent.accept({"id": "cmd_599"}) is False

    @pytest.mark.asyncio
    async def test_submit_runs_in_background(self, agent, client):
        assert agent.submit(_command("cmd_push")) is True
        assert agent.submit(_command("cmd_push")) is False

        await _wait_for(lambda: client.results)

        assert client.results[0]["id"] == "cmd_push"


class TestRunLoop:
    @pytest.mark.asyncio
    async def test_run_registers_and_unregisters(self, agent, client):
        shutdown = asyncio.Event()
        task = asyncio.create_task(agent.run(shutdown))

        await _wait_for(lambda: client.registrations)
        shutdown.set()
        await asyncio.wait_for(task, timeout=5)

        assert client.unregistered == ["node-1"]
        assert client.closed is True
        assert agent.registered is False

    @pytest.mark.asyncio
    async def test_run_polls_pending_commands(self, agent, client):
        client.pending = [_command("cmd_polled")]
        shutdown = asyncio.Event()
        task = asyncio.create_task(agent.run(shutdown))

        await _wait_for(lambda: client.results)
        shutdown.set()
        await asyncio.wait_for(task, timeout=5)

        assert client.results[0]["id"] == "cmd_polled"

    @pytest.mark.asyncio
    async def test_run_survives_unexpected_errors(self, agent, client):
        calls = []

        async def flaky_pending(node_id):
            calls.append(node_id)
            if len(calls) == 1:
                raise RuntimeError("bad payload")
            return [_command("cmd_after")]

        client.pending_commands = flaky_pending
        shutdown = asyncio.Event()
        task = asyncio.create_task(agent.run(shutdown))

        await _wait_for(lambda: client.results)
        shutdown.set()
        await asyncio.wait_for(task, timeout=5)

        assert client.results[0]["id"] == "cmd_after"
        assert client.unregistered == ["node-1"]


# =============================================================================
# Agent HTTP endpoint
# =============================================================================


class TestAgentServer:
    """Pushed commands arrive on POST /api/v1/commands."""

    def test_push_is_accepted_and_reported(self, agent, client):
        with TestClient(create_agent_app(agent, run_loop=False)) as http:
            response = http.post(
                "/api/v1/commands",
                json={"id": "cmd_push", "node_id": "node-1", "type": "system", "action": "info"},
            )
            duplicate = http.post("/api/v1/commands", json={"id": "cmd_push", "action": "info"})

            assert response.status_code == 202
            assert response.json() == {"id": "cmd_push", "accepted": True}
            assert duplicate.json()["accepted"] is False

            for _ in range(100):
                if client.results:
                    break
                time.sleep(0.05)

        assert client.results[0]["id"] == "cmd_push"

    def test_wrong_node_is_rejected(self, agent):
        with TestClient(create_agent_app(agent, run_loop=False)) as http:
            response = http.post("/api/v1/commands", json={"id": "c", "node_id": "other", "action": "info"})

        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "wrong_node"

    def test_token_required_when_configured(self, tmp_path, client, fake_provider):
        settings = _settings(tmp_path, auth_token="agent-shared-token")
        agent = NodeAgent(settings, client=client, providers={"docker": fake_provider})

        with TestClient(create_agent_app(agent, run_loop=False)) as http:
            missing = http.post("/api/v1/commands", json={"id": "c", "action": "info"})
            valid = http.post(
                "/api/v1/commands",
                json={"id": "c", "action": "info"},
                headers={"Authorization": "Bearer agent-shared-token"},
            )

        assert missing.status_code == 401
        assert valid.status_code == 202

    def test_health(self, agent):
        with TestClient(create_agent_app(agent, run_loop=False)) as http:
            body = http.get("/health").json()

        assert body["status"] == "ok"
        assert body["node_id"] == "node-1"
        assert body["mode"] == "poll"
        assert body["registered"] is False
        assert body["coordination_url"] == "http://coord.test"
