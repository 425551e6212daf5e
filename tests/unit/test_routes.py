"""Integration tests for API routes (routes.py + websocket.py + main.py)."""

import pytest
from unittest.mock import AsyncMock, MagicMock, patch
from fastapi.testclient import TestClient

from wizard.api.routes import install_workflow
from wizard.models.errors import InstallBusyError, WizardError
from wizard.models.results import ContainerStatus
from wizard.models.state import InstallationState
from wizard.models.status import PhaseEnum
from wizard.services.progress import ProgressChannel
from wizard.services.state_manager import InstallationStateStore


# -----------------------------------------------------------------------
# Fixtures
# -----------------------------------------------------------------------

@pytest.fixture
def client():
    """创建 TestClient（lifespan 使用 tmp 目录，日志初始化被 mock）。"""
    from wizard.main import app

    with patch("wizard.main.setup_logger") as mock_log:
        mock_log.return_value = MagicMock()
        with TestClient(app, raise_server_exceptions=True) as c:
            yield c


@pytest.fixture
def mock_orchestrator():
    """将安装流程替换为 mock，避免调用真实 docker。"""
    with patch("wizard.api.routes.InstallOrchestrator") as MockOrchestrator:
        MockOrchestrator.return_value.install = AsyncMock()
        yield MockOrchestrator.return_value


def _write_state(state_file, **kwargs):
    InstallationStateStore(state_file).write_state(InstallationState(**kwargs))


# -----------------------------------------------------------------------
# GET /
# -----------------------------------------------------------------------

@pytest.mark.unit
def test_health(client):
    resp = client.get("/")

    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "service": "kaspa-wizard", "version": "1.0.0"}


# -----------------------------------------------------------------------
# Install endpoints
# -----------------------------------------------------------------------

@pytest.mark.unit
class TestInstallState:
    """GET /api/v1.0/install/state, /install/progress"""

    def test_no_state_returns_code_404(self, client):
        """无状态文件时 HTTP 200，body code=404。"""
        resp = client.get("/api/v1.0/install/state")

        assert resp.status_code == 200
        assert resp.json()["code"] == 404
        assert "data" not in resp.json()

    def test_existing_state(self, client, state_file):
        _write_state(state_file, phase=PhaseEnum.COMPLETE)

        resp = client.get("/api/v1.0/install/state")

        body = resp.json()
        assert body["code"] == 200
        assert body["data"]["phase"] == "complete"
        assert body["data"]["wizardRunning"] is False

    def test_progress_before_any_install(self, client):
        resp = client.get("/api/v1.0/install/progress")

        assert resp.json()["code"] == 200
        assert resp.json()["data"] is None


@pytest.mark.unit
class TestPostInstall:
    """POST /api/v1.0/install"""

    def test_starts_background_install(self, client, mock_orchestrator):
        resp = client.post("/api/v1.0/install", json={"profiles": ["core"], "session_id": "tab-1"})

        assert resp.json() == {"code": 200, "msg": "success", "data": {"sessionId": "tab-1"}}
        mock_orchestrator.install.assert_awaited_once_with(["core"], {}, "tab-1")

    def test_busy_returns_409(self, client, mock_orchestrator, state_file):
        """wizardRunning=true 时应返回 code=409，且不启动安装。"""
        _write_state(state_file, phase=PhaseEnum.INSTALLING, wizard_running=True)

        resp = client.post("/api/v1.0/install", json={"profiles": ["core"]})

        assert resp.json()["code"] == 409
        mock_orchestrator.install.assert_not_called()

    def test_empty_profiles_rejected(self, client, mock_orchestrator):
        resp = client.post("/api/v1.0/install", json={"profiles": []})

        assert resp.status_code == 422
        mock_orchestrator.install.assert_not_called()

    def test_unlock_clears_stale_flag(self, client, state_file):
        _write_state(state_file, phase=PhaseEnum.INSTALLING, wizard_running=True)

        resp = client.post("/api/v1.0/install/unlock")

        assert resp.json()["data"] == {"cleared": True}
        state = InstallationStateStore(state_file).read_state()
        assert state.wizard_running is False
        assert state.phase == PhaseEnum.ERROR


@pytest.mark.unit
class TestInstallWorkflow:

    @pytest.mark.asyncio
    async def test_busy_publishes_install_error(self, channel):
        observer = channel.subscribe("tab-1")

        with patch("wizard.api.routes.InstallOrchestrator") as MockOrchestrator:
            MockOrchestrator.return_value.install = AsyncMock(
                side_effect=InstallBusyError("Installation already in progress")
            )
            await install_workflow(["core"], {}, "tab-1")

        [message] = observer.drain()
        assert message.event == "install:error"
        assert message.data["error"] == "INSTALL_BUSY"
        assert message.data["stage"] == "init"


# -----------------------------------------------------------------------
# Task endpoints
# -----------------------------------------------------------------------

@pytest.mark.unit
class TestTasks:
    """/api/v1.0/tasks"""

    def _register(self, client, **body):
        payload = {"type": "node-sync", "service": "kaspa-node", **body}
        return client.post("/api/v1.0/tasks?start=false", json=payload).json()

    def test_register_list_get_cancel(self, client):
        # Register
        body = self._register(client)
        assert body["code"] == 200
        task_id = body["data"]["id"]
        assert body["data"]["status"] == "pending"

        # List / get
        assert [t["id"] for t in client.get("/api/v1.0/tasks").json()["data"]] == [task_id]
        assert client.get(f"/api/v1.0/tasks/{task_id}").json()["data"]["service"] == "kaspa-node"
        assert client.get("/api/v1.0/tasks?status=running").json()["data"] == []

        # Cancel
        resp = client.delete(f"/api/v1.0/tasks/{task_id}")
        assert resp.json()["data"]["status"] == "cancelled"
        assert client.delete(f"/api/v1.0/tasks/{task_id}").json()["code"] == 409

    def test_unknown_task_returns_404(self, client):
        assert client.get("/api/v1.0/tasks/nope").json()["code"] == 404
        assert client.delete("/api/v1.0/tasks/nope").json()["code"] == 404

    def test_registration_error_returns_400(self, client):
        body = self._register(client, type="indexer-sync", service="kasia-indexer")

        assert body["code"] == 400
        assert "statusUrl" in body["msg"]

    def test_duplicate_id_returns_400(self, client):
        assert self._register(client, id="sync-1")["code"] == 200
        assert self._register(client, id="sync-1")["code"] == 400


# -----------------------------------------------------------------------
# Remediation / services
# -----------------------------------------------------------------------

@pytest.mark.unit
class TestRemediation:

    def test_analyze(self, client):
        resp = client.post(
            "/api/v1.0/remediation/analyze",
            json={"error": "Cannot connect to the Docker daemon. Is the docker daemon running?"},
        )

        data = resp.json()["data"]
        assert data["category"] == "docker_not_running"
        assert data["severity"] == "critical"
        assert data["suggestions"]
        assert "troubleshootingSteps" in data

    def test_apply_advisory_returns_code_400(self, client):
        suggestion = {
            "category": "unknown",
            "severity": "medium",
            "action": "view_logs",
            "description": "Review recent service logs",
        }

        resp = client.post("/api/v1.0/remediation/apply", json={"suggestion": suggestion})

        body = resp.json()
        assert resp.status_code == 200
        assert body["code"] == 400
        assert body["data"]["applied"] is False

    def test_apply_memory_limits(self, client, settings):
        suggestion = {
            "category": "resource_limit",
            "severity": "high",
            "action": "reduce_memory_limits",
            "description": "Reduce container memory limits",
            "autoApply": True,
            "params": {"config": {"KASPA_NODE_MEMORY_LIMIT": "4g"}},
        }

        resp = client.post("/api/v1.0/remediation/apply", json={"suggestion": suggestion})

        assert resp.json()["code"] == 200
        assert resp.json()["data"]["retryAdvised"] is True
        assert "KASPA_NODE_MEMORY_LIMIT=4g" in settings.env_path.read_text()


@pytest.mark.unit
class TestServices:

    def test_service_status(self, client):
        with patch("wizard.api.routes.DockerManager") as MockDocker:
            MockDocker.return_value.get_service_status = AsyncMock(
                return_value=ContainerStatus(exists=True, running=True, state="running")
            )

            resp = client.get("/api/v1.0/services/kaspa-node/status")

        data = resp.json()["data"]
        assert data["service"] == "kaspa-node"
        assert data["running"] is True

    def test_logs_failure_returns_code_500(self, client):
        with patch("wizard.api.routes.DockerManager") as MockDocker:
            MockDocker.return_value.get_logs = AsyncMock(side_effect=WizardError("no such service"))

            resp = client.get("/api/v1.0/services/nope/logs?lines=10")

        assert resp.json() == {"code": 500, "msg": "no such service"}


# -----------------------------------------------------------------------
# WebSocket /ws
# -----------------------------------------------------------------------

@pytest.mark.unit
class TestWebSocket:

    def test_tasks_list(self, client):
        with client.websocket_connect("/ws?session=tab-1") as ws:
            ws.send_json({"event": "tasks:list"})

            assert ws.receive_json() == {"event": "tasks:list:response", "data": {"tasks": []}}

    def test_register_task_without_autostart(self, client):
        with client.websocket_connect("/ws?session=tab-1") as ws:
            ws.send_json(
                {"event": "task:register", "data": {"type": "node-sync", "service": "kaspa-node", "autoStart": False}}
            )

            frame = ws.receive_json()

        assert frame["event"] == "task:registered"
        assert frame["data"]["task"]["status"] == "pending"

    def test_invalid_task_replies_error(self, client):
        with client.websocket_connect("/ws?session=tab-1") as ws:
            ws.send_json({"event": "task:register", "data": {"type": "bogus"}})

            assert ws.receive_json()["event"] == "task:error"

    def test_install_start_streams_to_session(self, client):
        """install:start 的事件只发送给发起的 session。"""

        async def fake_workflow(profiles, config, session_id):
            ProgressChannel().publish("install:complete", {"profiles": profiles}, session_id=session_id)

        with patch("wizard.api.websocket.install_workflow", fake_workflow):
            with client.websocket_connect("/ws?session=tab-1") as ws:
                ws.send_json({"event": "install:start", "data": {"profiles": ["core"], "config": {}}})

                frame = ws.receive_json()

        assert frame == {"event": "install:complete", "data": {"profiles": ["core"]}}

    def test_unknown_event(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"event": "install:explode"})

            frame = ws.receive_json()

        assert frame["event"] == "error"
        assert "install:explode" in frame["data"]["message"]

    def test_malformed_frame(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_json(["not", "a", "frame"])

            assert ws.receive_json()["event"] == "error"
