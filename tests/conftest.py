"""Global pytest fixtures and configuration."""

import sys
from pathlib import Path

import pytest
import pytest_asyncio

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from wizard.config import WizardSettings  # noqa: E402
from wizard.models.results import ContainerStatus, ServiceValidation  # noqa: E402
from wizard.services.progress import ProgressChannel  # noqa: E402
from wizard.services.state_manager import StateManager  # noqa: E402
from wizard.services.tasks import TaskSupervisor  # noqa: E402


@pytest.fixture(autouse=True)
def wizard_env(tmp_path, monkeypatch):
    """Point every settings-derived path into the test's tmp directory."""
    monkeypatch.setenv("WIZARD_PROJECT_ROOT", str(tmp_path))
    monkeypatch.setenv("WIZARD_LOG_FILE", str(tmp_path / "logs" / "wizard.log"))
    monkeypatch.setenv("WIZARD_HEALTH_GRACE_SECONDS", "0")
    monkeypatch.delenv("WIZARD_STATE_FILE", raising=False)
    monkeypatch.delenv("WIZARD_CALLBACK_URL", raising=False)
    yield tmp_path


@pytest.fixture(autouse=True)
def reset_singletons():
    """Reset all singletons before and after each test."""
    StateManager._instance = None
    ProgressChannel._instance = None
    TaskSupervisor._instance = None
    yield
    StateManager._instance = None
    ProgressChannel._instance = None
    TaskSupervisor._instance = None


@pytest.fixture
def settings(tmp_path):
    return WizardSettings(
        project_root=tmp_path,
        health_grace_seconds=0,
        task_poll_seconds=0.01,
        task_max_failures=3,
    )


@pytest.fixture
def state_file(tmp_path):
    return tmp_path / ".kaspa-aio" / "installation-state.json"


@pytest_asyncio.fixture
async def state_manager(state_file):
    """StateManager bound to a tmp state file; worker stopped on teardown."""
    manager = StateManager(state_file)
    yield manager
    await manager.close()


@pytest.fixture
def channel():
    return ProgressChannel(queue_size=256)


@pytest.fixture
def all_running():
    """ServiceValidation for a healthy single-node deployment."""
    return ServiceValidation(
        services={"kaspa-node": ContainerStatus(exists=True, running=True, state="running", status="running")},
        all_running=True,
        any_failed=False,
        summary={"total": 1, "running": 1, "stopped": 0, "missing": 0},
    )
