"""Runtime settings read from the environment."""

import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field


class WizardSettings(BaseModel):
    project_root: Path = Field(default_factory=Path.cwd, description="Deployment root")
    state_file: Optional[Path] = None
    host: str = "0.0.0.0"
    port: int = Field(3000, gt=0, lt=65536)
    log_file: str = "./logs/wizard.log"
    log_level: str = "INFO"
    health_grace_seconds: float = Field(5.0, ge=0)
    task_poll_seconds: float = Field(10.0, gt=0)
    task_max_failures: int = Field(3, ge=1)
    callback_url: Optional[str] = None
    docker_binary: str = "docker"
    event_queue_size: int = Field(256, ge=1)

    @property
    def state_path(self) -> Path:
        return self.state_file or self.project_root / ".kaspa-aio" / "installation-state.json"

    @property
    def env_path(self) -> Path:
        return self.project_root / ".env"

    @property
    def compose_path(self) -> Path:
        return self.project_root / "docker-compose.yml"


def load_settings() -> WizardSettings:
    """Build settings from WIZARD_* environment variables."""
    env = os.environ
    values = {
        "project_root": env.get("WIZARD_PROJECT_ROOT"),
        "state_file": env.get("WIZARD_STATE_FILE"),
        "host": env.get("WIZARD_HOST"),
        "port": env.get("WIZARD_PORT"),
        "log_file": env.get("WIZARD_LOG_FILE"),
        "log_level": env.get("WIZARD_LOG_LEVEL"),
        "health_grace_seconds": env.get("WIZARD_HEALTH_GRACE_SECONDS"),
        "task_poll_seconds": env.get("WIZARD_TASK_POLL_SECONDS"),
        "task_max_failures": env.get("WIZARD_TASK_MAX_FAILURES"),
        "callback_url": env.get("WIZARD_CALLBACK_URL"),
        "docker_binary": env.get("WIZARD_DOCKER_BINARY"),
        "event_queue_size": env.get("WIZARD_EVENT_QUEUE_SIZE"),
    }
    return WizardSettings(**{k: v for k, v in values.items() if v})
