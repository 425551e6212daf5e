"""Installation state document persisted between wizard sessions."""

from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from wizard.models.status import PhaseEnum


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProfileSelection(BaseModel):
    """Selected profile identifiers."""

    selected: list[str] = Field(default_factory=list)
    count: int = Field(default=0, ge=0)

    @classmethod
    def from_profiles(cls, profiles: list[str]) -> "ProfileSelection":
        return cls(selected=list(profiles), count=len(profiles))


class ServiceEntry(BaseModel):
    """Last-known status of one deployed container."""

    name: str
    status: str = Field(..., description="running, stopped or missing")
    exists: bool = False
    running: bool = False
    state: Optional[str] = Field(None, description="Raw container state from the runtime")


class ServiceSummary(BaseModel):
    total: int = 0
    running: int = 0
    stopped: int = 0
    missing: int = 0


class LockHolder(BaseModel):
    """Who set the wizardRunning flag."""

    model_config = ConfigDict(populate_by_name=True)

    pid: int
    session_id: Optional[str] = Field(None, alias="sessionId")
    acquired_at: datetime = Field(default_factory=utcnow, alias="acquiredAt")


class InstallationState(BaseModel):
    """Persistent state at <project>/.kaspa-aio/installation-state.json.

    Single source of truth for the deployment. Keys are camelCase on disk so
    the dashboard can read the same document. Keys written by other tools are
    kept as extra fields and survive every read-modify-write.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    version: str = "1.0.0"
    phase: PhaseEnum = PhaseEnum.IDLE
    profiles: ProfileSelection = Field(default_factory=ProfileSelection)
    configuration: dict[str, Any] = Field(default_factory=dict)
    services: list[ServiceEntry] = Field(default_factory=list)
    summary: ServiceSummary = Field(default_factory=ServiceSummary)
    wizard_running: bool = Field(False, alias="wizardRunning")
    lock_holder: Optional[LockHolder] = Field(None, alias="lockHolder")
    installed_at: datetime = Field(default_factory=utcnow, alias="installedAt")
    last_modified: datetime = Field(default_factory=utcnow, alias="lastModified")

    def to_document(self) -> dict[str, Any]:
        """Serialize using the on-disk (camelCase) key names."""
        return self.model_dump(mode="json", by_alias=True)
