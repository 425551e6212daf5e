"""Background monitoring task models."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from wizard.models.state import utcnow
from wizard.models.status import TaskStatus, TaskType


class TaskSpec(BaseModel):
    """Registration request for a background task.

    Example:
        {
            "type": "node-sync",
            "service": "kaspa-node",
            "config": {"targetHeight": 1000}
        }
    """

    model_config = ConfigDict(populate_by_name=True)

    type: TaskType = Field(..., description="node-sync, indexer-sync or generic")
    service: str = Field(..., min_length=1, description="Monitored service name")
    config: dict[str, Any] = Field(default_factory=dict)
    id: Optional[str] = Field(None, description="Explicit task id (generated if omitted)")
    check_interval: Optional[float] = Field(
        None, gt=0, alias="checkInterval", description="Poll interval in seconds"
    )


class Task(BaseModel):
    """Task table entry."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    type: TaskType
    service: str
    status: TaskStatus = TaskStatus.PENDING
    progress: float = Field(0, ge=0)
    config: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    check_interval: float = Field(10.0, alias="checkInterval")
    created_at: datetime = Field(default_factory=utcnow, alias="createdAt")
    updated_at: datetime = Field(default_factory=utcnow, alias="updatedAt")
    started_at: Optional[datetime] = Field(None, alias="startedAt")
    finished_at: Optional[datetime] = Field(None, alias="finishedAt")
    session_id: Optional[str] = Field(None, exclude=True)

    def touch(self) -> None:
        self.updated_at = utcnow()

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class SyncSample(BaseModel):
    """One poll result from a monitored service."""

    value: float = Field(..., ge=0, description="Sync metric (block height, indexer offset)")
    target: Optional[float] = Field(None, ge=0, description="Target metric if known")
    synced: bool = Field(False, description="Service reports it is fully synced")
    metadata: dict[str, Any] = Field(default_factory=dict)
