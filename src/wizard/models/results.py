"""Result models returned by the container runtime and validators."""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from wizard.models.status import ErrorCategory


class OperationProgress(BaseModel):
    """Per-item progress reported by a long-running docker operation."""

    stage: str
    message: str
    current: int = 0
    total: int = 0
    item: Optional[str] = None


class ImagePullResult(BaseModel):
    image: str
    success: bool
    error: Optional[str] = None
    category: Optional[ErrorCategory] = None


class ServiceOperationResult(BaseModel):
    """Outcome of building or starting one compose service."""

    service: str
    success: bool
    error: Optional[str] = None
    category: Optional[ErrorCategory] = None
    details: dict[str, Any] = Field(default_factory=dict)


class PhaseResult(BaseModel):
    """Aggregate outcome of the build or deploy phase."""

    model_config = ConfigDict(populate_by_name=True)

    success: bool
    services: list[ServiceOperationResult] = Field(default_factory=list)
    failed_service: Optional[str] = Field(None, alias="failedService")
    error: Optional[str] = None
    category: Optional[ErrorCategory] = None


class ContainerStatus(BaseModel):
    exists: bool = False
    running: bool = False
    state: Optional[str] = None
    status: Optional[str] = None
    health: Optional[str] = None
    error: Optional[str] = None


class ServiceValidation(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    services: dict[str, ContainerStatus] = Field(default_factory=dict)
    all_running: bool = Field(True, alias="allRunning")
    any_failed: bool = Field(False, alias="anyFailed")
    summary: dict[str, int] = Field(default_factory=dict)


class ConfigValidation(BaseModel):
    valid: bool
    errors: list[str] = Field(default_factory=list)
    config: dict[str, Any] = Field(default_factory=dict)


class SaveResult(BaseModel):
    success: bool
    error: Optional[str] = None
    path: Optional[str] = None
    category: Optional[ErrorCategory] = None


class InfrastructureTest(BaseModel):
    category: str
    name: str
    status: str = Field(..., description="pass, fail or warn")
    message: str = ""
    remediation: Optional[str] = None


class ComponentResults(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tested: bool = False
    total_tests: int = Field(0, alias="totalTests")
    passed: int = 0
    failed: int = 0
    warnings: int = 0
    tests: list[InfrastructureTest] = Field(default_factory=list)


class InfrastructureResults(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    nginx: ComponentResults = Field(default_factory=ComponentResults)
    timescaledb: ComponentResults = Field(default_factory=ComponentResults)
    overall_status: str = Field("healthy", alias="overallStatus")
    timestamp: str = ""
