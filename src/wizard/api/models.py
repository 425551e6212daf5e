"""Pydantic models for HTTP/WebSocket requests, responses and event payloads."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from wizard.models.remediation import RemediationSuggestion
from wizard.models.results import ImagePullResult, ServiceOperationResult
from wizard.models.state import utcnow
from wizard.models.status import ErrorCategory, InstallOutcome, InstallStage, Severity


class ProgressEvent(BaseModel):
    """install:progress payload.

    Example:
        {
            "stage": "pull",
            "message": "Pulling image kaspanet/rusty-kaspad:latest...",
            "progress": 35,
            "details": {"current": 1, "total": 2}
        }
    """

    stage: InstallStage = Field(..., description="Current pipeline stage")
    message: str = Field(..., description="Human-readable status description")
    progress: float = Field(..., ge=0, le=100, description="Percentage completion (0-100)")
    details: Optional[dict[str, Any]] = None


class ValidationReport(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    services: dict[str, Any] = Field(default_factory=dict)
    infrastructure: Optional[dict[str, Any]] = None
    infrastructure_summary: Optional[dict[str, Any]] = Field(None, alias="infrastructureSummary")


class InstallCompletePayload(BaseModel):
    message: str
    validation: ValidationReport
    warnings: list[str] = Field(default_factory=list)


class TroubleshootingGuide(BaseModel):
    category: ErrorCategory
    severity: Severity
    suggestions: list[RemediationSuggestion] = Field(default_factory=list)


class InstallErrorPayload(BaseModel):
    """install:error payload, enriched by the error classifier."""

    model_config = ConfigDict(populate_by_name=True)

    stage: InstallStage
    message: str
    error: str
    category: ErrorCategory = ErrorCategory.UNKNOWN
    errors: Optional[list[str]] = None
    results: Optional[list[ImagePullResult | ServiceOperationResult]] = None
    failed_service: Optional[str] = Field(None, alias="failedService")
    documentation_link: Optional[str] = Field(None, alias="documentationLink")
    troubleshooting_steps: Optional[list[str]] = Field(None, alias="troubleshootingSteps")
    troubleshooting_guide: Optional[TroubleshootingGuide] = Field(None, alias="troubleshootingGuide")


class InstallResult(BaseModel):
    """Terminal result of InstallOrchestrator.install()."""

    outcome: InstallOutcome
    complete: Optional[InstallCompletePayload] = None
    error: Optional[InstallErrorPayload] = None
    warnings: list[str] = Field(default_factory=list)


class ChannelMessage(BaseModel):
    """Envelope delivered to observers of the progress channel."""

    event: str
    data: dict[str, Any] = Field(default_factory=dict)
    session_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)

    def to_frame(self) -> dict[str, Any]:
        """WebSocket frame shape: {"event": ..., "data": ...}."""
        return {"event": self.event, "data": self.data}


class InstallRequest(BaseModel):
    """POST /api/v1.0/install payload.

    Example:
        {
            "profiles": ["core"],
            "config": {"network": "mainnet", "ports": {"rpc": 16110, "p2p": 16111}},
            "session_id": "tab-1"
        }
    """

    profiles: list[str] = Field(..., min_length=1)
    config: dict[str, Any] = Field(default_factory=dict)
    session_id: Optional[str] = None


class AnalyzeRequest(BaseModel):
    error: str = Field(..., min_length=1)
    context: dict[str, Any] = Field(default_factory=dict)


class ApplyRequest(BaseModel):
    suggestion: RemediationSuggestion


class ProgressResponse(BaseModel):
    """GET /api/v1.0/install/progress response."""

    code: int = Field(..., description="Application-level status code (200/500)")
    msg: str
    data: Optional[ProgressEvent] = None


class SuccessResponse(BaseModel):
    code: int = Field(default=200)
    msg: str = Field(default="success")
    data: Optional[Any] = None


class ErrorResponse(BaseModel):
    """Error response for all endpoints.

    HTTP status code is always 200, real status in 'code' field.
    """

    code: int = Field(..., description="Application-level error code (400/404/409/500)")
    msg: str
