"""Remediation models produced per failure instance (never persisted)."""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from wizard.models.status import ErrorCategory, Severity


class RemediationSuggestion(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    category: ErrorCategory
    severity: Severity
    action: str = Field(..., description="Machine-readable action, e.g. change_port")
    description: str
    command: Optional[str] = None
    auto_apply: bool = Field(False, alias="autoApply")
    warning: Optional[str] = None
    params: dict[str, Any] = Field(default_factory=dict)
    priority: int = Field(0, description="Higher ranks first")


class ErrorAnalysis(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    original_error: str = Field(..., alias="originalError")
    category: ErrorCategory
    severity: Severity
    auto_fixable: bool = Field(False, alias="autoFixable")
    details: dict[str, Any] = Field(default_factory=dict)
    documentation_link: Optional[str] = Field(None, alias="documentationLink")
    troubleshooting_steps: list[str] = Field(default_factory=list, alias="troubleshootingSteps")
    suggestions: list[RemediationSuggestion] = Field(default_factory=list)


class ApplyResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    action: str
    applied: bool
    retry_advised: bool = Field(False, alias="retryAdvised")
    message: str = ""
    changes: dict[str, str] = Field(default_factory=dict)
