"""Exception hierarchy for install, state and task failures.

Every error raised by a pipeline phase carries the stage it failed in and an
ErrorCategory assigned where the failure was detected, so the classifier does
not have to guess from message text.
"""

from typing import Any, Optional

from wizard.models.status import ErrorCategory, InstallStage


class WizardError(Exception):
    """Base class for wizard failures."""

    default_category = ErrorCategory.UNKNOWN
    default_stage: Optional[InstallStage] = None

    def __init__(
        self,
        message: str,
        *,
        category: Optional[ErrorCategory] = None,
        stage: Optional[InstallStage] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.stage = stage or self.default_stage
        self.details = details or {}


class ConfigValidationError(WizardError):
    default_stage = InstallStage.CONFIG

    def __init__(self, message: str, errors: Optional[list[str]] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.errors = errors or []


class FileWriteError(WizardError):
    default_stage = InstallStage.CONFIG

    def __init__(self, message: str, path: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.path = path


class ImagePullError(WizardError):
    """One or more images failed to pull. Carries every per-image result."""

    default_category = ErrorCategory.NETWORK_ERROR
    default_stage = InstallStage.PULL

    def __init__(self, message: str, results: Optional[list] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.results = results or []


class BuildError(WizardError):
    default_stage = InstallStage.BUILD

    def __init__(self, message: str, service: Optional[str] = None, results: Optional[list] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.service = service
        self.results = results or []


class DeployError(WizardError):
    default_stage = InstallStage.DEPLOY

    def __init__(self, message: str, service: Optional[str] = None, results: Optional[list] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.service = service
        self.results = results or []


class DockerUnavailableError(WizardError):
    default_category = ErrorCategory.DOCKER_NOT_RUNNING


class InstallBusyError(WizardError):
    """Another install holds the wizardRunning flag."""

    default_stage = InstallStage.INIT


class StateNotFoundError(WizardError):
    pass


class TaskNotFoundError(WizardError):
    pass


class TaskRegistrationError(WizardError):
    pass


class TaskStateError(WizardError):
    """Operation not allowed in the task's current status."""


class ServiceUnreachableError(WizardError):
    """A monitored service did not answer a sync poll."""

    default_category = ErrorCategory.NETWORK_ERROR
