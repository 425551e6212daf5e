"""Status enums for the installation wizard."""

from enum import Enum


class PhaseEnum(str, Enum):
    """Installation lifecycle phases persisted in the state file.

    State transitions:
    idle → configuring → installing → complete
                             ↓    ↑        ↓ (reconfigure)
                           error ─┘   installing
    """

    IDLE = "idle"
    CONFIGURING = "configuring"
    INSTALLING = "installing"
    COMPLETE = "complete"
    ERROR = "error"


class InstallStage(str, Enum):
    """Pipeline stages reported in progress events, in execution order."""

    INIT = "init"
    CONFIG = "config"
    PULL = "pull"
    BUILD = "build"
    DEPLOY = "deploy"
    VALIDATE = "validate"


STAGE_ORDER = [
    InstallStage.INIT,
    InstallStage.CONFIG,
    InstallStage.PULL,
    InstallStage.BUILD,
    InstallStage.DEPLOY,
    InstallStage.VALIDATE,
]


class InstallOutcome(str, Enum):
    """Terminal result of one install run."""

    SUCCESS = "success"
    SUCCESS_WITH_WARNINGS = "success_with_warnings"
    ERROR = "error"


class TaskType(str, Enum):
    NODE_SYNC = "node-sync"
    INDEXER_SYNC = "indexer-sync"
    GENERIC = "generic"


class TaskStatus(str, Enum):
    """Background task lifecycle.

    pending → running → completed | cancelled | failed
    pending → cancelled
    """

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.CANCELLED, TaskStatus.FAILED)


class ErrorCategory(str, Enum):
    """Fixed failure taxonomy used for remediation."""

    PORT_CONFLICT = "port_conflict"
    PERMISSION_ERROR = "permission_error"
    RESOURCE_LIMIT = "resource_limit"
    DISK_SPACE = "disk_space"
    DOCKER_NOT_RUNNING = "docker_not_running"
    NETWORK_ERROR = "network_error"
    IMAGE_NOT_FOUND = "image_not_found"
    UNKNOWN = "unknown"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"
