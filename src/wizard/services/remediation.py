"""Error classification and remediation suggestions for failed installs."""

import logging
import os
import random
import re
import socket
import sys
from pathlib import Path
from typing import Any, Optional

import aiofiles

from wizard.config import load_settings
from wizard.models.errors import WizardError
from wizard.models.remediation import ApplyResult, ErrorAnalysis, RemediationSuggestion
from wizard.models.status import ErrorCategory, Severity

# Checked in order; first matching category wins
_PATTERNS: list[tuple[ErrorCategory, list[re.Pattern]]] = [
    (
        ErrorCategory.PORT_CONFLICT,
        [
            re.compile(r"port.*already.*(in.*use|allocated)", re.I),
            re.compile(r"bind.*address.*already.*in.*use", re.I),
            re.compile(r"EADDRINUSE", re.I),
            re.compile(r"cannot.*bind.*port", re.I),
        ],
    ),
    (
        ErrorCategory.IMAGE_NOT_FOUND,
        [
            re.compile(r"image.*not.*found", re.I),
            re.compile(r"manifest.*(not.*found|unknown)", re.I),
            re.compile(r"repository.*does.*not.*exist", re.I),
        ],
    ),
    (
        ErrorCategory.DOCKER_NOT_RUNNING,
        [
            re.compile(r"cannot.*connect.*to.*docker.*daemon", re.I),
            re.compile(r"docker.*daemon.*not.*running", re.I),
            re.compile(r"is.*the.*docker.*daemon.*running", re.I),
            re.compile(r"docker.*not.*found", re.I),
        ],
    ),
    (
        ErrorCategory.PERMISSION_ERROR,
        [
            re.compile(r"permission.*denied", re.I),
            re.compile(r"EACCES"),
            re.compile(r"access.*denied", re.I),
            re.compile(r"cannot.*access", re.I),
        ],
    ),
    (
        ErrorCategory.RESOURCE_LIMIT,
        [
            re.compile(r"out.*of.*memory", re.I),
            re.compile(r"\bOOM\b"),
            re.compile(r"cannot.*allocate.*memory", re.I),
            re.compile(r"memory.*limit.*exceeded", re.I),
            re.compile(r"killed.*by.*signal.*9", re.I),
        ],
    ),
    (
        ErrorCategory.DISK_SPACE,
        [
            re.compile(r"no.*space.*left", re.I),
            re.compile(r"disk.*full", re.I),
            re.compile(r"ENOSPC"),
            re.compile(r"insufficient.*disk.*space", re.I),
        ],
    ),
    (
        ErrorCategory.NETWORK_ERROR,
        [
            re.compile(r"network.*timeout", re.I),
            re.compile(r"connection.*refused", re.I),
            re.compile(r"ETIMEDOUT|ECONNREFUSED"),
            re.compile(r"failed.*to.*pull.*image", re.I),
            re.compile(r"TLS handshake timeout|i/o timeout", re.I),
        ],
    ),
]

SEVERITY = {
    ErrorCategory.PORT_CONFLICT: Severity.MEDIUM,
    ErrorCategory.PERMISSION_ERROR: Severity.HIGH,
    ErrorCategory.RESOURCE_LIMIT: Severity.HIGH,
    ErrorCategory.DISK_SPACE: Severity.HIGH,
    ErrorCategory.DOCKER_NOT_RUNNING: Severity.CRITICAL,
    ErrorCategory.NETWORK_ERROR: Severity.MEDIUM,
    ErrorCategory.IMAGE_NOT_FOUND: Severity.MEDIUM,
    ErrorCategory.UNKNOWN: Severity.MEDIUM,
}

AUTO_FIXABLE = {
    ErrorCategory.PORT_CONFLICT,
    ErrorCategory.RESOURCE_LIMIT,
}

_TROUBLESHOOTING_DOC = "https://github.com/kaspanet/kaspa-all-in-one/blob/main/docs/guides/troubleshooting.md"

DOCUMENTATION_LINKS = {
    ErrorCategory.PORT_CONFLICT: "https://docs.docker.com/config/containers/container-networking/",
    ErrorCategory.PERMISSION_ERROR: "https://docs.docker.com/engine/install/linux-postinstall/#manage-docker-as-a-non-root-user",
    ErrorCategory.RESOURCE_LIMIT: f"{_TROUBLESHOOTING_DOC}#service-issues",
    ErrorCategory.DISK_SPACE: "https://docs.docker.com/config/pruning/",
    ErrorCategory.DOCKER_NOT_RUNNING: "https://docs.docker.com/get-started/",
    ErrorCategory.NETWORK_ERROR: f"{_TROUBLESHOOTING_DOC}#installation-issues",
    ErrorCategory.IMAGE_NOT_FOUND: "https://docs.docker.com/engine/reference/commandline/pull/",
    ErrorCategory.UNKNOWN: _TROUBLESHOOTING_DOC,
}

TROUBLESHOOTING_STEPS = {
    ErrorCategory.PORT_CONFLICT: [
        "Find the process using the port (lsof -i :<port>)",
        "Stop that process or choose a different port",
        "Retry the installation",
    ],
    ErrorCategory.PERMISSION_ERROR: [
        "Check that your user is in the docker group (groups $USER)",
        "Log out and back in after changing group membership",
        "Check read/write access to the installation directory",
    ],
    ErrorCategory.RESOURCE_LIMIT: [
        "Check available memory (free -h)",
        "Stop other memory-intensive applications",
        "Reduce container memory limits or use a remote node",
    ],
    ErrorCategory.DISK_SPACE: [
        "Check free disk space (df -h)",
        "Remove unused Docker data (docker system prune)",
        "Retry the installation",
    ],
    ErrorCategory.DOCKER_NOT_RUNNING: [
        "Check that Docker is installed (docker --version)",
        "Start the Docker daemon or Docker Desktop",
        "Verify with docker info, then retry",
    ],
    ErrorCategory.NETWORK_ERROR: [
        "Check your internet connection",
        "Check proxy or firewall settings for Docker Hub access",
        "Retry the installation",
    ],
    ErrorCategory.IMAGE_NOT_FOUND: [
        "Verify the image name and tag",
        "Check that the registry is reachable",
        "Retry the installation",
    ],
    ErrorCategory.UNKNOWN: [
        "Review the service logs (docker compose logs)",
        "Check Docker status (docker ps -a)",
        "Retry the installation",
    ],
}

# Actions whose effect is limited to the deployment's .env file
APPLICABLE_ACTIONS = {"change_port", "reduce_memory_limits", "use_remote_node"}

_PORT_DETAIL_PATTERNS = (
    re.compile(r"port[:\s]+(\d{2,5})", re.I),
    re.compile(r":(\d{2,5})(?:\D|$).*(?:already|in use|allocated)", re.I),
    re.compile(r"(\d{2,5}).*already.*in.*use", re.I),
)


def is_port_available(port: int, host: str = "0.0.0.0") -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


def find_alternative_port(original_port: int, attempts: int = 20) -> Optional[int]:
    """First free port in original+1..original+10, else a free random high port.

    Returns:
        None if no free port was found
    """
    for offset in range(1, 11):
        candidate = original_port + offset
        if candidate < 65536 and is_port_available(candidate):
            return candidate
    for _ in range(attempts):
        candidate = 30000 + random.randint(0, 9999)
        if is_port_available(candidate):
            return candidate
    return None


def extract_details(message: str, category: ErrorCategory) -> dict[str, Any]:
    details: dict[str, Any] = {}

    if category == ErrorCategory.PORT_CONFLICT:
        for pattern in _PORT_DETAIL_PATTERNS:
            match = pattern.search(message)
            if match:
                details["port"] = int(match.group(1))
                break
    elif category == ErrorCategory.PERMISSION_ERROR:
        match = re.search(r"/[^\s:'\"]+", message)
        if match:
            details["path"] = match.group(0)
        details["isDockerSocket"] = "docker.sock" in message
    elif category == ErrorCategory.RESOURCE_LIMIT:
        match = re.search(r"(\d+)\s*(MB|GB|KB)", message, re.I)
        if match:
            details["memory"] = match.group(0)
    elif category in (ErrorCategory.NETWORK_ERROR, ErrorCategory.IMAGE_NOT_FOUND):
        match = re.search(r"https?://\S+", message) or re.search(r"image[:\s]+(\S+)", message, re.I)
        if match:
            details["url"] = match.group(0)

    return details


class ErrorClassifier:
    """Maps a failure to a category and ranked remediation suggestions.

    Errors raised by the pipeline already carry a category; the regex table
    is only consulted for untagged text (e.g. POST /remediation/analyze).
    """

    def __init__(self, env_path: Optional[Path] = None):
        self.logger = logging.getLogger("wizard.remediation")
        self.env_path = Path(env_path or load_settings().env_path)

    def classify(self, error: BaseException | str, context: Optional[dict[str, Any]] = None) -> ErrorCategory:
        if isinstance(error, WizardError) and error.category != ErrorCategory.UNKNOWN:
            return error.category

        tagged = (context or {}).get("category")
        if tagged:
            try:
                category = ErrorCategory(tagged)
            except ValueError:
                self.logger.debug(f"Ignoring unknown category hint: {tagged}")
            else:
                if category != ErrorCategory.UNKNOWN:
                    return category

        message = str(error)
        for category, patterns in _PATTERNS:
            if any(p.search(message) for p in patterns):
                return category
        return ErrorCategory.UNKNOWN

    def analyze(self, error: BaseException | str, context: Optional[dict[str, Any]] = None) -> ErrorAnalysis:
        context = context or {}
        message = str(error)
        category = self.classify(error, context)

        details = extract_details(message, category)
        if isinstance(error, WizardError):
            details.update(error.details)

        suggestions = self.suggestions_for(category, {**context, **details})
        self.logger.info(f"Classified error as {category.value} ({len(suggestions)} suggestion(s))")

        return ErrorAnalysis(
            original_error=message,
            category=category,
            severity=SEVERITY[category],
            auto_fixable=category in AUTO_FIXABLE and any(s.auto_apply for s in suggestions),
            details=details,
            documentation_link=DOCUMENTATION_LINKS[category],
            troubleshooting_steps=list(TROUBLESHOOTING_STEPS[category]),
            suggestions=suggestions,
        )

    def suggestions_for(
        self, category: ErrorCategory, context: Optional[dict[str, Any]] = None
    ) -> list[RemediationSuggestion]:
        """Ranked suggestions, highest priority first."""
        context = context or {}
        severity = SEVERITY[category]
        raw: list[dict[str, Any]] = []

        if category == ErrorCategory.PORT_CONFLICT:
            port = context.get("port")
            if port:
                new_port = find_alternative_port(int(port))
                if new_port is not None:
                    raw.append(
                        dict(
                            action="change_port",
                            description=f"Use port {new_port} instead of {port}",
                            auto_apply=True,
                            params={"port": int(port), "newPort": new_port, "envKey": context.get("envKey")},
                            priority=90,
                        )
                    )
                raw.append(
                    dict(
                        action="identify_process",
                        description=f"Find and stop the process using port {port}",
                        command=f"lsof -i :{port}",
                        warning="Make sure it is safe to stop that process.",
                        priority=50,
                    )
                )
            else:
                raw.append(
                    dict(
                        action="identify_process",
                        description="Find the process holding the conflicting port",
                        command="sudo ss -ltnp",
                        priority=50,
                    )
                )

        elif category == ErrorCategory.PERMISSION_ERROR:
            if context.get("isDockerSocket") or "docker.sock" in str(context.get("path", "")):
                raw.append(
                    dict(
                        action="add_to_docker_group",
                        description="Add your user to the docker group, then log out and back in",
                        command="sudo usermod -aG docker $USER",
                        priority=90,
                    )
                )
                raw.append(
                    dict(
                        action="fix_socket_permissions",
                        description="Temporarily open docker.sock permissions",
                        command="sudo chmod 666 /var/run/docker.sock",
                        warning="Temporary fix; prefer docker group membership.",
                        priority=40,
                    )
                )
            else:
                path = context.get("path")
                raw.append(
                    dict(
                        action="check_permissions",
                        description=(
                            f"Make sure you have read/write access to {path}"
                            if path
                            else "Check file and directory permissions in the installation directory"
                        ),
                        priority=60,
                    )
                )

        elif category == ErrorCategory.RESOURCE_LIMIT:
            available = context.get("availableMemoryGB")
            remote = dict(
                action="use_remote_node",
                description="Use a remote Kaspa node instead of running one locally",
                auto_apply=True,
                params={"config": {"KASPA_NODE_MODE": "remote", "REMOTE_KASPA_NODE_URL": "https://api.kaspa.org"}},
                priority=90 if available is not None and available < 4 else 50,
            )
            reduce = dict(
                action="reduce_memory_limits",
                description="Reduce container memory limits",
                auto_apply=True,
                params={"config": {"KASPA_NODE_MEMORY_LIMIT": "4g", "INDEXER_MEMORY_LIMIT": "1g"}},
                priority=70,
            )
            if available is not None and available < 4:
                raw.append(remote)
            elif available is not None and available >= 8:
                reduce["params"] = {"config": {"KASPA_NODE_MEMORY_LIMIT": "8g", "INDEXER_MEMORY_LIMIT": "2g"}}
                reduce["description"] = "Adjust memory limits to better fit your system"
                raw.append(reduce)
            else:
                raw.extend([reduce, remote])
            raw.append(
                dict(
                    action="disable_optional_services",
                    description="Disable optional services to free memory",
                    priority=30,
                )
            )

        elif category == ErrorCategory.DISK_SPACE:
            raw.append(
                dict(
                    action="prune_docker",
                    description="Remove unused Docker images, containers and build cache",
                    command="docker system prune -af",
                    warning="Deletes all unused images, not just dangling ones.",
                    priority=80,
                )
            )
            raw.append(dict(action="free_disk_space", description="Free disk space and retry", priority=40))

        elif category == ErrorCategory.DOCKER_NOT_RUNNING:
            if sys.platform.startswith("linux"):
                raw.append(
                    dict(
                        action="start_docker_service",
                        description="Start the Docker service",
                        command="sudo systemctl start docker",
                        priority=90,
                    )
                )
                raw.append(
                    dict(
                        action="enable_docker_service",
                        description="Enable Docker to start on boot",
                        command="sudo systemctl enable docker",
                        priority=40,
                    )
                )
            else:
                raw.append(
                    dict(
                        action="start_docker_desktop",
                        description="Open Docker Desktop and wait for it to start",
                        priority=90,
                    )
                )

        elif category == ErrorCategory.NETWORK_ERROR:
            raw.append(
                dict(
                    action="retry_pull",
                    description="Retry pulling images once the network is stable",
                    priority=80,
                )
            )
            raw.append(
                dict(
                    action="check_connectivity",
                    description="Check internet, proxy and firewall access to Docker Hub",
                    command="docker pull hello-world",
                    priority=50,
                )
            )

        elif category == ErrorCategory.IMAGE_NOT_FOUND:
            raw.append(
                dict(
                    action="verify_image",
                    description="Verify the image name and tag exist in the registry",
                    priority=70,
                )
            )
            raw.append(dict(action="retry_pull", description="Retry pulling images", priority=40))

        else:
            raw.append(
                dict(
                    action="view_logs",
                    description="Review recent service logs",
                    command="docker compose logs --tail=100",
                    priority=50,
                )
            )
            raw.append(dict(action="retry_install", description="Retry the installation", priority=30))

        suggestions = [RemediationSuggestion(category=category, severity=severity, **s) for s in raw]
        return sorted(suggestions, key=lambda s: s.priority, reverse=True)

    async def _read_env(self) -> list[str]:
        if not self.env_path.exists():
            return []
        async with aiofiles.open(self.env_path, "r", encoding="utf-8") as f:
            return (await f.read()).splitlines()

    async def _write_env(self, lines: list[str]) -> None:
        tmp_path = self.env_path.with_name(f"{self.env_path.name}.tmp")
        async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
            await f.write("\n".join(lines) + "\n")
        os.replace(tmp_path, self.env_path)

    async def _rewrite_env(self, changes: dict[str, str]) -> None:
        lines = await self._read_env()
        pending = dict(changes)
        for idx, line in enumerate(lines):
            key = line.split("=", 1)[0].strip()
            if key in pending:
                lines[idx] = f"{key}={pending.pop(key)}"
        lines.extend(f"{key}={value}" for key, value in pending.items())
        await self._write_env(lines)

    async def _find_port_key(self, port: int) -> Optional[str]:
        for line in await self._read_env():
            if "=" not in line or line.lstrip().startswith("#"):
                continue
            key, value = line.split("=", 1)
            if value.strip() == str(port):
                return key.strip()
        return None

    async def apply(self, suggestion: RemediationSuggestion) -> ApplyResult:
        """Apply an auto-applicable suggestion to the deployment .env.

        Anything else is advisory and reported as not applied.
        """
        if not suggestion.auto_apply or suggestion.action not in APPLICABLE_ACTIONS:
            return ApplyResult(
                action=suggestion.action,
                applied=False,
                message=f"Manual action required: {suggestion.description}",
            )

        if suggestion.action == "change_port":
            old_port = suggestion.params.get("port")
            new_port = suggestion.params.get("newPort")
            if not new_port:
                return ApplyResult(action=suggestion.action, applied=False, message="No replacement port given")
            key = suggestion.params.get("envKey") or (await self._find_port_key(old_port) if old_port else None)
            if not key:
                return ApplyResult(
                    action=suggestion.action,
                    applied=False,
                    message=f"Could not find a setting for port {old_port} in {self.env_path.name}",
                )
            changes = {key: str(new_port)}
            message = f"Port changed from {old_port} to {new_port}"
        else:
            changes = {k: str(v) for k, v in suggestion.params.get("config", {}).items()}
            if not changes:
                return ApplyResult(action=suggestion.action, applied=False, message="Nothing to change")
            message = (
                "Configured to use remote Kaspa node"
                if suggestion.action == "use_remote_node"
                else "Memory limits adjusted"
            )

        try:
            await self._rewrite_env(changes)
        except OSError as e:
            self.logger.error(f"Failed to apply {suggestion.action}: {e}")
            return ApplyResult(action=suggestion.action, applied=False, message=f"Failed to apply fix: {e}")

        self.logger.info(f"Applied {suggestion.action}: {changes}")
        return ApplyResult(
            action=suggestion.action,
            applied=True,
            retry_advised=True,
            message=message,
            changes=changes,
        )
