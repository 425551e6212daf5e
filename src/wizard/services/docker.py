"""Container runtime boundary: docker / docker compose subprocess calls."""

import asyncio
import json
import logging
import re
from pathlib import Path
from typing import Callable, Optional

from wizard.config import load_settings
from wizard.models.errors import DockerUnavailableError, WizardError
from wizard.models.results import (
    ContainerStatus,
    ImagePullResult,
    OperationProgress,
    PhaseResult,
    ServiceOperationResult,
    ServiceValidation,
)
from wizard.models.status import ErrorCategory
from wizard.services.profiles import (
    builds_for_profiles,
    containers_for_profiles,
    images_for_profiles,
)

ProgressCallback = Callable[[OperationProgress], None]

_PORT_RE = re.compile(r"(?:port|:)\s*(\d{2,5})")


def tag_runtime_failure(operation: str, stderr: str) -> tuple[ErrorCategory, dict]:
    """Assign a category to a failed runtime call, knowing which operation failed.

    Args:
        operation: "pull", "build" or "deploy"
        stderr: Captured stderr of the failed command

    Returns:
        (category, details) tuple
    """
    text = stderr.lower()
    if "cannot connect to the docker daemon" in text or "is the docker daemon running" in text:
        return ErrorCategory.DOCKER_NOT_RUNNING, {}
    if "permission denied" in text:
        return ErrorCategory.PERMISSION_ERROR, {"isDockerSocket": "docker.sock" in text}
    if "no space left on device" in text:
        return ErrorCategory.DISK_SPACE, {}

    if operation == "pull":
        if any(s in text for s in ("manifest unknown", "not found", "does not exist", "pull access denied")):
            return ErrorCategory.IMAGE_NOT_FOUND, {}
        return ErrorCategory.NETWORK_ERROR, {}

    if operation == "deploy" and ("port is already allocated" in text or "address already in use" in text):
        match = _PORT_RE.search(text)
        return ErrorCategory.PORT_CONFLICT, {"port": int(match.group(1))} if match else {}

    if "out of memory" in text or "killed" in text:
        return ErrorCategory.RESOURCE_LIMIT, {}

    return ErrorCategory.UNKNOWN, {}


class DockerManager:
    """Runs pull/build/up/inspect/logs through the docker CLI."""

    def __init__(self, project_root: Optional[Path] = None, docker_binary: Optional[str] = None):
        """Initialize docker manager.

        Args:
            project_root: Directory holding docker-compose.yml (settings default if None)
            docker_binary: docker executable name or path
        """
        settings = load_settings()
        self.logger = logging.getLogger("wizard.docker")
        self.project_root = Path(project_root or settings.project_root)
        self.docker_binary = docker_binary or settings.docker_binary

    async def _run(self, *args: str) -> tuple[int, str, str]:
        """Run the docker CLI and capture its output.

        Raises:
            DockerUnavailableError: If the docker executable cannot be started
        """
        self.logger.debug(f"Running: {self.docker_binary} {' '.join(args)}")
        try:
            process = await asyncio.create_subprocess_exec(
                self.docker_binary,
                *args,
                cwd=str(self.project_root),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise DockerUnavailableError(f"Docker CLI not found: {self.docker_binary}") from e

        stdout, stderr = await process.communicate()
        return (
            process.returncode,
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
        )

    async def is_docker_available(self) -> bool:
        try:
            code, _, stderr = await self._run("info", "--format", "{{.ServerVersion}}")
        except DockerUnavailableError:
            return False
        if code != 0:
            self.logger.warning(f"Docker not available: {stderr.strip()}")
        return code == 0

    async def pull_images(
        self, profiles: list[str], on_progress: Optional[ProgressCallback] = None
    ) -> list[ImagePullResult]:
        """Pull every image the profiles need. Never stops early.

        Returns:
            One result per image, in pull order
        """
        images = images_for_profiles(profiles)
        results: list[ImagePullResult] = []

        for idx, image in enumerate(images, start=1):
            if on_progress:
                on_progress(
                    OperationProgress(
                        stage="pull",
                        current=idx,
                        total=len(images),
                        item=image,
                        message=f"Pulling image {image}...",
                    )
                )

            try:
                code, _, stderr = await self._run("pull", image)
            except DockerUnavailableError as e:
                results.append(
                    ImagePullResult(image=image, success=False, error=str(e), category=e.category)
                )
                continue

            if code == 0:
                self.logger.info(f"Pulled {image}")
                results.append(ImagePullResult(image=image, success=True))
            else:
                error = stderr.strip() or f"docker pull exited with code {code}"
                category, _ = tag_runtime_failure("pull", stderr)
                self.logger.error(f"Failed to pull {image}: {error}")
                results.append(
                    ImagePullResult(image=image, success=False, error=error, category=category)
                )

        return results

    async def _run_per_service(
        self,
        operation: str,
        services: list[str],
        args_for: Callable[[str], tuple[str, ...]],
        verb: str,
        on_progress: Optional[ProgressCallback],
    ) -> PhaseResult:
        results: list[ServiceOperationResult] = []

        for idx, service in enumerate(services, start=1):
            if on_progress:
                on_progress(
                    OperationProgress(
                        stage=operation,
                        current=idx,
                        total=len(services),
                        item=service,
                        message=f"{verb} {service}...",
                    )
                )

            try:
                code, _, stderr = await self._run(*args_for(service))
            except DockerUnavailableError as e:
                code, stderr = None, str(e)
                category, details = e.category, {}
            else:
                category, details = tag_runtime_failure(operation, stderr)

            if code == 0:
                results.append(ServiceOperationResult(service=service, success=True))
                continue

            error = stderr.strip() or f"docker compose exited with code {code}"
            self.logger.error(f"{verb} {service} failed: {error}")
            results.append(
                ServiceOperationResult(
                    service=service, success=False, error=error, category=category, details=details
                )
            )
            return PhaseResult(
                success=False,
                services=results,
                failed_service=service,
                error=error,
                category=category,
            )

        return PhaseResult(success=True, services=results)

    async def build_services(
        self, profiles: list[str], on_progress: Optional[ProgressCallback] = None
    ) -> PhaseResult:
        """Build services with local Dockerfiles, stopping at the first failure."""
        services = builds_for_profiles(profiles)
        if not services:
            return PhaseResult(success=True)
        return await self._run_per_service(
            "build", services, lambda s: ("compose", "build", s), "Building", on_progress
        )

    async def start_services(
        self, profiles: list[str], on_progress: Optional[ProgressCallback] = None
    ) -> PhaseResult:
        """Start each profile container with its own `compose up -d`.

        Orphans from previous installs and same-named containers from other
        compose projects are removed first; failures there are ignored.
        """
        services = containers_for_profiles(profiles)

        code, _, stderr = await self._run("compose", "down", "--remove-orphans")
        if code != 0:
            self.logger.warning(f"Cleanup failed, continuing anyway: {stderr.strip()}")

        for name in services:
            await self._run("rm", "-f", name)

        return await self._run_per_service(
            "deploy", services, lambda s: ("compose", "up", "-d", s), "Starting", on_progress
        )

    async def get_service_status(self, service_name: str) -> ContainerStatus:
        try:
            code, stdout, stderr = await self._run(
                "inspect", "--format", "{{json .State}}", service_name
            )
        except DockerUnavailableError as e:
            return ContainerStatus(exists=False, error=str(e))

        if code != 0:
            return ContainerStatus(exists=False, error=stderr.strip() or None)

        try:
            state = json.loads(stdout.strip() or "{}")
        except json.JSONDecodeError:
            return ContainerStatus(exists=True, error=f"Unparseable inspect output: {stdout[:200]}")

        health = state.get("Health") or {}
        return ContainerStatus(
            exists=True,
            running=bool(state.get("Running")),
            state=state.get("Status"),
            status=state.get("Status"),
            health=health.get("Status"),
        )

    async def validate_services(self, profiles: list[str]) -> ServiceValidation:
        services = containers_for_profiles(profiles)
        results = {name: await self.get_service_status(name) for name in services}

        running = sum(1 for s in results.values() if s.running)
        stopped = sum(1 for s in results.values() if s.exists and not s.running)
        missing = sum(1 for s in results.values() if not s.exists)

        return ServiceValidation(
            services=results,
            all_running=running == len(results),
            any_failed=stopped > 0,
            summary={"total": len(results), "running": running, "stopped": stopped, "missing": missing},
        )

    async def get_logs(self, service_name: str, lines: int = 100) -> str:
        code, stdout, stderr = await self._run("compose", "logs", f"--tail={lines}", service_name)
        if code != 0:
            raise WizardError(f"Failed to read logs for {service_name}: {stderr.strip()}")
        return stdout

    async def stop_services(self) -> bool:
        code, _, stderr = await self._run("compose", "down")
        if code != 0:
            self.logger.error(f"docker compose down failed: {stderr.strip()}")
        return code == 0
