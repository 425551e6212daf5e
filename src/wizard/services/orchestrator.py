"""Install pipeline: config → pull → build → deploy → validate."""

import asyncio
import logging
from typing import Any, Optional

from wizard.api.models import (
    InstallCompletePayload,
    InstallErrorPayload,
    InstallResult,
    ProgressEvent,
    TroubleshootingGuide,
    ValidationReport,
)
from wizard.config import WizardSettings, load_settings
from wizard.models.errors import (
    BuildError,
    ConfigValidationError,
    DeployError,
    FileWriteError,
    ImagePullError,
    InstallBusyError,
    WizardError,
)
from wizard.models.results import OperationProgress
from wizard.models.state import ServiceEntry, ServiceSummary
from wizard.models.status import ErrorCategory, InstallOutcome, InstallStage, PhaseEnum
from wizard.services.config_generator import ConfigGenerator, InstallConfig
from wizard.services.docker import DockerManager
from wizard.services.infrastructure import InfrastructureValidator
from wizard.services.progress import ProgressChannel
from wizard.services.remediation import ErrorClassifier
from wizard.services.state_manager import StateManager

STAGE_MESSAGES = {
    InstallStage.INIT: "Installation could not start",
    InstallStage.CONFIG: "Configuration failed",
    InstallStage.PULL: "Failed to pull Docker images",
    InstallStage.BUILD: "Failed to build services",
    InstallStage.DEPLOY: "Failed to start services",
    InstallStage.VALIDATE: "Validation failed",
}


class _InstallRun:
    """Per-run progress bookkeeping."""

    def __init__(self, session_id: Optional[str]):
        self.session_id = session_id
        self.stage = InstallStage.INIT
        self.progress = 0.0


class InstallOrchestrator:
    """Drives one installation from validated config to running services.

    Every stage failure is converted into a single install:error event and
    the wizardRunning flag is always released. Health and infrastructure
    problems after deploy are warnings, not failures.
    """

    def __init__(
        self,
        state_manager: Optional[StateManager] = None,
        channel: Optional[ProgressChannel] = None,
        docker: Optional[DockerManager] = None,
        config_generator: Optional[ConfigGenerator] = None,
        infrastructure_validator: Optional[InfrastructureValidator] = None,
        classifier: Optional[ErrorClassifier] = None,
        settings: Optional[WizardSettings] = None,
    ):
        """Initialize orchestrator.

        Args:
            state_manager: StateManager instance (uses singleton if None)
            channel: ProgressChannel instance (uses singleton if None)
            docker: Container runtime boundary
            config_generator: Config validation and rendering
            infrastructure_validator: Post-deploy infrastructure checks
            classifier: Error classifier used to enrich install:error
            settings: Runtime settings (read from environment if None)
        """
        self.settings = settings or load_settings()
        self.logger = logging.getLogger("wizard.orchestrator")
        self.state_manager = state_manager or StateManager()
        self.channel = channel or ProgressChannel()
        self.docker = docker or DockerManager(self.settings.project_root, self.settings.docker_binary)
        self.config_generator = config_generator or ConfigGenerator()
        self.infrastructure_validator = infrastructure_validator or InfrastructureValidator(
            self.settings.project_root
        )
        self.classifier = classifier or ErrorClassifier(self.settings.env_path)

    def _emit(
        self,
        run: _InstallRun,
        stage: InstallStage,
        progress: float,
        message: str,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        # Progress never goes backwards within a run
        run.progress = max(run.progress, min(100.0, round(progress, 1)))
        run.stage = stage
        event = ProgressEvent(stage=stage, message=message, progress=run.progress, details=details)
        self.state_manager.update_status(event)
        self.channel.publish("install:progress", event, session_id=run.session_id)

    def _item_progress(self, run: _InstallRun, stage: InstallStage, base: float, span: float):
        def on_progress(p: OperationProgress) -> None:
            fraction = p.current / p.total if p.total else 1
            self._emit(
                run,
                stage,
                base + fraction * span,
                p.message,
                {"current": p.current, "total": p.total, "item": p.item},
            )

        return on_progress

    async def install(
        self, profiles: list[str], config: dict[str, Any], session_id: Optional[str] = None
    ) -> InstallResult:
        """Run the full pipeline.

        Raises:
            InstallBusyError: If another install holds the wizardRunning flag
        """
        if await self.state_manager.is_install_running():
            raise InstallBusyError("Installation already in progress")

        run = _InstallRun(session_id)
        self.state_manager.reset()
        self.logger.info(f"Starting installation: profiles={profiles} (session={session_id})")
        self._emit(run, InstallStage.INIT, 0, "Starting installation...")

        validation = self.config_generator.validate_config(config, profiles)
        if not validation.valid:
            error = ConfigValidationError(
                "; ".join(validation.errors), errors=validation.errors, category=ErrorCategory.UNKNOWN
            )
            # Nothing has been written yet, so state stays untouched
            return await self._fail(run, error, persist=False)

        install_config = InstallConfig.model_validate(validation.config)
        snapshot = self.config_generator.snapshot(install_config, profiles)

        await self.state_manager.begin_install(profiles, snapshot, session_id)

        try:
            await self._write_config(run, install_config, profiles)
            await self._pull(run, profiles)
            await self._build(run, profiles)
            await self._deploy(run, profiles)
            report, warnings, services, summary = await self._validate(run, profiles)
        except WizardError as e:
            return await self._fail(run, e)
        except asyncio.CancelledError:
            self.logger.warning("Installation task cancelled, releasing wizardRunning flag")
            await self.state_manager.finish_install(PhaseEnum.ERROR)
            raise
        except Exception as e:
            self.logger.error(f"Unexpected error during {run.stage.value}: {e}", exc_info=True)
            return await self._fail(run, WizardError(str(e), stage=run.stage))

        await self.state_manager.finish_install(
            PhaseEnum.COMPLETE,
            profiles=profiles,
            configuration=snapshot,
            services=services,
            summary=summary,
        )

        payload = InstallCompletePayload(
            message="Installation completed successfully"
            if not warnings
            else f"Installation completed with {len(warnings)} warning(s)",
            validation=report,
            warnings=warnings,
        )
        self.channel.publish("install:complete", payload, session_id=session_id)
        self.logger.info(f"Installation complete ({len(warnings)} warning(s))")

        outcome = InstallOutcome.SUCCESS_WITH_WARNINGS if warnings else InstallOutcome.SUCCESS
        return InstallResult(outcome=outcome, complete=payload, warnings=warnings)

    async def _write_config(self, run: _InstallRun, config: InstallConfig, profiles: list[str]) -> None:
        self._emit(run, InstallStage.CONFIG, 10, "Generating configuration...")

        env_content = self.config_generator.generate_env_file(config, profiles)
        result = await self.config_generator.save_env_file(env_content, self.settings.env_path)
        if not result.success:
            raise FileWriteError(
                f"Failed to save .env file: {result.error}", path=result.path, category=result.category
            )

        compose_content = self.config_generator.generate_docker_compose(config, profiles)
        result = await self.config_generator.save_docker_compose(compose_content, self.settings.compose_path)
        if not result.success:
            raise FileWriteError(
                f"Failed to save docker-compose.yml: {result.error}", path=result.path, category=result.category
            )

        self.logger.info("Configuration files written")

    async def _pull(self, run: _InstallRun, profiles: list[str]) -> None:
        self._emit(run, InstallStage.PULL, 20, "Pulling Docker images...")

        results = await self.docker.pull_images(
            profiles, self._item_progress(run, InstallStage.PULL, 20, 30)
        )
        failed = [r for r in results if not r.success]
        if failed:
            raise ImagePullError(
                f"Failed to pull {len(failed)} image(s): {', '.join(r.image for r in failed)}",
                results=results,
                category=failed[0].category,
            )

        self._emit(run, InstallStage.PULL, 50, "Docker images pulled", {"images": len(results)})

    async def _build(self, run: _InstallRun, profiles: list[str]) -> None:
        self._emit(run, InstallStage.BUILD, 55, "Building services...")

        result = await self.docker.build_services(
            profiles, self._item_progress(run, InstallStage.BUILD, 55, 20)
        )
        if not result.success:
            raise BuildError(
                f"Failed to build {result.failed_service}: {result.error}",
                service=result.failed_service,
                results=result.services,
                category=result.category,
            )

        self._emit(run, InstallStage.BUILD, 75, "Services built")

    async def _deploy(self, run: _InstallRun, profiles: list[str]) -> None:
        self._emit(run, InstallStage.DEPLOY, 80, "Starting services...")

        result = await self.docker.start_services(
            profiles, self._item_progress(run, InstallStage.DEPLOY, 80, 10)
        )
        if not result.success:
            failed = next((s for s in result.services if not s.success), None)
            raise DeployError(
                f"Failed to start {result.failed_service}: {result.error}",
                service=result.failed_service,
                results=result.services,
                category=result.category,
                details=failed.details if failed else None,
            )

        self._emit(run, InstallStage.DEPLOY, 90, "Services started")

    async def _validate(
        self, run: _InstallRun, profiles: list[str]
    ) -> tuple[ValidationReport, list[str], list[ServiceEntry], ServiceSummary]:
        self._emit(run, InstallStage.VALIDATE, 90, "Validating installation...")
        await asyncio.sleep(self.settings.health_grace_seconds)

        validation = await self.docker.validate_services(profiles)
        warnings: list[str] = []
        services: list[ServiceEntry] = []
        for name, status in validation.services.items():
            if status.running:
                state = "running"
            elif status.exists:
                state = "stopped"
            else:
                state = "missing"
            services.append(
                ServiceEntry(
                    name=name,
                    status=state,
                    exists=status.exists,
                    running=status.running,
                    state=status.state,
                )
            )
            if not status.running:
                warnings.append(f"Service {name} is {state}")

        self._emit(run, InstallStage.VALIDATE, 95, "Running infrastructure validation...")

        report = ValidationReport(
            services={name: s.model_dump(exclude_none=True) for name, s in validation.services.items()}
        )
        try:
            infra = await self.infrastructure_validator.validate_infrastructure(profiles)
        except Exception as e:
            self.logger.warning(f"Infrastructure validation could not run: {e}")
            warnings.append(f"Infrastructure validation could not run: {e}")
        else:
            infra_summary = self.infrastructure_validator.get_validation_summary(infra)
            report.infrastructure = infra.model_dump(mode="json", by_alias=True, exclude_none=True)
            report.infrastructure_summary = infra_summary
            self.channel.publish(
                "infrastructure:validation",
                {"results": report.infrastructure, "summary": infra_summary},
                session_id=run.session_id,
            )
            for test in self.infrastructure_validator.failed_tests(infra):
                warnings.append(f"Infrastructure check failed: {test.name}: {test.message}")

        self._emit(run, InstallStage.VALIDATE, 100, "Installation complete", {"warnings": len(warnings)})
        return report, warnings, services, ServiceSummary(**validation.summary)

    async def _fail(self, run: _InstallRun, error: WizardError, persist: bool = True) -> InstallResult:
        stage = error.stage or run.stage
        analysis = self.classifier.analyze(error, {"stage": stage.value})
        self.logger.error(f"Installation failed at {stage.value} ({analysis.category.value}): {error.message}")

        if persist:
            try:
                await self.state_manager.finish_install(PhaseEnum.ERROR)
            except OSError as e:
                self.logger.error(f"Could not record error phase: {e}")

        results = getattr(error, "results", None) or None
        payload = InstallErrorPayload(
            stage=stage,
            message=STAGE_MESSAGES[stage],
            error=error.message,
            category=analysis.category,
            errors=getattr(error, "errors", None),
            results=results,
            failed_service=getattr(error, "service", None),
            documentation_link=analysis.documentation_link,
            troubleshooting_steps=analysis.troubleshooting_steps,
            troubleshooting_guide=TroubleshootingGuide(
                category=analysis.category,
                severity=analysis.severity,
                suggestions=analysis.suggestions,
            ),
        )
        self.channel.publish("install:error", payload, session_id=run.session_id)
        return InstallResult(outcome=InstallOutcome.ERROR, error=payload)
