"""API route handlers for the installation wizard."""

import logging
from typing import Any, Optional

from fastapi import APIRouter, BackgroundTasks
from fastapi.responses import JSONResponse

from wizard.api.models import (
    AnalyzeRequest,
    ApplyRequest,
    ErrorResponse,
    InstallRequest,
    ProgressResponse,
    SuccessResponse,
)
from wizard.models.errors import (
    InstallBusyError,
    TaskNotFoundError,
    TaskRegistrationError,
    TaskStateError,
    WizardError,
)
from wizard.models.status import ErrorCategory, InstallStage, TaskStatus, TaskType
from wizard.models.task import TaskSpec
from wizard.services.docker import DockerManager
from wizard.services.orchestrator import InstallOrchestrator
from wizard.services.progress import ProgressChannel
from wizard.services.remediation import ErrorClassifier
from wizard.services.state_manager import StateManager
from wizard.services.tasks import TaskSupervisor

logger = logging.getLogger("wizard.api")

router = APIRouter(prefix="/api/v1.0")


def _respond(code: int, msg: str, data: Any = None) -> JSONResponse:
    """All responses use HTTP 200; the real status is in the body."""
    if code != 200:
        return JSONResponse(status_code=200, content=ErrorResponse(code=code, msg=msg).model_dump())
    return JSONResponse(status_code=200, content={"code": code, "msg": msg, "data": data})


@router.get("/install/state", response_model=SuccessResponse)
async def get_install_state():
    """GET /api/v1.0/install/state - Persisted installation state.

    Response format:
        {
            "code": 200,
            "msg": "success",
            "data": {"version": "1.0.0", "phase": "complete", "wizardRunning": false, ...}
        }
    """
    state = await StateManager().get_state()
    if state is None:
        return _respond(404, "No installation state found")
    return _respond(200, "success", state.to_document())


@router.get("/install/progress", response_model=ProgressResponse)
async def get_install_progress():
    """GET /api/v1.0/install/progress - Last progress event of the current install."""
    state_manager = StateManager()
    status = state_manager.get_status()
    if status is None:
        return ProgressResponse(code=200, msg="No installation has run", data=None)
    return ProgressResponse(code=200, msg="success", data=status)


@router.post("/install", response_model=SuccessResponse)
async def post_install(request: InstallRequest, background_tasks: BackgroundTasks):
    """POST /api/v1.0/install - Start an installation in the background.

    Progress is delivered over the WebSocket channel to `session_id`.

    Returns:
        code 200 if started, 409 if an installation is already running
    """
    state_manager = StateManager()
    if await state_manager.is_install_running():
        return _respond(409, "Installation already in progress")

    background_tasks.add_task(install_workflow, request.profiles, request.config, request.session_id)
    return _respond(200, "success", {"sessionId": request.session_id})


@router.post("/install/unlock", response_model=SuccessResponse)
async def post_install_unlock():
    """POST /api/v1.0/install/unlock - Clear a stale wizardRunning flag."""
    try:
        cleared = await StateManager().release_lock()
    except InstallBusyError as e:
        return _respond(409, e.message)
    return _respond(200, "success", {"cleared": cleared})


async def install_workflow(profiles: list[str], config: dict[str, Any], session_id: Optional[str]) -> None:
    """Background task for the install pipeline (HTTP and WebSocket)."""
    try:
        await InstallOrchestrator().install(profiles, config, session_id)
    except InstallBusyError as e:
        logger.warning(f"Install rejected (session={session_id}): {e.message}")
        ProgressChannel().publish(
            "install:error",
            {
                "stage": InstallStage.INIT.value,
                "message": e.message,
                "error": "INSTALL_BUSY",
                "category": ErrorCategory.UNKNOWN.value,
            },
            session_id=session_id,
        )


@router.get("/tasks", response_model=SuccessResponse)
async def get_tasks(
    type: Optional[TaskType] = None,
    service: Optional[str] = None,
    status: Optional[TaskStatus] = None,
):
    tasks = TaskSupervisor().list_tasks(type=type, service=service, status=status)
    return _respond(200, "success", [t.to_payload() for t in tasks])


@router.get("/tasks/{task_id}", response_model=SuccessResponse)
async def get_task(task_id: str):
    try:
        task = TaskSupervisor().get_task(task_id)
    except TaskNotFoundError as e:
        return _respond(404, e.message)
    return _respond(200, "success", task.to_payload())


@router.post("/tasks", response_model=SuccessResponse)
async def post_task(spec: TaskSpec, start: bool = True, session_id: Optional[str] = None):
    """POST /api/v1.0/tasks - Register (and by default start) a monitoring task.

    Request format:
        {"type": "node-sync", "service": "kaspa-node", "config": {"port": 16110}}
    """
    supervisor = TaskSupervisor()
    try:
        task = supervisor.register(spec, session_id=session_id)
        if start:
            task = await supervisor.start_monitoring(task.id)
    except TaskRegistrationError as e:
        return _respond(400, e.message)
    return _respond(200, "success", task.to_payload())


@router.delete("/tasks/{task_id}", response_model=SuccessResponse)
async def delete_task(task_id: str):
    try:
        task = TaskSupervisor().cancel(task_id)
    except TaskNotFoundError as e:
        return _respond(404, e.message)
    except TaskStateError as e:
        return _respond(409, e.message)
    return _respond(200, "success", task.to_payload())


@router.post("/remediation/analyze", response_model=SuccessResponse)
async def post_remediation_analyze(request: AnalyzeRequest):
    """POST /api/v1.0/remediation/analyze - Classify an error message.

    Request format:
        {"error": "Bind for 0.0.0.0:16110 failed: port is already allocated", "context": {}}
    """
    analysis = ErrorClassifier().analyze(request.error, request.context)
    return _respond(200, "success", analysis.model_dump(mode="json", by_alias=True))


@router.post("/remediation/apply", response_model=SuccessResponse)
async def post_remediation_apply(request: ApplyRequest):
    result = await ErrorClassifier().apply(request.suggestion)
    if not result.applied:
        return JSONResponse(
            status_code=200,
            content={"code": 400, "msg": result.message, "data": result.model_dump(by_alias=True)},
        )
    return _respond(200, "success", result.model_dump(by_alias=True))


@router.get("/services/{name}/status", response_model=SuccessResponse)
async def get_service_status(name: str):
    status = await DockerManager().get_service_status(name)
    return _respond(200, "success", {"service": name, **status.model_dump()})


@router.get("/services/{name}/logs", response_model=SuccessResponse)
async def get_service_logs(name: str, lines: int = 100):
    try:
        logs = await DockerManager().get_logs(name, lines)
    except WizardError as e:
        return _respond(500, e.message)
    return _respond(200, "success", {"service": name, "logs": logs})
