"""WebSocket endpoint: session-scoped event stream plus client commands."""

import asyncio
import logging
import uuid
from typing import Any, Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from wizard.api.models import ChannelMessage
from wizard.api.routes import install_workflow
from wizard.models.errors import TaskNotFoundError, TaskRegistrationError, TaskStateError, WizardError
from wizard.models.task import TaskSpec
from wizard.services.docker import DockerManager
from wizard.services.progress import ProgressChannel, Subscription
from wizard.services.tasks import TaskSupervisor

logger = logging.getLogger("wizard.websocket")

router = APIRouter()

# Strong references to install runs started from a socket
_install_runs: set[asyncio.Task] = set()


def _reply(subscription: Subscription, event: str, data: dict[str, Any]) -> None:
    """Answer the requesting socket only."""
    subscription.offer(ChannelMessage(event=event, data=data, session_id=subscription.session_id))


async def _forward(websocket: WebSocket, subscription: Subscription) -> None:
    while True:
        message = await subscription.get()
        await websocket.send_json(message.to_frame())


def _start_install(session_id: str, data: dict[str, Any]) -> None:
    profiles = list(data.get("profiles") or [])
    config = data.get("config") or {}
    run = asyncio.create_task(install_workflow(profiles, config, session_id))
    _install_runs.add(run)
    run.add_done_callback(_install_runs.discard)


async def _register_task(subscription: Subscription, data: dict[str, Any]) -> None:
    supervisor = TaskSupervisor()
    try:
        spec = TaskSpec.model_validate(data)
        task = supervisor.register(spec, session_id=subscription.session_id)
        if data.get("autoStart", True):
            await supervisor.start_monitoring(task.id)
    except ValidationError as e:
        _reply(subscription, "task:error", {"error": f"Invalid task: {e.errors()[0]['msg']}"})
    except (TaskRegistrationError, TaskStateError) as e:
        _reply(subscription, "task:error", {"error": e.message})


def _cancel_task(subscription: Subscription, data: dict[str, Any]) -> None:
    task_id = data.get("taskId")
    try:
        TaskSupervisor().cancel(task_id)
    except (TaskNotFoundError, TaskStateError) as e:
        _reply(subscription, "task:error", {"taskId": task_id, "error": e.message})


def _task_status(subscription: Subscription, data: dict[str, Any]) -> None:
    task_id = data.get("taskId")
    try:
        task = TaskSupervisor().get_task(task_id)
    except TaskNotFoundError as e:
        _reply(subscription, "task:status:response", {"taskId": task_id, "error": e.message})
    else:
        _reply(subscription, "task:status:response", {"taskId": task_id, "task": task.to_payload()})


async def _service_status(subscription: Subscription, data: Any) -> None:
    service = data if isinstance(data, str) else (data or {}).get("service")
    status = await DockerManager().get_service_status(service)
    _reply(subscription, "service:status:response", {"service": service, "status": status.model_dump()})


async def _stream_logs(subscription: Subscription, data: dict[str, Any]) -> None:
    service = data.get("service")
    try:
        logs = await DockerManager().get_logs(service, int(data.get("lines", 100)))
    except WizardError as e:
        _reply(subscription, "logs:error", {"service": service, "error": e.message})
    else:
        _reply(subscription, "logs:data", {"service": service, "logs": logs})


async def _dispatch(subscription: Subscription, frame: Any) -> None:
    if not isinstance(frame, dict) or "event" not in frame:
        _reply(subscription, "error", {"message": "Frames must be {\"event\": ..., \"data\": ...}"})
        return

    event = frame["event"]
    data = frame.get("data")
    payload = data if isinstance(data, dict) else {}
    logger.debug(f"Received {event} (session={subscription.session_id})")

    if event == "install:start":
        _start_install(subscription.session_id, payload)
    elif event == "task:register":
        await _register_task(subscription, payload)
    elif event == "task:cancel":
        _cancel_task(subscription, payload)
    elif event == "task:status":
        _task_status(subscription, payload)
    elif event == "tasks:list":
        tasks = TaskSupervisor().list_tasks()
        _reply(subscription, "tasks:list:response", {"tasks": [t.to_payload() for t in tasks]})
    elif event == "service:status":
        await _service_status(subscription, data)
    elif event == "logs:stream":
        await _stream_logs(subscription, payload)
    else:
        logger.warning(f"Unknown event from client: {event}")
        _reply(subscription, "error", {"message": f"Unknown event: {event}"})


@router.websocket("/ws")
async def wizard_socket(websocket: WebSocket, session: Optional[str] = None):
    """One wizard client. Events published to its session are forwarded in order."""
    await websocket.accept()
    session_id = session or uuid.uuid4().hex
    channel = ProgressChannel()
    subscription = channel.subscribe(session_id)
    sender = asyncio.create_task(_forward(websocket, subscription))
    logger.info(f"Client connected (session={session_id})")

    try:
        while True:
            try:
                frame = await websocket.receive_json()
            except ValueError:
                _reply(subscription, "error", {"message": "Invalid JSON frame"})
                continue
            await _dispatch(subscription, frame)
    except WebSocketDisconnect:
        logger.info(f"Client disconnected (session={session_id})")
    finally:
        channel.unsubscribe(subscription)
        sender.cancel()
        await asyncio.gather(sender, return_exceptions=True)
