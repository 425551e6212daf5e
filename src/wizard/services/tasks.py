"""Background monitoring tasks (node sync, indexer sync, generic)."""

import asyncio
import logging
import time
import uuid
from collections import deque
from typing import Any, Optional

import httpx

from wizard.config import load_settings
from wizard.models.errors import (
    ServiceUnreachableError,
    TaskNotFoundError,
    TaskRegistrationError,
    TaskStateError,
)
from wizard.models.state import utcnow
from wizard.models.status import TaskStatus, TaskType
from wizard.models.task import SyncSample, Task, TaskSpec
from wizard.services.progress import ProgressChannel
from wizard.utils.formatting import format_duration

# Samples older than this are ignored for sync rate calculation
RATE_WINDOW_SECONDS = 600


class CancellationToken:
    """Cooperative cancellation flag shared with one monitoring loop."""

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self, timeout: float) -> bool:
        """Sleep up to `timeout` seconds, waking early on cancel.

        Returns:
            True if cancelled
        """
        try:
            await asyncio.wait_for(self._event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass
        return self._event.is_set()


class SyncProbe:
    """Reads the current sync metric of a monitored service."""

    async def sample(self, task: Task) -> SyncSample:
        """Raises ServiceUnreachableError when the service does not answer."""
        raise NotImplementedError


class NodeSyncProbe(SyncProbe):
    """Queries a Kaspa node with the JSON-RPC getBlockDagInfo call."""

    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout

    def _url(self, task: Task) -> str:
        if task.config.get("rpcUrl"):
            return task.config["rpcUrl"]
        scheme = "https" if task.config.get("useHttps") else "http"
        host = task.config.get("host", "localhost")
        port = task.config.get("port", 16110)
        return f"{scheme}://{host}:{port}/"

    async def sample(self, task: Task) -> SyncSample:
        payload = {
            "jsonrpc": "2.0",
            "id": int(time.time() * 1000),
            "method": "getBlockDagInfo",
            "params": [],
        }
        try:
            async with httpx.AsyncClient(timeout=task.config.get("timeout", self.timeout)) as client:
                response = await client.post(self._url(task), json=payload)
                response.raise_for_status()
                body = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise ServiceUnreachableError(f"RPC connection failed: {e}") from e

        if body.get("error"):
            raise ServiceUnreachableError(body["error"].get("message", "RPC error"))

        info = body.get("result") or {}
        block_count = info.get("blockCount", 0)
        header_count = info.get("headerCount", 0)
        return SyncSample(
            value=block_count,
            target=header_count or None,
            synced=bool(info.get("isSynced", False)),
            metadata={"currentBlock": block_count, "targetBlock": header_count},
        )


class HttpMetricProbe(SyncProbe):
    """GETs a JSON status endpoint and reads metric/target fields from it.

    Task config:
        statusUrl: endpoint URL (required)
        metricField: field holding the current value (default "height")
        targetField: field holding the target value (default "targetHeight")
    """

    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout

    async def sample(self, task: Task) -> SyncSample:
        url = task.config.get("statusUrl")
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(url)
                response.raise_for_status()
                body = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise ServiceUnreachableError(f"Status endpoint unreachable: {e}") from e

        value = body.get(task.config.get("metricField", "height"), 0)
        target = body.get(task.config.get("targetField", "targetHeight"))
        return SyncSample(value=value, target=target or None, synced=bool(body.get("synced", False)))


def sync_rate(history: list[tuple[float, float]]) -> float:
    """Units per second between the oldest and newest sample."""
    if len(history) < 2:
        return 0.0
    (t0, v0), (t1, v1) = history[0], history[-1]
    if t1 <= t0:
        return 0.0
    return max(0.0, (v1 - v0) / (t1 - t0))


class TaskSupervisor:
    """Singleton registry and runner of monitoring tasks.

    Each running task owns a CancellationToken checked every iteration; the
    inter-poll sleep wakes as soon as the token is cancelled. Tasks publish
    their events to the session that registered them and never touch the
    installation state.
    """

    _instance: Optional["TaskSupervisor"] = None

    def __new__(cls, *args, **kwargs):
        """Implement singleton pattern."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._initialized = False
        return cls._instance

    def __init__(
        self,
        channel: Optional[ProgressChannel] = None,
        probes: Optional[dict[TaskType, SyncProbe]] = None,
        poll_interval: Optional[float] = None,
        max_failures: Optional[int] = None,
    ):
        if self._initialized:
            return

        settings = load_settings()
        self.logger = logging.getLogger("wizard.tasks")
        self.channel = channel or ProgressChannel()
        self.probes: dict[TaskType, SyncProbe] = {
            TaskType.NODE_SYNC: NodeSyncProbe(),
            TaskType.INDEXER_SYNC: HttpMetricProbe(),
            TaskType.GENERIC: HttpMetricProbe(),
        }
        self.probes.update(probes or {})
        self.poll_interval = poll_interval or settings.task_poll_seconds
        self.max_failures = max_failures or settings.task_max_failures

        self._tasks: dict[str, Task] = {}
        self._tokens: dict[str, CancellationToken] = {}
        self._runners: dict[str, asyncio.Task] = {}
        self._history: dict[str, deque] = {}

        self._initialized = True

    def _publish(self, event: str, task: Task, **extra: Any) -> None:
        payload = {"taskId": task.id, "service": task.service, "type": task.type.value, **extra}
        self.channel.publish(event, payload, session_id=task.session_id)

    def register(self, spec: TaskSpec, session_id: Optional[str] = None) -> Task:
        """Add a pending task.

        Raises:
            TaskRegistrationError: Duplicate id or missing probe configuration
        """
        task_id = spec.id or f"{spec.type.value}-{spec.service}-{uuid.uuid4().hex[:8]}"
        if task_id in self._tasks:
            raise TaskRegistrationError(f"Task {task_id} already exists")

        probe = self.probes.get(spec.type)
        if probe is None:
            raise TaskRegistrationError(f"No probe for task type {spec.type.value}")
        if isinstance(probe, HttpMetricProbe) and not spec.config.get("statusUrl"):
            raise TaskRegistrationError(f"{spec.type.value} tasks need a statusUrl in config")

        task = Task(
            id=task_id,
            type=spec.type,
            service=spec.service,
            config=spec.config,
            check_interval=spec.check_interval or self.poll_interval,
            session_id=session_id,
        )
        self._tasks[task_id] = task
        self.logger.info(f"Registered task {task_id} ({spec.service})")
        self.channel.publish(
            "task:registered", {"taskId": task.id, "task": task.to_payload()}, session_id=session_id
        )
        return task

    async def start_monitoring(self, task_id: str) -> Task:
        """Move a pending task to running and start its polling loop."""
        task = self.get_task(task_id)
        if task.status != TaskStatus.PENDING:
            raise TaskStateError(f"Task {task_id} is {task.status.value}, expected pending")

        task.status = TaskStatus.RUNNING
        task.started_at = utcnow()
        task.touch()

        token = CancellationToken()
        self._tokens[task_id] = token
        self._history[task_id] = deque()
        self._runners[task_id] = asyncio.create_task(self._monitor(task, token))

        self.logger.info(f"Started monitoring {task_id} (interval: {task.check_interval}s)")
        self._publish("task:started", task, checkInterval=task.check_interval)
        return task

    async def _monitor(self, task: Task, token: CancellationToken) -> None:
        probe = self.probes[task.type]
        failures = 0
        try:
            while not token.cancelled:
                try:
                    sample = await probe.sample(task)
                except ServiceUnreachableError as e:
                    failures += 1
                    self.logger.warning(
                        f"{task.id}: {task.service} unreachable ({failures}/{self.max_failures}): {e}"
                    )
                    if failures >= self.max_failures and not token.cancelled:
                        self._fail(task, f"{task.service} unreachable after {failures} consecutive polls: {e}")
                        return
                except Exception as e:
                    self.logger.error(f"{task.id}: probe failed: {e}", exc_info=True)
                    if not token.cancelled:
                        self._fail(task, str(e))
                    return
                else:
                    failures = 0
                    # cancel() may have run while the probe was awaited
                    if token.cancelled:
                        return
                    if self._apply_sample(task, sample):
                        return

                if await token.wait(task.check_interval):
                    return
        finally:
            self._runners.pop(task.id, None)
            self._tokens.pop(task.id, None)

    def _apply_sample(self, task: Task, sample: SyncSample) -> bool:
        """Update progress/metadata. Returns True if the task completed."""
        target = task.config.get("targetHeight") or sample.target or task.metadata.get("target")
        if target:
            progress = min(100.0, sample.value / target * 100)
            if not task.metadata.get("target"):
                # first known target, the raw counter is not a percentage
                task.progress = 0
        else:
            progress = sample.value
        task.progress = max(task.progress, round(progress, 2))

        history = self._history.setdefault(task.id, deque())
        now = time.monotonic()
        history.append((now, sample.value))
        while history and history[0][0] < now - RATE_WINDOW_SECONDS:
            history.popleft()
        rate = sync_rate(list(history))

        completed = sample.synced or (bool(target) and sample.value >= target)
        if completed:
            eta: Optional[float] = 0
        elif target and rate > 0:
            eta = max(0.0, (target - sample.value) / rate)
        else:
            eta = None

        task.metadata.update(sample.metadata)
        task.metadata.update(
            {
                "currentValue": sample.value,
                "target": target,
                "synced": sample.synced,
                "syncRate": round(rate, 2),
                "estimatedTimeRemaining": round(eta) if eta is not None else None,
                "formattedTimeRemaining": format_duration(eta),
            }
        )
        task.touch()

        if completed:
            self._complete(task)
            return True

        self._publish("task:progress", task, progress=task.progress, metadata=task.metadata)
        return False

    def _complete(self, task: Task) -> None:
        task.status = TaskStatus.COMPLETED
        task.progress = 100
        task.finished_at = utcnow()
        task.touch()

        duration = (task.finished_at - task.started_at).total_seconds() if task.started_at else None
        self.logger.info(f"Task completed: {task.id} ({task.service})")
        self._publish(
            "task:complete",
            task,
            completedAt=task.finished_at.isoformat(),
            duration=format_duration(duration),
            metadata=task.metadata,
        )

        if task.type == TaskType.NODE_SYNC and task.config.get("autoSwitch"):
            self.logger.info(f"{task.service} synced, local node ready")
            self._publish("node:ready", task, rpcUrl=task.config.get("rpcUrl"))

    def _fail(self, task: Task, error: str) -> None:
        task.status = TaskStatus.FAILED
        task.error = error
        task.finished_at = utcnow()
        task.touch()
        self.logger.error(f"Task failed: {task.id}: {error}")
        self._publish("task:error", task, error=error)

    def cancel(self, task_id: str) -> Task:
        """Cancel a pending or running task. Takes effect immediately.

        Raises:
            TaskNotFoundError: Unknown id
            TaskStateError: Task already finished
        """
        task = self.get_task(task_id)
        if task.status.is_terminal:
            raise TaskStateError(f"Task {task_id} already {task.status.value}")

        task.status = TaskStatus.CANCELLED
        task.finished_at = utcnow()
        task.touch()

        token = self._tokens.get(task_id)
        if token is not None:
            token.cancel()

        self.logger.info(f"Task cancelled: {task_id}")
        self._publish("task:cancelled", task)
        return task

    def get_task(self, task_id: str) -> Task:
        task = self._tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(f"Task {task_id} not found")
        return task

    def list_tasks(
        self,
        type: Optional[TaskType] = None,
        service: Optional[str] = None,
        status: Optional[TaskStatus] = None,
    ) -> list[Task]:
        return [
            t
            for t in self._tasks.values()
            if (type is None or t.type == type)
            and (service is None or t.service == service)
            and (status is None or t.status == status)
        ]

    def cleanup_old_tasks(self, max_age: float = 3600) -> int:
        """Drop finished tasks older than `max_age` seconds. Returns count removed."""
        now = utcnow()
        stale = [
            t.id
            for t in self._tasks.values()
            if t.status.is_terminal and t.finished_at and (now - t.finished_at).total_seconds() > max_age
        ]
        for task_id in stale:
            self._tasks.pop(task_id, None)
            self._history.pop(task_id, None)
        if stale:
            self.logger.info(f"Cleaned up {len(stale)} old task(s)")
        return len(stale)

    async def shutdown(self) -> None:
        """Stop every monitoring loop."""
        for token in list(self._tokens.values()):
            token.cancel()
        runners = list(self._runners.values())
        for runner in runners:
            runner.cancel()
        if runners:
            await asyncio.gather(*runners, return_exceptions=True)
        self.logger.info(f"Task supervisor stopped ({len(runners)} loop(s))")
