"""Installation state persistence and the single-writer state actor."""

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any, Callable, Optional, TypeVar

from pydantic import ValidationError

from wizard.api.models import ProgressEvent
from wizard.config import load_settings
from wizard.models.errors import InstallBusyError, StateNotFoundError
from wizard.models.state import (
    InstallationState,
    LockHolder,
    ProfileSelection,
    ServiceEntry,
    ServiceSummary,
    utcnow,
)
from wizard.models.status import PhaseEnum
from wizard.services.progress import ProgressChannel

T = TypeVar("T")


def _pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # exists but owned by another user
        return True
    return True


def _to_document_keys(partial: dict[str, Any]) -> dict[str, Any]:
    """Map python field names in a partial update to their on-disk aliases."""
    fields = InstallationState.model_fields
    document = {}
    for key, value in partial.items():
        field = fields.get(key)
        document[(field.alias or key) if field else key] = value
    return document


class InstallationStateStore:
    """Durable JSON document describing the deployment.

    Writes go to a temporary file that is renamed over the target, so a
    concurrent reader sees either the old or the new document, never a
    partial one. There is no cross-process lock.
    """

    def __init__(
        self,
        state_file_path: Path,
        on_change: Optional[Callable[[InstallationState], None]] = None,
    ):
        """
        Args:
            state_file_path: Location of the JSON document
            on_change: Called with the new state after every successful write
        """
        self.logger = logging.getLogger("wizard.state_store")
        self.state_file_path = Path(state_file_path)
        self.on_change = on_change

    def read_state(self) -> Optional[InstallationState]:
        """Load the state document.

        Returns:
            InstallationState if the file exists and is valid, None otherwise
        """
        if not self.state_file_path.exists():
            self.logger.debug("No installation state file found")
            return None

        try:
            with open(self.state_file_path, "r", encoding="utf-8") as f:
                data = json.load(f)
            return InstallationState.model_validate(data)
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            self.logger.error(f"Installation state file is unreadable: {e}")
            return None

    def write_state(self, state: InstallationState) -> None:
        """Persist exactly the given state with an atomic replace."""
        self.state_file_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.state_file_path.with_name(f"{self.state_file_path.name}.tmp")
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(state.to_document(), f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.state_file_path)
            self.logger.debug(
                f"Saved state: phase={state.phase.value}, wizardRunning={state.wizard_running}"
            )
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            self.logger.error(f"Failed to write installation state: {e}", exc_info=True)
            raise

        if self.on_change is not None:
            self.on_change(state)

    def has_installation(self) -> bool:
        return self.read_state() is not None

    def update_state(self, partial: dict[str, Any]) -> InstallationState:
        """Read-modify-write a shallow merge of `partial` into the document.

        Raises:
            StateNotFoundError: If no state document exists yet
        """
        current = self.read_state()
        if current is None:
            raise StateNotFoundError("Cannot update state: no existing installation state found")

        merged = {**current.to_document(), **_to_document_keys(partial)}
        merged["lastModified"] = utcnow()
        state = InstallationState.model_validate(merged)
        self.write_state(state)
        return state

    def delete_state(self) -> None:
        if self.state_file_path.exists():
            self.state_file_path.unlink()
            self.logger.info("Deleted installation state file")


class StateManager:
    """Singleton owner of the installation state.

    All reads and writes of the state file are funnelled through one command
    queue drained by a single worker task, so the wizardRunning check-and-set
    is atomic within the process. Also keeps the last progress event in
    memory for observers that connect mid-install.
    """

    _instance: Optional["StateManager"] = None

    def __new__(cls, *args, **kwargs):
        """Implement singleton pattern."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._initialized = False
        return cls._instance

    def __init__(self, state_file_path: Optional[Path] = None):
        """Initialize state manager (only once due to singleton)."""
        if self._initialized:
            return

        self.logger = logging.getLogger("wizard.state_manager")
        self.store = InstallationStateStore(
            state_file_path or load_settings().state_path, on_change=self._state_changed
        )

        self._commands: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None

        self._install_active = False
        self._active_session: Optional[str] = None
        self._current_progress: Optional[ProgressEvent] = None

        self._initialized = True
        self.logger.info(f"StateManager initialized: {self.store.state_file_path}")

    # -- command queue -------------------------------------------------

    async def _submit(self, command: Callable[[InstallationStateStore], T]) -> T:
        loop = asyncio.get_running_loop()
        if self._worker is None or self._worker.done() or self._worker.get_loop() is not loop:
            self._commands = asyncio.Queue()
            self._worker = loop.create_task(self._run_commands(self._commands))

        future = loop.create_future()
        self._commands.put_nowait((command, future))
        return await future

    async def _run_commands(self, queue: asyncio.Queue) -> None:
        while True:
            command, future = await queue.get()
            try:
                result = command(self.store)
            except Exception as e:
                if not future.cancelled():
                    future.set_exception(e)
            else:
                if not future.cancelled():
                    future.set_result(result)
            finally:
                queue.task_done()

    async def close(self) -> None:
        """Stop the command worker."""
        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        self._worker = None
        self._commands = None

    def _state_changed(self, state: InstallationState) -> None:
        ProgressChannel().publish("state:changed", state.to_document())

    # -- state commands ------------------------------------------------

    async def get_state(self) -> Optional[InstallationState]:
        return await self._submit(lambda store: store.read_state())

    async def has_installation(self) -> bool:
        return await self._submit(lambda store: store.has_installation())

    async def update(self, partial: dict[str, Any]) -> InstallationState:
        return await self._submit(lambda store: store.update_state(partial))

    async def is_install_running(self) -> bool:
        if self._install_active:
            return True
        state = await self.get_state()
        return bool(state and state.wizard_running)

    async def begin_install(
        self,
        profiles: list[str],
        configuration: dict[str, Any],
        session_id: Optional[str] = None,
    ) -> InstallationState:
        """Take the wizardRunning mutex.

        Raises:
            InstallBusyError: If wizardRunning is already set
        """

        def command(store: InstallationStateStore) -> InstallationState:
            current = store.read_state()
            if current is not None and current.wizard_running:
                holder = current.lock_holder.model_dump(mode="json", by_alias=True) if current.lock_holder else None
                raise InstallBusyError(
                    "Installation already in progress", details={"lockHolder": holder}
                )

            holder = LockHolder(pid=os.getpid(), session_id=session_id)
            if current is None:
                state = InstallationState(
                    phase=PhaseEnum.INSTALLING,
                    profiles=ProfileSelection.from_profiles(profiles),
                    configuration=configuration,
                    wizard_running=True,
                    lock_holder=holder,
                )
                store.write_state(state)
                return state

            return store.update_state(
                {"phase": PhaseEnum.INSTALLING, "wizard_running": True, "lock_holder": holder}
            )

        state = await self._submit(command)
        self._install_active = True
        self._active_session = session_id
        self.logger.info(f"wizardRunning flag set (session={session_id})")
        return state

    async def finish_install(
        self,
        phase: PhaseEnum,
        profiles: Optional[list[str]] = None,
        configuration: Optional[dict[str, Any]] = None,
        services: Optional[list[ServiceEntry]] = None,
        summary: Optional[ServiceSummary] = None,
    ) -> InstallationState:
        """Release the mutex and record the terminal phase."""
        updates: dict[str, Any] = {"phase": phase, "wizard_running": False, "lock_holder": None}
        if profiles is not None:
            updates["profiles"] = ProfileSelection.from_profiles(profiles)
        if configuration is not None:
            updates["configuration"] = configuration
        if services is not None:
            updates["services"] = services
        if summary is not None:
            updates["summary"] = summary
        if phase == PhaseEnum.COMPLETE:
            updates["installed_at"] = utcnow()

        def command(store: InstallationStateStore) -> InstallationState:
            if store.read_state() is None:
                state = InstallationState.model_validate(updates)
                store.write_state(state)
                return state
            return store.update_state(updates)

        try:
            state = await self._submit(command)
        finally:
            self._install_active = False
            self._active_session = None
        self.logger.info(f"wizardRunning flag cleared (phase: {phase.value})")
        return state

    async def recover_stale_lock(self) -> bool:
        """Clear a wizardRunning flag left behind by a crashed process.

        The flag is kept while the recorded lock holder process is still
        alive, so a second wizard started on the same deployment cannot take
        over a running install.

        Returns:
            True if a stale flag was cleared
        """
        if self._install_active:
            return False
        return await self._clear_lock(force=False)

    async def release_lock(self) -> bool:
        """Operator-initiated unlock. Refused while this process is installing.

        Unlike recover_stale_lock, the flag is cleared even if the recorded
        holder pid is alive (pids are reused across container restarts).
        """
        if self._install_active:
            raise InstallBusyError(
                "Installation is active in this process", details={"sessionId": self._active_session}
            )
        return await self._clear_lock(force=True)

    async def _clear_lock(self, force: bool) -> bool:
        def command(store: InstallationStateStore) -> bool:
            current = store.read_state()
            if current is None or not current.wizard_running:
                return False
            holder = current.lock_holder
            if not force and holder is not None and _pid_alive(holder.pid):
                self.logger.warning(
                    f"wizardRunning held by live process {holder.pid} "
                    f"(session={holder.session_id}), leaving it in place"
                )
                return False
            updates: dict[str, Any] = {"wizard_running": False, "lock_holder": None}
            if current.phase == PhaseEnum.INSTALLING:
                updates["phase"] = PhaseEnum.ERROR
            store.update_state(updates)
            return True

        cleared = await self._submit(command)
        if cleared:
            self.logger.warning("Cleared stale wizardRunning flag left by an interrupted install")
        return cleared

    # -- in-memory progress ---------------------------------------------

    def get_status(self) -> Optional[ProgressEvent]:
        """Last progress event of the current or most recent install."""
        return self._current_progress

    def update_status(self, event: ProgressEvent) -> None:
        self._current_progress = event
        self.logger.debug(
            f"Status updated: stage={event.stage.value}, progress={event.progress}%, message={event.message}"
        )

    def reset(self) -> None:
        self._current_progress = None
