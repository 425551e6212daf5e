"""FastAPI application for the Kaspa All-in-One installation wizard."""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI
import uvicorn

from wizard.api.routes import router
from wizard.api.websocket import router as websocket_router
from wizard.config import load_settings
from wizard.services.progress import ProgressChannel
from wizard.services.reporter import ReportService
from wizard.services.state_manager import StateManager
from wizard.services.tasks import TaskSupervisor
from wizard.utils.logging import setup_logger

VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup/shutdown hooks.

    Startup:
    - Initialize logger
    - Create the state directory
    - Initialize StateManager singleton and clear a stale wizardRunning flag
    - Start the callback reporter if WIZARD_CALLBACK_URL is set

    Shutdown:
    - Stop monitoring tasks, the reporter and the state worker
    """
    settings = load_settings()
    logger = setup_logger("wizard", settings.log_file, level=settings.log_level)
    logger.info("Installation wizard starting up...")

    settings.state_path.parent.mkdir(parents=True, exist_ok=True)

    state_manager = StateManager(settings.state_path)
    state = await state_manager.get_state()
    if state:
        logger.info(
            f"Found installation state: phase={state.phase.value}, "
            f"profiles={state.profiles.selected}, wizardRunning={state.wizard_running}"
        )
        if await state_manager.recover_stale_lock():
            logger.warning("Previous installation was interrupted; phase set to error, ready for retry")
    else:
        logger.info("No installation state found, starting fresh")

    channel = ProgressChannel(settings.event_queue_size)
    supervisor = TaskSupervisor(
        channel=channel,
        poll_interval=settings.task_poll_seconds,
        max_failures=settings.task_max_failures,
    )

    reporter_task = None
    subscription = None
    if settings.callback_url:
        subscription = channel.subscribe(all_sessions=True)
        reporter_task = asyncio.create_task(ReportService(settings.callback_url).run(subscription))

    logger.info(f"Installation wizard ready on port {settings.port}")

    yield

    logger.info("Installation wizard shutting down...")
    await supervisor.shutdown()
    if reporter_task is not None:
        reporter_task.cancel()
        await asyncio.gather(reporter_task, return_exceptions=True)
        channel.unsubscribe(subscription)
    await state_manager.close()


# Create FastAPI application
app = FastAPI(
    title="Kaspa All-in-One Installation Wizard",
    description="Installs and monitors Kaspa All-in-One Docker deployments",
    version=VERSION,
    lifespan=lifespan,
)

# Register API routes
app.include_router(router)
app.include_router(websocket_router)


@app.get("/")
async def root():
    """Health check endpoint."""
    return {"status": "ok", "service": "kaspa-wizard", "version": VERSION}


def main():
    """Main entry point for running the server."""
    settings = load_settings()
    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        access_log=True,
    )


if __name__ == "__main__":
    main()
