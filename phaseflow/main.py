"""
Phaseflow service entry point.

Wires an in-memory project store, the transition engine, the event
coordinator and the calendar bridge into one FastAPI app.
"""

import logging
from typing import Optional

from fastapi import FastAPI

from . import __version__
from .api_router import build_router
from .calendar_integration import CalendarMeetingIntegration, PhaseCalendarBridge
from .config import EngineSettings, load_settings
from .event_coordinator import EventCoordinator
from .notification_engine import create_notification_engine
from .project_store import InMemoryProjectStore, ProjectStore
from .rule_registry import RuleRegistry
from .transition_engine import PhaseTransitionEngine
from .transition_store import JsonFileTransitionStore

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger("phaseflow")


def create_app(
    settings: Optional[EngineSettings] = None,
    project_store: Optional[ProjectStore] = None,
) -> FastAPI:
    settings = settings or load_settings()
    rules = RuleRegistry.from_yaml(settings.rules_file) if settings.rules_file else RuleRegistry()

    engine = PhaseTransitionEngine(
        project_store=project_store or InMemoryProjectStore(),
        rule_registry=rules,
        store=JsonFileTransitionStore(settings.state_dir),
    )
    coordinator = EventCoordinator(settings.coordinator)
    integration = CalendarMeetingIntegration(settings.coordinator.conflict_resolution)
    bridge = PhaseCalendarBridge(engine, coordinator, integration)
    bridge.attach()

    notifications = create_notification_engine(settings.notification_log_dir, settings.webhook_url)
    engine.add_listener(notifications.as_listener())

    app = FastAPI(
        title="Phaseflow - Project Phase Transitions",
        version=__version__,
    )
    app.include_router(build_router(engine, coordinator, integration))
    app.state.engine = engine
    app.state.coordinator = coordinator
    app.state.integration = integration

    @app.on_event("startup")
    async def restore_engine_state():
        summary = await engine.restore()
        logger.info(f"Phaseflow started: {summary}")

    @app.on_event("shutdown")
    async def stop_coordinator():
        await coordinator.close()

    @app.get("/")
    async def root():
        """Health check endpoint."""
        return {"service": "phaseflow", "version": __version__, "status": "healthy"}

    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
