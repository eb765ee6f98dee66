"""
Job Controller - FastAPI Application

Server side of the AI operator console. Turns plans into jobs and drives
them step by step:

- Generates plans from configured workflow templates
- Dispatches plans as jobs of sequential steps
- Gates critical steps behind human approval BEFORE execution
- Records failures on the step; retries are explicit
- Keeps an append-only transition audit trail

CONSTRAINTS:
- NO critical skill runs without a prior approve decision
- NO automatic retries
- NO parallel steps within a job
- NO state mutation outside the orchestrator
"""

import asyncio
import logging
from datetime import datetime
from typing import Optional

import psutil
from fastapi import FastAPI

from . import __version__, SERVICE_NAME
from .api import router
from .config import ControllerConfig, load_catalog
from .job_store import JobStore
from .orchestrator import JobOrchestrator
from .planner import WorkflowPlanner
from .skill_executor import SkillExecutor, HandlerSkillExecutor, WebhookSkillExecutor
from .skill_registry import SkillRegistry

# -----------------------------------------------------------------------------
# Logging Configuration
# -----------------------------------------------------------------------------
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

logger = logging.getLogger("job_controller")


# -----------------------------------------------------------------------------
# Component Wiring
# -----------------------------------------------------------------------------
def build_orchestrator(
    config: ControllerConfig,
    executor: Optional[SkillExecutor] = None,
) -> JobOrchestrator:
    """
    Assemble store, skill catalog, planner and executor from configuration.

    Without an explicit executor, skills run through in-process handlers,
    falling back to their webhooks when OPERATOR_WEBHOOK_BASE_URL is set.
    """
    catalog = load_catalog(config.catalog_file)
    skills = SkillRegistry.from_catalog(catalog["skills"])
    planner = WorkflowPlanner.from_catalog(catalog["workflows"], skills)
    store = JobStore(state_file=config.state_file, transitions_file=config.transitions_file)

    if executor is None:
        fallback = None
        if config.webhook_base_url:
            fallback = WebhookSkillExecutor(
                config.webhook_base_url,
                skills,
                timeout=config.webhook_timeout,
            )
            logger.info(f"Webhook execution enabled: {config.webhook_base_url}")
        executor = HandlerSkillExecutor(fallback=fallback)

    logger.info(
        f"Loaded {len(skills.list_skills())} skills and "
        f"{len(planner.templates)} workflows from {config.catalog_file}"
    )
    return JobOrchestrator(
        store=store,
        skills=skills,
        executor=executor,
        planner=planner,
        failure_policy=config.failure_policy,
        approval_expiry_hours=config.approval_expiry_hours,
    )


async def _expiry_sweep(orchestrator: JobOrchestrator, interval: int) -> None:
    """Periodically expire stale approvals."""
    while True:
        await asyncio.sleep(interval)
        try:
            expired = await orchestrator.expire_approvals()
            if expired:
                logger.info(f"Expired {len(expired)} approvals")
        except Exception as e:
            logger.error(f"Approval expiry sweep failed: {e}")


# -----------------------------------------------------------------------------
# Application Factory
# -----------------------------------------------------------------------------
def create_app(
    config: Optional[ControllerConfig] = None,
    orchestrator: Optional[JobOrchestrator] = None,
) -> FastAPI:
    """Create the FastAPI app. Pass an orchestrator to bypass catalog wiring."""
    config = config or ControllerConfig.from_env()
    logging.basicConfig(level=config.log_level, format=LOG_FORMAT)

    app = FastAPI(
        title=SERVICE_NAME,
        description="Plans, jobs, approval gates and retries for the AI operator console",
        version=__version__,
    )
    app.state.config = config
    app.state.orchestrator = orchestrator or build_orchestrator(config)
    app.state.expiry_task = None
    app.include_router(router)

    # -------------------------------------------------------------------------
    # Health
    # -------------------------------------------------------------------------
    @app.get("/")
    async def root():
        """Health check endpoint."""
        return {
            "service": SERVICE_NAME,
            "status": "running",
            "version": __version__,
        }

    @app.get("/health")
    async def health_check():
        """Detailed health check with process resource usage."""
        summary = app.state.orchestrator.get_status_summary()
        health_response = {
            "status": "healthy",
            "timestamp": datetime.utcnow().isoformat(),
            "version": __version__,
            "components": {
                "api": "operational",
                "persistence": config.persist,
                "data_dir": config.data_dir.exists() if config.persist else None,
                "webhooks": bool(config.webhook_base_url),
            },
            "jobs": summary["jobs"],
            "openApprovals": summary["openApprovals"],
        }

        try:
            process = psutil.Process()
            health_response["process"] = {
                "memory_mb": round(process.memory_info().rss / (1024 * 1024), 1),
                "cpu_percent": process.cpu_percent(interval=None),
            }
        except psutil.Error as e:
            logger.warning(f"Process metrics unavailable: {e}")
            health_response["process"] = None

        return health_response

    # -------------------------------------------------------------------------
    # Startup/Shutdown Events
    # -------------------------------------------------------------------------
    @app.on_event("startup")
    async def startup_event():
        """Load persisted state and reconcile interrupted steps."""
        logger.info(f"{SERVICE_NAME} starting up (v{__version__})...")
        orchestrator = app.state.orchestrator
        if config.persist:
            logger.info(f"Data directory: {config.data_dir}")
            config.data_dir.mkdir(parents=True, exist_ok=True)
            orchestrator.load_state()
            interrupted = await orchestrator.recover()
            if interrupted:
                logger.warning(f"{interrupted} steps were interrupted by restart and marked failed")

        if config.approval_expiry_hours > 0:
            app.state.expiry_task = asyncio.create_task(
                _expiry_sweep(orchestrator, config.expiry_sweep_seconds)
            )
            logger.info(
                f"Approval expiry enabled ({config.approval_expiry_hours}h, "
                f"sweep every {config.expiry_sweep_seconds}s)"
            )

        logger.info(f"Default failure policy: {config.failure_policy.value}")
        logger.info("SAFETY: Critical steps require approval before execution.")

    @app.on_event("shutdown")
    async def shutdown_event():
        """Cleanup on shutdown."""
        logger.info(f"{SERVICE_NAME} shutting down...")
        task = app.state.expiry_task
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await app.state.orchestrator.shutdown()

    return app


# -----------------------------------------------------------------------------
# Main Entry Point (for development)
# -----------------------------------------------------------------------------
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
