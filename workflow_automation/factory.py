"""Application factory for creating FastAPI instances."""

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api.endpoints import init_dependencies, router
from .config import AppConfig, get_config, validate_config
from .core.execution_engine import ExecutionEngine
from .core.executor_registry import ExecutorRegistry, build_default_registry
from .core.health import CRITICAL_CHECKS, HealthChecker, build_health_checker
from .core.logging import get_logger, setup_logging
from .core.schedule_service import ScheduleService
from .core.scheduler import WorkflowScheduler
from .core.workflow_manager import WorkflowManager
from .storage.database import create_database_engine, create_tables
from .storage.repository import WorkflowStore


class ApplicationState:
    """Container for application state and components."""

    def __init__(self):
        self.config: Optional[AppConfig] = None
        self.store: Optional[WorkflowStore] = None
        self.registry: Optional[ExecutorRegistry] = None
        self.workflow_manager: Optional[WorkflowManager] = None
        self.execution_engine: Optional[ExecutionEngine] = None
        self.scheduler: Optional[WorkflowScheduler] = None
        self.schedule_service: Optional[ScheduleService] = None
        self.health_checker: Optional[HealthChecker] = None


def initialize_components(config: AppConfig, logger) -> ApplicationState:
    """Create the database tables and wire the core components together."""
    state = ApplicationState()
    state.config = config

    database_engine = create_database_engine(config.database_url, echo=config.database_echo)
    create_tables(database_engine)
    logger.info("Database tables created")

    state.store = WorkflowStore(database_engine)
    state.registry = build_default_registry(config)
    state.workflow_manager = WorkflowManager(state.store)
    state.execution_engine = ExecutionEngine(state.store, state.registry, config)

    if config.scheduler_enabled:
        state.scheduler = WorkflowScheduler(state.store, state.execution_engine, config)
        state.schedule_service = ScheduleService(state.store, state.scheduler)
    else:
        logger.info("Scheduler disabled by configuration")

    state.health_checker = build_health_checker(database_engine, state.execution_engine, state.scheduler)

    logger.info("Core components initialized")
    return state


def start_background_services(state: ApplicationState, logger) -> None:
    """Rebuild the scheduler's jobs from the stored schedules and start it."""
    if state.scheduler is None:
        return
    state.schedule_service.reconcile()
    state.scheduler.start()
    logger.info("Scheduler started with reconciled schedules")


def graceful_shutdown(state: ApplicationState, logger) -> None:
    """Handle graceful shutdown of application components."""
    logger.info(f"Shutting down {state.config.app_name if state.config else 'application'}")

    if state.scheduler is not None:
        try:
            state.scheduler.shutdown()
        except Exception as e:
            logger.error(f"Error stopping scheduler: {str(e)}")

    if state.execution_engine is not None:
        try:
            state.execution_engine.shutdown()
        except Exception as e:
            logger.error(f"Error during execution engine shutdown: {str(e)}")

    if state.registry is not None:
        state.registry.shutdown()

    if state.store is not None:
        state.store.engine.dispose()


def create_lifespan_handler(config: AppConfig):
    """Create the application lifespan handler."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger = get_logger(__name__)
        logger.info(f"Starting {config.app_name} v{config.app_version}")

        try:
            state = initialize_components(config, logger)
            init_dependencies(
                workflow_manager=state.workflow_manager,
                execution_engine=state.execution_engine,
                schedule_service=state.schedule_service,
            )
            start_background_services(state, logger)
        except Exception as e:
            logger.error(f"Application startup failed: {e}")
            raise

        app.state.components = state
        logger.info("Application startup completed successfully")

        yield

        graceful_shutdown(state, logger)

    return lifespan


def create_app(config: Optional[AppConfig] = None) -> FastAPI:
    """Create and configure FastAPI application instance."""
    if config is None:
        config = get_config()

    validate_config(config)

    setup_logging(
        level=config.log_level.value,
        log_file=config.log_file,
        log_format=config.log_format,
        structured=config.structured_logging,
        max_size=config.log_max_size,
        backup_count=config.log_backup_count
    )

    app = FastAPI(
        title=config.app_name,
        description="Workflow automation engine: design node graphs, run them on demand or on a cron schedule",
        version=config.app_version,
        debug=config.debug,
        lifespan=create_lifespan_handler(config)
    )

    if config.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.cors_origins,
            allow_credentials=True,
            allow_methods=config.cors_methods,
            allow_headers=["*"],
        )

    if config.enable_request_logging:
        from .core.middleware import ErrorHandlingMiddleware, PerformanceMonitoringMiddleware

        app.add_middleware(PerformanceMonitoringMiddleware, slow_request_threshold=config.slow_request_threshold)
        app.add_middleware(ErrorHandlingMiddleware)

    app.include_router(router)
    add_health_endpoints(app, config)

    return app


def add_health_endpoints(app: FastAPI, config: AppConfig) -> None:
    """Add health check endpoints to the application."""
    service_name = config.app_name.lower().replace(" ", "-")

    def get_health_checker() -> Optional[HealthChecker]:
        components = getattr(app.state, "components", None)
        return components.health_checker if components else None

    @app.get("/")
    async def root():
        """Root endpoint for basic health check."""
        return {"message": f"{config.app_name} is running", "version": config.app_version}

    @app.get("/health")
    async def health_check():
        """Basic health check endpoint."""
        return {
            "status": "healthy",
            "service": service_name,
            "version": config.app_version
        }

    @app.get("/health/detailed")
    async def detailed_health_check():
        """Detailed health check endpoint with component status."""
        checker = get_health_checker()
        if checker is None:
            return JSONResponse(
                status_code=503,
                content={
                    "service": service_name,
                    "overall_status": "unhealthy",
                    "error": "Application components not initialized",
                    "timestamp": datetime.utcnow().isoformat()
                }
            )

        results = await checker.run_all_checks()
        return JSONResponse(
            status_code=200 if results["overall_status"] == "healthy" else 503,
            content={"service": service_name, "version": config.app_version, **results}
        )

    @app.get("/health/ready")
    async def readiness_check():
        """Readiness check endpoint for container orchestration."""
        checker = get_health_checker()
        if checker is None:
            return JSONResponse(
                status_code=503,
                content={"ready": False, "error": "Application components not initialized",
                         "timestamp": datetime.utcnow().isoformat()}
            )

        results = await checker.run_checks(list(CRITICAL_CHECKS))
        ready = results["overall_status"] == "healthy"
        return JSONResponse(
            status_code=200 if ready else 503,
            content={"ready": ready, "checks": results["checks"], "timestamp": results["timestamp"]}
        )

    @app.get("/health/live")
    async def liveness_check():
        """Liveness check endpoint for container orchestration."""
        return {
            "alive": True,
            "timestamp": datetime.utcnow().isoformat()
        }
