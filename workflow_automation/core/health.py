"""Health checks for the database, the execution pool and the scheduler."""

import asyncio
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.engine import Engine

from ..storage.database import check_database_connection
from .logging import get_logger

CRITICAL_CHECKS = ("database", "execution_pool")


class HealthChecker:
    """Health checker for system components."""

    def __init__(self):
        self.checks: Dict[str, Dict[str, Any]] = {}
        self.last_results: Dict[str, Dict[str, Any]] = {}
        self.logger = get_logger("health_checker")

    def register_check(self, name: str, check_func: Callable, timeout: float = 5.0):
        """Register a health check function.

        The function returns a message or a dict of extra fields when healthy
        and raises when not.
        """
        self.checks[name] = {
            "func": check_func,
            "timeout": timeout
        }
        self.logger.debug(f"Registered health check: {name}")

    async def run_check(self, name: str) -> Dict[str, Any]:
        """Run a specific health check."""
        if name not in self.checks:
            return {
                "status": "error",
                "message": f"Health check '{name}' not found",
                "timestamp": datetime.utcnow().isoformat()
            }

        check_info = self.checks[name]
        start_time = time.time()

        try:
            if asyncio.iscoroutinefunction(check_info["func"]):
                result = await asyncio.wait_for(check_info["func"](), timeout=check_info["timeout"])
            else:
                result = await asyncio.wait_for(asyncio.to_thread(check_info["func"]), timeout=check_info["timeout"])

            check_result = {
                "status": "healthy",
                "message": result if isinstance(result, str) else "Check passed",
                "duration_ms": round((time.time() - start_time) * 1000, 2),
                "timestamp": datetime.utcnow().isoformat()
            }
            if isinstance(result, dict):
                check_result.update(result)

        except asyncio.TimeoutError:
            check_result = {
                "status": "timeout",
                "message": f"Health check timed out after {check_info['timeout']}s",
                "duration_ms": round((time.time() - start_time) * 1000, 2),
                "timestamp": datetime.utcnow().isoformat()
            }

        except Exception as e:
            self.logger.warning(f"Health check '{name}' failed: {str(e)}")
            check_result = {
                "status": "unhealthy",
                "message": str(e),
                "error_type": type(e).__name__,
                "duration_ms": round((time.time() - start_time) * 1000, 2),
                "timestamp": datetime.utcnow().isoformat()
            }

        self.last_results[name] = check_result
        return check_result

    async def run_checks(self, names: Optional[List[str]] = None) -> Dict[str, Any]:
        """Run the named checks (all registered checks by default)."""
        results = {}
        overall_status = "healthy"

        for name in names if names is not None else list(self.checks):
            if name not in self.checks:
                continue
            result = await self.run_check(name)
            results[name] = result
            if result["status"] != "healthy":
                overall_status = "unhealthy"

        return {
            "overall_status": overall_status,
            "checks": results,
            "timestamp": datetime.utcnow().isoformat()
        }

    async def run_all_checks(self) -> Dict[str, Any]:
        return await self.run_checks()

    def get_last_results(self) -> Dict[str, Any]:
        return {
            "checks": self.last_results,
            "timestamp": datetime.utcnow().isoformat()
        }


def build_health_checker(database_engine: Optional[Engine], execution_engine, scheduler=None) -> HealthChecker:
    """Register the database, execution pool and scheduler checks."""
    checker = HealthChecker()

    def check_database():
        if not check_database_connection(database_engine):
            raise RuntimeError("Database connection failed")
        return {"message": "Database connection successful"}

    def check_execution_pool():
        status = execution_engine.get_pool_status()
        if status.saturation >= 1.0:
            raise RuntimeError(
                f"Execution pool saturated: {status.active} running, {status.queued} queued "
                f"of {status.capacity}"
            )
        return {"message": "Execution pool accepting work", **status.model_dump()}

    def check_scheduler():
        if scheduler is None:
            return {"message": "Scheduler disabled"}
        if not scheduler.running:
            raise RuntimeError("Scheduler is not running")
        return {"message": "Scheduler running", "jobs": len(scheduler.list_jobs())}

    checker.register_check("database", check_database, timeout=5.0)
    checker.register_check("execution_pool", check_execution_pool, timeout=2.0)
    checker.register_check("scheduler", check_scheduler, timeout=2.0)
    return checker
