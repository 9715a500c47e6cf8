"""Schedule CRUD that keeps the live scheduler jobs in step with the store."""

from datetime import datetime
from typing import List, Optional

from ..models.core import ScheduleCreate, ScheduledWorkflow, ScheduleUpdate
from ..storage.repository import WorkflowStore
from .logging import get_logger
from .scheduler import WorkflowScheduler, compute_next_run, validate_cron_expression

logger = get_logger(__name__)


class ScheduleService:
    """Owns every change to schedules.

    Each create, update and delete adds, replaces or removes the schedule's
    job before returning, so the live jobs always mirror the active
    schedules in the store.
    """

    def __init__(self, store: WorkflowStore, scheduler: WorkflowScheduler):
        self.store = store
        self.scheduler = scheduler

    def reconcile(self) -> int:
        """
        Register a job for every active schedule. Called once at startup.

        A schedule whose job cannot be registered is logged and skipped.

        Returns:
            Number of schedules registered
        """
        registered = 0
        for schedule in self.store.list_active_schedules():
            try:
                self.scheduler.register(schedule)
                registered += 1
            except Exception as e:
                logger.error(f"Failed to register schedule {schedule.id}: {str(e)}")
        logger.info(f"Reconciled {registered} active schedules")
        return registered

    def create_schedule(self, request: ScheduleCreate) -> ScheduledWorkflow:
        """
        Create a schedule and register its job when active.

        Raises:
            InvalidCronExpressionError: If the cron expression is invalid
            NotFoundError: If the workflow does not exist
        """
        validate_cron_expression(request.cron_expression)
        next_run_at = compute_next_run(request.cron_expression, datetime.utcnow(), self.scheduler.timezone)

        schedule = self.store.create_schedule(
            workflow_id=request.workflow_id,
            cron_expression=request.cron_expression,
            is_active=request.is_active,
            input_data=request.input_data,
            next_run_at=next_run_at,
        )
        if schedule.is_active:
            schedule = self.scheduler.register(schedule)

        logger.info(f"Created schedule {schedule.id} for workflow {schedule.workflow_id}")
        return schedule

    def update_schedule(self, schedule_id: str, update: ScheduleUpdate) -> ScheduledWorkflow:
        """
        Update a schedule, recompute its next run and replace or remove its job.

        Raises:
            InvalidCronExpressionError: If the new cron expression is invalid
            NotFoundError: If the schedule or the new workflow does not exist
        """
        current = self.store.get_schedule(schedule_id)
        cron_expression = update.cron_expression or current.cron_expression
        validate_cron_expression(cron_expression)

        fields = update.model_dump(exclude_unset=True)
        changes = {}
        if "input_data" in fields:
            changes["input_data"] = update.input_data

        schedule = self.store.update_schedule(
            schedule_id,
            workflow_id=update.workflow_id,
            cron_expression=update.cron_expression,
            is_active=update.is_active,
            next_run_at=compute_next_run(cron_expression, datetime.utcnow(), self.scheduler.timezone),
            **changes,
        )
        return self._sync(schedule)

    def delete_schedule(self, schedule_id: str) -> bool:
        self.scheduler.unregister(schedule_id)
        return self.store.delete_schedule(schedule_id)

    def activate_schedule(self, schedule_id: str) -> ScheduledWorkflow:
        """
        Raises:
            NotFoundError: If the schedule does not exist
        """
        current = self.store.get_schedule(schedule_id)
        schedule = self.store.update_schedule(
            schedule_id,
            is_active=True,
            next_run_at=compute_next_run(current.cron_expression, datetime.utcnow(), self.scheduler.timezone),
        )
        return self._sync(schedule)

    def deactivate_schedule(self, schedule_id: str) -> ScheduledWorkflow:
        """
        Raises:
            NotFoundError: If the schedule does not exist
        """
        schedule = self.store.update_schedule(schedule_id, is_active=False)
        return self._sync(schedule)

    def get_schedule(self, schedule_id: str) -> ScheduledWorkflow:
        return self.store.get_schedule(schedule_id)

    def list_schedules(self, workflow_id: Optional[str] = None) -> List[ScheduledWorkflow]:
        return self.store.list_schedules(workflow_id=workflow_id)

    def _sync(self, schedule: ScheduledWorkflow) -> ScheduledWorkflow:
        if schedule.is_active:
            return self.scheduler.register(schedule)
        self.scheduler.unregister(schedule.id)
        return schedule
