"""Tests for cron parsing, the APScheduler-backed scheduler and schedule CRUD."""

import time
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest

from conftest import linear_workflow, make_node
from workflow_automation.core.exceptions import (
    InvalidCronExpressionError,
    NotFoundError,
    ResourceExhaustionError,
)
from workflow_automation.core.schedule_service import ScheduleService
from workflow_automation.core.scheduler import (
    WorkflowScheduler,
    build_cron_trigger,
    compute_next_run,
    validate_cron_expression,
)
from workflow_automation.models.core import (
    ExecutionFilter,
    ExecutionStatusEnum,
    NodeType,
    ScheduleCreate,
    ScheduleUpdate,
)

# Monday
JAN_1 = datetime(2024, 1, 1)


@pytest.fixture
def mock_engine():
    engine = MagicMock()
    engine.start_execution.return_value = "exec-123"
    return engine


@pytest.fixture
def scheduler(store, mock_engine, test_config):
    scheduler = WorkflowScheduler(store, mock_engine, test_config)
    yield scheduler
    scheduler.shutdown()


@pytest.fixture
def service(store, scheduler):
    return ScheduleService(store, scheduler)


@pytest.fixture
def workflow(store):
    return store.create_workflow(linear_workflow(make_node("t", NodeType.TRANSFORM, script="inputData")))


class TestCronExpressions:

    @pytest.mark.parametrize("expression", [
        "0 9 * * 1",
        "*/15 * * * *",
        "0 0 1 1 *",
        "0 12 ? * *",
        "30 0 9 * * mon-fri",
        "0 8 * * 1-5",
        "0 8 * * */2",
    ])
    def test_valid_expressions(self, expression):
        validate_cron_expression(expression)

    @pytest.mark.parametrize("expression", [
        "",
        "   ",
        "* * * *",
        "* * * * * * *",
        "61 * * * *",
        "* 25 * * *",
        "* * * * 8",
        "0 0 12 ? * 0",
        "0 0 12 ? * 8",
        "not a cron expression",
    ])
    def test_invalid_expressions(self, expression):
        with pytest.raises(InvalidCronExpressionError):
            validate_cron_expression(expression)

    @pytest.mark.parametrize("expression, after, expected", [
        ("0 9 * * 1", JAN_1, datetime(2024, 1, 1, 9, 0)),
        ("0 9 * * 1", datetime(2024, 1, 1, 9, 0), datetime(2024, 1, 8, 9, 0)),
        ("*/15 * * * *", datetime(2024, 1, 1, 0, 7), datetime(2024, 1, 1, 0, 15)),
        ("0 12 ? * *", JAN_1, datetime(2024, 1, 1, 12, 0)),
        ("30 * * * * *", JAN_1, datetime(2024, 1, 1, 0, 0, 30)),
        # Weekday 0 and 7 are both Sunday
        ("0 0 * * 0", JAN_1, datetime(2024, 1, 7, 0, 0)),
        ("0 0 * * 7", JAN_1, datetime(2024, 1, 7, 0, 0)),
        ("0 0 * * 6", JAN_1, datetime(2024, 1, 6, 0, 0)),
        # Seconds-first expressions number weekdays the Quartz way, 1 = Sunday
        ("0 0 12 ? * 2", datetime(2023, 12, 31), datetime(2024, 1, 1, 12, 0)),
        ("0 0 12 ? * 1", JAN_1, datetime(2024, 1, 7, 12, 0)),
        ("0 0 12 ? * 7", JAN_1, datetime(2024, 1, 6, 12, 0)),
        ("0 0 12 ? * 2-6", datetime(2024, 1, 6), datetime(2024, 1, 8, 12, 0)),
    ])
    def test_compute_next_run(self, expression, after, expected):
        assert compute_next_run(expression, after) == expected

    def test_next_run_is_naive_utc_and_in_the_future(self):
        next_run = compute_next_run("* * * * *")
        assert next_run.tzinfo is None
        assert next_run > datetime.utcnow()
        assert next_run - datetime.utcnow() <= timedelta(minutes=1)

    def test_five_field_expression_fires_on_the_minute(self):
        trigger = build_cron_trigger("*/5 * * * *")
        assert "second='0'" in str(trigger)


class TestWorkflowScheduler:

    def test_register_persists_next_run(self, scheduler, store, workflow):
        schedule = store.create_schedule(workflow.id, "0 9 * * *")

        registered = scheduler.register(schedule)

        assert registered.next_run_at is not None
        assert registered.next_run_at > datetime.utcnow()
        assert store.get_schedule(schedule.id).next_run_at == registered.next_run_at
        assert scheduler.is_registered(schedule.id)
        info = scheduler.get_job_info(schedule.id)
        assert info["name"] == f"workflow:{workflow.id}"
        assert info["pending"] is True

    def test_register_replaces_existing_job(self, scheduler, store, workflow):
        schedule = store.create_schedule(workflow.id, "0 9 * * *")
        scheduler.register(schedule)
        scheduler.register(schedule)
        assert len(scheduler.list_jobs()) == 1

    def test_register_recomputes_stale_next_run(self, scheduler, store, workflow):
        schedule = store.create_schedule(workflow.id, "0 9 * * *", next_run_at=datetime(2000, 1, 1))
        registered = scheduler.register(schedule)
        assert registered.next_run_at > datetime.utcnow()

    def test_unregister(self, scheduler, store, workflow):
        schedule = store.create_schedule(workflow.id, "0 9 * * *")
        scheduler.register(schedule)

        assert scheduler.unregister(schedule.id) is True
        assert scheduler.unregister(schedule.id) is False
        assert not scheduler.is_registered(schedule.id)
        assert scheduler.get_job_info(schedule.id) is None

    def test_fire_starts_execution_and_advances_run_times(self, scheduler, store, workflow, mock_engine):
        schedule = store.create_schedule(workflow.id, "0 9 * * *", input_data={"source": "cron"})

        assert scheduler.fire_schedule(schedule.id) == "exec-123"

        mock_engine.start_execution.assert_called_once_with(workflow.id, {"source": "cron"})
        fired = store.get_schedule(schedule.id)
        assert fired.last_run_at is not None
        assert fired.next_run_at > fired.last_run_at
        assert fired.next_run_at.hour == 9

    def test_failed_fire_leaves_run_times(self, scheduler, store, workflow, mock_engine):
        schedule = store.create_schedule(workflow.id, "0 9 * * *", next_run_at=datetime(2030, 1, 1, 9))
        mock_engine.start_execution.side_effect = ResourceExhaustionError("Execution pool is saturated")

        with pytest.raises(ResourceExhaustionError):
            scheduler.fire_schedule(schedule.id)

        unchanged = store.get_schedule(schedule.id)
        assert unchanged.last_run_at is None
        assert unchanged.next_run_at == datetime(2030, 1, 1, 9)

    def test_inactive_schedule_fire_removes_job(self, scheduler, store, workflow, mock_engine):
        schedule = store.create_schedule(workflow.id, "0 9 * * *")
        scheduler.register(schedule)
        store.update_schedule(schedule.id, is_active=False)

        assert scheduler.fire_schedule(schedule.id) is None
        mock_engine.start_execution.assert_not_called()
        assert not scheduler.is_registered(schedule.id)

    def test_running_scheduler_fires_real_executions(self, store, engine, test_config, workflow):
        scheduler = WorkflowScheduler(store, engine, test_config)
        schedule = store.create_schedule(workflow.id, "* * * * * *", input_data={"tick": True})
        scheduler.register(schedule)
        scheduler.start()
        try:
            assert scheduler.running
            deadline = time.monotonic() + 5
            executions = []
            while not executions and time.monotonic() < deadline:
                time.sleep(0.1)
                executions = engine.list_executions(ExecutionFilter(workflow_id=workflow.id))
        finally:
            scheduler.shutdown()

        assert executions
        record = engine.wait_for_execution(executions[0].id, timeout=5)
        assert record.status == ExecutionStatusEnum.COMPLETED
        assert record.input_data == {"tick": True}
        assert not scheduler.running


class TestScheduleService:

    def test_create_active_schedule_registers_job(self, service, scheduler, workflow):
        schedule = service.create_schedule(ScheduleCreate(workflow_id=workflow.id, cron_expression=" 0 9 * * 1 "))

        assert schedule.cron_expression == "0 9 * * 1"
        assert schedule.is_active
        assert schedule.next_run_at.weekday() == 0
        assert scheduler.is_registered(schedule.id)
        assert [s.id for s in service.list_schedules(workflow.id)] == [schedule.id]

    def test_create_inactive_schedule_has_no_job(self, service, scheduler, workflow):
        schedule = service.create_schedule(
            ScheduleCreate(workflow_id=workflow.id, cron_expression="0 9 * * *", is_active=False)
        )
        assert schedule.next_run_at is not None
        assert not scheduler.is_registered(schedule.id)

    def test_create_rejects_invalid_cron(self, service, store, workflow):
        with pytest.raises(InvalidCronExpressionError):
            service.create_schedule(ScheduleCreate(workflow_id=workflow.id, cron_expression="every monday"))
        assert store.list_schedules() == []

    def test_create_for_unknown_workflow(self, service):
        with pytest.raises(NotFoundError):
            service.create_schedule(ScheduleCreate(workflow_id="missing", cron_expression="0 9 * * *"))

    def test_update_recomputes_next_run(self, service, workflow):
        schedule = service.create_schedule(ScheduleCreate(workflow_id=workflow.id, cron_expression="0 9 * * *"))

        updated = service.update_schedule(schedule.id, ScheduleUpdate(cron_expression="30 17 * * *"))

        assert updated.cron_expression == "30 17 * * *"
        assert (updated.next_run_at.hour, updated.next_run_at.minute) == (17, 30)

    def test_update_input_data_only_when_given(self, service, workflow):
        schedule = service.create_schedule(ScheduleCreate(
            workflow_id=workflow.id, cron_expression="0 9 * * *", input_data={"a": 1}
        ))

        kept = service.update_schedule(schedule.id, ScheduleUpdate(cron_expression="0 10 * * *"))
        assert kept.input_data == {"a": 1}

        cleared = service.update_schedule(schedule.id, ScheduleUpdate(input_data=None))
        assert cleared.input_data is None

    def test_update_rejects_invalid_cron(self, service, workflow):
        schedule = service.create_schedule(ScheduleCreate(workflow_id=workflow.id, cron_expression="0 9 * * *"))
        with pytest.raises(InvalidCronExpressionError):
            service.update_schedule(schedule.id, ScheduleUpdate(cron_expression="0 9 * *"))
        assert service.get_schedule(schedule.id).cron_expression == "0 9 * * *"

    def test_deactivate_and_activate(self, service, scheduler, workflow):
        schedule = service.create_schedule(ScheduleCreate(workflow_id=workflow.id, cron_expression="0 9 * * *"))

        deactivated = service.deactivate_schedule(schedule.id)
        assert not deactivated.is_active
        assert not scheduler.is_registered(schedule.id)

        activated = service.activate_schedule(schedule.id)
        assert activated.is_active
        assert scheduler.is_registered(schedule.id)

    def test_update_deactivates(self, service, scheduler, workflow):
        schedule = service.create_schedule(ScheduleCreate(workflow_id=workflow.id, cron_expression="0 9 * * *"))
        service.update_schedule(schedule.id, ScheduleUpdate(is_active=False))
        assert not scheduler.is_registered(schedule.id)

    def test_delete_removes_job(self, service, scheduler, workflow):
        schedule = service.create_schedule(ScheduleCreate(workflow_id=workflow.id, cron_expression="0 9 * * *"))

        assert service.delete_schedule(schedule.id) is True
        assert not scheduler.is_registered(schedule.id)
        assert service.delete_schedule(schedule.id) is False
        with pytest.raises(NotFoundError):
            service.get_schedule(schedule.id)

    def test_reconcile_registers_active_schedules(self, store, mock_engine, test_config, workflow):
        active = store.create_schedule(workflow.id, "0 9 * * *")
        store.create_schedule(workflow.id, "0 10 * * *", is_active=False)
        broken = store.create_schedule(workflow.id, "not cron")

        # A fresh scheduler, as after a restart
        scheduler = WorkflowScheduler(store, mock_engine, test_config)
        service = ScheduleService(store, scheduler)

        assert service.reconcile() == 1
        assert scheduler.is_registered(active.id)
        assert not scheduler.is_registered(broken.id)
        assert len(scheduler.list_jobs()) == 1
