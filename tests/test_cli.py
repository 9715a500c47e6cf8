"""Tests for the command line interface."""

from sqlalchemy import create_engine, inspect

from workflow_automation.config import AdmissionPolicy
from workflow_automation.startup import create_argument_parser, load_configuration, main


def test_overrides_are_applied(temp_db_path):
    args = create_argument_parser().parse_args([
        "--env", "testing",
        "--database-url", f"sqlite:///{temp_db_path}",
        "--max-concurrent-executions", "7",
        "--admission-policy", "wait",
        "--no-scheduler",
        "config", "show",
    ])

    config = load_configuration(args)

    assert config.database_url == f"sqlite:///{temp_db_path}"
    assert config.max_concurrent_executions == 7
    assert config.admission_policy == AdmissionPolicy.WAIT
    assert config.scheduler_enabled is False


def test_config_show(capsys):
    assert main(["--env", "testing", "config", "show"]) == 0
    output = capsys.readouterr().out
    assert "Max Concurrent Executions: 2" in output
    assert "Scheduler Enabled: False" in output


def test_config_validate(capsys):
    assert main(["--env", "testing", "config", "validate"]) == 0
    assert "PASSED" in capsys.readouterr().out


def test_db_init_and_reset(temp_db_path):
    url = f"sqlite:///{temp_db_path}"

    assert main(["--env", "testing", "--database-url", url, "db", "init"]) == 0
    engine = create_engine(url)
    try:
        tables = set(inspect(engine).get_table_names())
    finally:
        engine.dispose()
    assert {"workflows", "workflow_executions", "execution_logs", "scheduled_workflows"} <= tables

    assert main(["--env", "testing", "--database-url", url, "db", "reset"]) == 0


def test_health_command(temp_db_path, capsys):
    assert main(["--env", "testing", "--database-url", f"sqlite:///{temp_db_path}", "health"]) == 0
    output = capsys.readouterr().out
    assert "Overall Status: healthy" in output
    assert "execution_pool: healthy" in output
