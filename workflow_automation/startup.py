"""Application startup script and CLI interface."""

import argparse
import asyncio
import sys

from .config import (
    AdmissionPolicy,
    AppConfig,
    PRESETS,
    LogLevel,
    get_preset_config,
    load_config,
    validate_config,
)
from .core.logging import get_logger, setup_logging


def create_argument_parser() -> argparse.ArgumentParser:
    """Create command line argument parser."""
    parser = argparse.ArgumentParser(
        prog="workflow-automation",
        description="Workflow Automation - run node-graph workflows on demand or on a cron schedule"
    )

    # Server configuration
    parser.add_argument("--host", help="Host to bind the server to (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, help="Port to bind the server to (default: 8000)")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload for development")

    # Environment configuration
    parser.add_argument(
        "--env",
        choices=sorted(PRESETS),
        help="Environment configuration preset"
    )
    parser.add_argument("--config", help="Path to a .env configuration file")

    # Database configuration
    parser.add_argument("--database-url", help="Database connection URL")

    # Logging configuration
    parser.add_argument(
        "--log-level",
        choices=[level.value for level in LogLevel],
        help="Logging level"
    )
    parser.add_argument("--log-file", help="Path to log file")
    parser.add_argument("--debug", action="store_true", help="Enable debug mode")

    # Execution pool configuration
    parser.add_argument(
        "--max-concurrent-executions",
        type=int,
        help="Number of workers running workflow executions"
    )
    parser.add_argument(
        "--admission-policy",
        choices=[policy.value for policy in AdmissionPolicy],
        help="What to do when the execution pool is saturated"
    )
    parser.add_argument("--no-scheduler", action="store_true", help="Do not start the cron scheduler")

    # Commands
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("run", help="Run the workflow automation server")

    db_parser = subparsers.add_parser("db", help="Database management commands")
    db_subparsers = db_parser.add_subparsers(dest="db_command", help="Database commands")
    db_subparsers.add_parser("init", help="Initialize database tables")
    db_subparsers.add_parser("reset", help="Reset database (drop and recreate tables)")

    subparsers.add_parser("health", help="Run health checks")

    config_parser = subparsers.add_parser("config", help="Configuration management")
    config_subparsers = config_parser.add_subparsers(dest="config_command", help="Config commands")
    config_subparsers.add_parser("show", help="Show current configuration")
    config_subparsers.add_parser("validate", help="Validate configuration")

    return parser


def load_configuration(args: argparse.Namespace) -> AppConfig:
    """Load configuration based on command line arguments."""
    config = get_preset_config(args.env) if args.env else load_config(args.config)

    overrides = {}
    if args.host:
        overrides["host"] = args.host
    if args.port:
        overrides["port"] = args.port
    if args.reload:
        overrides["reload"] = True
    if args.database_url:
        overrides["database_url"] = args.database_url
    if args.log_level:
        overrides["log_level"] = LogLevel(args.log_level)
    if args.log_file:
        overrides["log_file"] = args.log_file
    if args.debug:
        overrides["debug"] = True
    if args.max_concurrent_executions:
        overrides["max_concurrent_executions"] = args.max_concurrent_executions
    if args.admission_policy:
        overrides["admission_policy"] = AdmissionPolicy(args.admission_policy)
    if args.no_scheduler:
        overrides["scheduler_enabled"] = False

    if not overrides:
        return config
    # Re-run field validators on the overridden values
    return AppConfig(**{**config.model_dump(), **overrides})


def run_server(config: AppConfig):
    """Run the workflow automation server."""
    import uvicorn
    from .factory import create_app

    app = create_app(config)
    uvicorn.run(app, **config.get_uvicorn_config())


def run_database_command(command: str, config: AppConfig):
    """Run database management commands."""
    from .storage.database import create_database_engine, create_tables, drop_tables

    logger = get_logger(__name__)
    engine = create_database_engine(config.database_url, echo=config.database_echo)

    try:
        if command == "init":
            logger.info("Initializing database tables...")
            create_tables(engine)
            print("Database tables created successfully")

        elif command == "reset":
            logger.info("Resetting database...")
            drop_tables(engine)
            create_tables(engine)
            print("Database reset completed successfully")
    finally:
        engine.dispose()


def run_health_check(config: AppConfig) -> int:
    """Run the component health checks once and print the results."""
    from .factory import graceful_shutdown, initialize_components

    logger = get_logger(__name__)
    state = initialize_components(config, logger)
    try:
        results = asyncio.run(state.health_checker.run_all_checks())
    finally:
        graceful_shutdown(state, logger)

    print(f"Overall Status: {results['overall_status']}")
    print(f"Timestamp: {results['timestamp']}")
    for check_name, result in results.get("checks", {}).items():
        print(f"  {check_name}: {result.get('status', 'unknown')} - {result.get('message', 'No message')}")

    return 0 if results["overall_status"] == "healthy" else 1


def show_configuration(config: AppConfig):
    """Show current configuration."""
    print("Current Configuration:")
    print(f"  App Name: {config.app_name}")
    print(f"  Version: {config.app_version}")
    print(f"  Debug: {config.debug}")
    print(f"  Host: {config.host}")
    print(f"  Port: {config.port}")
    print(f"  Database URL: {config.database_url}")
    print(f"  Log Level: {config.log_level.value}")
    print(f"  Max Concurrent Executions: {config.max_concurrent_executions}")
    print(f"  Execution Queue Size: {config.execution_queue_size}")
    print(f"  Admission Policy: {config.admission_policy.value}")
    print(f"  Scheduler Enabled: {config.scheduler_enabled}")
    print(f"  Scheduler Timezone: {config.scheduler_timezone}")


def validate_configuration_command(config: AppConfig) -> int:
    """Validate configuration and show results."""
    try:
        validate_config(config)
    except ValueError as e:
        print("Configuration validation: FAILED")
        print(f"Error: {e}")
        return 1
    print("Configuration validation: PASSED")
    print("All configuration settings are valid.")
    return 0


def main(argv=None) -> int:
    """Main entry point for the application."""
    parser = create_argument_parser()
    args = parser.parse_args(argv)

    try:
        config = load_configuration(args)
    except ValueError as e:
        print(f"Error: {e}")
        return 1

    setup_logging(
        level=config.log_level.value,
        log_file=config.log_file,
        log_format=config.log_format,
        structured=config.structured_logging
    )

    try:
        if args.command == "config":
            if args.config_command == "show":
                show_configuration(config)
                return 0
            if args.config_command == "validate":
                return validate_configuration_command(config)
            print("Configuration command required. Use --help for options.")
            return 1

        validate_config(config)

        if args.command == "run" or args.command is None:
            run_server(config)
            return 0

        if args.command == "db":
            if not args.db_command:
                print("Database command required. Use --help for options.")
                return 1
            run_database_command(args.db_command, config)
            return 0

        if args.command == "health":
            return run_health_check(config)

        parser.print_help()
        return 1

    except Exception as e:
        print(f"Error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
