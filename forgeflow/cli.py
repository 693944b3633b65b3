"""Command line interface: serve the API or run a workflow file directly."""

import argparse
import asyncio
import json
import sys
import time
from typing import List, Optional

from pydantic import ValidationError

from .config import AppConfig, LogLevel, get_development_config, get_testing_config, load_config
from .core.exceptions import WorkflowEngineError
from .core.logging import get_logger, setup_logging
from .core.workflow_manager import validate_workflow
from .models.core import LogSeverity, RepositoryBinding, RunStatus, Workflow

# Seconds between polls of the live run log
RUN_POLL_INTERVAL = 0.2

_SEVERITY_PREFIX = {
    LogSeverity.INFO: "   ",
    LogSeverity.COMMAND: " $ ",
    LogSeverity.SUCCESS: " ✓ ",
    LogSeverity.WARN: " ! ",
    LogSeverity.ERROR: " ✗ ",
}


def create_argument_parser() -> argparse.ArgumentParser:
    """Create command line argument parser."""
    parser = argparse.ArgumentParser(
        prog="forgeflow",
        description="ForgeFlow - build, test and release local repositories from workflow graphs"
    )
    parser.add_argument("--env", choices=["development", "testing"], help="Environment configuration preset")
    parser.add_argument("--config", help="Path to a .env configuration file")
    parser.add_argument("--database-url", help="Database connection URL")
    parser.add_argument("--log-level", choices=[level.value for level in LogLevel], help="Logging level")
    parser.add_argument("--log-file", help="Path to log file")
    parser.add_argument("--debug", action="store_true", help="Enable debug mode")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API server")
    serve_parser.add_argument("--host", help="Host to bind the server to")
    serve_parser.add_argument("--port", type=int, help="Port to bind the server to")
    serve_parser.add_argument("--reload", action="store_true", help="Enable auto-reload for development")

    run_parser = subparsers.add_parser("run", help="Run a workflow document once and stream its log")
    run_parser.add_argument("workflow", help="Path to a workflow JSON document")
    run_parser.add_argument("--repo", help="Local checkout to run against (defaults to the workflow's bound repository)")
    run_parser.add_argument("--owner", help="Remote owner, needed for releases")
    run_parser.add_argument("--repo-name", help="Remote repository name, needed for releases")
    run_parser.add_argument("--branch", default="main", help="Default branch (default: main)")

    validate_parser = subparsers.add_parser("validate", help="Validate a workflow document")
    validate_parser.add_argument("workflow", help="Path to a workflow JSON document")

    db_parser = subparsers.add_parser("db", help="Database management commands")
    db_subparsers = db_parser.add_subparsers(dest="db_command", help="Database commands")
    db_subparsers.add_parser("init", help="Initialize database tables")
    db_subparsers.add_parser("reset", help="Reset database (drop and recreate tables)")

    subparsers.add_parser("health", help="Run component health checks")

    config_parser = subparsers.add_parser("config", help="Configuration management")
    config_subparsers = config_parser.add_subparsers(dest="config_command", help="Config commands")
    config_subparsers.add_parser("show", help="Show current configuration")

    return parser


def load_configuration(args: argparse.Namespace) -> AppConfig:
    """Load configuration based on command line arguments."""
    if args.env == "development":
        config = get_development_config()
    elif args.env == "testing":
        config = get_testing_config()
    else:
        config = load_config(args.config)

    if args.database_url:
        config.database_url = args.database_url
    if args.log_level:
        config.log_level = LogLevel(args.log_level)
    if args.log_file:
        config.log_file = args.log_file
    if args.debug:
        config.debug = True
    if getattr(args, "host", None):
        config.host = args.host
    if getattr(args, "port", None):
        config.port = args.port
    if getattr(args, "reload", False):
        config.reload = True
    return config


def _configure(config: AppConfig):
    from .storage.database import create_tables, get_database_engine

    setup_logging(
        level=config.log_level.value,
        log_file=config.log_file,
        log_format=config.log_format,
        structured=config.log_structured,
        max_size=config.log_max_size,
        backup_count=config.log_backup_count,
    )
    get_database_engine(config.database_url, echo=config.database_echo,
                        connect_args=config.get_database_connect_args())
    create_tables()


def read_workflow(path: str) -> Workflow:
    with open(path, "r", encoding="utf-8") as handle:
        return Workflow.model_validate(json.load(handle))


def run_server(config: AppConfig):
    """Run the HTTP API server."""
    import uvicorn
    from .factory import create_app

    get_logger(__name__).info(f"Starting server on {config.host}:{config.port}")
    uvicorn.run(create_app(config), **config.get_uvicorn_config())


def run_workflow_file(config: AppConfig, args: argparse.Namespace) -> int:
    """Run a workflow document once, printing its run log as it grows."""
    from .factory import build_components

    _configure(config)
    state = build_components(config)
    workflow = read_workflow(args.workflow)
    engine = state.execution_engine

    if args.repo:
        binding = RepositoryBinding(
            id=f"cli:{workflow.id}",
            path=args.repo,
            owner=args.owner,
            repo=args.repo_name,
            default_branch=args.branch,
            build_system=state.repositories.detector.detect(args.repo),
        )
    else:
        binding = engine.resolve_repository(workflow)

    engine.start_run(workflow, binding, trigger="cli")
    ctx = engine.current_context
    printed = 0
    try:
        while True:
            run = ctx.snapshot()
            for entry in run.logs[printed:]:
                print(f"[{entry.timestamp:%H:%M:%S}]{_SEVERITY_PREFIX[entry.level]}{entry.message}")
            printed = len(run.logs)
            if run.status.is_terminal:
                break
            time.sleep(RUN_POLL_INTERVAL)
    except KeyboardInterrupt:
        engine.cancel_current()
    finally:
        engine.wait()
        engine.shutdown()

    final = ctx.snapshot()
    for entry in final.logs[printed:]:
        print(f"[{entry.timestamp:%H:%M:%S}]{_SEVERITY_PREFIX[entry.level]}{entry.message}")
    print(f"Run {final.id}: {final.status.value} ({final.progress}%)")
    if final.released_version:
        print(f"Released version {final.released_version}")
    return 0 if final.status == RunStatus.SUCCESS else 1


def validate_workflow_file(path: str) -> int:
    workflow = read_workflow(path)
    result = validate_workflow(workflow)
    for error in result.errors:
        print(f"error: {error}")
    for warning in result.warnings:
        print(f"warning: {warning}")
    print("Workflow is valid" if result.is_valid else "Workflow is invalid")
    return 0 if result.is_valid else 1


def run_database_command(command: str, config: AppConfig) -> int:
    """Run database management commands."""
    from .storage.database import drop_tables, create_tables

    logger = get_logger(__name__)
    _configure(config)
    if command == "init":
        logger.info("Database tables created successfully")
    elif command == "reset":
        drop_tables()
        create_tables()
        logger.info("Database reset completed successfully")
    return 0


def run_health_check(config: AppConfig) -> int:
    """Run component health checks outside the server."""
    from .factory import build_components, setup_health_checks

    _configure(config)
    state = build_components(config)
    setup_health_checks(state, get_logger(__name__))
    results = asyncio.run(state.health_checker.run_all_checks())
    state.execution_engine.shutdown()

    print(f"Overall Status: {results['overall_status']}")
    for check_name, result in results.get('checks', {}).items():
        print(f"  {check_name}: {result.get('status', 'unknown')} - {result.get('message', 'No message')}")
    return 0 if results['overall_status'] == 'healthy' else 1


def show_configuration(config: AppConfig) -> int:
    print("Current Configuration:")
    for key, value in config.model_dump(mode="json").items():
        if key == "hosting_token" and value:
            value = "***"
        print(f"  {key}: {value}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the command line."""
    parser = create_argument_parser()
    args = parser.parse_args(argv)

    try:
        config = load_configuration(args)

        if args.command == "serve" or args.command is None:
            run_server(config)
            return 0
        if args.command == "run":
            return run_workflow_file(config, args)
        if args.command == "validate":
            return validate_workflow_file(args.workflow)
        if args.command == "db":
            if not args.db_command:
                print("Database command required. Use --help for options.")
                return 2
            return run_database_command(args.db_command, config)
        if args.command == "health":
            return run_health_check(config)
        if args.command == "config":
            if args.config_command == "show":
                return show_configuration(config)
            print("Configuration command required. Use --help for options.")
            return 2
        parser.print_help()
        return 2
    except (WorkflowEngineError, ValidationError, OSError, ValueError) as e:
        print(f"Error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
