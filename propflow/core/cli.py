# propflow/core/cli.py
"""
CLI for running the batch loop, single batches, the HTTP API and operator
actions against a propflow app.

Apps are located like ``propflow worker myproject.agents:app``; the user is
responsible for PYTHONPATH, with cwd added when it holds a pyproject.toml.
"""

import argparse
import asyncio
import importlib
import json
import logging
import os
import signal
from dataclasses import asdict
import sys
from typing import Any, Awaitable, Callable

from dotenv import load_dotenv

from propflow.core.app import Propflow
from propflow.core.engine.governor import GovernorPatch
from propflow.core.errors import (
    ConfigurationError,
    EngineError,
    ErrorCode,
    PropflowError,
    ValidationReport,
)
from propflow.core.logging import get_logger, set_default_level
from propflow.core.scheduler import BatchScheduler
from propflow.core.utils.backoff import RetryBackoff
from propflow.core.utils.db import is_retryable_connection_error
from propflow.core.utils.imports import import_file_path, setup_sys_path_from_cwd

LOG_LEVELS = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']


def _parse_locator(locator: str) -> tuple[str, str | None]:
    """'pkg.mod:app' -> ('pkg.mod', 'app'); 'pkg.mod' -> ('pkg.mod', None)."""
    if ':' in locator:
        module_part, attr = locator.rsplit(':', 1)
        return module_part, attr
    return locator, None


def _is_file_path(path: str) -> bool:
    return path.endswith('.py') or os.path.sep in path or '/' in path


def discover_app(module_locator: str) -> Propflow:
    """Import the module named by the locator and return its Propflow instance."""
    logger = get_logger('cli')
    setup_sys_path_from_cwd()
    module_path, attr_name = _parse_locator(module_locator)

    if _is_file_path(module_path):
        if not module_path.endswith('.py'):
            module_path += '.py'
        module = import_file_path(module_path)
    else:
        try:
            module = importlib.import_module(module_path)
        except ModuleNotFoundError as e:
            raise ConfigurationError(
                message=f'module not found: {module_path}',
                code=ErrorCode.CLI_INVALID_ARGS,
                notes=[str(e), f'sys.path: {sys.path[:5]}...'],
                help_text=(
                    'ensure you are running from the correct directory\n'
                    'or set PYTHONPATH to include your project root'
                ),
            )

    if attr_name:
        obj = getattr(module, attr_name, None)
        if not isinstance(obj, Propflow):
            raise ConfigurationError(
                message=f"'{attr_name}' in '{module_path}' is not a Propflow instance",
                code=ErrorCode.CLI_INVALID_ARGS,
                notes=[f'got {type(obj).__name__}'],
            )
        app = obj
    else:
        found = [
            (name, obj)
            for name, obj in vars(module).items()
            if not name.startswith('_') and isinstance(obj, Propflow)
        ]
        if len(found) != 1:
            raise ConfigurationError(
                message=f'expected exactly one Propflow instance in {module_path}, found {len(found)}',
                code=ErrorCode.CLI_INVALID_ARGS,
                help_text='name it explicitly: module.path:variable',
            )
        attr_name, app = found[0]

    logger.info(f"Discovered propflow app '{attr_name}' from {module_path}")
    return app


def setup_logging(loglevel: str) -> None:
    set_default_level(getattr(logging, loglevel.upper(), logging.INFO))


async def _startup_with_retry(app: Propflow) -> None:
    """Create the schema, retrying while the database is still coming up."""
    logger = get_logger('cli')
    cfg = app.config.scheduler
    backoff = RetryBackoff(
        initial_ms=cfg.db_retry_initial_ms,
        max_ms=cfg.db_retry_max_ms,
        max_attempts=cfg.db_retry_max_attempts or 10,
    )
    while True:
        try:
            await app.startup()
            return
        except Exception as e:
            if not is_retryable_connection_error(e) or not backoff.can_retry():
                raise
            delay = backoff.next_delay_seconds()
            logger.warning(f'Database not ready (attempt {backoff.attempts}), retrying in {delay:.1f}s')
            await asyncio.sleep(delay)


def _load(args: argparse.Namespace) -> Propflow:
    setup_logging(args.loglevel)
    try:
        return discover_app(args.app)
    except PropflowError as e:
        print(e.format_rust_style(), file=sys.stderr)
        sys.exit(1)


def _run_once(app: Propflow, action: Callable[[Propflow], Awaitable[Any]]) -> None:
    """Run one async operator action, print its JSON result and exit non-zero on failure."""

    async def _main() -> Any:
        try:
            await _startup_with_retry(app)
            return await action(app)
        finally:
            await app.close()

    try:
        result = asyncio.run(_main())
    except EngineError as e:
        print(json.dumps({'error': e.message}), file=sys.stderr)
        sys.exit(1)
    print(json.dumps(result, indent=2, default=str))


def worker_command(args: argparse.Namespace) -> None:
    logger = get_logger('cli')
    app = _load(args)

    async def run_scheduler() -> None:
        await _startup_with_retry(app)
        scheduler = BatchScheduler(app)
        loop = asyncio.get_running_loop()

        def signal_handler() -> None:
            logger.info('Received interrupt signal, stopping...')
            scheduler.request_stop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, signal_handler)
            except NotImplementedError:
                pass

        await scheduler.run_forever()

    app.config.log_config(logger)
    try:
        asyncio.run(run_scheduler())
    except KeyboardInterrupt:
        logger.info('Worker interrupted by user')
    except Exception as e:
        logger.error(f'Worker failed: {e}', exc_info=True)
        sys.exit(1)


def tick_command(args: argparse.Namespace) -> None:
    app = _load(args)

    async def action(app: Propflow) -> Any:
        batch = await app.dispatcher.process_queue_batch(args.limit)
        evaluation = await app.governor.evaluate_and_auto_pause()
        return {'batch': batch.to_json(), 'governor': asdict(evaluation)}

    _run_once(app, action)


def governor_command(args: argparse.Namespace) -> None:
    app = _load(args)

    async def action(app: Propflow) -> Any:
        if args.evaluate:
            return asdict(await app.governor.evaluate_and_auto_pause())
        patch = GovernorPatch(
            kill_switch=args.kill_switch,
            reason=args.reason,
            auto_pause_minutes=args.pause_minutes,
        )
        if patch.model_dump(exclude_none=True):
            return (await app.governor.update_state(patch)).to_json()
        return (await app.governor.get_state()).to_json()

    _run_once(app, action)


def dlq_command(args: argparse.Namespace) -> None:
    app = _load(args)

    async def action(app: Propflow) -> Any:
        if args.replay:
            return (await app.retry.replay(args.replay)).to_json()
        return [r.to_json() for r in await app.retry.list_dead_letters(args.limit)]

    _run_once(app, action)


def serve_command(args: argparse.Namespace) -> None:
    import uvicorn

    from propflow.api import create_api

    app = _load(args)
    uvicorn.run(create_api(app), host=args.host, port=args.port, log_level=args.loglevel.lower())


def check_command(args: argparse.Namespace) -> None:
    app = _load(args)
    errors = app.check(live=args.live)
    if errors:
        report = ValidationReport('check')
        for error in errors:
            report.add(error)
        print(report.format_rust_style(), file=sys.stderr)
        sys.exit(1)
    print(f'ok: all validations passed\n  {len(app.list_workflows())} workflow handler(s) registered')


def _on_off(value: str) -> bool:
    match value.lower():
        case 'on' | 'true' | '1':
            return True
        case 'off' | 'false' | '0':
            return False
        case _:
            raise argparse.ArgumentTypeError(f'expected on/off, got {value!r}')


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='propflow',
        description='propflow agent orchestration - batch loop, API and operator tools',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  propflow worker myproject.agents:app
  propflow tick myproject.agents:app --limit 50
  propflow governor myproject.agents:app --kill-switch on --reason "vendor outage"
  propflow dlq myproject.agents:app --replay 7d0c...
  propflow serve myproject.agents:app --port 8080
  propflow check myproject.agents:app --live
""",
    )
    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    def add_command(name: str, help_text: str, default_level: str = 'INFO') -> argparse.ArgumentParser:
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument('app', help='App locator (e.g., myproject.agents:app)')
        sub.add_argument(
            '--loglevel',
            choices=LOG_LEVELS,
            default=default_level,
            type=str.upper,
            help=f'Logging level (default: {default_level})',
        )
        return sub

    add_command('worker', 'Run dispatch batches and governor evaluations until stopped')

    tick = add_command('tick', 'Run one batch and one governor evaluation')
    tick.add_argument('--limit', type=int, default=None, help='Max runs in the batch (1-100)')

    governor = add_command('governor', 'Show or change the safety governor', 'WARNING')
    governor.add_argument('--kill-switch', type=_on_off, default=None, help='on/off')
    governor.add_argument('--reason', default=None)
    governor.add_argument(
        '--pause-minutes', type=int, default=None, help='Pause autonomy for N minutes; 0 clears'
    )
    governor.add_argument('--evaluate', action='store_true', help='Evaluate and auto-pause now')

    dlq = add_command('dlq', 'List dead-lettered runs or replay one', 'WARNING')
    dlq.add_argument('--limit', type=int, default=100)
    dlq.add_argument('--replay', metavar='RUN_ID', default=None)

    serve = add_command('serve', 'Serve the HTTP API with uvicorn')
    serve.add_argument('--host', default='127.0.0.1')
    serve.add_argument('--port', type=int, default=8000)

    check = add_command('check', 'Validate the app without starting services', 'WARNING')
    check.add_argument('--live', action='store_true', help='Also check database connectivity')

    return parser


def main() -> None:
    load_dotenv()
    parser = build_parser()
    args = parser.parse_args()

    match args.command:
        case 'worker':
            worker_command(args)
        case 'tick':
            tick_command(args)
        case 'governor':
            governor_command(args)
        case 'dlq':
            dlq_command(args)
        case 'serve':
            serve_command(args)
        case 'check':
            check_command(args)
        case _:
            parser.print_help()
            sys.exit(1)


if __name__ == '__main__':
    main()
