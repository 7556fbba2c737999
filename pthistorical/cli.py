"""
Command line interface for running one historical job end to end.

Usage:
    python main.py config.yaml jobDescriptions/MyJob.yaml
    python main.py config.yaml jobDescriptions/MyJob.yaml --no-accept
    python main.py config.yaml jobDescriptions/MyJob.yaml --reject
"""

import argparse
import logging
import signal
import sys
from pathlib import Path
from types import TracebackType
from typing import List, Optional, Type

from ._version import __version__
from .config import ConfigManager
from .exceptions import (
    AcceptanceError, ConfigurationError, HistoricalJobError, OrchestrationCancelled,
)
from .jobs import load_job_description
from .logging_config import setup_logging
from .orchestrator import JobOrchestrator

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_AWAITING_ACCEPTANCE = 2
EXIT_CANCELLED = 130

logger = logging.getLogger(__name__)


def handle_exception(exc_type: Type[BaseException], exc_value: BaseException, exc_traceback: TracebackType):
    """Logs unhandled exceptions from synchronous code."""
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_traceback)
        return
    logging.getLogger().critical("Unhandled exception:", exc_info=(exc_type, exc_value, exc_traceback))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='pt-historical',
        description='Submit, accept, monitor and download a Historical PowerTrack job.',
    )
    parser.add_argument('config', type=Path, help='Account configuration file (YAML or JSON)')
    parser.add_argument('job_description', type=Path, help='Job description file (YAML)')
    decision = parser.add_mutually_exclusive_group()
    decision.add_argument('--no-accept', action='store_true', help='Stop at the quote instead of accepting it')
    decision.add_argument('--reject', action='store_true', help='Reject the quote instead of accepting it')
    parser.add_argument('--output', type=Path, default=None, help='Override base_output_folder')
    parser.add_argument('--log-level', default=None, help='Override the file log level')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    # 1. Load configuration before setting up logging
    overrides = {
        'base_output_folder': args.output,
        'log_level': args.log_level,
        'auto_accept': False if (args.no_accept or args.reject) else None,
    }
    try:
        settings = ConfigManager(args.config).load(overrides)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_ERROR

    # 2. Use the configured log level for file logging
    setup_logging(settings.log_level, settings.log_dir)
    sys.excepthook = handle_exception

    try:
        job = load_job_description(args.job_description)
    except ConfigurationError as e:
        logger.error(f"Job description error: {e}")
        return EXIT_ERROR

    orchestrator = JobOrchestrator(settings, job)
    signal.signal(signal.SIGTERM, lambda signum, frame: orchestrator.cancel())

    try:
        outcome = orchestrator.manage()
        if args.reject and outcome.needs_acceptance:
            orchestrator.reject()
            logger.info(f"Job {job.identifier} rejected on request.")
            return EXIT_OK
    except (OrchestrationCancelled, KeyboardInterrupt):
        logger.info("Run interrupted by user.")
        return EXIT_CANCELLED
    except AcceptanceError as e:
        logger.error(str(e))
        return EXIT_AWAITING_ACCEPTANCE
    except HistoricalJobError as e:
        logger.error(f"ERROR occurred with your Historical Job request: {e}")
        return EXIT_ERROR
    finally:
        orchestrator.transport.close()

    if outcome.needs_acceptance:
        logger.info(f"Job {outcome.identifier} is quoted and awaiting acceptance. Re-run to continue.")
        return EXIT_AWAITING_ACCEPTANCE
    if outcome.finished:
        report = outcome.download_report
        logger.info(
            f"--- Job {outcome.identifier} complete: {len(report.written)}/{report.total} file(s) in {outcome.output_folder} ---"
        )
        return EXIT_ERROR if report.failures else EXIT_OK
    logger.info(f"Job {outcome.identifier} ended as {outcome.status.name}.")
    return EXIT_OK
