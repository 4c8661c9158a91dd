#!/usr/bin/env python3
"""
CLI entry point for AzOps discovery.

Usage:
    # Discover the whole tenant (root group from AZOPS_ROOT_MANAGEMENT_GROUP or the tenant id):
    python -m azops_discovery --state-dir ./azops

    # Discover one subscription without resource groups:
    python -m azops_discovery --scope /subscriptions/<id> --skip-resource-group

Or with environment variables in .env file:
    python -m azops_discovery
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from . import __version__
from .arm_client import ArmClientError
from .config import DiscoveryConfig
from .logging_config import setup_structured_logging
from .orchestrator import run_discovery
from .retry import DiscoveryCancelled, RetryExhaustedError
from .scope import ScopeValidationError

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_PARTIAL = 2
EXIT_INTERRUPTED = 130


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="azops_discovery",
        description="Discover an Azure hierarchy and export it as AzOps state records",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables (can be set in .env):
  AZURE_ACCESS_TOKEN              Bearer token for management.azure.com
  AZURE_ARM_ENDPOINT              ARM endpoint (default: https://management.azure.com)
  AZOPS_STATE                     State directory (default: ./azops)
  AZOPS_ROOT_MANAGEMENT_GROUP     Root of the cached hierarchy and default scope
  AZOPS_THROTTLE_LIMIT            Concurrent resource group discoveries (default: 5)
  AZOPS_MG_CONCURRENCY            Concurrent management group children (default: 1)
  AZOPS_SKIP_POLICY               Skip policy discovery (true/false)
  AZOPS_SKIP_RESOURCE_GROUP       Stop at subscriptions (true/false)
  AZOPS_RETRY_ATTEMPTS            Attempts for flaky list calls (default: 10)
  AZOPS_FAIL_ON_ERROR             Exit 2 when any error was reported (default: true)

Exit codes:
  0  discovery completed without reported errors
  1  configuration, scope or bootstrap failure
  2  discovery completed with reported errors (state has gaps)
  130 interrupted
        """,
    )

    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    parser.add_argument(
        "--scope",
        metavar="ID",
        action="append",
        dest="scopes",
        help="Scope to discover (repeatable), e.g. /subscriptions/<id>",
    )
    parser.add_argument(
        "--state-dir",
        metavar="DIR",
        type=Path,
        help="Directory for state records (default: ./azops)",
    )
    parser.add_argument("--skip-policy", action="store_true", help="Do not discover policy artifacts")
    parser.add_argument(
        "--skip-resource-group",
        action="store_true",
        help="Do not discover resource groups and resources",
    )
    parser.add_argument("--rebuild", action="store_true", help="Clear existing state before discovery")
    parser.add_argument(
        "--throttle-limit",
        metavar="N",
        type=int,
        help="Concurrent resource group discoveries per subscription",
    )
    parser.add_argument("--metrics-file", metavar="FILE", help="Write Prometheus metrics to FILE")

    # Logging
    parser.add_argument("--json-logs", action="store_true", help="Log as JSON lines")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose (debug) logging")
    parser.add_argument("-q", "--quiet", action="store_true", help="Suppress all output except errors")

    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    if args.quiet:
        log_level = logging.ERROR
    elif args.verbose:
        log_level = logging.DEBUG
    else:
        log_level = logging.INFO

    setup_structured_logging(level=log_level, json_format=args.json_logs)
    logger = logging.getLogger("azops_discovery")

    try:
        config = DiscoveryConfig.from_env(
            state_dir=str(args.state_dir) if args.state_dir else None,
            skip_policy=True if args.skip_policy else None,
            skip_resource_group=True if args.skip_resource_group else None,
            rebuild=True if args.rebuild else None,
            throttle_limit=args.throttle_limit,
            metrics_file=args.metrics_file,
            log_format="json" if args.json_logs else None,
        )
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        logger.error("Please provide required settings via CLI arguments or .env file")
        return EXIT_FAILED

    # LOG_LEVEL applies unless -v or -q was given
    if not (args.verbose or args.quiet):
        log_level = logging.getLevelName(config.log_level.upper())
        if not isinstance(log_level, int):
            log_level = logging.INFO
    setup_structured_logging(level=log_level, json_format=config.log_format == "json")

    try:
        report = run_discovery(config, scope_ids=args.scopes)

    except ScopeValidationError as e:
        logger.error(f"Invalid scope: {e}")
        return EXIT_FAILED

    except (KeyboardInterrupt, DiscoveryCancelled):
        logger.warning("Discovery interrupted by user")
        return EXIT_INTERRUPTED

    except (ArmClientError, RetryExhaustedError, ValueError) as e:
        logger.error(f"Discovery failed: {e}")
        return EXIT_FAILED

    except Exception as e:
        logger.exception(f"Discovery failed: {e}")
        return EXIT_FAILED

    if report.has_errors:
        logger.error(f"Discovery completed with {len(report.errors)} errors; state has gaps")
        for issue in report.errors:
            logger.error(f"  [{issue.step}] {issue.scope}: {issue.message}")
        if config.fail_on_error:
            return EXIT_PARTIAL

    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
