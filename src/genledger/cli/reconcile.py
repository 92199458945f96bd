"""CLI command for running one reconciliation pass outside the server.

Usage:
    python -m genledger.cli [OPTIONS]

Examples:
    # Submit created jobs, poll pending jobs, expire stale jobs and payments
    python -m genledger.cli

    # Only expire stale jobs and overdue payment intents (no provider calls)
    python -m genledger.cli --expire-only

    # Verbose logging
    python -m genledger.cli -v
"""

import asyncio
import sys
from argparse import ArgumentParser, Namespace
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

import structlog

from genledger.core import timezone  # noqa: F401
from genledger.core.config import Settings, configure_logging
from genledger.core.database import setup_db_session
from genledger.services.billing.payment_reconciler import PaymentReconciler
from genledger.services.image_generation.kie_client import KieClient
from genledger.services.image_generation.provider import ProviderGateway
from genledger.services.jobs.reconciler import JobReconciler, ReconcileSummary
from genledger.uow import create_uow_factory

logger = structlog.get_logger()


@dataclass
class CliResult:
    """Outcome of one CLI pass."""

    jobs: ReconcileSummary
    payments_expired: int


def parse_args(argv: Optional[Sequence[str]] = None) -> Namespace:
    """Parse command-line arguments."""
    parser = ArgumentParser(
        description="Run one job and payment reconciliation pass",
        epilog="Safe to run while the server workers are active",
    )

    parser.add_argument(
        "--expire-only",
        action="store_true",
        help="Only expire stale jobs and overdue payment intents",
    )

    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging (DEBUG level)",
    )

    return parser.parse_args(argv)


async def run_pass(
    uow_factory: Callable,
    gateway: ProviderGateway,
    settings: Settings,
    expire_only: bool = False,
) -> CliResult:
    """Run one reconciliation pass and return what it did."""
    job_reconciler = JobReconciler(uow_factory, gateway, settings)
    payment_reconciler = PaymentReconciler(uow_factory, settings)

    if expire_only:
        summary = ReconcileSummary(expired=len(await job_reconciler.expire_stale()))
    else:
        summary = await job_reconciler.run_once()

    payments_expired = await payment_reconciler.expire_intents()
    return CliResult(jobs=summary, payments_expired=payments_expired)


async def async_main(argv: Optional[Sequence[str]] = None) -> int:
    """Main CLI entry point (async).

    Returns:
        Exit code: 0 (success), 1 (error), 2 (pass completed with job errors)
    """
    args = parse_args(argv)

    settings = Settings()  # type: ignore[call-arg]
    if args.verbose:
        settings.log_level = "DEBUG"
    configure_logging(settings)

    logger.info("cli.started", expire_only=args.expire_only)

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    uow_factory = create_uow_factory(session_factory)

    gateway = KieClient(
        api_key=settings.kie_api_key,
        base_url=settings.kie_api_base_url,
        model=settings.kie_model,
        callback_url=settings.kie_callback_url,
        prompt_instruction=settings.kie_prompt_instruction,
        timeout=settings.provider_timeout_seconds,
    )

    try:
        result = await run_pass(uow_factory, gateway, settings, expire_only=args.expire_only)

        summary = result.jobs
        print("\n" + "=" * 60)
        print("Reconciliation Summary")
        print("=" * 60)
        print(f"Jobs submitted: {summary.submitted}")
        print(f"Jobs polled: {summary.polled}")
        print(f"Jobs succeeded: {summary.succeeded}")
        print(f"Jobs failed: {summary.failed}")
        print(f"Jobs expired: {summary.expired}")
        print(f"Payment intents expired: {result.payments_expired}")
        if summary.errors:
            print(f"\nErrors encountered: {summary.errors}")
        print("=" * 60 + "\n")

        if summary.errors:
            logger.warning("cli.partial_success", errors=summary.errors)
            return 2
        logger.info("cli.success")
        return 0

    except KeyboardInterrupt:
        logger.info("cli.interrupted")
        print("\nReconciliation interrupted by user", file=sys.stderr)
        return 130  # Standard exit code for SIGINT

    except Exception as e:
        logger.error(
            "cli.unexpected_error",
            error=str(e),
            error_type=type(e).__name__,
        )
        print(f"\nUnexpected error: {e}", file=sys.stderr)
        return 1


def main() -> None:
    """Synchronous entry point for CLI."""
    sys.exit(asyncio.run(async_main()))


if __name__ == "__main__":
    main()
