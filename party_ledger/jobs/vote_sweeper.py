"""
Vote Sweeper Job: backend-side resolution of expired nominations.

Runs independently of any connected client, so votes still resolve when
nobody has the app open. Safe to run alongside client sweeps: each vote
leaves PENDING through a conditional update, so overlapping sweepers
produce exactly one winner per vote.

Typical schedule: every minute, or `--loop` as a long-running worker.
"""

import asyncio
import logging
import traceback
from datetime import datetime, timedelta, timezone
from typing import Any

from ..core.config import Settings, get_settings
from ..core.database import close_db, create_engine, create_session_factory, init_db
from ..services.notifications import SlackBlocks, SlackChannel
from ..services.store import PartyStore
from ..services.votes import NominationEngine


logger = logging.getLogger(__name__)


# =============================================================================
# ALERTING
# =============================================================================


async def send_alert(
    settings: Settings,
    title: str,
    message: str,
    severity: str = "error",
    details: dict | None = None,
) -> None:
    """Log a sweeper failure and post it to the alerts webhook if configured."""
    log_message = f"[SWEEPER ALERT] {title}: {message}"
    if details:
        log_message += f" | Details: {details}"

    if severity == "critical":
        logger.critical(log_message)
    else:
        logger.error(log_message)

    if settings.slack_alerts_webhook_url:
        channel = SlackChannel(settings.slack_alerts_webhook_url)
        await channel.send_blocks(
            SlackBlocks.alert(title, message, severity, details),
            fallback_text=title,
        )


# =============================================================================
# JOB
# =============================================================================


async def run_vote_sweep(
    settings: Settings | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """
    Resolve every expired pending vote once.

    Returns:
        Job result summary
    """
    settings = settings or get_settings()
    start_time = datetime.now(timezone.utc)
    logger.info(f"Starting vote sweep at {start_time.isoformat()}")

    engine = create_engine(settings)
    results: dict[str, Any] = {
        "started_at": start_time.isoformat(),
        "completed_at": None,
        "processed": 0,
        "approved": 0,
        "rejected": 0,
        "expired": 0,
        "skipped": 0,
        "errors": [],
    }

    try:
        await init_db(engine)
        store = PartyStore(create_session_factory(engine))
        votes = NominationEngine(
            store,
            voting_window=timedelta(seconds=settings.voting_window_seconds),
            rule=settings.resolution_rule,
            no_response_outcome=settings.no_response_outcome,
        )

        summary = await votes.resolve_expired_votes(now=now)
        results.update(
            processed=summary.processed,
            approved=summary.approved,
            rejected=summary.rejected,
            expired=summary.expired,
            skipped=summary.skipped,
        )
        results["errors"].extend(summary.errors)

    except Exception as e:
        error_msg = f"Vote sweep failed: {str(e)}"
        logger.error(error_msg)
        results["errors"].append(error_msg)

        await send_alert(
            settings,
            title="Vote Sweep Failed",
            message="The nomination sweep crashed unexpectedly.",
            severity="critical",
            details={
                "error": str(e),
                "traceback": traceback.format_exc()[-500:],
                "started_at": results["started_at"],
            },
        )
        raise

    finally:
        await close_db(engine)

    end_time = datetime.now(timezone.utc)
    results["completed_at"] = end_time.isoformat()
    results["duration_seconds"] = (end_time - start_time).total_seconds()

    logger.info(
        f"Vote sweep completed in {results['duration_seconds']:.2f}s: "
        f"{results['approved']} approved, {results['rejected']} rejected, "
        f"{results['expired']} expired"
    )

    if results["errors"]:
        await send_alert(
            settings,
            title="Vote Sweep Completed with Warnings",
            message=f"{len(results['errors'])} votes could not be resolved and will be retried.",
            severity="warning",
            details={"errors": results["errors"][:5]},
        )

    return results


async def run_forever(settings: Settings, interval: float) -> None:
    """Sweep on a fixed interval; a failed sweep is retried on the next tick."""
    while True:
        try:
            await run_vote_sweep(settings)
        except Exception:
            logger.exception("Vote sweep failed, retrying next tick")
        await asyncio.sleep(interval)


# =============================================================================
# CLI ENTRY POINT
# =============================================================================


def main():
    """CLI entry point for the vote sweeper."""
    import argparse

    settings = get_settings()

    parser = argparse.ArgumentParser(description="Resolve expired nomination votes")
    parser.add_argument(
        "--database-url",
        default=settings.database_url,
        help="Database connection string",
    )
    parser.add_argument(
        "--loop",
        action="store_true",
        help="Keep running and sweep every --interval seconds",
    )
    parser.add_argument(
        "--interval",
        type=float,
        default=settings.sweep_interval_seconds,
        help="Seconds between sweeps in --loop mode",
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    settings = settings.model_copy(update={"database_url": args.database_url})

    try:
        if args.loop:
            asyncio.run(run_forever(settings, args.interval))
        else:
            results = asyncio.run(run_vote_sweep(settings))
            print(f"Sweep completed: {results}")
    except KeyboardInterrupt:
        pass
    except Exception as e:
        print(f"Sweep failed: {e}")
        raise SystemExit(1)


if __name__ == "__main__":
    main()
