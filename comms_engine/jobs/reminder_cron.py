"""
Reminder Cron Job: periodic processing of form reminder series.

This module runs as a scheduled job (via cron, Kubernetes CronJob, or
similar) to schedule reminder series for open forms and send the ones that
are due.

Typical cron schedule: 0 * * * * (hourly)
"""

import asyncio
import logging
import traceback
from datetime import datetime, timezone
from typing import Any

import httpx
from sqlalchemy import select

from ..core.config import get_settings
from ..core.database import create_engine_from_url, create_session_factory
from ..core.logging import configure_logging
from ..models import FormAccess
from ..services.channels import build_channel_providers
from ..services.reminder_engine import OPEN_STATUSES, ReminderConfig, ReminderEngine


logger = logging.getLogger(__name__)


# =============================================================================
# ALERTING
# =============================================================================


async def send_alert(
    title: str,
    message: str,
    severity: str = "error",
    details: dict | None = None,
) -> None:
    """
    Send an alert when the cron job fails.

    Supports multiple channels:
    - Slack webhook
    - Generic webhook (for PagerDuty, Opsgenie, etc.)
    - Logs (always)
    """
    log_message = f"[CRON ALERT] {title}: {message}"
    if details:
        log_message += f" | Details: {details}"

    if severity == "critical":
        logger.critical(log_message)
    else:
        logger.error(log_message)

    settings = get_settings()

    if settings.slack_alerts_webhook_url:
        try:
            await _send_slack_alert(settings.slack_alerts_webhook_url, title, message, severity, details)
        except httpx.HTTPError as e:
            logger.error(f"Failed to send Slack alert: {e}")

    if settings.alert_webhook_url:
        try:
            await _send_webhook_alert(settings.alert_webhook_url, title, message, severity, details)
        except httpx.HTTPError as e:
            logger.error(f"Failed to send webhook alert: {e}")


async def _send_slack_alert(
    webhook_url: str,
    title: str,
    message: str,
    severity: str,
    details: dict | None,
) -> None:
    color = "#dc2626" if severity == "critical" else "#f59e0b"

    blocks = [
        {
            "type": "header",
            "text": {"type": "plain_text", "text": title, "emoji": True},
        },
        {
            "type": "section",
            "text": {"type": "mrkdwn", "text": message},
        },
    ]

    if details:
        details_text = "\n".join([f"• *{k}*: {v}" for k, v in details.items()])
        blocks.append({
            "type": "section",
            "text": {"type": "mrkdwn", "text": details_text},
        })

    blocks.append({
        "type": "context",
        "elements": [
            {"type": "mrkdwn", "text": f"Severity: *{severity.upper()}* | Time: {datetime.now(timezone.utc).isoformat()}"},
        ],
    })

    async with httpx.AsyncClient() as client:
        await client.post(
            webhook_url,
            json={"attachments": [{"color": color, "blocks": blocks}]},
            timeout=10,
        )


async def _send_webhook_alert(
    webhook_url: str,
    title: str,
    message: str,
    severity: str,
    details: dict | None,
) -> None:
    payload = {
        "title": title,
        "message": message,
        "severity": severity,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "source": "comms-engine-reminders",
        "details": details or {},
    }

    async with httpx.AsyncClient() as client:
        await client.post(webhook_url, json=payload, timeout=10)


# =============================================================================
# JOB
# =============================================================================


async def run_reminder_job(
    database_url: str,
    reminder_config: ReminderConfig | None = None,
    dry_run: bool = False,
) -> dict[str, Any]:
    """
    Main entry point for the reminder cron job.

    This function:
    1. Schedules reminder series for every tenant with open forms
    2. Sends the reminders that are due
    3. Purges old series of submitted forms
    4. Logs results

    With ``dry_run`` only the scheduling counts are reported and nothing is
    committed or sent.
    """
    start_time = datetime.now(timezone.utc)
    logger.info(f"Starting reminder job at {start_time.isoformat()}")

    settings = get_settings()
    config = reminder_config or ReminderConfig.from_settings(settings)

    engine = create_engine_from_url(database_url)
    session_factory = create_session_factory(engine)
    providers = build_channel_providers(settings)

    results: dict[str, Any] = {
        "started_at": start_time.isoformat(),
        "completed_at": None,
        "tenants": 0,
        "scheduled": 0,
        "schedule_skipped": 0,
        "schedule_failed": 0,
        "reminders_sent": 0,
        "reminders_skipped": 0,
        "reminders_failed": 0,
        "cleaned_up": 0,
        "errors": [],
    }

    try:
        # Step 1: Schedule series per tenant
        async with session_factory() as session:
            tenant_ids = (await session.execute(
                select(FormAccess.tenant_id)
                .where(FormAccess.status.in_(OPEN_STATUSES))
                .distinct()
            )).scalars().all()
            results["tenants"] = len(tenant_ids)

            if dry_run:
                logger.info(f"Dry run: {len(tenant_ids)} tenants have open forms")
                return results

            reminder_engine = ReminderEngine(
                session,
                providers.email,
                config=config,
                frontend_url=settings.frontend_url,
            )
            for tenant_id in tenant_ids:
                try:
                    scheduled = await reminder_engine.schedule_reminders(tenant_id)
                except Exception as e:
                    await session.rollback()
                    error_msg = f"Scheduling for tenant {tenant_id} failed: {str(e)}"
                    logger.error(error_msg)
                    results["errors"].append(error_msg)
                    results["schedule_failed"] += 1
                    continue
                results["scheduled"] += scheduled.scheduled
                results["schedule_skipped"] += scheduled.skipped

        # Step 2: Send due reminders (in a separate session)
        async with session_factory() as session:
            reminder_engine = ReminderEngine(
                session,
                providers.email,
                config=config,
                frontend_url=settings.frontend_url,
            )
            run = await reminder_engine.process_pending_reminders()
            results["reminders_sent"] = run.total_sent
            results["reminders_skipped"] = run.total_skipped
            results["reminders_failed"] = run.total_failed
            results["errors"].extend(run.errors)

            # Step 3: Purge old series
            results["cleaned_up"] = await reminder_engine.cleanup_old_reminders(
                settings.reminder_retention_days
            )

    except Exception as e:
        error_msg = f"Reminder job failed: {str(e)}"
        logger.error(error_msg)
        results["errors"].append(error_msg)

        await send_alert(
            title="Reminder Cron Job Failed",
            message="The reminder processing job crashed unexpectedly.",
            severity="critical",
            details={
                "error": str(e),
                "traceback": traceback.format_exc()[-500:],
                "started_at": results["started_at"],
                "sent_before_crash": results["reminders_sent"],
            },
        )
        raise

    finally:
        await providers.close()
        await engine.dispose()

    end_time = datetime.now(timezone.utc)
    results["completed_at"] = end_time.isoformat()
    results["duration_seconds"] = (end_time - start_time).total_seconds()

    logger.info(
        f"Reminder job completed in {results['duration_seconds']:.2f}s: "
        f"{results['scheduled']} scheduled, {results['reminders_sent']} sent, "
        f"{results['reminders_failed']} failed"
    )

    if results["reminders_failed"] > 0 or results["schedule_failed"] > 0:
        await send_alert(
            title="Reminder Job Completed with Warnings",
            message=(
                f"The reminder job completed but {results['reminders_failed']} reminders failed to send "
                f"and scheduling failed for {results['schedule_failed']} tenants."
            ),
            severity="warning",
            details={
                "schedule_failed": results["schedule_failed"],
                "reminders_sent": results["reminders_sent"],
                "reminders_failed": results["reminders_failed"],
                "errors": results["errors"][:5],
            },
        )

    return results


# =============================================================================
# CLI ENTRY POINT
# =============================================================================


def main():
    """CLI entry point for the reminder job."""
    import argparse

    settings = get_settings()

    parser = argparse.ArgumentParser(description="Run the form reminder cron job")
    parser.add_argument(
        "--database-url",
        default=settings.database_url_async,
        help="Database connection string",
    )
    parser.add_argument(
        "--max-reminders",
        type=int,
        default=settings.reminder_max_reminders,
        help="Reminders per series before it is retired",
    )
    parser.add_argument(
        "--include-weekends",
        action="store_true",
        help="Also schedule on Saturday and Sunday",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report tenants with open forms without sending anything",
    )

    args = parser.parse_args()

    configure_logging(settings.log_level)

    config = ReminderConfig.from_settings(settings)
    config.max_reminders = args.max_reminders
    if args.include_weekends:
        config.exclude_weekends = False

    try:
        results = asyncio.run(run_reminder_job(
            database_url=args.database_url,
            reminder_config=config,
            dry_run=args.dry_run,
        ))
        print(f"Job completed: {results}")
    except Exception as e:
        print(f"Job failed: {e}")
        exit(1)


if __name__ == "__main__":
    main()
