"""
Periodic scans that turn elapsed time into work.

Each scan reads the store, queues or performs the resulting steps and
returns a summary. A failure on one lead or meeting is logged and recorded
in the summary; the scan carries on with the rest.
"""

from datetime import timedelta
from typing import Dict, Any
from loguru import logger

from orchestration.context import PipelineContext
from orchestration.nodes.no_show import start_no_show_workflow
from orchestration.nodes.process_lead import FOLLOW_UP, enqueue_follow_up
from orchestration.state import ACTIVE_STAGES, Direction, MeetingStatus, Stage


def run_stale_lead_scan(ctx: PipelineContext) -> Dict[str, Any]:
    """Queue follow-ups for quiet leads; archive the ones out of follow-ups."""
    now = ctx.now()
    cutoff = now - timedelta(days=ctx.settings.stale_after_days)
    logger.info(f"Starting stale lead scan (cutoff {cutoff.isoformat()})")

    candidates = ctx.store.find_leads(lambda lead: lead.stage in ACTIVE_STAGES and lead.created_at < cutoff)
    summary = {"scanned": len(candidates), "follow_ups_enqueued": 0, "archived": 0, "skipped": 0, "errors": []}

    for lead in candidates:
        try:
            last_activity = ctx.store.last_activity_at(lead.id)
            if last_activity and last_activity >= cutoff:
                summary["skipped"] += 1
                continue

            last_outbound = ctx.store.last_communication(lead.id, Direction.OUTBOUND)
            if last_outbound and last_outbound.created_at > cutoff:
                summary["skipped"] += 1
                continue

            follow_ups = ctx.store.count_communications(lead.id, Direction.OUTBOUND, FOLLOW_UP)
            if follow_ups < ctx.settings.max_follow_ups:
                enqueue_follow_up(ctx, lead.id)
                summary["follow_ups_enqueued"] += 1
                continue

            entry = ctx.engine.try_transition(
                lead.id, lead.stage, Stage.COLD_ARCHIVED,
                f"No response after {follow_ups} follow-ups",
            )
            if entry:
                summary["archived"] += 1
            else:
                summary["skipped"] += 1

        except Exception as e:
            error_msg = f"Stale scan failed for lead {lead.id}: {str(e)}"
            logger.error(error_msg)
            summary["errors"].append(error_msg)

    logger.info(f"Stale lead scan complete: {summary}")
    return summary


def run_no_show_scan(ctx: PipelineContext) -> Dict[str, Any]:
    """Detect meetings that ended without anyone recording an outcome."""
    now = ctx.now()
    earliest = now - timedelta(minutes=ctx.settings.no_show_max_minutes)
    latest = now - timedelta(minutes=ctx.settings.no_show_min_minutes)
    logger.info(f"Starting no-show scan (meetings ending {earliest.isoformat()} - {latest.isoformat()})")

    meetings = ctx.store.find_meetings(
        lambda m: m.status == MeetingStatus.SCHEDULED and not m.outcome and earliest <= m.end_time <= latest
    )
    summary = {"scanned": len(meetings), "processed": 0, "escalated": 0, "errors": []}

    for meeting in meetings:
        try:
            result = start_no_show_workflow(meeting.id, ctx, trigger="auto")
            if result["status"] != "ok":
                continue
            summary["processed"] += 1
            if result["data"]["escalated"]:
                summary["escalated"] += 1
            summary["errors"].extend(result.get("errors", []))
        except Exception as e:
            error_msg = f"No-show handling failed for meeting {meeting.id}: {str(e)}"
            logger.error(error_msg)
            summary["errors"].append(error_msg)

    logger.info(f"No-show scan complete: {summary}")
    return summary
