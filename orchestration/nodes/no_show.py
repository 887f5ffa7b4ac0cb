"""
No-show recovery.

`start_no_show_workflow` runs once per missed meeting (from the scan or a
manual outcome): it marks the meeting, picks a strategy from the lead's
no-show count, escalates where the strategy says so, queues the delayed
`no-show-follow-up` steps and sends a first-touch email.

`handle` runs each queued step. Steps re-read the meeting and do nothing
unless it is still NO_SHOW, so a meeting rescheduled in the meantime
silently ends the sequence.
"""

import base64
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Any, List, Optional, Tuple
from loguru import logger

from orchestration.context import PipelineContext
from orchestration.errors import MeetingNotFoundError, PermanentError
from orchestration.nodes.messaging import already_sent, send_generated
from orchestration.state import (
    ActivityType, Category, Lead, Meeting, MeetingStatus, Stage, StepResult, category_for_score,
)

TASK_NAME = "no-show-follow-up"


@dataclass(frozen=True)
class NoShowStrategy:
    name: str
    content_kind: str
    steps: Tuple[Tuple[str, timedelta], ...]
    escalate: bool = False
    meeting_minutes: Optional[int] = None    # None keeps the original duration
    async_offer: bool = False


GENTLE_REMINDER = NoShowStrategy(
    name="gentle_reminder",
    content_kind="no_show_reminder",
    steps=(
        ("apology", timedelta(hours=1)),
        ("rep-call", timedelta(hours=4)),
        ("formal-reschedule", timedelta(hours=24)),
        ("finalize", timedelta(hours=48)),
    ),
)

SHORTER_MEETING = NoShowStrategy(
    name="shorter_meeting",
    content_kind="no_show_short_meeting",
    steps=(
        ("rep-call", timedelta(hours=4)),
        ("formal-reschedule", timedelta(hours=24)),
        ("finalize", timedelta(hours=48)),
    ),
    meeting_minutes=15,
    async_offer=True,
)

ASYNC_OPTION = NoShowStrategy(
    name="async_option",
    content_kind="no_show_async",
    steps=(
        ("formal-reschedule", timedelta(hours=24)),
        ("finalize", timedelta(hours=48)),
    ),
    escalate=True,
    async_offer=True,
)

DEPRIORITIZE = NoShowStrategy(
    name="deprioritize",
    content_kind="no_show_deprioritize",
    steps=(("finalize", timedelta(hours=1)),),
    escalate=True,
)


def strategy_for(no_show_count: int) -> NoShowStrategy:
    if no_show_count <= 1:
        return GENTLE_REMINDER
    if no_show_count == 2:
        return SHORTER_MEETING
    if no_show_count == 3:
        return ASYNC_OPTION
    return DEPRIORITIZE


def build_reschedule_link(app_url: str, meeting_id: str, email: Optional[str]) -> str:
    token = base64.b64encode(email.encode()).decode() if email else "no-email"
    return f"{app_url.rstrip('/')}/reschedule/{meeting_id}?token={token}"


def reschedule_slots(now: datetime, count: int = 3) -> List[datetime]:
    """Next `count` weekdays at 10:00, starting tomorrow."""
    slots: List[datetime] = []
    offset = 1
    while len(slots) < count:
        day = now + timedelta(days=offset)
        if day.weekday() < 5:
            slots.append(day.replace(hour=10, minute=0, second=0, microsecond=0))
        offset += 1
    return slots


def async_options(app_url: str) -> List[str]:
    base = app_url.rstrip("/")
    return [f"Watch the demo video: {base}/demo", f"Download the overview PDF: {base}/overview.pdf"]


def _footer(ctx: PipelineContext, meeting: Meeting, lead: Lead, strategy: Optional[NoShowStrategy] = None,
            with_slots: bool = True, with_async: bool = False) -> str:
    lines = [f"Pick a new time: {build_reschedule_link(ctx.settings.app_url, meeting.id, lead.email)}"]
    if strategy and strategy.meeting_minutes:
        lines.append(f"A {strategy.meeting_minutes}-minute call is plenty.")
    if with_slots:
        lines.append("Suggested times:")
        lines.extend(f"- {slot.strftime('%b %d, %Y, %I:%M %p')} UTC" for slot in reschedule_slots(ctx.now()))
    if with_async:
        lines.append("Prefer async?")
        lines.extend(f"- {option}" for option in async_options(ctx.settings.app_url))
    return "\n".join(lines)


def start_no_show_workflow(meeting_id: str, ctx: PipelineContext, trigger: str = "auto") -> StepResult:
    """
    Mark a meeting as a no-show and start the recovery steps.

    Raises:
        MeetingNotFoundError: meeting does not exist
        LeadNotFoundError: meeting's lead missing or deleted
    """
    meeting = ctx.store.get_meeting(meeting_id)
    if meeting is None:
        raise MeetingNotFoundError(meeting_id)

    if meeting.status == MeetingStatus.NO_SHOW:
        logger.info(f"Meeting {meeting_id} is already a no-show, workflow not restarted")
        return {"status": "skipped", "lead_id": meeting.lead_id, "step": "no-show-start", "reason": "already_no_show"}

    if trigger == "auto" and meeting.status not in (MeetingStatus.SCHEDULED, MeetingStatus.CONFIRMED):
        logger.info(f"Meeting {meeting_id} is {meeting.status.value}, not starting no-show workflow")
        return {"status": "skipped", "lead_id": meeting.lead_id, "step": "no-show-start", "reason": "already_resolved"}

    lead = ctx.store.require(meeting.lead_id)
    errors: List[str] = []

    meeting = ctx.store.update_meeting(meeting_id, status=MeetingStatus.NO_SHOW, outcome="no_show")

    no_show_count = ctx.store.count_no_shows(lead.id)
    strategy = strategy_for(no_show_count)
    logger.info(f"Lead {lead.id} no-show #{no_show_count} for meeting {meeting_id}: strategy {strategy.name}")

    ctx.store.add_activity(
        lead.id,
        ActivityType.MEETING_NO_SHOW,
        f"Lead did not attend meeting (no-show #{no_show_count})",
        metadata={"meeting_id": meeting_id, "no_show_count": no_show_count,
                  "strategy": strategy.name, "trigger": trigger},
    )

    if strategy.escalate:
        reason = f"Lead missed {no_show_count} meetings ({strategy.name})"
        ctx.store.add_escalation(lead.id, reason, {"meeting_id": meeting_id, "no_show_count": no_show_count})
        ctx.notifier.notify("escalation", {
            "lead_id": lead.id,
            "name": lead.full_name,
            "reason": reason,
            "score": lead.score,
            "no_show_count": no_show_count,
        })

    task_ids = [
        ctx.queue.enqueue(TASK_NAME, {"lead_id": lead.id, "meeting_id": meeting_id, "step": step}, delay=delay)
        for step, delay in strategy.steps
    ]

    # First touch goes out now; a failed send never blocks the queued steps
    message_id = None
    try:
        footer = _footer(ctx, meeting, lead, strategy, with_slots=strategy.name != DEPRIORITIZE.name,
                         with_async=strategy.async_offer)
        sent = send_generated(ctx, lead, strategy.content_kind,
                              {"meeting_id": meeting_id, "strategy": strategy.name}, footer=footer)
        message_id = sent["message_id"]
    except Exception as e:
        error_msg = f"First-touch no-show email failed: {str(e)}"
        logger.error(error_msg)
        errors.append(error_msg)

    return {
        "status": "ok",
        "lead_id": lead.id,
        "step": "no-show-start",
        "message_id": message_id,
        "errors": errors,
        "data": {"meeting_id": meeting_id, "no_show_count": no_show_count,
                 "strategy": strategy.name, "escalated": strategy.escalate, "task_ids": task_ids},
    }


# Queued steps

def _apology(ctx: PipelineContext, lead: Lead, meeting: Meeting) -> StepResult:
    kind = "no_show_apology"
    if already_sent(ctx, lead.id, kind, meeting_id=meeting.id):
        return {"status": "skipped", "lead_id": lead.id, "step": "apology", "reason": "already_sent"}

    sent = ctx.email.send(
        to=lead.email,
        subject="We missed you, let's reschedule",
        body=(
            f"Hi {lead.first_name or 'there'},\n\n"
            "We noticed we missed our call. No worries, we'd still love to connect.\n\n"
            f"{_footer(ctx, meeting, lead)}"
        ),
        metadata={"type": kind, "meeting_id": meeting.id},
        lead_id=lead.id,
    )
    return {"status": "ok", "lead_id": lead.id, "step": "apology", "message_id": sent["message_id"]}


def _rep_call(ctx: PipelineContext, lead: Lead, meeting: Meeting) -> StepResult:
    for activity in ctx.store.activities(lead.id, ActivityType.TASK_CREATED):
        if activity.metadata.get("meeting_id") == meeting.id and activity.metadata.get("step") == "rep-call":
            return {"status": "skipped", "lead_id": lead.id, "step": "rep-call", "reason": "already_created"}

    ctx.store.add_activity(
        lead.id,
        ActivityType.TASK_CREATED,
        "Call lead and send LinkedIn follow-up after no-show",
        metadata={"meeting_id": meeting.id, "step": "rep-call", "channels": ["PHONE", "LINKEDIN"]},
    )
    return {"status": "ok", "lead_id": lead.id, "step": "rep-call"}


def _formal_reschedule(ctx: PipelineContext, lead: Lead, meeting: Meeting) -> StepResult:
    kind = "no_show_formal_reschedule"
    if already_sent(ctx, lead.id, kind, meeting_id=meeting.id):
        return {"status": "skipped", "lead_id": lead.id, "step": "formal-reschedule", "reason": "already_sent"}

    sent = ctx.email.send(
        to=lead.email,
        subject="Reschedule your session",
        body=(
            f"Hi {lead.first_name or 'there'},\n\n"
            "We'd love to help. If it's easier, you can pick a new time below.\n\n"
            f"{_footer(ctx, meeting, lead, with_slots=False, with_async=True)}"
        ),
        metadata={"type": kind, "meeting_id": meeting.id},
        lead_id=lead.id,
    )
    return {"status": "ok", "lead_id": lead.id, "step": "formal-reschedule", "message_id": sent["message_id"]}


def _already_finalized(ctx: PipelineContext, lead_id: str, meeting_id: str) -> bool:
    return any(
        a.metadata.get("meeting_id") == meeting_id and a.metadata.get("trigger") == "no_show_final"
        for a in ctx.store.activities(lead_id, ActivityType.SCORE_UPDATED)
    )


def finalize(ctx: PipelineContext, lead: Lead, meeting: Meeting) -> StepResult:
    """
    Apply the no-show penalty and settle the lead's stage.

    High-value leads (score >= high_value_score before the penalty, or
    HOT_ENGAGED, or HOT category) stay in WARM_NURTURING and are escalated;
    otherwise a penalised score below low_value_score archives the lead.
    """
    if _already_finalized(ctx, lead.id, meeting.id):
        logger.info(f"No-show for meeting {meeting.id} already finalized")
        return {"status": "skipped", "lead_id": lead.id, "step": "finalize", "reason": "already_finalized"}

    settings = ctx.settings
    original_score = lead.score or 0
    new_score = max(0, original_score - settings.no_show_penalty)
    is_high = (
        original_score >= settings.high_value_score
        or lead.stage == Stage.HOT_ENGAGED
        or lead.category == Category.HOT
    )
    is_low = original_score < settings.low_value_score
    target = Stage.WARM_NURTURING if is_high else (Stage.COLD_ARCHIVED if is_low else Stage.WARM_NURTURING)

    with ctx.store.transaction():
        ctx.store.update(lead.id, score=new_score, category=category_for_score(new_score))
        ctx.store.add_activity(
            lead.id,
            ActivityType.SCORE_UPDATED,
            f"Score decreased by {settings.no_show_penalty} due to no-show. New score: {new_score}",
            metadata={"previousScore": original_score, "newScore": new_score,
                      "meeting_id": meeting.id, "trigger": "no_show_final"},
        )
        if lead.stage != target:
            ctx.engine.try_transition(lead.id, lead.stage, target, "No-show finalization")

    if is_high:
        reason = "Manager review required: high-score lead no-show"
        ctx.store.add_escalation(lead.id, reason, {"meeting_id": meeting.id, "score": original_score})
        ctx.store.add_activity(
            lead.id,
            ActivityType.WORKFLOW_TRIGGERED,
            reason,
            metadata={"meeting_id": meeting.id, "score": original_score},
        )
        ctx.notifier.notify("escalation", {
            "lead_id": lead.id,
            "name": lead.full_name,
            "reason": reason,
            "score": original_score,
            "no_show_count": ctx.store.count_no_shows(lead.id),
        })

    logger.info(f"No-show finalized for lead {lead.id}: score {original_score} -> {new_score}, target {target.value}")
    return {
        "status": "ok",
        "lead_id": lead.id,
        "step": "finalize",
        "data": {"previous_score": original_score, "score": new_score,
                 "stage": target.value, "escalated": is_high},
    }


STEPS = {
    "apology": _apology,
    "rep-call": _rep_call,
    "formal-reschedule": _formal_reschedule,
    "finalize": finalize,
}


def handle(payload: Dict[str, Any], ctx: PipelineContext) -> StepResult:
    lead_id, meeting_id, step = payload["lead_id"], payload["meeting_id"], payload["step"]
    logger.info(f"No-show follow-up for lead {lead_id} - Step: {step}")
    skipped = {"status": "skipped", "lead_id": lead_id, "step": step}

    meeting = ctx.store.get_meeting(meeting_id)
    if meeting is None:
        logger.warning(f"Meeting {meeting_id} not found for no-show follow-up")
        return dict(skipped, reason="meeting_not_found")

    if meeting.status != MeetingStatus.NO_SHOW:
        logger.info(f"Meeting {meeting_id} is not marked NO_SHOW, skipping step {step}")
        return dict(skipped, reason="meeting_not_no_show")

    lead = ctx.store.get(meeting.lead_id)
    if lead is None:
        logger.warning(f"Lead {meeting.lead_id} not found for no-show follow-up")
        return dict(skipped, reason="lead_not_found")

    run_step = STEPS.get(step)
    if run_step is None:
        logger.error(f"Unknown no-show step {step}")
        return {"status": "failed", "lead_id": lead_id, "step": step, "errors": [f"Unknown step: {step}"]}

    try:
        return run_step(ctx, lead, meeting)
    except PermanentError as e:
        logger.error(f"No-show step {step} failed for lead {lead_id}: {e}")
        return {"status": "failed", "lead_id": lead_id, "step": step, "errors": [str(e)]}
