from datetime import timedelta
from typing import Dict, Any, Optional
from loguru import logger

from orchestration.context import PipelineContext
from orchestration.errors import PermanentError
from orchestration.nodes.messaging import has_meeting_scheduled, has_replied, send_generated
from orchestration.state import Direction, LeadTaskPayload, StepResult, TERMINAL_STAGES

TASK_NAME = "process-lead"
FOLLOW_UP = "follow_up"


def run_capability(lead_id: str, name: str, step: str, ctx: PipelineContext) -> StepResult:
    result = ctx.router.execute(name, None, {"lead_id": lead_id})
    if result.success:
        logger.info(f"Lead {lead_id} {step} complete: {result.action}")
        return {"status": "ok", "lead_id": lead_id, "step": step, "data": result.data or {}}

    logger.warning(f"{step} failed for lead {lead_id}: {result.error}")
    return {"status": "failed", "lead_id": lead_id, "step": step, "errors": [result.error or result.action]}


def follow_up_sent(ctx: PipelineContext, lead_id: str, number: int) -> bool:
    return any(
        c.metadata.get("follow_up_number") == number
        for c in ctx.store.communications(lead_id, Direction.OUTBOUND, FOLLOW_UP)
    )


def enqueue_follow_up(ctx: PipelineContext, lead_id: str, delay: Optional[timedelta] = None) -> str:
    """
    Queue the lead's next follow-up, numbered after the ones already sent.
    Returns the id of an already pending task for that number instead of
    queueing a second one.
    """
    number = ctx.store.count_communications(lead_id, Direction.OUTBOUND, FOLLOW_UP) + 1
    payload: LeadTaskPayload = {"lead_id": lead_id, "step": "follow-up", "follow_up_number": number}

    for task in ctx.queue.pending(TASK_NAME):
        if task.payload == payload:
            logger.info(f"Follow-up #{number} already queued for lead {lead_id}: {task.id}")
            return task.id

    return ctx.queue.enqueue(TASK_NAME, dict(payload), delay=delay)


def send_follow_up(lead_id: str, ctx: PipelineContext, follow_up_number: Optional[int] = None) -> StepResult:
    """
    Send the no-response follow-up unless one of the guards says the lead
    no longer needs it. Every guard re-reads the store; a follow-up number
    that was already sent makes a re-delivered task a no-op.
    """
    skipped = {"status": "skipped", "lead_id": lead_id, "step": "follow-up"}

    lead = ctx.store.get(lead_id)
    if lead is None:
        return dict(skipped, reason="lead_not_found")

    if lead.stage in TERMINAL_STAGES:
        logger.info(f"Lead {lead_id} is {lead.stage.value}, skipping follow-up")
        return dict(skipped, reason="terminal_stage")

    if has_replied(ctx, lead_id):
        logger.info(f"Lead {lead_id} has responded, skipping follow-up")
        return dict(skipped, reason="lead_responded")

    if has_meeting_scheduled(ctx, lead):
        logger.info(f"Lead {lead_id} has meeting scheduled, skipping follow-up")
        return dict(skipped, reason="meeting_scheduled")

    sent_count = ctx.store.count_communications(lead_id, Direction.OUTBOUND, FOLLOW_UP)
    number = follow_up_number or sent_count + 1
    if follow_up_sent(ctx, lead_id, number):
        logger.info(f"Follow-up #{number} already sent to lead {lead_id}")
        return dict(skipped, reason="already_sent")

    if sent_count >= ctx.settings.max_follow_ups:
        logger.info(f"Lead {lead_id} already received {sent_count} follow-ups, skipping")
        return dict(skipped, reason="follow_up_limit")

    try:
        sent = send_generated(ctx, lead, FOLLOW_UP, {"follow_up_number": number})
    except PermanentError as e:
        logger.error(f"Failed to send follow-up for lead {lead_id}: {e}")
        return {"status": "failed", "lead_id": lead_id, "step": "follow-up", "errors": [str(e)]}

    logger.info(f"Follow-up email sent to {lead.email}")
    return {"status": "ok", "lead_id": lead_id, "step": "follow-up", "message_id": sent["message_id"]}


def handle(payload: Dict[str, Any], ctx: PipelineContext) -> StepResult:
    lead_id, step = payload["lead_id"], payload.get("step")
    logger.info(f"Processing lead {lead_id} - Step: {step}")

    if ctx.store.get(lead_id) is None:
        logger.error(f"Lead {lead_id} not found")
        return {"status": "skipped", "lead_id": lead_id, "step": step, "reason": "lead_not_found"}

    if step == "qualification":
        return run_capability(lead_id, "qualification", step, ctx)
    if step == "enrichment":
        return run_capability(lead_id, "research", step, ctx)
    if step == "follow-up":
        return send_follow_up(lead_id, ctx, payload.get("follow_up_number"))

    logger.error(f"Unknown process-lead step {step} for lead {lead_id}")
    return {"status": "failed", "lead_id": lead_id, "step": step, "errors": [f"Unknown step: {step}"]}
