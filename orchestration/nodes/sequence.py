from typing import Dict, Any
from loguru import logger

from orchestration.context import PipelineContext
from orchestration.errors import PermanentError
from orchestration.nodes.messaging import already_sent, has_meeting_scheduled, has_replied, send_generated
from orchestration.state import Direction, StepResult, TERMINAL_STAGES

TASK_NAME = "sequence-step"


def _replied_since_start(ctx: PipelineContext, lead_id: str, started_at) -> bool:
    return any(c.created_at >= started_at for c in ctx.store.communications(lead_id, direction=Direction.INBOUND))


def handle(payload: Dict[str, Any], ctx: PipelineContext) -> StepResult:
    lead_id, sequence_id, step_index = payload["lead_id"], payload["sequence_id"], payload["step_index"]
    step_name = f"{sequence_id}[{step_index}]"
    skipped = {"status": "skipped", "lead_id": lead_id, "step": step_name}
    tracker = ctx.sequences

    active = tracker.get(lead_id, sequence_id)
    if active is None or active.status != "ACTIVE":
        logger.info(f"Sequence {sequence_id} not active for lead {lead_id}, skipping step {step_index}")
        return dict(skipped, reason="sequence_inactive")
    if active.current_step > step_index:
        return dict(skipped, reason="step_already_done")

    definition = tracker.definition(sequence_id)
    step = definition.steps[step_index]

    lead = ctx.store.get(lead_id)
    if lead is None:
        tracker.stop(lead_id, sequence_id, "lead_not_found")
        return dict(skipped, reason="lead_not_found")

    exit_reason = None
    if lead.stage in TERMINAL_STAGES:
        exit_reason = "terminal_stage"
    elif definition.exit_on_reply and _replied_since_start(ctx, lead_id, active.started_at):
        exit_reason = "replied"
    elif definition.exit_on_meeting and has_meeting_scheduled(ctx, lead):
        exit_reason = "meeting_scheduled"
    elif step.condition == "no_response" and has_replied(ctx, lead_id):
        exit_reason = "replied"

    if exit_reason:
        tracker.stop(lead_id, sequence_id, exit_reason)
        return dict(skipped, reason=exit_reason)

    message_id = None
    if step.content_kind == "acknowledgment" and already_sent(ctx, lead_id, "acknowledgment"):
        logger.info(f"Lead {lead_id} already acknowledged, sequence step {step_index} not re-sent")
    else:
        try:
            sent = send_generated(ctx, lead, step.content_kind,
                                  {"sequence_key": active.key, "step_index": step_index})
            message_id = sent["message_id"]
        except PermanentError as e:
            logger.error(f"Sequence step {step_name} failed for lead {lead_id}: {e}")
            tracker.stop(lead_id, sequence_id, "send_failed")
            return {"status": "failed", "lead_id": lead_id, "step": step_name, "errors": [str(e)]}

    tracker.advance(lead_id, sequence_id, step_index)
    logger.info(f"Executed step {step_index} for sequence {active.key}")
    return {"status": "ok", "lead_id": lead_id, "step": step_name, "message_id": message_id}
