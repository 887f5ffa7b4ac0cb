from typing import Dict, Any
from loguru import logger

from orchestration.context import PipelineContext
from orchestration.errors import PermanentError
from orchestration.nodes.messaging import already_sent
from orchestration.state import StepResult

TASK_NAME = "send-acknowledgment"
ACKNOWLEDGMENT = "acknowledgment"


def handle(payload: Dict[str, Any], ctx: PipelineContext) -> StepResult:
    """Send the intake acknowledgment at most once per lead."""
    lead_id = payload["lead_id"]
    skipped = {"status": "skipped", "lead_id": lead_id, "step": TASK_NAME}

    lead = ctx.store.get(lead_id)
    if lead is None:
        logger.error(f"Lead {lead_id} not found")
        return dict(skipped, reason="lead_not_found")

    if already_sent(ctx, lead_id, ACKNOWLEDGMENT):
        logger.info(f"Acknowledgment already sent to lead {lead_id}, skipping")
        return dict(skipped, reason="already_sent")

    try:
        content = ctx.llm.generate_content(ACKNOWLEDGMENT, lead.context())

        # Also matches acknowledgments logged without a type
        if already_sent(ctx, lead_id, ACKNOWLEDGMENT, subject=content["subject"]):
            logger.info(f"Acknowledgment '{content['subject']}' already sent to lead {lead_id}, skipping")
            return dict(skipped, reason="already_sent")

        sent = ctx.email.send(
            to=lead.email,
            subject=content["subject"],
            body=content["body"],
            metadata={"type": ACKNOWLEDGMENT, "automated": True},
            lead_id=lead_id,
        )
    except PermanentError as e:
        logger.error(f"Failed to send acknowledgment for lead {lead_id}: {e}")
        return {"status": "failed", "lead_id": lead_id, "step": TASK_NAME, "errors": [str(e)]}

    logger.info(f"Acknowledgment sent to {lead.email}")
    return {"status": "ok", "lead_id": lead_id, "step": TASK_NAME, "message_id": sent["message_id"]}
