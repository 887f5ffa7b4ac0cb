from typing import Dict, Any
from loguru import logger

from orchestration.context import PipelineContext
from orchestration.state import StepResult

TASK_NAME = "capability-handoff"


def handle(payload: Dict[str, Any], ctx: PipelineContext) -> StepResult:
    """Run the capability a previous result asked for."""
    capability = payload["capability"]
    context = payload.get("context") or {}
    lead_id = context.get("lead_id")
    logger.info(f"Hand-off to {capability} for lead {lead_id} (hop {context.get('hops', 0)})")

    result = ctx.router.execute(capability, payload.get("input"), context)

    if not result.success:
        return {"status": "failed", "lead_id": lead_id, "step": capability,
                "errors": [result.error or result.action], "data": result.to_dict()}
    return {"status": "ok", "lead_id": lead_id, "step": capability, "data": result.to_dict()}
