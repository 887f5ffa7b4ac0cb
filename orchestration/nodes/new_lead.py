from datetime import timedelta
from typing import TypedDict, Optional, List, Dict, Any
from langgraph.graph import StateGraph, START, END
from loguru import logger

from orchestration.context import PipelineContext
from orchestration.nodes import process_lead
from orchestration.state import StepResult

TASK_NAME = "new-lead-pipeline"


class NewLeadState(TypedDict, total=False):
    """State shape for the new-lead workflow."""
    lead_id: str
    qualification: Dict[str, Any]    # CapabilityResult.to_dict()
    enrichment: Dict[str, Any]
    follow_up_task_id: Optional[str]
    errors: List[str]


def qualify(state: NewLeadState, ctx: PipelineContext) -> NewLeadState:
    """Score the lead and move it out of NEW/QUALIFYING."""
    logger.info(f"Starting qualification for lead: {state['lead_id']}")

    try:
        result = ctx.router.execute("qualification", None, {"lead_id": state["lead_id"]}, handoff=False)
        state["qualification"] = result.to_dict()
        if not result.success:
            state.setdefault("errors", []).append(f"Qualification failed: {result.error}")
    except Exception as e:
        error_msg = f"Qualification failed: {str(e)}"
        logger.error(error_msg)
        state.setdefault("errors", []).append(error_msg)

    return state


def enrich(state: NewLeadState, ctx: PipelineContext) -> NewLeadState:
    """Run research; its hand-off re-scores the lead with the enrichment data."""
    logger.info(f"Starting enrichment for lead: {state['lead_id']}")

    try:
        result = ctx.router.execute("research", None, {"lead_id": state["lead_id"]})
        state["enrichment"] = result.to_dict()
        if not result.success:
            logger.warning(f"Enrichment failed for lead {state['lead_id']}: {result.error}")
            state.setdefault("errors", []).append(f"Enrichment failed: {result.error}")
    except Exception as e:
        error_msg = f"Enrichment failed: {str(e)}"
        logger.error(error_msg)
        state.setdefault("errors", []).append(error_msg)

    return state


def schedule_follow_up(state: NewLeadState, ctx: PipelineContext) -> NewLeadState:
    """Always queue the follow-up; the follow-up step decides whether to send."""
    delay = timedelta(days=ctx.settings.follow_up_delay_days)
    state["follow_up_task_id"] = process_lead.enqueue_follow_up(ctx, state["lead_id"], delay=delay)
    logger.info(f"Follow-up scheduled in {delay} for lead {state['lead_id']}")
    return state


def build_workflow(ctx: PipelineContext):
    """Build the new-lead workflow: qualify -> enrich -> schedule_follow_up."""
    workflow = StateGraph(NewLeadState)

    workflow.add_node("qualify", lambda state: qualify(state, ctx))
    workflow.add_node("enrich", lambda state: enrich(state, ctx))
    workflow.add_node("schedule_follow_up", lambda state: schedule_follow_up(state, ctx))

    workflow.add_edge(START, "qualify")
    workflow.add_edge("qualify", "enrich")
    workflow.add_edge("enrich", "schedule_follow_up")
    workflow.add_edge("schedule_follow_up", END)

    return workflow.compile()


def handle(payload: Dict[str, Any], ctx: PipelineContext, graph=None) -> StepResult:
    lead_id = payload["lead_id"]
    logger.info(f"Starting full pipeline for new lead {lead_id}")

    if ctx.store.get(lead_id) is None:
        logger.error(f"Lead {lead_id} not found")
        return {"status": "skipped", "lead_id": lead_id, "step": TASK_NAME, "reason": "lead_not_found"}

    graph = graph or build_workflow(ctx)
    final = graph.invoke({"lead_id": lead_id, "errors": []})

    logger.info(f"Pipeline initiated for lead {lead_id}")
    return {
        "status": "ok",
        "lead_id": lead_id,
        "step": TASK_NAME,
        "errors": final.get("errors", []),
        "data": {"follow_up_task_id": final.get("follow_up_task_id")},
    }
