from typing import Any, Dict, Optional
from loguru import logger

from orchestration.context import PipelineContext
from orchestration.state import Direction, Lead, MeetingStatus, Stage


def already_sent(ctx: PipelineContext, lead_id: str, type: str, subject: Optional[str] = None,
                 meeting_id: Optional[str] = None) -> bool:
    """True if an outbound message of this type (or with this subject) exists."""
    for communication in ctx.store.communications(lead_id, direction=Direction.OUTBOUND):
        if meeting_id and communication.metadata.get("meeting_id") != meeting_id:
            continue
        if communication.type == type or (subject and communication.subject == subject):
            return True
    return False


def has_replied(ctx: PipelineContext, lead_id: str) -> bool:
    """Inbound communication since the last outbound one."""
    last_in = ctx.store.last_communication(lead_id, Direction.INBOUND)
    if last_in is None:
        return False
    last_out = ctx.store.last_communication(lead_id, Direction.OUTBOUND)
    return last_out is None or last_in.created_at >= last_out.created_at


def has_meeting_scheduled(ctx: PipelineContext, lead: Lead) -> bool:
    if lead.stage == Stage.MEETING_SCHEDULED:
        return True
    now = ctx.now()
    return any(
        m.status in (MeetingStatus.SCHEDULED, MeetingStatus.CONFIRMED) and m.start_time >= now
        for m in ctx.store.meetings_for(lead.id)
    )


def send_generated(ctx: PipelineContext, lead: Lead, kind: str, metadata: Optional[Dict[str, Any]] = None,
                   footer: str = "") -> Dict[str, Any]:
    """
    Generate `kind` content for the lead and send it.

    Raises whatever the content or email collaborators raise
    (TransientError / PermanentError).
    """
    content = ctx.llm.generate_content(kind, lead.context())
    body = f"{content['body']}\n\n{footer}" if footer else content["body"]
    result = ctx.email.send(
        to=lead.email,
        subject=content["subject"],
        body=body,
        metadata=dict({"type": kind, "automated": True}, **(metadata or {})),
        lead_id=lead.id,
    )
    logger.info(f"Sent {kind} email to {lead.email}: {result['message_id']}")
    return dict(result, subject=content["subject"])
