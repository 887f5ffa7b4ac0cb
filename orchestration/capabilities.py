"""
Capabilities the hand-off router can dispatch to.

Each capability takes an input (whatever the previous step produced, often
None) and a context dict carrying at least `lead_id`, and returns a
CapabilityResult. A result may name `next_capability` to chain another step.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from loguru import logger

from orchestration.context import PipelineContext
from orchestration.errors import PermanentError
from orchestration.state import (
    ActivityType, CATEGORY_STAGE, Category, Lead, MeetingStatus, Stage, TERMINAL_STAGES,
)


@dataclass
class CapabilityResult:
    success: bool
    action: str
    data: Optional[Dict[str, Any]] = None
    reasoning: Optional[str] = None
    next_capability: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class Capability(ABC):
    """Abstract base class for all capabilities."""

    name: str = ""

    def __init__(self, ctx: PipelineContext):
        self.ctx = ctx

    def _lead(self, input: Any, context: Dict[str, Any]) -> Lead:
        lead_id = context.get("lead_id")
        if not lead_id and isinstance(input, dict):
            lead_id = input.get("lead_id")
        return self.ctx.store.require(lead_id)

    @abstractmethod
    def execute(self, input: Any, context: Dict[str, Any]) -> CapabilityResult:
        """
        Execute the capability.

        Raises:
            TransientError: collaborator unavailable; the caller may retry
            NonRetryableError: lead missing, illegal transition, rejected request
        """


class QualificationCapability(Capability):
    name = "qualification"

    def execute(self, input: Any, context: Dict[str, Any]) -> CapabilityResult:
        lead = self._lead(input, context)
        scored = self.ctx.scoring.score(lead)
        total, category = scored["totalScore"], scored["category"]

        self.ctx.store.update(lead.id, score=total, category=category)
        self.ctx.store.add_activity(
            lead.id,
            ActivityType.SCORE_UPDATED,
            f"Lead scored {total}/100 ({category.value})",
            metadata={"previousScore": lead.score, "newScore": total, "breakdown": scored["breakdown"]},
        )

        stage = lead.stage
        if stage == Stage.NEW:
            self.ctx.engine.transition(lead.id, Stage.NEW, Stage.QUALIFYING, "Qualification started")
            stage = Stage.QUALIFYING

        if stage == Stage.QUALIFYING:
            target = CATEGORY_STAGE[category]
            self.ctx.engine.transition(lead.id, Stage.QUALIFYING, target, f"Scored {total}/100 ({category.value})")
            if target == Stage.HOT_ENGAGED:
                self.ctx.notifier.notify("hot_lead", {
                    "lead_id": lead.id,
                    "name": lead.full_name,
                    "company": lead.company,
                    "job_title": lead.job_title,
                    "score": total,
                })
        else:
            logger.info(f"Lead {lead.id} re-scored in stage {stage.value}, stage unchanged")

        return CapabilityResult(
            success=True,
            action=f"Lead scored: {total}/100 ({category.value})",
            data={"lead_id": lead.id, "totalScore": total, "category": category.value,
                  "breakdown": scored["breakdown"]},
            reasoning=scored["reasoning"],
            next_capability="communication" if category == Category.HOT else None,
        )


class ResearchCapability(Capability):
    name = "research"

    def execute(self, input: Any, context: Dict[str, Any]) -> CapabilityResult:
        lead = self._lead(input, context)

        domain = lead.domain or (lead.email.split("@")[-1] if lead.email and "@" in lead.email else None)
        if not domain and not lead.email:
            return CapabilityResult(success=False, action="error", error="No domain or email available for enrichment",
                                    error_kind="missing_data")

        enrichment = self.ctx.enricher.enrich(domain=domain, email=lead.email)
        insights = self.ctx.llm.research_insights(lead.context())

        merged = dict(lead.enrichment, **enrichment, insights=insights)
        fields = {"enrichment": merged}
        if not lead.industry and enrichment["company"].get("industry"):
            fields["industry"] = enrichment["company"]["industry"]
        if not lead.domain and domain:
            fields["domain"] = domain
        self.ctx.store.update(lead.id, **fields)

        self.ctx.store.add_activity(
            lead.id,
            ActivityType.LEAD_ENRICHED,
            f"Lead enriched from {enrichment['enrichment_source']}",
            metadata={"source": enrichment["enrichment_source"]},
        )

        return CapabilityResult(
            success=True,
            action="Lead enriched with company and person data",
            data={"lead_id": lead.id, "enrichment_source": enrichment["enrichment_source"], "insights": insights},
            reasoning=insights.get("recommendedApproach"),
            next_capability="qualification",
        )


class CommunicationCapability(Capability):
    name = "communication"

    def execute(self, input: Any, context: Dict[str, Any]) -> CapabilityResult:
        lead = self._lead(input, context)
        options = input if isinstance(input, dict) else {}
        kind = options.get("type") or "follow_up"

        content = self.ctx.llm.generate_content(kind, lead.context())
        data = {"lead_id": lead.id, "subject": content["subject"], "body": content["body"], "type": kind}

        if options.get("send"):
            sent = self.ctx.email.send(
                to=lead.email,
                subject=content["subject"],
                body=content["body"],
                metadata={"type": kind, "automated": True},
                lead_id=lead.id,
            )
            data["message_id"] = sent["message_id"]

        return CapabilityResult(
            success=True,
            action=f"Generated {kind} email",
            data=data,
            reasoning=f"Email personalized with: {', '.join(content.get('personalization') or []) or 'defaults'}",
        )


# Scheduling policy. avoid_days use weekday() numbering: Monday=0 ... Sunday=6

INDUSTRY_PREFERENCES = {
    "healthcare": {"start": 7, "end": 15, "avoid_days": [4], "notes": "Early calls before clinics open"},
    "finance": {"start": 8, "end": 17, "avoid_days": [4], "notes": "Avoid month-end"},
    "technology": {"start": 10, "end": 18, "avoid_days": [], "notes": "Avoid Monday mornings"},
    "insurance": {"start": 9, "end": 16, "avoid_days": [0, 4], "notes": "Mid-week preferred"},
    "default": {"start": 9, "end": 17, "avoid_days": [], "notes": "Standard business hours"},
}

COUNTRY_HOLIDAYS = {
    "US": ["2026-01-01", "2026-01-19", "2026-02-16", "2026-05-25", "2026-07-03", "2026-09-07", "2026-11-26", "2026-12-25"],
    "UK": ["2026-01-01", "2026-04-03", "2026-04-06", "2026-05-04", "2026-05-25", "2026-08-31", "2026-12-25", "2026-12-28"],
    "CA": ["2026-01-01", "2026-02-16", "2026-04-03", "2026-05-18", "2026-07-01", "2026-09-07", "2026-10-12", "2026-12-25"],
    "AU": ["2026-01-01", "2026-01-26", "2026-04-03", "2026-04-06", "2026-04-25", "2026-06-08", "2026-12-25", "2026-12-28"],
}

COUNTRY_CODES = {"UNITED STATES": "US", "USA": "US", "UNITED KINGDOM": "UK", "GB": "UK",
                 "CANADA": "CA", "AUSTRALIA": "AU"}


def industry_preferences(industry: Optional[str]) -> Dict[str, Any]:
    return INDUSTRY_PREFERENCES.get((industry or "default").lower(), INDUSTRY_PREFERENCES["default"])


def holidays_for(country: Optional[str]) -> List[str]:
    if not country:
        return []
    code = COUNTRY_CODES.get(country.upper(), country.upper()[:2])
    return COUNTRY_HOLIDAYS.get(code, [])


def suggest_slots(now: datetime, industry: Optional[str], country: Optional[str], count: int = 3,
                  horizon_days: int = 21) -> List[datetime]:
    """Next `count` slots at the industry's preferred start hour, skipping weekends, avoided days and holidays."""
    prefs = industry_preferences(industry)
    holidays = set(holidays_for(country))
    slots: List[datetime] = []

    for offset in range(horizon_days + 1):
        day = now + timedelta(days=offset)
        slot = day.replace(hour=prefs["start"], minute=0, second=0, microsecond=0)
        if slot <= now:
            continue
        if slot.weekday() >= 5 or slot.weekday() in prefs["avoid_days"]:
            continue
        if slot.strftime("%Y-%m-%d") in holidays:
            continue
        slots.append(slot)
        if len(slots) == count:
            break
    return slots


def urgency_for(score: int) -> Dict[str, Any]:
    if score >= 90:
        return {"level": "IMMEDIATE", "within_hours": 24}
    if score >= 80:
        return {"level": "HIGH", "within_hours": 48}
    return {"level": "NORMAL", "within_hours": None}


def _parse_time(value) -> datetime:
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(value)
    except (TypeError, ValueError) as e:
        raise PermanentError("scheduling", f"Invalid start_time: {value!r}") from e


class SchedulingCapability(Capability):
    name = "scheduling"

    def execute(self, input: Any, context: Dict[str, Any]) -> CapabilityResult:
        lead = self._lead(input, context)
        options = input if isinstance(input, dict) else {}
        action = options.get("action") or "suggest"

        if action == "confirm":
            return self._confirm(lead, options)
        if action == "reschedule":
            return self._reschedule(lead, options)
        return self._suggest(lead, options)

    def _suggest(self, lead: Lead, options: Dict[str, Any]) -> CapabilityResult:
        now = self.ctx.now()
        duration = int(options.get("duration") or 30)
        slots = suggest_slots(now, lead.industry, lead.country)
        urgency = urgency_for(lead.score)
        prefs = industry_preferences(lead.industry)

        escalated = False
        within = urgency["within_hours"]
        if within and (not slots or slots[0] > now + timedelta(hours=within)):
            self.ctx.store.add_escalation(lead.id, f"No slot within {within}h for {urgency['level']} lead",
                                          {"score": lead.score})
            escalated = True

        return CapabilityResult(
            success=True,
            action=f"Suggested {len(slots)} slots",
            data={
                "lead_id": lead.id,
                "slots": [s.isoformat() for s in slots],
                "duration": duration,
                "urgency": urgency["level"],
                "escalated": escalated,
            },
            reasoning=prefs["notes"],
        )

    def _book(self, lead: Lead, options: Dict[str, Any]):
        start = _parse_time(options.get("start_time"))
        duration = int(options.get("duration") or 30)
        meeting = self.ctx.store.create_meeting(lead.id, start, start + timedelta(minutes=duration))
        self.ctx.store.add_activity(
            lead.id,
            ActivityType.MEETING_SCHEDULED,
            f"Meeting scheduled for {start.isoformat()}",
            metadata={"meeting_id": meeting.id, "duration": duration},
        )
        return meeting

    def _confirm(self, lead: Lead, options: Dict[str, Any]) -> CapabilityResult:
        meeting = self._book(lead, options)
        if lead.stage in (Stage.HOT_ENGAGED, Stage.WARM_NURTURING):
            self.ctx.engine.transition(lead.id, lead.stage, Stage.MEETING_SCHEDULED, "Meeting booked")
        return CapabilityResult(
            success=True,
            action="Meeting confirmed",
            data={"lead_id": lead.id, "meeting_id": meeting.id, "start_time": meeting.start_time.isoformat()},
        )

    def _reschedule(self, lead: Lead, options: Dict[str, Any]) -> CapabilityResult:
        old_id = options.get("meeting_id")
        if old_id:
            self.ctx.store.update_meeting(old_id, status=MeetingStatus.RESCHEDULED, outcome="rescheduled")
        meeting = self._book(lead, options)
        if lead.stage in (Stage.HOT_ENGAGED, Stage.WARM_NURTURING):
            self.ctx.engine.transition(lead.id, lead.stage, Stage.MEETING_SCHEDULED, "Meeting rescheduled")
        return CapabilityResult(
            success=True,
            action="Meeting rescheduled",
            data={"lead_id": lead.id, "meeting_id": meeting.id, "previous_meeting_id": old_id,
                  "start_time": meeting.start_time.isoformat()},
        )


class DocumentCapability(Capability):
    name = "document"

    DOCUMENT_TYPES = ("proposal", "contract", "sow", "nda")

    def execute(self, input: Any, context: Dict[str, Any]) -> CapabilityResult:
        lead = self._lead(input, context)
        options = input if isinstance(input, dict) else {}
        doc_type = options.get("type") or "proposal"
        if doc_type not in self.DOCUMENT_TYPES:
            return CapabilityResult(success=False, action="error", error=f"Unknown document type: {doc_type}",
                                    error_kind="invalid_input")

        content = self.ctx.llm.generate_content(doc_type, lead.context())
        self.ctx.store.add_activity(
            lead.id,
            ActivityType.DOCUMENT_SENT,
            f"{doc_type.upper()} generated for {lead.company or lead.full_name}",
            metadata={"type": doc_type, "title": content["subject"]},
        )
        self.ctx.notifier.notify("document", {
            "lead_id": lead.id,
            "message": f"{doc_type.upper()} ready for {lead.company or lead.full_name}: {content['subject']}",
        })

        return CapabilityResult(
            success=True,
            action=f"Generated {doc_type} for {lead.company or lead.full_name}",
            data={"lead_id": lead.id, "type": doc_type, "title": content["subject"], "content": content["body"]},
        )


class AnalyticsCapability(Capability):
    name = "analytics"

    def execute(self, input: Any, context: Dict[str, Any]) -> CapabilityResult:
        options = input if isinstance(input, dict) else {}
        if context.get("lead_id") and options.get("type") != "pipeline":
            return self._lead_metrics(self._lead(input, context))
        return self._pipeline_metrics()

    def _pipeline_metrics(self) -> CapabilityResult:
        counts = self.ctx.store.stage_counts()
        total = sum(counts.values())
        won = counts.get(Stage.CLOSED_WON.value, 0)
        lost = counts.get(Stage.CLOSED_LOST.value, 0)
        active = sum(n for stage, n in counts.items() if Stage(stage) not in TERMINAL_STAGES)

        return CapabilityResult(
            success=True,
            action="pipeline analysis completed",
            data={
                "total_leads": total,
                "by_stage": counts,
                "active": active,
                "win_rate": round(won / (won + lost), 3) if (won + lost) else None,
            },
        )

    def _lead_metrics(self, lead: Lead) -> CapabilityResult:
        store = self.ctx.store
        meetings = store.meetings_for(lead.id)
        return CapabilityResult(
            success=True,
            action="lead analysis completed",
            data={
                "lead_id": lead.id,
                "score": lead.score,
                "stage": lead.stage.value,
                "activities": len(store.activities(lead.id)),
                "communications": len(store.communications(lead.id)),
                "meetings": len(meetings),
                "no_shows": store.count_no_shows(lead.id),
                "stage_changes": len(store.stage_history(lead.id)),
            },
        )


CAPABILITIES = [
    QualificationCapability,
    ResearchCapability,
    CommunicationCapability,
    SchedulingCapability,
    DocumentCapability,
    AnalyticsCapability,
]


def build_registry(ctx: PipelineContext) -> Dict[str, Capability]:
    """Instantiate every capability once, keyed by name."""
    return {cls.name: cls(ctx) for cls in CAPABILITIES}
