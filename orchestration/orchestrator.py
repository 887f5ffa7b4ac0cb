from datetime import datetime
from typing import Any, Callable, Dict, Optional
from loguru import logger

from config import Settings
from connectors.clearbit import ClearbitEnricher
from connectors.email import EmailService
from connectors.idempotency import Idem
from connectors.llm import LLMClient
from connectors.queue import Backoff, TaskQueue
from connectors.scoring import ScoringService
from connectors.slack import SlackNotifier
from connectors.store import LeadStore
from orchestration import scanners
from orchestration.capabilities import CapabilityResult, build_registry
from orchestration.context import PipelineContext
from orchestration.errors import MeetingNotFoundError
from orchestration.nodes import acknowledge, handoff, new_lead, no_show, process_lead, sequence
from orchestration.router import CapabilityRouter
from orchestration.scheduler import Scheduler, daily_at, every_minutes
from orchestration.sequences import ActiveSequence, SequenceTracker
from orchestration.state import ActivityType, Lead, MeetingStatus, StageHistoryEntry, StepResult, utcnow
from orchestration.transitions import StageTransitionEngine
from orchestration.worker import WorkerPool

STALE_SCAN = "stale-lead-scan"
NO_SHOW_SCAN = "no-show-scan"


class Orchestrator:
    """
    Wires the store, queue, collaborators and task handlers together and
    exposes the pipeline's entry points.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        store: Optional[LeadStore] = None,
        queue: Optional[TaskQueue] = None,
        clock: Callable[[], datetime] = utcnow,
        llm: Optional[LLMClient] = None,
        enricher: Optional[ClearbitEnricher] = None,
        email: Optional[EmailService] = None,
        notifier: Optional[SlackNotifier] = None,
        idem: Optional[Idem] = None,
    ):
        settings = settings or Settings.from_env()
        store = store or LeadStore(clock=clock)
        queue = queue or TaskQueue.from_settings(settings, clock=clock)
        timeout = settings.collaborator_timeout_seconds
        llm = llm or LLMClient(settings.openai_api_key, settings.openai_model, timeout)

        self.settings = settings
        self.ctx = PipelineContext(
            settings=settings,
            store=store,
            queue=queue,
            engine=StageTransitionEngine(store),
            llm=llm,
            scoring=ScoringService(llm),
            enricher=enricher or ClearbitEnricher(settings.clearbit_api_key, timeout),
            email=email or EmailService(store, settings.sendgrid_api_key, settings.email_from,
                                        settings.email_from_name, timeout),
            notifier=notifier or SlackNotifier(settings.slack_bot_token, settings.slack_default_channel,
                                               settings.slack_escalation_channel),
            idem=idem or Idem(settings.redis_url),
        )
        self.ctx.router = CapabilityRouter(self.ctx, build_registry(self.ctx))
        self.ctx.sequences = SequenceTracker(store, queue)
        self.workflow = new_lead.build_workflow(self.ctx)

        self._register_handlers()

        self.scheduler = Scheduler(self.ctx.idem, clock=clock)
        self.scheduler.add_job(STALE_SCAN, self.run_stale_lead_scan, daily_at(settings.stale_scan_hour_utc))
        self.scheduler.add_job(NO_SHOW_SCAN, self.run_no_show_scan,
                               every_minutes(settings.no_show_scan_interval_minutes))
        self.workers = WorkerPool(queue, settings.worker_count, settings.poll_interval_seconds)

    @property
    def store(self) -> LeadStore:
        return self.ctx.store

    @property
    def queue(self) -> TaskQueue:
        return self.ctx.queue

    def _register_handlers(self) -> None:
        ctx = self.ctx
        self.queue.consume(new_lead.TASK_NAME, lambda payload: new_lead.handle(payload, ctx, self.workflow))
        self.queue.consume(process_lead.TASK_NAME, lambda payload: process_lead.handle(payload, ctx))
        self.queue.consume(acknowledge.TASK_NAME, lambda payload: acknowledge.handle(payload, ctx))
        self.queue.consume(no_show.TASK_NAME, lambda payload: no_show.handle(payload, ctx))
        self.queue.consume(handoff.TASK_NAME, lambda payload: handoff.handle(payload, ctx))
        self.queue.consume(sequence.TASK_NAME, lambda payload: sequence.handle(payload, ctx))

    # Lifecycle

    def start(self) -> None:
        self.workers.start()
        self.scheduler.start()

    def stop(self) -> None:
        self.scheduler.stop()
        self.workers.stop()

    # Entry points

    def create_lead(self, **fields) -> Lead:
        """Store a new lead, then queue its acknowledgment and pipeline."""
        lead = self.store.create_lead(**fields)
        self.store.add_activity(lead.id, ActivityType.LEAD_CREATED,
                                f"Lead created from {lead.source}", metadata={"source": lead.source})
        self.queue.enqueue(acknowledge.TASK_NAME, {"lead_id": lead.id})
        self.process_new_lead(lead.id)
        return lead

    def process_new_lead(self, lead_id: str) -> str:
        """Queue the qualify -> enrich -> follow-up pipeline for a lead."""
        self.store.require(lead_id)
        logger.info(f"Starting pipeline for lead {lead_id}")
        return self.queue.enqueue(
            new_lead.TASK_NAME,
            {"lead_id": lead_id},
            max_attempts=3,
            backoff=Backoff(type="exponential", delay=self.settings.task_backoff_seconds,
                            max_delay=self.settings.task_backoff_max_seconds),
        )

    def execute_capability(self, name: str, input: Any = None,
                           context: Optional[Dict[str, Any]] = None) -> CapabilityResult:
        return self.ctx.router.execute(name, input, context or {})

    def run_stale_lead_scan(self) -> Dict[str, Any]:
        return scanners.run_stale_lead_scan(self.ctx)

    def run_no_show_scan(self) -> Dict[str, Any]:
        return scanners.run_no_show_scan(self.ctx)

    def transition_stage(self, lead_id: str, from_stage, to_stage, reason: str,
                         actor: Optional[str] = None) -> StageHistoryEntry:
        """Manual stage change; raises InvalidTransitionError on an illegal move."""
        return self.ctx.engine.transition(lead_id, from_stage, to_stage, reason, automated=False, actor=actor)

    def record_meeting_outcome(self, meeting_id: str, status, notes: Optional[str] = None) -> StepResult:
        """
        Record what happened at a meeting. A NO_SHOW starts the no-show
        workflow exactly as the scan would, tagged as a manual trigger.
        """
        status = status if isinstance(status, MeetingStatus) else MeetingStatus(status)
        meeting = self.store.get_meeting(meeting_id)
        if meeting is None:
            raise MeetingNotFoundError(meeting_id)

        if status == MeetingStatus.NO_SHOW:
            return no_show.start_no_show_workflow(meeting_id, self.ctx, trigger="manual")

        self.store.update_meeting(meeting_id, status=status, outcome=notes or status.value.lower())
        if status == MeetingStatus.COMPLETED:
            self.store.add_activity(meeting.lead_id, ActivityType.MEETING_HELD, "Meeting held",
                                    automated=False, metadata={"meeting_id": meeting_id, "notes": notes})
        elif status == MeetingStatus.CANCELLED:
            self.store.add_activity(meeting.lead_id, ActivityType.MEETING_CANCELLED, "Meeting cancelled",
                                    automated=False, metadata={"meeting_id": meeting_id, "notes": notes})

        logger.info(f"Meeting {meeting_id} outcome recorded: {status.value}")
        return {"status": "ok", "lead_id": meeting.lead_id, "step": "meeting-outcome",
                "data": {"meeting_id": meeting_id, "status": status.value}}

    def start_sequence(self, lead_id: str, sequence_id: str) -> ActiveSequence:
        return self.ctx.sequences.start(lead_id, sequence_id)

    def tick(self, name: str) -> Dict[str, Any]:
        """Run a scanner immediately (manual trigger)."""
        return self.scheduler.tick(name)
