from dataclasses import dataclass
from datetime import datetime
from typing import Optional, TYPE_CHECKING

from config import Settings
from connectors.clearbit import ClearbitEnricher
from connectors.email import EmailService
from connectors.idempotency import Idem
from connectors.llm import LLMClient
from connectors.queue import TaskQueue
from connectors.scoring import ScoringService
from connectors.slack import SlackNotifier
from connectors.store import LeadStore
from orchestration.transitions import StageTransitionEngine

if TYPE_CHECKING:
    from orchestration.router import CapabilityRouter
    from orchestration.sequences import SequenceTracker


@dataclass
class PipelineContext:
    """Everything a task handler may touch. Built once per orchestrator."""
    settings: Settings
    store: LeadStore
    queue: TaskQueue
    engine: StageTransitionEngine
    llm: LLMClient
    scoring: ScoringService
    enricher: ClearbitEnricher
    email: EmailService
    notifier: SlackNotifier
    idem: Idem
    router: Optional["CapabilityRouter"] = None
    sequences: Optional["SequenceTracker"] = None

    def now(self) -> datetime:
        return self.store.clock()
