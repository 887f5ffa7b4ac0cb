import os
import sys
from datetime import datetime, timedelta, timezone

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import Settings
from connectors.idempotency import Idem
from orchestration.orchestrator import Orchestrator

# A Monday morning, well inside business hours
START = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Clock the tests move by hand."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def build_orchestrator(clock: FrozenClock = None, **overrides) -> Orchestrator:
    """Orchestrator on in-memory backends with every collaborator in mock mode."""
    clock = clock or FrozenClock()
    settings = Settings(**overrides)
    return Orchestrator(settings=settings, clock=clock, idem=Idem(clock=lambda: clock().timestamp()))


SAMPLE_LEAD = {
    "email": "jane.doe@acme.io",
    "first_name": "Jane",
    "last_name": "Doe",
    "company": "Acme",
    "job_title": "VP Engineering",
    "country": "US",
    "original_message": "Looking for a demo and pricing",
    "source": "website",
}

# Scores 90 with the rule engine: SaaS, VP, 150 employees, tech stack, demo intent, US
HOT_LEAD = dict(
    SAMPLE_LEAD,
    email="sam.lee@rocket.io",
    first_name="Sam",
    last_name="Lee",
    company="Rocket",
    job_title="VP Sales",
    industry="SaaS",
    original_message="Can we get a demo?",
    enrichment={"company": {"employees": 150, "tech": ["AWS"]}},
)
