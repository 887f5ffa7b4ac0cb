"""
Error taxonomy for the pipeline.

NonRetryableError subclasses are validation/logic failures: the task queue
dead-letters them on first occurrence. TransientError marks collaborator
failures (timeouts, connection drops, 5xx) that the queue retries with backoff.
"""


class PipelineError(Exception):
    """Base class for all pipeline errors."""


class NonRetryableError(PipelineError):
    """Failure that will not go away by trying again."""


class LeadNotFoundError(NonRetryableError):
    def __init__(self, lead_id: str):
        super().__init__(f"Lead {lead_id} not found")
        self.lead_id = lead_id


class MeetingNotFoundError(NonRetryableError):
    def __init__(self, meeting_id: str):
        super().__init__(f"Meeting {meeting_id} not found")
        self.meeting_id = meeting_id


class InvalidTransitionError(NonRetryableError):
    def __init__(self, lead_id: str, from_stage, to_stage, detail: str = ""):
        from_value = getattr(from_stage, "value", from_stage)
        to_value = getattr(to_stage, "value", to_stage)
        message = f"Invalid transition for lead {lead_id}: {from_value} -> {to_value}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)
        self.lead_id = lead_id
        self.from_stage = from_stage
        self.to_stage = to_stage


class UnknownSequenceError(NonRetryableError):
    def __init__(self, sequence_id: str):
        super().__init__(f"Sequence {sequence_id} not found")
        self.sequence_id = sequence_id


class CollaboratorError(PipelineError):
    """Failure reported by an external collaborator (LLM, email, enrichment)."""

    def __init__(self, service: str, message: str):
        super().__init__(f"{service}: {message}")
        self.service = service


class TransientError(CollaboratorError):
    """Timeout, connection error or 5xx. Eligible for queue retry."""


class PermanentError(CollaboratorError, NonRetryableError):
    """Validation-type rejection by a collaborator. Terminal for the attempt."""
