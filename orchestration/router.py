import time
from typing import Any, Dict, Optional
from loguru import logger

from orchestration.capabilities import Capability, CapabilityResult
from orchestration.context import PipelineContext
from orchestration.errors import TransientError
from orchestration.state import ActivityType

HANDOFF_TASK = "capability-handoff"


class CapabilityRouter:
    """
    Dispatches a named capability and chains hand-offs.

    A successful result naming `next_capability` is enqueued as a
    `capability-handoff` task carrying the result data as the next input.
    The `hops` counter in the context bounds the chain length.
    """

    def __init__(self, ctx: PipelineContext, registry: Dict[str, Capability]):
        self.ctx = ctx
        self.registry = registry

    def execute(self, name: str, input: Any = None, context: Optional[Dict[str, Any]] = None,
                handoff: bool = True) -> CapabilityResult:
        context = dict(context or {})
        lead_id = context.get("lead_id")
        start = time.monotonic()
        logger.info(f"Starting capability {name} for lead: {lead_id or 'N/A'}")

        capability = self.registry.get((name or "").lower())
        if capability is None:
            logger.error(f"Unknown capability: {name}")
            result = CapabilityResult(success=False, action="unknown_capability",
                                      error=f"Unknown capability: {name}", error_kind="unknown_capability")
            self._log_activity(name, result, lead_id)
            return result

        try:
            result = capability.execute(input, context)
        except TransientError as e:
            logger.warning(f"Capability {name} hit a transient failure: {e}")
            self._log_activity(name, CapabilityResult(success=False, action="error", error=str(e),
                                                      error_kind="transient"), lead_id)
            raise
        except Exception as e:
            logger.error(f"Capability {name} failed: {e}")
            result = CapabilityResult(success=False, action="error", error=str(e),
                                      error_kind=type(e).__name__)

        duration_ms = int((time.monotonic() - start) * 1000)
        logger.info(f"Capability {name} complete: success={result.success} duration={duration_ms}ms")

        self._log_activity(name, result, lead_id)

        if handoff and result.success and result.next_capability:
            self._handoff(name, result, context)

        return result

    def _handoff(self, name: str, result: CapabilityResult, context: Dict[str, Any]) -> Optional[str]:
        hops = int(context.get("hops", 0)) + 1
        if hops > self.ctx.settings.max_handoff_depth:
            logger.warning(
                f"Hand-off {name} -> {result.next_capability} dropped for lead {context.get('lead_id')}: "
                f"depth {hops} exceeds {self.ctx.settings.max_handoff_depth}"
            )
            return None

        logger.info(f"Hand-off: {name} -> {result.next_capability} for lead {context.get('lead_id')}")
        return self.ctx.queue.enqueue(HANDOFF_TASK, {
            "capability": result.next_capability,
            "input": result.data,
            "context": dict(context, hops=hops, origin=name),
        })

    def _log_activity(self, name: str, result: CapabilityResult, lead_id: Optional[str]) -> None:
        if not lead_id:
            return
        self.ctx.store.add_activity(
            lead_id,
            ActivityType.WORKFLOW_TRIGGERED,
            f"Capability {name}: {result.action}",
            metadata={
                "capability": name,
                "action": result.action,
                "success": result.success,
                "reasoning": (result.reasoning or "")[:200],
                "error": result.error,
                "error_kind": result.error_kind,
            },
        )
