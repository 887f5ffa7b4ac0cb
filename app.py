import os
import time
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Dict, Any, Optional
from fastapi import FastAPI, Request, HTTPException, Body
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from loguru import logger
from dotenv import load_dotenv

from config import Settings
from orchestration.errors import (
    InvalidTransitionError,
    LeadNotFoundError,
    MeetingNotFoundError,
    PermanentError,
    TransientError,
    UnknownSequenceError,
)
from orchestration.intake import normalize_lead_payload
from orchestration.orchestrator import Orchestrator

# Load environment variables
load_dotenv()

# Configure logging
logger.add("logs/app.log", rotation="1 day", retention="7 days", level="INFO")


def create_app(orchestrator: Optional[Orchestrator] = None, run_workers: bool = True) -> FastAPI:
    """Build the HTTP surface around an orchestrator."""
    orchestrator = orchestrator or Orchestrator(Settings.from_env())
    idem = orchestrator.ctx.idem

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if run_workers:
            orchestrator.start()
        yield
        if run_workers:
            orchestrator.stop()

    app = FastAPI(
        title="Lead Pipeline Orchestrator",
        description="Stage engine, task queue and agent routing for inbound leads",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.orchestrator = orchestrator

    @app.post("/webhooks/lead")
    async def ingest_lead(req: Request):
        """
        Webhook endpoint for lead ingestion.

        Expected payload:
        {
            "email": "jane.doe@company.com",
            "company": "Company Name",
            "full_name": "Jane Doe",
            "title": "VP Engineering",
            "message": "Looking for a demo",
            "source": "website",
            "country": "US"
        }
        """
        start_time = time.time()
        payload = await req.json()
        logger.info(f"Received lead webhook: {payload.get('email', 'unknown')}")

        fields, errors = normalize_lead_payload(payload)
        if errors:
            logger.warning(f"Rejected lead webhook: {errors}")
            return JSONResponse(status_code=422, content={"status": "invalid", "errors": errors})

        key = payload.get("event_id") or fields["email"]
        if not idem.check_and_set(f"lead:{key}"):
            logger.warning(f"Duplicate lead ignored: {key}")
            return JSONResponse(
                status_code=200,
                content={"status": "duplicate_ignored", "message": "Lead already received"}
            )

        try:
            lead = orchestrator.create_lead(**fields)
        except Exception:
            # Release the key so the sender can retry this webhook
            idem.clear_key(f"lead:{key}")
            raise
        processing_time = time.time() - start_time
        logger.info(f"Lead {lead.id} accepted in {processing_time:.2f}s")

        return JSONResponse(
            status_code=202,
            content={"status": "accepted", "lead_id": lead.id, "processing_time": processing_time}
        )

    @app.get("/health")
    def health():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "timestamp": time.time(),
            "version": "1.0.0",
            "services": {
                "redis": "connected" if idem.r else "disconnected",
                "queue": type(orchestrator.queue.backend).__name__,
                "workers": "running" if orchestrator.workers.running else "stopped",
            }
        }

    @app.get("/leads/{lead_id}")
    def get_lead(lead_id: str):
        lead = orchestrator.store.require(lead_id)
        return {
            "lead": lead.context(),
            "available_transitions": [s.value for s in orchestrator.ctx.engine.available_transitions(lead_id)],
            "escalations": [asdict(e) for e in orchestrator.store.escalations(lead_id)],
        }

    @app.get("/leads/{lead_id}/history")
    def get_lead_history(lead_id: str):
        orchestrator.store.require(lead_id)
        return {"lead_id": lead_id, "history": [asdict(e) for e in orchestrator.ctx.engine.stage_history(lead_id)]}

    @app.post("/leads/{lead_id}/pipeline")
    def run_pipeline(lead_id: str):
        """Re-run the new-lead pipeline for an existing lead."""
        task_id = orchestrator.process_new_lead(lead_id)
        return {"status": "queued", "lead_id": lead_id, "task_id": task_id}

    @app.post("/leads/{lead_id}/stage")
    def change_stage(lead_id: str, body: Dict[str, Any] = Body(...)):
        try:
            entry = orchestrator.transition_stage(
                lead_id,
                body.get("from_stage"),
                body["to_stage"],
                body.get("reason") or "Manual stage change",
                actor=body.get("actor"),
            )
        except (KeyError, ValueError) as e:
            raise HTTPException(status_code=422, detail=f"Invalid stage change request: {e}")
        return {"status": "ok", "entry": asdict(entry)}

    @app.post("/capabilities/{name}")
    def execute_capability(name: str, body: Dict[str, Any] = Body(default={})):
        result = orchestrator.execute_capability(name, body.get("input"), body.get("context"))
        status_code = 404 if result.error_kind == "unknown_capability" else 200
        return JSONResponse(status_code=status_code, content=jsonable_encoder(result.to_dict()))

    @app.post("/meetings/{meeting_id}/outcome")
    def record_meeting_outcome(meeting_id: str, body: Dict[str, Any] = Body(...)):
        try:
            return orchestrator.record_meeting_outcome(meeting_id, body["status"], body.get("notes"))
        except (KeyError, ValueError) as e:
            raise HTTPException(status_code=422, detail=f"Invalid meeting outcome: {e}")

    @app.post("/scanners/{name}/tick")
    def tick_scanner(name: str):
        try:
            return orchestrator.tick(name)
        except KeyError:
            raise HTTPException(status_code=404, detail=f"Unknown scanner: {name}")

    @app.post("/sequences")
    def start_sequence(body: Dict[str, Any] = Body(...)):
        if not body.get("lead_id") or not body.get("sequence_id"):
            raise HTTPException(status_code=422, detail="lead_id and sequence_id are required")
        active = orchestrator.start_sequence(body["lead_id"], body["sequence_id"])
        return asdict(active)

    @app.get("/admin/dead-letters")
    def dead_letters():
        letters = orchestrator.queue.dead_letters()
        return {"count": len(letters), "dead_letters": letters}

    # Error handlers
    @app.exception_handler(LeadNotFoundError)
    @app.exception_handler(MeetingNotFoundError)
    @app.exception_handler(UnknownSequenceError)
    async def not_found_handler(request: Request, exc: Exception):
        return JSONResponse(status_code=404, content={"status": "not_found", "message": str(exc)})

    @app.exception_handler(InvalidTransitionError)
    async def invalid_transition_handler(request: Request, exc: InvalidTransitionError):
        return JSONResponse(status_code=409, content={"status": "invalid_transition", "message": str(exc)})

    @app.exception_handler(PermanentError)
    async def permanent_error_handler(request: Request, exc: PermanentError):
        logger.error(f"Permanent failure: {exc}")
        return JSONResponse(status_code=422, content={"status": "error", "message": str(exc)})

    @app.exception_handler(TransientError)
    async def transient_error_handler(request: Request, exc: TransientError):
        logger.warning(f"Transient failure: {exc}")
        return JSONResponse(status_code=503, content={"status": "unavailable", "message": str(exc)})

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception: {exc}")
        return JSONResponse(
            status_code=500,
            content={"status": "error", "message": "Internal server error"}
        )

    return app


if __name__ == "__main__":
    import uvicorn

    # Create logs directory if it doesn't exist
    os.makedirs("logs", exist_ok=True)

    logger.info("Starting Lead Pipeline Orchestrator")

    uvicorn.run(
        "app:create_app",
        factory=True,
        host="0.0.0.0",
        port=8000,
        log_level="info"
    )
