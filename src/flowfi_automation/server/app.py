"""FastAPI app factory.

Endpoints are intentionally thin wrappers over :class:`AutomationEngine`.
Engine errors are mapped to HTTP status codes in one exception handler.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from flowfi_automation import __version__
from flowfi_automation.engine.config import EngineSettings
from flowfi_automation.engine.errors import (
    ConfigurationError,
    EngineError,
    LedgerError,
    NotAMember,
    NotFound,
)
from flowfi_automation.engine.runtime import AutomationEngine, build_engine
from flowfi_automation.server.config import ServerSettings
from flowfi_automation.server.models import (
    ApiAutomation,
    ApiExecutionResult,
    ApiPaymentBatch,
    ApiProposal,
    ApiTrigger,
    CreateSubscriptionRequest,
    CreateWorkflowRequest,
    EmitResponse,
    OwnerRequest,
    VoteRequest,
)

logger = logging.getLogger(__name__)


def status_code_for(error: EngineError) -> int:
    if isinstance(error, NotFound):
        return 404
    if isinstance(error, NotAMember):
        return 403
    if isinstance(error, ConfigurationError):
        return 503
    if isinstance(error, LedgerError):
        return 502
    # NotActive, AlreadyRunning, VotingClosed, AlreadyVoted, Conflict,
    # IllegalTransitionError and the rest: the request clashes with current state.
    return 409


def create_app(
    engine: AutomationEngine | None = None, *, settings: ServerSettings | None = None
) -> FastAPI:
    settings = settings or ServerSettings()
    owns_engine = engine is None
    engine = engine or build_engine(EngineSettings())

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        if settings.start_engine:
            engine.start()
        try:
            yield
        finally:
            if owns_engine:
                engine.close()
            elif settings.start_engine:
                engine.stop()

    app = FastAPI(
        title="FlowFi Automation Engine",
        version=__version__,
        description="REST API over the automation engine and DAO governance.",
        openapi_url="/api/openapi.json",
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.engine = engine

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.parsed_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(EngineError)
    async def engine_error(_: Request, exc: EngineError) -> JSONResponse:
        code = status_code_for(exc)
        if code >= 500:
            logger.warning("Request failed", extra={"error": str(exc), "status_code": code})
        return JSONResponse(status_code=code, content={"detail": str(exc)})

    @app.exception_handler(ValidationError)
    async def invalid_input(_: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=422,
            content={"detail": exc.errors(include_url=False, include_context=False)},
        )

    @app.exception_handler(ValueError)
    async def bad_value(_: Request, exc: ValueError) -> JSONResponse:
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.get("/api/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/stats")
    def stats() -> dict[str, Any]:
        return engine.stats()

    @app.get("/api/triggers", response_model=list[ApiTrigger])
    def list_triggers() -> list[ApiTrigger]:
        return [ApiTrigger.from_info(info) for info in engine.list_triggers()]

    @app.post("/api/workflows", response_model=ApiAutomation, status_code=201)
    def create_workflow(req: CreateWorkflowRequest) -> ApiAutomation:
        workflow = engine.create_workflow(**req.model_dump())
        return ApiAutomation.from_entity(workflow)

    @app.post("/api/subscriptions", response_model=ApiAutomation, status_code=201)
    def create_subscription(req: CreateSubscriptionRequest) -> ApiAutomation:
        subscription = engine.create_subscription(**req.model_dump())
        return ApiAutomation.from_entity(subscription)

    @app.get("/api/automations/{entity_id}", response_model=ApiAutomation)
    def get_automation(entity_id: str) -> ApiAutomation:
        return ApiAutomation.from_entity(engine.store.get(entity_id))

    @app.post("/api/automations/{entity_id}/trigger", response_model=ApiExecutionResult)
    def trigger_now(entity_id: str, req: OwnerRequest | None = None) -> ApiExecutionResult:
        owner = req.owner if req is not None else None
        return ApiExecutionResult.from_result(engine.trigger_now(entity_id, owner=owner))

    @app.post("/api/automations/{entity_id}/pause", response_model=ApiAutomation)
    def pause(entity_id: str, req: OwnerRequest | None = None) -> ApiAutomation:
        owner = req.owner if req is not None else None
        return ApiAutomation.from_entity(engine.pause(entity_id, owner=owner))

    @app.post("/api/automations/{entity_id}/resume", response_model=ApiAutomation)
    def resume(entity_id: str, req: OwnerRequest | None = None) -> ApiAutomation:
        owner = req.owner if req is not None else None
        return ApiAutomation.from_entity(engine.resume(entity_id, owner=owner))

    @app.post("/api/automations/{entity_id}/cancel", response_model=ApiAutomation)
    def cancel(entity_id: str, req: OwnerRequest | None = None) -> ApiAutomation:
        owner = req.owner if req is not None else None
        return ApiAutomation.from_entity(engine.cancel(entity_id, owner=owner))

    @app.post("/api/automations/{entity_id}/reactivate", response_model=ApiAutomation)
    def reactivate(entity_id: str, req: OwnerRequest | None = None) -> ApiAutomation:
        owner = req.owner if req is not None else None
        return ApiAutomation.from_entity(engine.reactivate(entity_id, owner=owner))

    @app.post("/api/events/{event_type}", response_model=EmitResponse)
    def emit_event(event_type: str) -> EmitResponse:
        return EmitResponse(event_type=event_type, fired=engine.emit_event(event_type))

    @app.post("/api/payments/process", response_model=ApiPaymentBatch)
    def process_payments() -> ApiPaymentBatch:
        return ApiPaymentBatch.from_batch(engine.process_due_payments())

    @app.get("/api/proposals/{proposal_id}", response_model=ApiProposal)
    def get_proposal(proposal_id: str) -> ApiProposal:
        return ApiProposal.from_proposal(engine.proposals.get(proposal_id))

    @app.post("/api/proposals/{proposal_id}/votes", response_model=ApiProposal)
    def cast_vote(proposal_id: str, req: VoteRequest) -> ApiProposal:
        proposal = engine.proposals.cast_vote(proposal_id, req.voter, req.choice)
        return ApiProposal.from_proposal(proposal)

    @app.post("/api/proposals/{proposal_id}/resolve", response_model=ApiProposal)
    def resolve(proposal_id: str) -> ApiProposal:
        return ApiProposal.from_proposal(engine.proposals.resolve(proposal_id))

    return app
