"""
deployment/api.py - Widget REST API

HTTP surface for the card widget: one CardSession per visitor, kept in a
SessionRegistry. Delayed reveals run on the server's event loop through
AsyncioTimer, so session endpoints are async.
"""

from typing import Any, Callable, Dict, Optional
from datetime import datetime, timezone
import logging

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, field_validator

from cardstream.bootstrap.config import CardStreamConfig, get_config
from cardstream.cards.loader import ContentBundle, load_bundle_file
from cardstream.cards.timers import AsyncioTimer
from cardstream.errors import CardStreamError
from cardstream.kernel.registry import SessionRegistry
from cardstream.kernel.session import CardSession

logger = logging.getLogger("deployment.api")

API_VERSION = "1.0.0"


# =============================================================================
# Request Models
# =============================================================================

class SessionCreate(BaseModel):
    """Request model for creating (or resuming) a session."""
    session_id: Optional[str] = None
    new: bool = False  # Force a fresh session even if session_id exists


class FieldUpdate(BaseModel):
    """Request model for writing one field value."""
    field_name: str
    value: Any = None

    @field_validator("field_name")
    @classmethod
    def validate_field_name(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("field_name cannot be empty")
        return v.strip()


class AdvanceRequest(BaseModel):
    card_id: Optional[str] = None


class ActivateRequest(BaseModel):
    policy: Optional[str] = None

    @field_validator("policy")
    @classmethod
    def validate_policy(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and v not in ("demote_to_unlocked", "demote_to_complete"):
            raise ValueError("policy must be demote_to_unlocked or demote_to_complete")
        return v


class ProcessRequest(BaseModel):
    """Request model for evaluating a template."""
    template: str
    unit: Optional[str] = None


class SubmitRequest(BaseModel):
    card_id: Optional[str] = None


class ResetRequest(BaseModel):
    new_id: bool = False


# =============================================================================
# Application
# =============================================================================

def create_fastapi_app(
    config: Optional[CardStreamConfig] = None,
    bundle: Optional[ContentBundle] = None,
    submitter: Optional[Callable[[Dict[str, Any]], Any]] = None,
) -> FastAPI:
    """
    Create the widget API.

    Args:
        config: Application config (defaults to get_config())
        bundle: Content bundle; loaded from config.api.content_path if omitted
        submitter: Callable receiving the collected submission payload

    Returns:
        FastAPI application instance
    """
    config = config or get_config()

    if bundle is None and config.api.content_path:
        bundle = load_bundle_file(config.api.content_path)

    registry = SessionRegistry(bundle, config, timer_factory=AsyncioTimer, submitter=submitter) if bundle else None
    if registry is None:
        logger.warning("No content bundle configured; session endpoints will return 503")

    app = FastAPI(
        title="CardStream API",
        description="Card based calculator widget API",
        version=API_VERSION,
        docs_url=config.api.docs_url if config.api.enable_docs else None,
    )
    app.state.registry = registry

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.api.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def get_registry() -> SessionRegistry:
        if registry is None:
            raise HTTPException(status_code=503, detail="No content bundle loaded")
        return registry

    def get_session(session_id: str) -> CardSession:
        session = get_registry().get(session_id)
        if session is None:
            raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
        return session

    # =========================================================================
    # Health
    # =========================================================================

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "version": API_VERSION,
            "content_loaded": registry is not None,
            "sessions": len(registry) if registry is not None else 0,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    # =========================================================================
    # Sessions
    # =========================================================================

    @app.post("/api/v1/sessions")
    async def create_session(request: SessionCreate):
        sessions = get_registry()
        try:
            if request.new:
                session = sessions.new_session()
            else:
                session = sessions.get_or_create(request.session_id)
        except CardStreamError as e:
            logger.error(f"Could not start session: {e.message}")
            raise HTTPException(status_code=500, detail=e.message)
        return session.get_state()

    @app.get("/api/v1/sessions/{session_id}")
    async def get_session_state(session_id: str):
        return get_session(session_id).get_state()

    @app.delete("/api/v1/sessions/{session_id}")
    async def delete_session(session_id: str):
        if not get_registry().remove(session_id):
            raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
        return {"deleted": session_id}

    @app.post("/api/v1/sessions/{session_id}/reset")
    async def reset_session(session_id: str, request: ResetRequest):
        session = get_session(session_id)
        old_id = session.session_id
        result = session.reset(new_id=request.new_id)
        if request.new_id:
            get_registry().rekey(old_id, session)
        return {"result": result.to_dict(), "state": session.get_state()}

    # =========================================================================
    # Fields and cards
    # =========================================================================

    @app.post("/api/v1/sessions/{session_id}/fields")
    async def update_field(session_id: str, request: FieldUpdate):
        session = get_session(session_id)
        result = session.update_field(request.field_name, request.value)
        return {"result": result.to_dict(), "state": session.get_state()}

    @app.post("/api/v1/sessions/{session_id}/advance")
    async def advance(session_id: str, request: AdvanceRequest):
        session = get_session(session_id)
        result = session.advance(request.card_id)
        return {"result": result.to_dict(), "state": session.get_state()}

    @app.post("/api/v1/sessions/{session_id}/cards/{card_id}/activate")
    async def activate_card(session_id: str, card_id: str, request: ActivateRequest):
        session = get_session(session_id)
        result = session.activate_card(card_id, request.policy)
        return {"result": result.to_dict(), "state": session.get_state()}

    @app.get("/api/v1/sessions/{session_id}/cards/{card_id}/results")
    async def card_results(session_id: str, card_id: str):
        return get_session(session_id).evaluate_card(card_id).to_dict()

    # =========================================================================
    # Calculations and submission
    # =========================================================================

    @app.post("/api/v1/sessions/{session_id}/process")
    async def process_template(session_id: str, request: ProcessRequest):
        return get_session(session_id).process(request.template, unit=request.unit).to_dict()

    @app.post("/api/v1/sessions/{session_id}/submit")
    async def submit(session_id: str, request: SubmitRequest):
        session = get_session(session_id)
        return session.submit(request.card_id).to_dict()

    return app
