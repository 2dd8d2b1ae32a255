"""
REST API for the action orchestration engine.
Pipeline: WhatsApp webhook -> POST /api/v1/inbound -> debounce -> scheduler tick
-> POST /api/v1/pending/fire -> turn -> outbound sender

Run: API_KEY=<secret> uvicorn src.api:app --host 127.0.0.1 --port 8000
"""

import hmac
import os
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from src.errors import ConfigurationError, EmptyResponseError
from src.llm import ChatCompletionClient, LLMError
from src.logger import logger
from src.orchestration import DebounceTrigger, InboundMessage, OrchestrationEngine
from src.settings import settings
from src.store import CRMStore

API_KEY = os.environ.get("API_KEY", "change-me-in-production")
DB_PATH = os.environ.get("DB_PATH") or settings.storage.db_path

_store: Optional[CRMStore] = None
_llm: Optional[ChatCompletionClient] = None
_engine: Optional[OrchestrationEngine] = None
_trigger: Optional[DebounceTrigger] = None


# ── Error helpers ──────────────────────────────────────

class APIError(Exception):
    """Structured API exception with HTTP status code."""

    def __init__(self, status_code: int, code: str, message: str):
        self.status_code = status_code
        self.code = code
        self.message = message
        super().__init__(message)


def _error_payload(code: str, message: str) -> dict:
    return {"error": {"code": code, "message": message}}


# ── Auth ──────────────────────────────────────────────

def verify_api_key(authorization: str = Header(...)):
    """Bearer token check."""
    if not authorization.startswith("Bearer "):
        raise APIError(401, "UNAUTHORIZED", "Missing Bearer token")
    token = authorization[7:]
    if not hmac.compare_digest(token, API_KEY):
        raise APIError(401, "UNAUTHORIZED", "Invalid API key")


# ── App ───────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    global _store, _llm, _engine, _trigger
    if API_KEY == "change-me-in-production":
        logger.warning("API_KEY is set to insecure default value")
    _store = CRMStore(DB_PATH)
    _llm = ChatCompletionClient()
    _engine = OrchestrationEngine(_store, llm=_llm)
    _trigger = DebounceTrigger(_store, _engine)
    logger.info("Store ready, engine initialized", db_path=_store.db_path)
    yield
    _store = _llm = _engine = _trigger = None


app = FastAPI(title="CRM Action Engine API", version="1.0.0", lifespan=lifespan)


@app.exception_handler(APIError)
async def api_error_handler(_: Request, exc: APIError):
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_payload(exc.code, exc.message),
    )


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(_: Request, exc: RequestValidationError):
    errors = exc.errors()
    first_error = errors[0].get("msg") if errors else "Invalid request payload"
    return JSONResponse(
        status_code=400,
        content=_error_payload("BAD_REQUEST", first_error),
    )


def _turn_error(err: Exception) -> APIError:
    if isinstance(err, ConfigurationError):
        return APIError(422, err.code, err.message)
    if isinstance(err, EmptyResponseError):
        return APIError(502, err.code, err.message)
    if isinstance(err, LLMError):
        return APIError(503, "LLM_UNAVAILABLE", str(err))
    logger.exception("Error processing turn")
    return APIError(500, "INTERNAL", "Internal server error")


# ── Models ────────────────────────────────────────────

class InboundRequest(BaseModel):
    message_id: str
    account_id: str
    conversation_id: str
    text: str = ""
    kind: str = "text"
    media_text: Optional[str] = None
    timestamp: Optional[float] = None


class TurnRequest(BaseModel):
    account_id: str
    conversation_id: str
    contact_id: str
    text: str = ""
    message_kind: str = "text"
    media_text: Optional[str] = None
    is_agent_handoff: bool = False
    suppress_history: bool = False
    message_id: Optional[str] = None


class FireRequest(BaseModel):
    now: Optional[float] = Field(default=None, description="Scheduler clock (epoch seconds)")


# ── Endpoints ─────────────────────────────────────────

@app.get("/health")
def health():
    return {"status": "ok", "model": settings.llm.model}


@app.post("/api/v1/inbound", dependencies=[Depends(verify_api_key)])
def receive_inbound(req: InboundRequest):
    """
    Record an inbound message and schedule the debounced turn.

    1. Ledger check on (message_id, account_id); a duplicate is a no-op.
    2. Append the message to the transcript.
    3. Move the conversation's respond-at forward.
    """
    if not req.text.strip() and not (req.media_text or "").strip():
        raise APIError(400, "BAD_REQUEST", "text or media_text is required")
    if _store.get_conversation(req.conversation_id) is None:
        raise APIError(404, "NOT_FOUND", "Conversation not found")

    receipt = _trigger.register_inbound(req.message_id, req.account_id, req.conversation_id, now=req.timestamp)
    if receipt.accepted:
        _store.add_message(
            req.conversation_id, "in", req.text, kind=req.kind,
            metadata={"message_id": req.message_id, "media_text": req.media_text},
            created_at=req.timestamp,
        )
    return receipt.to_dict()


@app.post("/api/v1/turns", dependencies=[Depends(verify_api_key)])
def run_turn(req: TurnRequest):
    """
    Run one turn synchronously and return the outbound boundary.

    NOTE: `def` (not `async def`): the engine is blocking, FastAPI runs it
    in the threadpool.
    """
    if not req.text.strip() and not (req.media_text or "").strip():
        raise APIError(400, "BAD_REQUEST", "text or media_text is required")

    inbound = InboundMessage(**req.model_dump())
    start = time.time()
    try:
        with _trigger.lock_manager.lock(req.conversation_id):
            result = _engine.run_turn(inbound)
    except Exception as err:
        raise _turn_error(err) from err

    body = result.to_dict()
    body["meta"] = {
        "processing_ms": int((time.time() - start) * 1000),
        "usage": result.usage.to_dict(),
        "out_of_hours": result.out_of_hours,
    }
    return body


@app.post("/api/v1/pending/fire", dependencies=[Depends(verify_api_key)])
def fire_pending(req: FireRequest):
    """Scheduler tick: run every conversation whose respond-at is due."""
    processed = _trigger.fire_due(now=req.now)
    return {"processed": processed}


@app.post("/api/v1/conversations/{conversation_id}/respond-now", dependencies=[Depends(verify_api_key)])
def respond_now(conversation_id: str):
    """Skip the debounce window for one conversation."""
    if _store.get_conversation(conversation_id) is None:
        raise APIError(404, "NOT_FOUND", "Conversation not found")
    result = _trigger.run_now(conversation_id)
    if result is None:
        return {"final_text": None, "executed_action_count": 0, "already_persisted": False, "handoff_reply": None}
    return result.to_dict()


@app.get("/api/v1/llm/stats", dependencies=[Depends(verify_api_key)])
def llm_stats():
    return _llm.get_stats_dict()
