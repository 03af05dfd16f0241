# src/main.py
"""
FastAPI application for the AI triage assistant.

Two ways to talk to the model:

- stateless routes (/api/chat, /api/analyze): the client owns the
  transcript and sends it with every request
- session routes (/api/session/...): the server-side orchestrator owns the
  transcript, turn-taking and the automatic analysis
"""

from fastapi import FastAPI, Depends, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from pydantic import BaseModel, Field
from typing import List
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from urllib.parse import quote
import os

from src.core.config import settings, validate_required_settings
from src.core.exceptions import (
    ConfigurationError,
    SessionError,
    TransportError,
    TriageError,
    ValidationError,
)
from src.core.logging_config import setup_logging
from src.core.orchestrator import TriageOrchestrator, get_orchestrator, init_orchestrator
from src.core.prompt_manager import PromptType, get_prompt_manager
from src.core.rate_limit_config import RATE_LIMITS, get_rate_limit_message, get_real_ip
from src.models.flow_models import Turn
from src.models.session_state import SessionStore

# Setup logging
logger = setup_logging()

# Global session store
session_store = SessionStore()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """FastAPI lifespan event handler for startup/shutdown"""
    logger.info("=" * 60)
    logger.info(f"🚀 {settings.APP_NAME} starting...")
    logger.info("=" * 60)

    # Missing credentials surface on first provider call, not here
    if not validate_required_settings():
        logger.warning("⚠️ Provider credentials missing - model calls will fail until configured")

    orchestrator = init_orchestrator(session_store)

    logger.info("📋 Configuration:")
    logger.info(f"  - Model: {settings.LLM_MODEL}")
    logger.info(f"  - Base URL: {settings.base_url}")
    logger.info(f"  - Auto analysis after {settings.AUTO_ANALYSIS_THRESHOLD} replies")
    logger.info(f"  - Rate limiting: {'on' if settings.RATE_LIMIT_ENABLED else 'off'}")
    logger.info("✅ API ready")

    yield

    logger.info("🛑 Shutting down...")
    await orchestrator.flow_handlers.llm_service.shutdown()
    logger.info("👋 Goodbye!")


app = FastAPI(
    title=settings.APP_NAME,
    description="Symptom interview and differential-diagnosis triage API",
    version="1.0.0",
    lifespan=lifespan
)


def get_triage_orchestrator() -> TriageOrchestrator:
    """Dependency: the global orchestrator"""
    return get_orchestrator()


# =============================================================================
# RATE LIMITING
# =============================================================================

limiter = Limiter(key_func=get_real_ip, enabled=settings.RATE_LIMIT_ENABLED)
app.state.limiter = limiter


def _endpoint_for_path(path: str) -> str:
    if path.startswith("/api/chat"):
        return "chat"
    if path.startswith("/api/analyze"):
        return "analyze"
    if path.rstrip("/") == "/api/session":
        return "session"
    return "default"


def custom_rate_limit_handler(request: Request, exc: RateLimitExceeded):
    """Custom rate limit response with helpful message"""
    response = JSONResponse(
        status_code=429,
        content={
            "error": get_rate_limit_message(_endpoint_for_path(request.url.path)),
            "hint": get_prompt_manager().get(PromptType.RATE_LIMIT_HINT),
        }
    )
    response.headers["Retry-After"] = "60"
    response.headers["X-RateLimit-Limit"] = str(getattr(exc, "detail", "N/A"))
    return response


app.add_exception_handler(RateLimitExceeded, custom_rate_limit_handler)


# =============================================================================
# ERROR MAPPING
# =============================================================================

@app.exception_handler(SessionError)
async def session_error_handler(request: Request, exc: SessionError):
    logger.warning(f"Session error: {exc}")
    return JSONResponse(status_code=404, content={"error": exc.message})


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    logger.warning(f"Validation error: {exc}")
    return JSONResponse(status_code=400, content={"error": exc.message, "field": exc.field})


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError):
    logger.error(f"Configuration error: {exc}")
    return JSONResponse(status_code=500, content={"error": exc.message})


# =============================================================================
# MIDDLEWARE
# =============================================================================

@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all incoming requests except health checks"""
    if request.url.path not in ("/", "/health"):
        logger.info(f"📥 Request: {request.method} {request.url.path}")
    return await call_next(request)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    """Add security headers to all responses"""
    response = await call_next(request)

    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    response.headers["Permissions-Policy"] = "geolocation=(), microphone=(), camera=()"

    if "Server" in response.headers:
        del response.headers["Server"]

    return response


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)


# =============================================================================
# API MODELS
# =============================================================================

class ChatRequest(BaseModel):
    history: List[Turn] = Field(default_factory=list)
    message: str


class AnalyzeRequest(BaseModel):
    history: List[Turn] = Field(default_factory=list)


class MessageRequest(BaseModel):
    message: str


class OptionRequest(BaseModel):
    option: str


# =============================================================================
# HEALTH
# =============================================================================

@app.get("/", status_code=200)
def read_root():
    """Liveness check"""
    return {"status": "ok", "version": app.version, "service": "triage-assistant"}


@app.get("/health", status_code=200)
def health():
    """Alternative health check endpoint"""
    return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}


@app.get("/api/health")
async def detailed_health(orchestrator: TriageOrchestrator = Depends(get_triage_orchestrator)):
    """Orchestrator and flow engine status, no provider call"""
    return orchestrator.health_check()


@app.get("/api/debug/flow")
async def get_flow_debug_info(orchestrator: TriageOrchestrator = Depends(get_triage_orchestrator)):
    """State machine summary and validation issues"""
    return orchestrator.get_flow_debug_info()


# =============================================================================
# STATELESS ROUTES
# =============================================================================

@app.post("/api/chat")
@limiter.limit(RATE_LIMITS["chat"])
async def chat(request: Request, req: ChatRequest, orchestrator: TriageOrchestrator = Depends(get_triage_orchestrator)):
    """Next interview question for a client-held transcript"""
    logger.info(f"Chat request with {len(req.history)} history turns")

    try:
        reply = await orchestrator.flow_handlers.request_interview_reply(req.history, req.message)
    except ValidationError:
        raise
    except TriageError as e:
        logger.error(f"Chat failed: {e}")
        return JSONResponse(status_code=500, content={"error": f"系统错误：{e.message}"})
    except Exception as e:
        logger.error(f"Unexpected error in chat: {e}", exc_info=True)
        return JSONResponse(status_code=500, content={"error": f"系统错误：{e}"})

    return {"text": reply.question, "options": reply.options, "allowMultiple": reply.allow_multiple}


@app.post("/api/analyze")
@limiter.limit(RATE_LIMITS["analyze"])
async def analyze(request: Request, req: AnalyzeRequest, orchestrator: TriageOrchestrator = Depends(get_triage_orchestrator)):
    """Differential diagnosis for a client-held transcript"""
    if not req.history:
        raise ValidationError(message="History cannot be empty", field="history")

    prompts = get_prompt_manager()
    logger.info(f"Analyze request with {len(req.history)} turns")

    try:
        result = await orchestrator.flow_handlers.request_analysis(req.history)
    except TransportError as e:
        logger.error(f"Analysis failed: {e}")
        if e.is_rate_limited:
            return JSONResponse(
                status_code=429,
                content={"error": prompts.get(PromptType.RATE_LIMITED), "hint": prompts.get(PromptType.RATE_LIMIT_HINT)}
            )
        return JSONResponse(status_code=500, content={"error": prompts.get(PromptType.ANALYSIS_ERROR)})
    except ConfigurationError:
        raise
    except Exception as e:
        logger.error(f"Unexpected error in analysis: {e}", exc_info=True)
        return JSONResponse(status_code=500, content={"error": prompts.get(PromptType.ANALYSIS_ERROR)})

    return result.model_dump(mode="json", by_alias=True)


# =============================================================================
# DIAGNOSTICS
# =============================================================================

@app.get("/api/env-check")
def env_check():
    """Report whether provider credentials are configured"""
    api_key = settings.GEMINI_API_KEY

    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "environment": {
            "DEBUG": settings.DEBUG,
            "LOG_LEVEL": settings.LOG_LEVEL,
        },
        "apiConfig": {
            "hasApiKey": bool(api_key),
            "apiKeyLength": len(api_key) if api_key else 0,
            "apiKeyPrefix": api_key[:10] + "..." if api_key else "NOT SET",
            "baseUrl": settings.GEMINI_BASE_URL or "NOT SET (will use default)",
            "baseUrlSet": bool(settings.GEMINI_BASE_URL),
            "model": settings.LLM_MODEL,
        },
        "allEnvKeys": sorted(key for key in os.environ if "GEMINI" in key or key.startswith("LLM_")),
    }


@app.post("/api/test-connection")
async def test_connection(orchestrator: TriageOrchestrator = Depends(get_triage_orchestrator)):
    """List the provider's models to prove the key and base URL work"""
    llm_service = orchestrator.flow_handlers.llm_service

    try:
        models = await llm_service.list_models()
    except ConfigurationError as e:
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": e.message, "hint": "Set GEMINI_API_KEY in the environment"}
        )
    except TransportError as e:
        logger.error(f"Connection test failed: {e}")
        return JSONResponse(
            status_code=e.status or 500,
            content={"success": False, "status": e.status, "error": e.message, "fullError": e.body}
        )

    logger.info(f"Connection test succeeded ({len(models)} models)")
    return {
        "success": True,
        "status": 200,
        "modelsCount": len(models),
        "firstModel": models[0] if models else "N/A",
        "message": "API connection successful!"
    }


# =============================================================================
# SESSION ROUTES
# =============================================================================

@app.post("/api/session")
@limiter.limit(RATE_LIMITS["session"])
async def create_session(request: Request, orchestrator: TriageOrchestrator = Depends(get_triage_orchestrator)):
    """Start a conversation seeded with the greeting"""
    session = orchestrator.start_session()
    return orchestrator.snapshot(session.session_id)


@app.get("/api/session/{session_id}")
async def get_session(session_id: str, orchestrator: TriageOrchestrator = Depends(get_triage_orchestrator)):
    return orchestrator.snapshot(session_id)


@app.post("/api/session/{session_id}/message")
@limiter.limit(RATE_LIMITS["message"])
async def send_message(
    request: Request,
    session_id: str,
    req: MessageRequest,
    orchestrator: TriageOrchestrator = Depends(get_triage_orchestrator)
):
    await orchestrator.send_message(session_id, req.message)
    return orchestrator.snapshot(session_id)


@app.post("/api/session/{session_id}/options/toggle")
@limiter.limit(RATE_LIMITS["message"])
async def toggle_option(
    request: Request,
    session_id: str,
    req: OptionRequest,
    orchestrator: TriageOrchestrator = Depends(get_triage_orchestrator)
):
    await orchestrator.toggle_option(session_id, req.option)
    return orchestrator.snapshot(session_id)


@app.post("/api/session/{session_id}/options/submit")
@limiter.limit(RATE_LIMITS["message"])
async def submit_selection(request: Request, session_id: str, orchestrator: TriageOrchestrator = Depends(get_triage_orchestrator)):
    await orchestrator.submit_selection(session_id)
    return orchestrator.snapshot(session_id)


@app.post("/api/session/{session_id}/analyze")
@limiter.limit(RATE_LIMITS["message"])
async def analyze_session(request: Request, session_id: str, orchestrator: TriageOrchestrator = Depends(get_triage_orchestrator)):
    await orchestrator.analyze(session_id)
    return orchestrator.snapshot(session_id)


@app.post("/api/session/{session_id}/reset")
async def reset_session(session_id: str, orchestrator: TriageOrchestrator = Depends(get_triage_orchestrator)):
    orchestrator.reset(session_id)
    return orchestrator.snapshot(session_id)


@app.get("/api/session/{session_id}/export")
async def export_session(session_id: str, orchestrator: TriageOrchestrator = Depends(get_triage_orchestrator)):
    """Export record as a downloadable JSON file"""
    record = orchestrator.export_record(session_id)
    filename = f"问诊记录_{datetime.now(timezone.utc):%Y-%m-%d}_{record['id'].split('-')[-1]}.json"
    return JSONResponse(
        content=record,
        headers={"Content-Disposition": f"attachment; filename*=UTF-8''{quote(filename)}"}
    )


# Main entry point
if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", "8000"))
    logger.info(f"🚀 Starting server on port {port}...")
    uvicorn.run(app, host="0.0.0.0", port=port, log_level="info")
