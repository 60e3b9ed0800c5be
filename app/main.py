"""
Main FastAPI application for the Agent Platform backend.
Handles CORS, request logging and body-size middleware, error envelopes,
lifespan events, and router registration.
"""
import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.datastructures import Headers
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from app.config import settings
from app.dependencies.services import get_llm_service
from app.routers import agents, documents, health, knowledge_base
from app.services.llm import LLMServiceError, OllamaLLMService
from app.utils.errors import ApiError, PayloadTooLargeError, validation_details

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Startup helpers
# ---------------------------------------------------------------------------

def _model_available(wanted: str, available: list) -> bool:
    # "nomic-embed-text" should match "nomic-embed-text:latest"
    base = wanted.split(":")[0]
    return any(m == wanted or m.startswith(base) for m in available)


async def _check_ollama(llm: OllamaLLMService) -> dict:
    """
    Verify Ollama is reachable and the configured models are pulled.
    Never raises; problems are logged as warnings.
    """
    result = {"reachable": False, "models": []}
    try:
        available = await llm.list_models()
    except LLMServiceError as exc:
        logger.error("Ollama unreachable (%s); embedding and model features will fail", exc)
        return result

    result["reachable"] = True
    result["models"] = available
    logger.info("Ollama reachable; available models: %s", available)

    for label, model in (("Embedding", settings.OLLAMA_EMBED_MODEL),
                         ("Language", settings.OLLAMA_LLM_MODEL)):
        if _model_available(model, available):
            logger.info("  %s model '%s' is available", label, model)
        else:
            logger.warning("  %s model '%s' not found; run: ollama pull %s", label, model, model)
    return result


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown event handler."""
    logger.info("Starting Agent Platform backend")

    ollama_status = await _check_ollama(get_llm_service())
    if not ollama_status["reachable"]:
        logger.warning(
            "Ollama is not running. Start it with: ollama serve\n"
            "  Parsing and document generation work; retrieval and agents need Ollama."
        )

    logger.info("Ready on http://%s:%d (docs at /docs)", settings.HOST, settings.PORT)
    yield
    logger.info("Shutting down Agent Platform backend")


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Agent Platform API",
    description=(
        "Document parsing and generation, hybrid knowledge-base retrieval, "
        "and a super-agent that composes them with a local language model.\n\n"
        "Key endpoints:\n"
        "- `POST /api/documents` - parse an uploaded document\n"
        "- `POST /api/documents/generate` - build a docx / pptx / xlsx file\n"
        "- `POST /api/knowledge-base/query` - ranked retrieval\n"
        "- `POST /api/agents/super` - run an agent task\n"
    ),
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)


# ---------------------------------------------------------------------------
# CORS
# ---------------------------------------------------------------------------

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_allowed_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------

def _body_limit(content_type: str) -> int:
    if content_type.lower().startswith("multipart/form-data"):
        return settings.MAX_FILE_SIZE
    return settings.MAX_REQUEST_BODY_SIZE


def _too_large(limit: int) -> PayloadTooLargeError:
    return PayloadTooLargeError(
        "Request body too large",
        details=f"Body exceeds the {limit // (1024 * 1024)} MB limit.",
    )


class BodySizeLimitMiddleware:
    """
    Enforce the per-content-type body limit on the bytes actually received.

    A declared ``Content-Length`` over the limit is rejected before the app
    runs.  Bodies without one (chunked uploads) are counted as they arrive;
    once the count passes the limit, whatever the app was about to send is
    dropped and a 413 envelope is returned instead.
    """

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        headers = Headers(scope=scope)
        limit = _body_limit(headers.get("content-type", ""))
        declared = headers.get("content-length")
        if declared and declared.isdigit() and int(declared) > limit:
            await self._reject(limit, scope, receive, send)
            return

        received = 0
        exceeded = False
        started = False

        async def counting_receive() -> Message:
            nonlocal received, exceeded
            message = await receive()
            if message["type"] == "http.request" and not started:
                received += len(message.get("body", b""))
                if received > limit:
                    exceeded = True
                    raise _too_large(limit)
            return message

        async def guarded_send(message: Message) -> None:
            nonlocal started
            if exceeded:
                return
            if message["type"] == "http.response.start":
                started = True
            await send(message)

        try:
            await self.app(scope, counting_receive, guarded_send)
        except Exception:
            # Routes may wrap the overflow in their own error; the 413 wins
            if not exceeded:
                raise
        if exceeded:
            logger.warning("%s %s: body passed the %d byte limit",
                           scope.get("method"), scope.get("path"), limit)
            await self._reject(limit, scope, receive, send)

    @staticmethod
    async def _reject(limit: int, scope: Scope, receive: Receive, send: Send) -> None:
        exc = _too_large(limit)
        response = JSONResponse(status_code=exc.status_code, content=exc.to_body())
        await response(scope, receive, send)


app.add_middleware(BodySizeLimitMiddleware)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """
    Log every request with method, path, status code, and elapsed time.
    Attaches an ``X-Process-Time`` header (milliseconds) to every response.
    """
    t0 = time.monotonic()
    response = await call_next(request)
    elapsed_ms = round((time.monotonic() - t0) * 1000, 2)

    # Skip noisy health-check polling
    if request.url.path not in ("/api/health", "/"):
        logger.info(
            "%s %s -> %d  (%.2f ms)",
            request.method,
            request.url.path,
            response.status_code,
            elapsed_ms,
        )

    response.headers["X-Process-Time"] = f"{elapsed_ms}ms"
    return response


# ---------------------------------------------------------------------------
# Exception handlers
# ---------------------------------------------------------------------------

@app.exception_handler(ApiError)
async def api_error_handler(request: Request, exc: ApiError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s (%s)", request.method, request.url.path,
                     exc.message, exc.details)
    return JSONResponse(status_code=exc.status_code, content=exc.to_body())


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": str(exc.detail)},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": "Invalid request", "details": validation_details(exc)},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Return a JSON error envelope for any unhandled exception; no stack trace."""
    logger.error(
        "Unhandled exception on %s %s: %s",
        request.method,
        request.url.path,
        exc,
        exc_info=True,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "Internal server error", "details": str(exc) or "Unknown error"},
    )


# ---------------------------------------------------------------------------
# Routers
# ---------------------------------------------------------------------------

app.include_router(health.router,         prefix="/api/health",         tags=["Health"])
app.include_router(documents.router,      prefix="/api/documents",      tags=["Documents"])
app.include_router(knowledge_base.router, prefix="/api/knowledge-base", tags=["Knowledge Base"])
app.include_router(agents.router,         prefix="/api/agents",         tags=["Agents"])


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------

@app.get("/", tags=["Root"], include_in_schema=False)
async def root():
    """API root - returns basic service info."""
    return {
        "name": "Agent Platform API",
        "version": "0.1.0",
        "docs": "/docs",
        "health": "/api/health",
        "endpoints": {
            "documents": "/api/documents",
            "generate": "/api/documents/generate",
            "knowledgeBase": "/api/knowledge-base",
            "query": "/api/knowledge-base/query",
            "agents": "/api/agents/super",
        },
    }


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=True,
        log_level="info",
    )
