"""
FastAPI application factory for the CasePrep feedback API.

Routes delegate to the :class:`FeedbackOrchestrator` held on
``app.state``; every failure is rendered as the shared error envelope.
"""

import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

import openai
from fastapi import Body, FastAPI, Query, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from caseprep.api.errors import to_envelope
from caseprep.api.schemas import HealthResponse
from caseprep.bootstrap import build_services
from caseprep.cache.store import CacheStore
from caseprep.config import Settings, get_settings
from caseprep.exceptions import CasePrepError, NotFoundError, ValidationError
from caseprep.feedback.models import FeedbackRequest
from caseprep.feedback.orchestrator import FeedbackOrchestrator

logger = logging.getLogger(__name__)


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


def _error_response(
    request: Request,
    exc: BaseException,
    details: Optional[Dict[str, Any]] = None,
) -> JSONResponse:
    status_code, envelope = to_envelope(exc, _request_id(request), details)
    return JSONResponse(
        status_code=status_code,
        content=envelope.model_dump(mode="json", by_alias=True),
    )


def _orchestrator(request: Request) -> FeedbackOrchestrator:
    orchestrator = request.app.state.orchestrator
    if orchestrator is None:
        raise CasePrepError("Feedback service is not initialised")
    return orchestrator


def create_app(
    *,
    orchestrator: Optional[FeedbackOrchestrator] = None,
    cache: Optional[CacheStore] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        orchestrator: Pre-built orchestrator (tests).  When omitted the
            lifespan builds one from settings.
        cache: Cache store reported by ``/health``.
        settings: Settings override; defaults to :func:`get_settings`.

    Returns:
        Configured FastAPI instance.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        services = None
        if app.state.orchestrator is None:
            services = await build_services(settings)
            app.state.orchestrator = services.orchestrator
            app.state.cache = services.cache
        elif app.state.cache is not None:
            await app.state.cache.connect()
        yield
        if services is not None:
            await services.aclose()
            logger.info("Feedback services closed")

    app = FastAPI(
        title="CasePrep Feedback",
        description="AI feedback generation for case interview practice",
        version=settings.api.version,
        lifespan=lifespan,
    )
    app.state.orchestrator = orchestrator
    app.state.cache = cache
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.api.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # -- Request-ID middleware --
    @app.middleware("http")
    async def add_request_id(request: Request, call_next: Any) -> Response:
        request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-Id"] = request_id
        return response

    # -- Exception handlers --
    @app.exception_handler(CasePrepError)
    async def caseprep_exception_handler(request: Request, exc: CasePrepError) -> Response:
        logger.warning(
            "Request failed",
            extra={
                "request_id": _request_id(request),
                "error_type": type(exc).__name__,
                "error": exc.message,
            },
        )
        return _error_response(request, exc)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> Response:
        errors = [
            {k: v for k, v in err.items() if k not in ("ctx", "url")}
            for err in exc.errors()
        ]
        wrapped = ValidationError("Invalid request data")
        return _error_response(request, wrapped, {"errors": jsonable_encoder(errors)})

    @app.exception_handler(openai.APIError)
    async def provider_exception_handler(request: Request, exc: openai.APIError) -> Response:
        logger.error(
            "Provider request failed",
            extra={"request_id": _request_id(request), "error_type": type(exc).__name__},
        )
        return _error_response(request, exc)

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception) -> Response:
        """Catch-all handler for unhandled exceptions."""
        logger.error(
            "Unhandled exception",
            extra={"request_id": _request_id(request), "error": str(exc)},
            exc_info=True,
        )
        return _error_response(request, exc)

    # -- Routes --

    @app.post("/feedback", status_code=201)
    async def create_feedback(request: Request, body: FeedbackRequest) -> Dict[str, Any]:
        """Generate, persist and return feedback for an attempt."""
        feedback = await _orchestrator(request).generate(
            body.attempt_id, body.type, body.response
        )
        return {"data": feedback.to_json_dict()}

    @app.get("/feedback/{feedback_id}")
    async def get_feedback(request: Request, feedback_id: str) -> Dict[str, Any]:
        feedback = await _orchestrator(request).get(feedback_id)
        if feedback is None:
            raise NotFoundError("Feedback not found", details={"feedbackId": feedback_id})
        return {"data": feedback.to_json_dict()}

    @app.get("/feedback")
    async def find_feedback(
        request: Request,
        feedback_id: Optional[str] = Query(default=None, alias="feedbackId"),
        attempt_id: Optional[str] = Query(default=None, alias="attemptId"),
    ) -> Dict[str, Any]:
        """Look up feedback by ``feedbackId`` or list it by ``attemptId``."""
        if feedback_id:
            return await get_feedback(request, feedback_id)
        if attempt_id:
            records = await _orchestrator(request).get_by_attempt(attempt_id)
            return {"data": [r.to_json_dict() for r in records]}
        raise ValidationError("Either feedbackId or attemptId is required")

    @app.patch("/feedback/{feedback_id}")
    async def update_feedback(
        request: Request,
        feedback_id: str,
        body: Dict[str, Any] = Body(...),
    ) -> Dict[str, Any]:
        """Apply a partial update and return the stored record."""
        feedback = await _orchestrator(request).update(feedback_id, body)
        return {"data": feedback.to_json_dict()}

    @app.get("/health", response_model=HealthResponse)
    async def health(request: Request) -> HealthResponse:
        store: Optional[CacheStore] = request.app.state.cache
        if store is None:
            return HealthResponse(status="ok", version=settings.api.version)
        return HealthResponse(
            status="ok" if store.connected else "degraded",
            version=settings.api.version,
            cache=store.stats().model_dump(),
        )

    return app
