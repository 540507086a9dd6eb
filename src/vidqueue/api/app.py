"""FastAPI application exposing the job queue.

Every ``/api`` route and ``/metrics`` pass through one gate dependency, in
this order: request size and user-agent checks, global rate limit,
per-endpoint rate limit, source lockout, credential, permission. A request
rejected by a rate limit never reaches the auth failure tracker.
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from vidqueue.config import resolve_config
from vidqueue.errors import RetryableRejection, ServiceError
from vidqueue.models import ServiceConfig
from vidqueue.security.auth import AuthContext, required_permission
from vidqueue.service import VideoJobService

from .schemas import CancelRequest, ProcessVideoRequest

logger = logging.getLogger(__name__)

AVAILABLE_ENDPOINTS = [
    "GET /health",
    "GET /metrics",
    "POST /api/process-video",
    "GET /api/queue-status",
    "POST /api/cancel-request",
    "GET /api/queue/stats",
    "POST /api/queue/pause",
    "POST /api/queue/resume",
]


def _source(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _service(request: Request) -> VideoJobService:
    return request.app.state.service


def extract_api_key(request: Request, allow_query: bool = True) -> Optional[str]:
    """Bearer token, then X-API-Key, then the ``api_key`` query parameter."""
    auth_header = request.headers.get("authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[len("Bearer "):].strip() or None

    header_key = request.headers.get("x-api-key")
    if header_key:
        return header_key

    if allow_query and request.query_params.get("api_key"):
        logger.warning(
            "API key provided via query parameter (insecure) from %s on %s",
            _source(request),
            request.url.path,
        )
        return request.query_params["api_key"]
    return None


async def authorize(request: Request) -> AuthContext:
    """Request gate shared by every protected route."""
    service = _service(request)
    source = _source(request)
    path = request.url.path
    user_agent = request.headers.get("user-agent", "")

    service.validator.check_request_size(request.headers.get("content-length"), source)
    if service.validator.is_suspicious_user_agent(user_agent):
        logger.warning("Suspicious user agent from %s on %s: %s", source, path, user_agent)
    service.validator.inspect(request.query_params.values(), source, path)

    service.rate_limiter.check(source, path)
    endpoint_limiter = service.endpoint_limiters.get(path)
    if endpoint_limiter is not None:
        endpoint_limiter.check(source, path)

    raw_key = extract_api_key(request, service.config.auth.allow_query_param)
    ctx = service.auth.authenticate(raw_key, source, path)
    service.auth.require_permission(ctx, required_permission(path), source)

    request.state.auth = ctx
    return ctx


def create_app(
    config: Optional[ServiceConfig] = None,
    service: Optional[VideoJobService] = None,
) -> FastAPI:
    """Build the application around a service instance.

    The lifespan hook starts the service's workers and shuts them down; the
    service itself is built here so it is available even when the ASGI
    lifespan is not run.
    """
    if service is None:
        service = VideoJobService(config or resolve_config())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.service.start()
        yield
        app.state.service.shutdown()

    app = FastAPI(title="vidqueue", lifespan=lifespan)
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["GET", "POST"],
        allow_headers=["Authorization", "X-API-Key", "Content-Type"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        monitor = request.app.state.service.monitor
        start = time.monotonic()
        try:
            response = await call_next(request)
        except Exception:
            monitor.record((time.monotonic() - start) * 1000, 500)
            raise
        duration_ms = (time.monotonic() - start) * 1000
        monitor.record(duration_ms, response.status_code)
        logger.info(
            "%s %s -> %d (%.1fms) from %s",
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
            _source(request),
        )
        return response

    # --- ERROR HANDLERS ---
    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError):
        ctx = getattr(request.state, "auth", None)
        if ctx is not None:
            request.app.state.service.auth.record_error(ctx)
        headers = None
        if isinstance(exc, RetryableRejection):
            headers = {"Retry-After": str(exc.retry_after)}
        if exc.status_code >= 500:
            logger.error("%s on %s: %s", type(exc).__name__, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        details = [
            {
                "field": ".".join(str(p) for p in err.get("loc", ()) if p != "body"),
                "message": err.get("msg", "Invalid value"),
            }
            for err in exc.errors()
        ]
        logger.warning(
            "Request validation failed from %s on %s: %s",
            _source(request),
            request.url.path,
            details,
        )
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "success": False,
                "error": "Validation failed",
                "message": details[0]["message"] if details else "Invalid request",
                "details": details,
            },
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        if exc.status_code == status.HTTP_404_NOT_FOUND:
            return JSONResponse(
                status_code=404,
                content={
                    "success": False,
                    "error": "Endpoint not found",
                    "message": f"The requested endpoint {request.method} {request.url.path} does not exist",
                    "availableEndpoints": AVAILABLE_ENDPOINTS,
                },
            )
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "error": str(exc.detail), "message": str(exc.detail)},
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        is_dev = request.app.state.service.config.is_development
        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "error": "Internal server error",
                "message": str(exc) if is_dev else "An unexpected error occurred",
            },
        )

    # --- PUBLIC ENDPOINTS ---
    @app.get("/")
    async def root():
        return {
            "service": "vidqueue",
            "health": "/health",
            "endpoints": AVAILABLE_ENDPOINTS,
        }

    @app.get("/health")
    async def health_check(request: Request):
        report = _service(request).health()
        code = status.HTTP_200_OK if report["healthy"] else status.HTTP_503_SERVICE_UNAVAILABLE
        return JSONResponse(status_code=code, content=report)

    @app.get("/metrics")
    async def metrics(request: Request, ctx: AuthContext = Depends(authorize)):
        return {"success": True, "data": _service(request).metrics()}

    # --- JOB ENDPOINTS ---
    @app.post("/api/process-video", status_code=status.HTTP_202_ACCEPTED)
    async def process_video(
        body: ProcessVideoRequest,
        request: Request,
        ctx: AuthContext = Depends(authorize),
    ):
        return _service(request).controller.process_video(
            body.video_url,
            callback_url=body.callback_url,
            options=body.options,
            job_id=body.job_id,
            source=_source(request),
            user_agent=request.headers.get("user-agent"),
            key_name=ctx.key_name,
        )

    @app.get("/api/queue-status")
    async def queue_status(
        request: Request,
        jobId: Optional[str] = None,  # noqa: N803
        limit: Optional[str] = None,
        status: Optional[str] = None,
        ctx: AuthContext = Depends(authorize),
    ):
        return _service(request).controller.get_queue_status(jobId, limit=limit, status=status)

    @app.post("/api/cancel-request")
    async def cancel_request(
        body: CancelRequest,
        request: Request,
        ctx: AuthContext = Depends(authorize),
    ):
        return _service(request).controller.cancel_request(
            body.job_id, body.reason, key_name=ctx.key_name
        )

    # --- ADMIN ENDPOINTS ---
    @app.get("/api/queue/stats")
    async def queue_stats(request: Request, ctx: AuthContext = Depends(authorize)):
        return _service(request).controller.queue_stats()

    @app.post("/api/queue/pause")
    async def pause_queue(request: Request, ctx: AuthContext = Depends(authorize)):
        logger.warning("Queue paused by %s", ctx.key_name)
        return _service(request).controller.pause()

    @app.post("/api/queue/resume")
    async def resume_queue(request: Request, ctx: AuthContext = Depends(authorize)):
        logger.info("Queue resumed by %s", ctx.key_name)
        return _service(request).controller.resume()

    return app
