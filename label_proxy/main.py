from __future__ import annotations

import json
import logging
import time
import uuid
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from label_proxy.body_limit import BodySizeLimitMiddleware
from label_proxy.config import settings
from label_proxy.errors import ExtractionFailure, FailureKind
from label_proxy.extraction import ExtractionPipeline
from label_proxy.rate_limit import SlidingWindowRateLimiter
from label_proxy.schemas import AnalyzeImageRequest, HealthResponse, NutritionResult

app = FastAPI(title="Nutrition label proxy", version="0.1.0")

if settings.cors_allowed_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allowed_origins,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

app.add_middleware(BodySizeLimitMiddleware, max_body_bytes=settings.max_body_bytes)

logging.basicConfig(level=settings.log_level.upper())
logger = logging.getLogger("label_proxy")

rate_limiter = SlidingWindowRateLimiter(
    settings.rate_limit_max_requests,
    window_s=settings.rate_limit_window_s,
    sweep_interval_s=settings.rate_limit_sweep_interval_s,
)
pipeline = ExtractionPipeline(settings)

if not settings.anthropic_api_key:
    logger.warning("ANTHROPIC_API_KEY is not set; upstream requests will be rejected")


def _request_id(request: Request) -> str:
    existing = request.headers.get("x-request-id")
    if existing and existing.strip():
        return existing.strip()
    return uuid.uuid4().hex


def _client_ip(request: Request) -> str:
    client = request.client
    return client.host if client else "unknown"


def _log_event(event: str, **kwargs: object) -> None:
    payload = {"event": event, **kwargs}
    logger.info(json.dumps(payload, ensure_ascii=True))


def _is_rate_limited_route(request: Request) -> bool:
    return request.url.path.startswith("/api/") and request.method != "OPTIONS"


@app.exception_handler(ExtractionFailure)
async def extraction_failure_handler(request: Request, exc: ExtractionFailure) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content={"error": "Invalid request body", "details": jsonable_encoder(exc.errors())},
    )


@app.middleware("http")
async def request_middleware(request: Request, call_next):
    started = time.monotonic()
    route = request.url.path
    method = request.method
    request_id = _request_id(request)
    request.state.request_id = request_id
    client_id = _client_ip(request)
    decision = None

    try:
        if _is_rate_limited_route(request):
            decision = rate_limiter.check(client_id)

        if decision is not None and not decision.allowed:
            failure = ExtractionFailure(FailureKind.RATE_LIMITED)
            response = JSONResponse(
                status_code=failure.status_code,
                content=failure.to_payload(),
                headers={"retry-after": str(decision.retry_after_s)},
            )
        else:
            response = await call_next(request)
    except Exception as exc:  # pragma: no cover
        failure = ExtractionFailure(FailureKind.INTERNAL_ERROR, str(exc))
        response = JSONResponse(status_code=failure.status_code, content=failure.to_payload())
        _log_event(
            "request_failed",
            request_id=request_id,
            method=method,
            route=route,
            error=str(exc),
        )

    latency_s = time.monotonic() - started
    response.headers["x-request-id"] = request_id
    if decision is not None:
        response.headers["x-ratelimit-limit"] = str(settings.rate_limit_max_requests)
        response.headers["x-ratelimit-remaining"] = str(decision.remaining)

    _log_event(
        "request_completed",
        request_id=request_id,
        client_id=client_id,
        method=method,
        route=route,
        status=response.status_code,
        latency_ms=round(latency_s * 1000, 2),
    )
    return response


@app.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    return HealthResponse(status="OK", timestamp=datetime.now(timezone.utc).isoformat())


@app.post("/api/analyze-image", response_model=NutritionResult)
async def analyze_image(body: AnalyzeImageRequest | None = None) -> NutritionResult:
    if body is None:
        body = AnalyzeImageRequest()
    return await pipeline.extract(body.image, media_type=body.media_type)


def run() -> None:
    import uvicorn

    logger.info("API endpoint: http://%s:%s/api/analyze-image", settings.host, settings.port)
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())
