"""
FastAPI application for the code runner.

This module configures logging, builds the execution service, and registers
the three public endpoints (``POST /execute``, ``GET /languages``,
``GET /health``).  Unknown routes get a 404 listing the valid endpoints.

Status mapping for ``/execute``:

* 200 – the sandbox ran the program, whatever its exit code;
* 400 – missing fields, oversized code, malformed body or unknown language;
  nothing is allocated;
* 500 – the program was killed at its deadline (the body still carries the
  partial output) or the sandbox itself failed.
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException

from ..config import Config
from ..errors import ClientError, InfrastructureError, UnsupportedLanguageError
from ..models import (
    ErrorResponse,
    ExecuteRequest,
    ExecuteResponse,
    HealthResponse,
    LanguageInfo,
    LanguagesResponse,
    NotFoundResponse,
)
from ..service import ExecutionService, new_execution_id


logger = logging.getLogger("coderunner")

if not logger.handlers:
    handler = logging.StreamHandler()
    formatter = logging.Formatter("[coderunner] %(levelname)s - %(message)s")
    handler.setFormatter(formatter)
    logger.addHandler(handler)

logger.setLevel(logging.INFO)


AVAILABLE_ENDPOINTS: List[str] = ["GET /health", "GET /languages", "POST /execute"]
UNAUTHENTICATED_PATHS = {"/health"}


def _json(status_code: int, model: BaseModel) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=model.model_dump(mode="json", by_alias=True, exclude_none=True),
    )


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


def get_service(request: Request) -> ExecutionService:
    return request.app.state.service


def create_app(
    config: Optional[Config] = None,
    service: Optional[ExecutionService] = None,
) -> FastAPI:
    config = config or Config.from_env()
    logger.setLevel(config.log_level)
    service = service or ExecutionService.from_config(config)

    logger.info(
        "Loaded config: workspace_root=%s, languages=%s, max_timeout_ms=%s, memory_mb=%s, cpu_quota=%s",
        config.workspace_root,
        service.registry.ids(),
        config.max_timeout_ms,
        config.memory_limit_mb,
        config.cpu_quota,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await service.reclaim_orphans()
        yield
        await service.shutdown()

    app = FastAPI(title="Code Runner", version="0.1.0", lifespan=lifespan)
    app.state.config = config
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def authenticate(request: Request, call_next):
        """Log every request and enforce the API key when one is configured."""
        path = request.url.path
        method = request.method
        client = getattr(request.client, "host", "unknown")

        logger.info("Incoming request: %s %s from %s", method, path, client)

        if config.api_key and path not in UNAUTHENTICATED_PATHS:
            provided_key = request.headers.get("x-api-key")
            if provided_key != config.api_key:
                logger.warning("Invalid API key for %s %s from %s", method, path, client)
                return JSONResponse(
                    status_code=401, content={"success": False, "error": "Invalid API key"}
                )

        response = await call_next(request)
        logger.info("Response: %s %s -> %s", method, path, response.status_code)
        return response

    @app.exception_handler(RequestValidationError)
    async def invalid_body(request: Request, exc: RequestValidationError) -> JSONResponse:
        logger.warning("Rejected malformed request to %s: %s", request.url.path, exc.errors())
        return _json(
            400,
            ErrorResponse(error="Invalid request body", execution_id=new_execution_id()),
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        if exc.status_code == 404:
            return _json(404, NotFoundResponse(available_endpoints=AVAILABLE_ENDPOINTS))
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "error": str(exc.detail)},
            headers=getattr(exc, "headers", None),
        )

    @app.get("/health", response_model=HealthResponse)
    async def health(service: ExecutionService = Depends(get_service)) -> HealthResponse:
        """Liveness check; reports the container runtime's reachability."""
        available = await service.health()
        return HealthResponse(
            status="healthy" if available else "degraded",
            timestamp=datetime.now(timezone.utc),
            runtime="available" if available else "unavailable",
        )

    @app.get("/languages", response_model=LanguagesResponse, response_model_by_alias=True)
    async def languages(service: ExecutionService = Depends(get_service)) -> LanguagesResponse:
        return LanguagesResponse(
            languages=[LanguageInfo.from_profile(p) for p in service.registry.list()]
        )

    @app.post("/execute")
    async def execute(
        req: ExecuteRequest, service: ExecutionService = Depends(get_service)
    ) -> JSONResponse:
        execution_id = new_execution_id()
        started = time.perf_counter()

        try:
            accepted = service.validate(req.code, req.language, req.input, req.timeout)
        except UnsupportedLanguageError as exc:
            logger.warning("[%s] Unsupported language: %s", execution_id, exc.language)
            return _json(
                400,
                ErrorResponse(
                    error=str(exc),
                    execution_id=execution_id,
                    supported_languages=exc.supported,
                ),
            )
        except ClientError as exc:
            logger.warning("[%s] Rejected request: %s", execution_id, exc)
            return _json(400, ErrorResponse(error=str(exc), execution_id=execution_id))

        logger.info(
            "[%s] Executing %s code (%d bytes, timeout=%sms, stdin=%s)",
            execution_id,
            accepted.language,
            len(accepted.code),
            accepted.timeout_ms,
            bool(accepted.input),
        )

        try:
            result = await service.execute(accepted, execution_id)
        except InfrastructureError as exc:
            logger.exception("[%s] Sandbox failure: %s", execution_id, exc)
            return _server_error(config, execution_id, started, exc)
        except Exception as exc:
            logger.exception("[%s] Unhandled error during execution: %s", execution_id, exc)
            return _server_error(config, execution_id, started, exc)

        return _json(500 if result.timed_out else 200, ExecuteResponse.from_result(result))

    return app


def _server_error(config: Config, execution_id: str, started: float, exc: Exception) -> JSONResponse:
    return _json(
        500,
        ErrorResponse(
            error="Internal server error during code execution",
            execution_id=execution_id,
            execution_time=_elapsed_ms(started),
            details=str(exc) if config.debug else None,
        ),
    )


app = create_app()
