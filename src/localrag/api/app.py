"""FastAPI application exposing the localrag knowledge client."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator
from uuid import uuid4

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from localrag.api.schemas import AskRequest, AskResponse, IngestResponse, KnowledgeRequest, StatusResponse
from localrag.config import Settings, get_settings
from localrag.errors import InvalidQueryError, InvalidSourceError, LocalRAGError, NotInitializedError
from localrag.metrics.observability import bind_correlation_id, clear_correlation_id, configure_logging, get_logger
from localrag.services.pipeline import KnowledgeClient


def create_app(*, settings: Settings | None = None, client: KnowledgeClient | None = None) -> FastAPI:
    settings = settings or get_settings()
    knowledge = client or KnowledgeClient.from_settings(settings)

    configure_logging()
    logger = get_logger("api")

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await knowledge.initialize()
        try:
            yield
        finally:
            await knowledge.destroy()

    app = FastAPI(title="localrag API", version="0.1.0", lifespan=lifespan)
    app.state.client = knowledge

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):  # type: ignore[override]
        correlation_id = request.headers.get("X-Request-ID", uuid4().hex)
        request.state.correlation_id = correlation_id
        bind_correlation_id(correlation_id)
        try:
            response = await call_next(request)
        finally:
            clear_correlation_id()
        response.headers["X-Correlation-ID"] = correlation_id
        return response

    def require_api_key(request: Request) -> None:
        expected = settings.api_key
        if not expected:
            return
        provided = request.headers.get("X-API-Key")
        if provided != expected:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key")

    def _error(request: Request, status_code: int, event: str, detail: str) -> JSONResponse:
        correlation_id = getattr(request.state, "correlation_id", uuid4().hex)
        logger.warning(event, correlation_id=correlation_id, detail=detail)
        return JSONResponse(status_code=status_code, content={"detail": detail, "correlation_id": correlation_id})

    @app.exception_handler(InvalidSourceError)
    async def handle_invalid_source(request: Request, exc: InvalidSourceError) -> JSONResponse:
        return _error(request, status.HTTP_400_BAD_REQUEST, "ingestion.invalid_source", str(exc))

    @app.exception_handler(InvalidQueryError)
    async def handle_invalid_query(request: Request, exc: InvalidQueryError) -> JSONResponse:
        return _error(request, status.HTTP_422_UNPROCESSABLE_ENTITY, "query.invalid", str(exc))

    @app.exception_handler(NotInitializedError)
    async def handle_not_initialized(request: Request, exc: NotInitializedError) -> JSONResponse:
        return _error(request, status.HTTP_503_SERVICE_UNAVAILABLE, "pipeline.not_ready", str(exc))

    @app.exception_handler(LocalRAGError)
    async def handle_pipeline_error(request: Request, exc: LocalRAGError) -> JSONResponse:
        correlation_id = getattr(request.state, "correlation_id", uuid4().hex)
        logger.error("pipeline.error", correlation_id=correlation_id, detail=str(exc))
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": str(exc), "correlation_id": correlation_id},
        )

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        correlation_id = getattr(request.state, "correlation_id", uuid4().hex)
        logger.error("unhandled.error", correlation_id=correlation_id, detail=str(exc))
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": "Internal Server Error", "correlation_id": correlation_id},
        )

    def get_client(request: Request) -> KnowledgeClient:
        return request.app.state.client

    @app.post("/knowledge", response_model=IngestResponse, status_code=status.HTTP_201_CREATED)
    async def load_knowledge(
        payload: KnowledgeRequest,
        knowledge_client: KnowledgeClient = Depends(get_client),
        _auth: None = Depends(require_api_key),
    ) -> IngestResponse:
        result = await knowledge_client.load_knowledge(payload.to_source())
        return IngestResponse(**result.to_dict())

    @app.post("/ask", response_model=AskResponse)
    async def ask(
        payload: AskRequest,
        knowledge_client: KnowledgeClient = Depends(get_client),
        _auth: None = Depends(require_api_key),
    ) -> AskResponse:
        answer = await knowledge_client.ask(payload.question, payload.to_options())
        return AskResponse.from_answer(answer)

    @app.get("/status", response_model=StatusResponse)
    async def get_status(knowledge_client: KnowledgeClient = Depends(get_client)) -> StatusResponse:
        current = await knowledge_client.get_status()
        return StatusResponse(**current.to_dict())

    @app.delete("/knowledge", status_code=status.HTTP_204_NO_CONTENT)
    async def clear_knowledge(
        knowledge_client: KnowledgeClient = Depends(get_client),
        _auth: None = Depends(require_api_key),
    ) -> Response:
        await knowledge_client.clear()
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.get("/metrics")
    async def metrics() -> Response:
        payload = generate_latest()
        return Response(content=payload, media_type=CONTENT_TYPE_LATEST)

    @app.get("/healthz")
    async def healthcheck(knowledge_client: KnowledgeClient = Depends(get_client)) -> dict[str, str]:
        from localrag import __version__

        return {
            "status": "ok",
            "version": __version__,
            "environment": settings.environment,
            "state": knowledge_client.state.value,
        }

    return app


app = create_app()
