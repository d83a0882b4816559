from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any, Literal

import structlog
from dotenv import find_dotenv, load_dotenv
from fastapi import FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .configuration import Settings
from .errors import (
    ConfigurationError,
    LearnMatchError,
    NotFoundError,
    ServiceError,
    ValidationError,
)
from .models import CamelModel, ContentKind, Entity, kind_of
from .pipeline import Pipeline

logger = structlog.get_logger()


class EntityWrittenRequest(CamelModel):
    kind: ContentKind
    owner_id: str | None = None
    entity: Entity
    force: bool = False


class EntityDeletedRequest(CamelModel):
    kind: ContentKind
    entity_id: str
    owner_id: str | None = None


class SuggestRequest(CamelModel):
    query: str
    top_k: int | None = None
    roadmap_id: str | None = None
    node_id: str | None = None


class SuggestionStatusRequest(CamelModel):
    roadmap_id: str
    node_id: str
    suggestion_type: Literal["course", "video"]
    suggestion_id: str
    status: bool


class ExistingSuggestionsRequest(CamelModel):
    roadmap_id: str
    node_id: str


def _dump(model: CamelModel) -> dict[str, Any]:
    return model.model_dump(mode="json", by_alias=True)


def _error(status_code: int, message: str, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, **extra})


def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(RequestValidationError)
    async def request_validation_error(  # pyright: ignore[reportUnusedFunction]
        _request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        details = [
            {"loc": list(error["loc"]), "msg": error["msg"]} for error in exc.errors()
        ]
        return _error(400, "invalid request", details=details)

    @app.exception_handler(LearnMatchError)
    async def learnmatch_error(  # pyright: ignore[reportUnusedFunction]
        _request: Request, exc: LearnMatchError
    ) -> JSONResponse:
        if isinstance(exc, ValidationError):
            return _error(400, exc.message)
        if isinstance(exc, NotFoundError):
            return _error(404, exc.message)
        if isinstance(exc, ServiceError):
            await logger.awarning(
                "backend unavailable",
                service=exc.service,
                retryable=exc.retryable,
                error=exc.message,
            )
            return _error(
                503, exc.message, service=exc.service, retryable=exc.retryable
            )
        if isinstance(exc, ConfigurationError):
            await logger.aerror("configuration error", error=exc.message)
            return _error(500, exc.message)
        await logger.aerror("request failed", error=exc.message)
        return _error(500, exc.message)


def _owner(owner_id: str | None, user_id: str | None) -> str:
    owner = owner_id or user_id
    if not owner:
        raise ValidationError("an owner id is required")
    return owner


def create_app(pipeline: Pipeline | None = None) -> FastAPI:
    """
    Builds the HTTP application.

    Args:
        pipeline: the services to serve. Built from the environment when None.
    """
    if pipeline is None:
        load_dotenv(dotenv_path=find_dotenv(usecwd=True))
        pipeline = Pipeline.from_settings(Settings.from_env())
    p = pipeline

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        await p.setup()
        yield
        await logger.ainfo("shutting down", pending=p.dispatcher.pending)
        await p.close()

    app = FastAPI(title="learnmatch", lifespan=lifespan)
    app.state.pipeline = p
    _register_error_handlers(app)

    @app.post("/hooks/entity-written", status_code=202)
    async def entity_written(  # pyright: ignore[reportUnusedFunction]
        body: EntityWrittenRequest,
        x_user_id: str | None = Header(default=None),
    ) -> dict[str, Any]:
        if kind_of(body.entity) is not body.kind:
            raise ValidationError(
                f"entity is a {body.entity.kind}, not a {body.kind.value}"
            )
        owner_id = body.owner_id or x_user_id or body.entity.owner_id
        p.dispatcher.on_entity_written(body.entity, owner_id, force=body.force)
        return {
            "accepted": True,
            "embeddingKey": body.kind.embedding_key(body.entity.id),
        }

    @app.post("/hooks/entity-deleted")
    async def entity_deleted(  # pyright: ignore[reportUnusedFunction]
        body: EntityDeletedRequest,
        x_user_id: str | None = Header(default=None),
    ) -> dict[str, Any]:
        owner_id = _owner(body.owner_id, x_user_id)
        deleted = await p.orchestrator.delete(body.kind, body.entity_id, owner_id)
        return {"deleted": deleted}

    async def _suggest(
        kind: ContentKind, body: SuggestRequest, user_id: str | None
    ) -> dict[str, Any]:
        result = await p.matcher.suggest(
            kind,
            body.query,
            top_k=body.top_k,
            roadmap_id=body.roadmap_id,
            node_id=body.node_id,
            owner_id=user_id,
        )
        return _dump(result)

    @app.post("/suggestions/courses")
    async def suggest_courses(  # pyright: ignore[reportUnusedFunction]
        body: SuggestRequest,
        x_user_id: str | None = Header(default=None),
    ) -> dict[str, Any]:
        return await _suggest(ContentKind.COURSE, body, x_user_id)

    @app.post("/suggestions/videos")
    async def suggest_videos(  # pyright: ignore[reportUnusedFunction]
        body: SuggestRequest,
        x_user_id: str | None = Header(default=None),
    ) -> dict[str, Any]:
        return await _suggest(ContentKind.VIDEO, body, x_user_id)

    @app.put("/suggestions/status")
    async def suggestion_status(  # pyright: ignore[reportUnusedFunction]
        body: SuggestionStatusRequest,
        x_user_id: str | None = Header(default=None),
    ) -> dict[str, Any]:
        entry = await p.matcher.update_suggestion_status(
            body.roadmap_id,
            body.node_id,
            ContentKind(body.suggestion_type),
            body.suggestion_id,
            body.status,
            owner_id=x_user_id,
        )
        verb = "accepted" if entry.status else "rejected"
        return {
            "success": True,
            "message": f"{body.suggestion_type} suggestion {verb}",
            "suggestion": _dump(entry),
        }

    @app.post("/suggestions/existing")
    async def existing_suggestions(  # pyright: ignore[reportUnusedFunction]
        body: ExistingSuggestionsRequest,
        x_user_id: str | None = Header(default=None),
    ) -> dict[str, Any]:
        existing = await p.matcher.existing_suggestions(
            body.roadmap_id, body.node_id, owner_id=x_user_id
        )
        return _dump(existing)

    @app.get("/embedding-status/{kind}/{entity_id}")
    async def embedding_status(  # pyright: ignore[reportUnusedFunction]
        kind: ContentKind,
        entity_id: str,
        owner_id: str | None = Query(default=None, alias="ownerId"),
        x_user_id: str | None = Header(default=None),
    ) -> dict[str, Any]:
        report = await p.orchestrator.lookup(
            kind, entity_id, _owner(owner_id, x_user_id)
        )
        return _dump(report)

    @app.get("/health")
    async def health() -> dict[str, Any]:  # pyright: ignore[reportUnusedFunction]
        return _dump(await p.health.check())

    return app
