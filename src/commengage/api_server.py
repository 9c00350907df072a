"""
FastAPI adapter for the CommEngage answer engine.

Exposes question answering, summaries, content mutations, and metrics.
The surrounding GraphQL gateway can call these routes or use AnswerService
in-process.

Run with:
    uvicorn commengage.api_server:app --host 0.0.0.0 --port 8000
"""
from __future__ import annotations

import uuid
from contextlib import asynccontextmanager
from typing import Any, Callable

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from .errors import EmbeddingFailure, GenerationFailure, UpstreamTimeout
from .models import ContentItem, ContentKind
from .service import AnswerService


# ---------------------------------------------------------------------------
# Pydantic request / response models
# ---------------------------------------------------------------------------

class QueryRequest(BaseModel):
    question: str = Field(..., min_length=1, description="User question")
    session_id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        description="Session identifier for conversational history",
    )


class QueryResponse(BaseModel):
    answer: str
    sources: list[str]
    session_id: str


class SummaryResponse(BaseModel):
    item_id: str
    summary: str | None


class PostCreate(BaseModel):
    title: str = ""
    content: str = Field(..., min_length=1)
    category: str = ""


class HelpRequestCreate(BaseModel):
    title: str = ""
    description: str = Field(..., min_length=1)
    location: str = ""


class ContentUpdate(BaseModel):
    title: str | None = None
    text: str | None = None
    location: str | None = None
    category: str | None = None
    is_resolved: bool | None = None


class VolunteerRequest(BaseModel):
    volunteer_id: str = Field(..., min_length=1)


class ContentResponse(BaseModel):
    id: str
    kind: str
    title: str
    text: str
    location: str
    category: str
    is_resolved: bool
    volunteers: list[str]
    version: int

    @classmethod
    def from_item(cls, item: ContentItem) -> "ContentResponse":
        return cls(
            id=item.id,
            kind=item.kind.value,
            title=item.title,
            text=item.text,
            location=item.location,
            category=item.category,
            is_resolved=item.is_resolved,
            volunteers=list(item.volunteers),
            version=item.version,
        )


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app(service_factory: Callable[[], AnswerService] | None = None) -> FastAPI:
    state: dict[str, Any] = {}

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Build the engine and index existing content once at startup."""
        service = (service_factory or AnswerService.from_config)()
        await service.start()
        state["service"] = service

        yield  # Application is running.

        await service.close()
        state.clear()

    app = FastAPI(
        title="CommEngage Answer Engine",
        description="Community content retrieval and conversational answers",
        version="1.0.0",
        lifespan=lifespan,
    )

    def _service() -> AnswerService:
        service = state.get("service")
        if service is None:
            raise HTTPException(status_code=503, detail="Answer engine is not initialized.")
        return service

    @app.post("/query", response_model=QueryResponse)
    async def query_endpoint(request: QueryRequest):
        """Answer a community question within a conversation session."""
        try:
            result = await _service().ask_question(request.question, request.session_id)
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        except UpstreamTimeout as exc:
            raise HTTPException(status_code=504, detail=str(exc)) from exc
        except (GenerationFailure, EmbeddingFailure) as exc:
            raise HTTPException(status_code=502, detail=f"Could not answer the question: {exc}") from exc
        return QueryResponse(answer=result["answer"], sources=result["sources"], session_id=request.session_id)

    @app.get("/summaries/{item_id}", response_model=SummaryResponse)
    async def summary_endpoint(item_id: str):
        service = _service()
        item = service.store.get(item_id)
        if item is None or item.deleted:
            raise HTTPException(status_code=404, detail="Content not found")
        return SummaryResponse(item_id=item_id, summary=await service.query_summary(item_id))

    @app.post("/posts", response_model=ContentResponse, status_code=201)
    async def create_post_endpoint(request: PostCreate):
        try:
            item = _service().create_post(request.content, title=request.title, category=request.category)
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        return ContentResponse.from_item(item)

    @app.get("/posts", response_model=list[ContentResponse])
    async def list_posts_endpoint(category: str | None = None):
        """List live posts, optionally filtered by category."""
        items = _service().store.list_items(category=category)
        return [ContentResponse.from_item(item) for item in items if item.kind is ContentKind.POST]

    @app.post("/help-requests", response_model=ContentResponse, status_code=201)
    async def create_help_request_endpoint(request: HelpRequestCreate):
        try:
            item = _service().create_help_request(
                request.description,
                title=request.title,
                location=request.location,
            )
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        return ContentResponse.from_item(item)

    @app.patch("/content/{item_id}", response_model=ContentResponse)
    async def edit_content_endpoint(item_id: str, request: ContentUpdate):
        changes = request.model_dump(exclude_none=True)
        try:
            item = _service().edit_content(item_id, **changes)
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        if item is None:
            raise HTTPException(status_code=404, detail="Content not found")
        return ContentResponse.from_item(item)

    @app.delete("/content/{item_id}")
    async def delete_content_endpoint(item_id: str):
        if not _service().delete_content(item_id):
            raise HTTPException(status_code=404, detail="Content not found")
        return {"deleted": True}

    @app.post("/help-requests/{item_id}/volunteers", response_model=ContentResponse)
    async def volunteer_endpoint(item_id: str, request: VolunteerRequest):
        try:
            item = _service().volunteer(item_id, request.volunteer_id)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        if item is None:
            raise HTTPException(status_code=404, detail="Help request not found")
        return ContentResponse.from_item(item)

    @app.get("/metrics")
    async def metrics_endpoint():
        """Return aggregated engine metrics."""
        return _service().metrics_summary()

    return app


app = create_app()
