"""FastAPI entrypoint for analysis, quick analysis and model comparison."""

from __future__ import annotations

import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any, NoReturn

from fastapi import FastAPI, HTTPException
from loguru import logger
from pydantic import BaseModel, Field

from analysis_middleware.config import MiddlewareConfig
from analysis_middleware.embeddings.embedder import Embedder, HashingEmbedder, LangChainEmbedder
from analysis_middleware.errors import ModelComparisonError, TokenizerLoadError
from analysis_middleware.middleware import AnalysisMiddleware
from analysis_middleware.types import ChunkToken, RetrievedChunk


def _create_embedder() -> Embedder:
    api_key = os.getenv("OPENAI_API_KEY")
    if not api_key:
        return HashingEmbedder()

    from langchain_openai import OpenAIEmbeddings

    return LangChainEmbedder(
        OpenAIEmbeddings(model=os.getenv("OPENAI_EMBEDDING_MODEL", "text-embedding-3-small"))
    )


def _create_middleware() -> AnalysisMiddleware:
    config = MiddlewareConfig()
    primary_model = os.getenv("ANALYSIS_PRIMARY_MODEL")
    if primary_model:
        config = config.model_copy(update={"primary_model": primary_model})
    return AnalysisMiddleware(config, embedder=_create_embedder())


class ChunkTokenPayload(BaseModel):
    token: str
    token_id: int
    position: int = Field(ge=0)


class RetrievedChunkPayload(BaseModel):
    chunk_id: str
    content: str
    tokens: list[ChunkTokenPayload] = Field(default_factory=list)
    overall_similarity: float = 0.0
    embedding: list[float] | None = None

    def to_chunk(self) -> RetrievedChunk:
        return RetrievedChunk(
            chunk_id=self.chunk_id,
            content=self.content,
            tokens=[ChunkToken(**token.model_dump()) for token in self.tokens],
            overall_similarity=self.overall_similarity,
            embedding=self.embedding,
        )


class AnalyzeRequest(BaseModel):
    text: str
    query_embedding: list[float] | None = None
    embed_query: bool = False
    embed_tokens: bool = False
    retrieved_chunks: list[RetrievedChunkPayload] = Field(default_factory=list)
    compare_models: list[str] = Field(default_factory=list)


class QuickAnalyzeRequest(BaseModel):
    text: str


class CompareRequest(BaseModel):
    text: str
    model_names: list[str] = Field(min_length=2)


def _raise_http(exc: Exception) -> NoReturn:
    if isinstance(exc, TokenizerLoadError):
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    if isinstance(exc, (ModelComparisonError, ValueError)):
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    logger.exception(f"[api] Unhandled analysis failure: {exc}")
    raise HTTPException(status_code=500, detail=str(exc)) from exc


def create_app(middleware: AnalysisMiddleware | None = None) -> FastAPI:
    analysis = middleware or _create_middleware()

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        try:
            await analysis.init()
        except TokenizerLoadError as exc:
            # Requests retry the load and report 503 until it succeeds.
            logger.warning(f"[api] Primary tokenizer unavailable at startup: {exc}")
        yield
        await analysis.dispose()

    app = FastAPI(title="Analysis Middleware", version="0.1.0", lifespan=lifespan)

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {
            "status": "ok" if analysis.initialized else "degraded",
            "primary_model": analysis.primary_model,
            "embedder": type(analysis.embedder).__name__ if analysis.embedder else None,
        }

    @app.get("/analysis/models")
    def models() -> dict[str, Any]:
        return {
            "primary_model": analysis.primary_model,
            "items": [profile.model_dump() for profile in analysis.supported_models()],
        }

    @app.post("/analysis")
    async def analyze(request: AnalyzeRequest) -> dict[str, Any]:
        try:
            trace = await analysis.analyze(
                request.text,
                query_embedding=request.query_embedding,
                embed_query=request.embed_query,
                embed_tokens=request.embed_tokens,
                retrieved_chunks=[chunk.to_chunk() for chunk in request.retrieved_chunks],
                compare_models=request.compare_models,
            )
        except Exception as exc:
            _raise_http(exc)
        return asdict(trace)

    @app.post("/analysis/quick")
    async def quick(request: QuickAnalyzeRequest) -> dict[str, Any]:
        try:
            result = await analysis.quick_analyze(request.text)
        except Exception as exc:
            _raise_http(exc)
        return asdict(result)

    @app.post("/analysis/compare")
    async def compare(request: CompareRequest) -> dict[str, Any]:
        try:
            result = await analysis.compare_models(request.text, request.model_names)
        except Exception as exc:
            _raise_http(exc)
        return asdict(result)

    return app


app = create_app()
