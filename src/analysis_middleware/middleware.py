"""Analysis middleware: sequences capture, density, retrieval and comparison."""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timezone
from types import TracebackType

from loguru import logger

from analysis_middleware.capture.engine import DecisionCaptureEngine
from analysis_middleware.compare.validator import ModelCrossValidator
from analysis_middleware.config import MiddlewareConfig, ModelProfile
from analysis_middleware.embeddings.embedder import Embedder
from analysis_middleware.errors import ModelComparisonError
from analysis_middleware.metrics.density import DensityCalculator
from analysis_middleware.obs.tracing import ProgressCallback, ProgressReporter, Timer
from analysis_middleware.retrieval.mapper import RetrievalAlignmentMapper
from analysis_middleware.tokenizer.adapter import TokenizerLoader, load_huggingface_tokenizer
from analysis_middleware.types import (
    DensityResult,
    EmbeddingMapping,
    KnowledgeCoverage,
    ModelComparisonResult,
    QuickAnalysis,
    RetrievalContribution,
    RetrievalPathGraph,
    RetrievedChunk,
    StabilityMetrics,
    TokenDecisionMetadata,
    TraceContext,
    TraceStats,
    TraceWarning,
)
from analysis_middleware.vectors import mean


class AnalysisMiddleware:
    """Turns one query into a unified, immutable `TraceContext`.

    The pipeline is strictly ordered: decision capture, density and coverage,
    retrieval attribution, then optional model comparison. Only tokenizer
    load failures raise; every other problem is reported as a warning on the
    returned trace.

    Instances are owned by the caller. Use `await init()` / `await dispose()`
    or `async with AnalysisMiddleware(...) as middleware:`.
    """

    def __init__(
        self,
        config: MiddlewareConfig | None = None,
        *,
        tokenizer_loader: TokenizerLoader = load_huggingface_tokenizer,
        embedder: Embedder | None = None,
        validator: ModelCrossValidator | None = None,
        density_calculator: DensityCalculator | None = None,
        retrieval_mapper: RetrievalAlignmentMapper | None = None,
    ) -> None:
        self.config = config or MiddlewareConfig()
        self.embedder = embedder
        self.density_calculator = density_calculator or DensityCalculator(self.config.density)
        self.retrieval_mapper = retrieval_mapper or RetrievalAlignmentMapper(self.config.retrieval)
        self.validator = validator or ModelCrossValidator(
            tokenizer_loader=tokenizer_loader,
            capture_config=self.config.capture,
            density_calculator=self.density_calculator,
        )
        self._engine: DecisionCaptureEngine | None = None

    @property
    def primary_model(self) -> str:
        return self.config.primary_model

    @property
    def initialized(self) -> bool:
        return self._engine is not None

    async def init(self) -> None:
        if self._engine is not None:
            return
        logger.info(f"[AnalysisMiddleware] Initializing with {self.primary_model}")
        self._engine = await self.validator.initialize_model(self.primary_model)
        logger.info("[AnalysisMiddleware] Ready")

    async def dispose(self) -> None:
        await self.validator.dispose()
        self._engine = None

    async def __aenter__(self) -> "AnalysisMiddleware":
        await self.init()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.dispose()

    async def set_primary_model(self, model_name: str) -> None:
        self.config = self.config.model_copy(update={"primary_model": model_name})
        self._engine = None
        await self.init()

    def supported_models(self) -> list[ModelProfile]:
        return self.validator.supported_models()

    async def analyze(
        self,
        text: str,
        *,
        query_embedding: list[float] | None = None,
        embed_query: bool = False,
        retrieved_chunks: list[RetrievedChunk] | None = None,
        token_embeddings: list[list[float]] | None = None,
        embed_tokens: bool = False,
        compare_models: list[str] | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> TraceContext:
        engine = await self._ready_engine()
        trace_id = str(uuid.uuid4())
        created_at = datetime.now(timezone.utc)
        reporter = ProgressReporter(on_progress)
        warnings: list[TraceWarning] = []

        with Timer() as timer:
            reporter.emit(
                "stage_complete", 0.1, {"stage": "initialization", "trace_id": trace_id}
            )

            logger.debug("[AnalysisMiddleware] Step 1: decision capture")
            capture = await engine.capture_decisions(text)
            tokens = capture.token_decisions
            warnings.extend(_stability_warnings(capture.stability_metrics, tokens))
            reporter.emit(
                "stage_complete", 0.3, {"stage": "tokenization", "token_count": len(tokens)}
            )

            logger.debug("[AnalysisMiddleware] Step 2: density and coverage")
            density = self.density_calculator.calculate_density(text, tokens)
            coverage = self.density_calculator.calculate_knowledge_coverage(
                text, tokens, engine.vocab_size
            )
            warnings.extend(self._density_warnings(density, coverage))

            if query_embedding is None and embed_query:
                query_embedding = await self._embed_query(text, warnings)
            if token_embeddings is None and embed_tokens:
                token_embeddings = await self._embed_tokens(
                    [t.token for t in tokens], warnings
                )

            embedding_mappings: list[EmbeddingMapping] = []
            if query_embedding is not None:
                if token_embeddings:
                    embedding_mappings = self.density_calculator.calculate_embedding_weights(
                        token_embeddings,
                        query_embedding,
                        token_ids=[t.token_id for t in tokens],
                    )
                else:
                    embedding_mappings = self.density_calculator.calculate_embedding_weights(
                        [query_embedding], query_embedding
                    )
            reporter.emit(
                "stage_complete", 0.5, {"stage": "weight_injection", "coverage": coverage.score}
            )

            logger.debug("[AnalysisMiddleware] Step 3: retrieval feedback")
            contributions: list[RetrievalContribution] = []
            retrieval_path: RetrievalPathGraph | None = None
            if query_embedding is not None:
                contributions = self.retrieval_mapper.normalize_and_mark_key_tokens(
                    self.retrieval_mapper.calculate_retrieval_contributions(
                        tokens, query_embedding, token_embeddings
                    )
                )
                if retrieved_chunks:
                    retrieval_path = self.retrieval_mapper.build_retrieval_path_graph(
                        trace_id, tokens, query_embedding, retrieved_chunks, contributions
                    )
                    quality = self.retrieval_mapper.analyze_retrieval_quality(retrieval_path)
                    warnings.extend(
                        TraceWarning(type="low_density", severity="warning", message=issue)
                        for issue in quality.issues
                    )
            reporter.emit("stage_complete", 0.7, {"stage": "retrieval_feedback"})

            model_comparison: ModelComparisonResult | None = None
            if compare_models and len(compare_models) > 1:
                logger.debug("[AnalysisMiddleware] Step 4: model comparison")
                try:
                    model_comparison = await self.validator.compare_models(text, compare_models)
                except ModelComparisonError as exc:
                    logger.warning(f"[AnalysisMiddleware] Model comparison failed: {exc}")
                    warnings.append(
                        TraceWarning(
                            type="model_comparison",
                            severity="error",
                            message=str(exc),
                            suggestion="Check that the requested tokenizers can be loaded",
                        )
                    )
                reporter.emit(
                    "stage_complete",
                    0.9,
                    {"stage": "model_comparison", "models_compared": len(compare_models)},
                )

        trace = TraceContext(
            trace_id=trace_id,
            created_at=created_at,
            completed_at=datetime.now(timezone.utc),
            input=text,
            primary_model=engine.model_name,
            waterfall=capture.waterfall,
            token_decisions=tokens,
            embedding_mappings=embedding_mappings,
            stability_metrics=capture.stability_metrics,
            retrieval_contributions=contributions,
            knowledge_coverage=coverage,
            stats=TraceStats(
                total_tokens=len(tokens),
                total_time=timer.elapsed_ms,
                compression_ratio=capture.waterfall.compression_ratio,
                avg_stability=mean([m.coefficient for m in capture.stability_metrics]),
                avg_contribution=mean([c.normalized_contribution for c in contributions]),
            ),
            warnings=warnings,
            model_comparison=model_comparison,
            retrieval_path=retrieval_path,
        )

        reporter.emit(
            "analysis_complete",
            1.0,
            {"trace_id": trace_id, "total_time": timer.elapsed_ms, "warnings": len(warnings)},
        )
        logger.info(
            f"[AnalysisMiddleware] Trace {trace_id} complete in {timer.elapsed_ms:.1f}ms "
            f"({len(tokens)} tokens, {len(warnings)} warnings)"
        )
        return trace

    async def quick_analyze(self, text: str) -> QuickAnalysis:
        """Tokenization, density and coverage only."""
        engine = await self._ready_engine()
        capture = await engine.capture_decisions(text)
        return QuickAnalysis(
            waterfall=capture.waterfall,
            token_decisions=capture.token_decisions,
            density_result=self.density_calculator.calculate_density(
                text, capture.token_decisions
            ),
            knowledge_coverage=self.density_calculator.calculate_knowledge_coverage(
                text, capture.token_decisions, engine.vocab_size
            ),
        )

    async def compare_models(self, text: str, model_names: list[str]) -> ModelComparisonResult:
        return await self.validator.compare_models(text, model_names)

    async def _embed_query(self, text: str, warnings: list[TraceWarning]) -> list[float] | None:
        """Embed `text`, recording a warning instead of raising when it cannot."""
        if self.embedder is None:
            warnings.append(
                TraceWarning(
                    type="embedding",
                    severity="warning",
                    message="Query embedding requested but no embedder is configured",
                    suggestion="Pass query_embedding or construct the middleware with an embedder",
                )
            )
            return None
        try:
            return await asyncio.to_thread(self.embedder.embed_query, text)
        except Exception as exc:
            logger.warning(f"[AnalysisMiddleware] Query embedding failed: {exc}")
            warnings.append(
                TraceWarning(
                    type="embedding",
                    severity="error",
                    message=f"Query embedding failed: {exc}",
                    suggestion="Retrieval attribution was skipped for this trace",
                )
            )
            return None

    async def _embed_tokens(
        self, tokens: list[str], warnings: list[TraceWarning]
    ) -> list[list[float]] | None:
        """Per-token vectors from the embedder; estimated vectors are used on failure."""
        if self.embedder is None or not tokens:
            return None
        try:
            return await asyncio.to_thread(self.embedder.embed_tokens, tokens)
        except Exception as exc:
            logger.warning(f"[AnalysisMiddleware] Token embedding failed: {exc}")
            warnings.append(
                TraceWarning(
                    type="embedding",
                    severity="warning",
                    message=f"Token embedding failed: {exc}",
                    suggestion="Contributions fall back to estimated token vectors",
                )
            )
            return None

    async def _ready_engine(self) -> DecisionCaptureEngine:
        await self.init()
        assert self._engine is not None
        return self._engine

    def _density_warnings(
        self, density: DensityResult, coverage: KnowledgeCoverage
    ) -> list[TraceWarning]:
        warnings: list[TraceWarning] = []
        if coverage.level in ("unfamiliar", "unknown"):
            warnings.append(
                TraceWarning(
                    type="low_coverage",
                    severity="warning",
                    message=f"Low knowledge coverage ({coverage.score * 100:.1f}%)",
                    suggestion="The model handles this domain poorly; retrieval quality may drop",
                )
            )

        fragmentation = density.global_stats.fragmentation_index
        if fragmentation > self.config.warnings.fragmentation_threshold:
            warnings.append(
                TraceWarning(
                    type="high_fragmentation",
                    severity="warning",
                    message=f"High text fragmentation ({fragmentation * 100:.1f}%)",
                    suggestion="Many low-density tokens; check proper nouns and rare terms",
                )
            )
        return warnings


def _stability_warnings(
    metrics: list[StabilityMetrics], tokens: list[TokenDecisionMetadata]
) -> list[TraceWarning]:
    warnings: list[TraceWarning] = []
    for index, (metric, token) in enumerate(zip(metrics, tokens)):
        if metric.level not in ("unstable", "critical"):
            continue
        warnings.append(
            TraceWarning(
                type="unstable_decision",
                severity="error" if metric.level == "critical" else "warning",
                message=(
                    f'Token "{token.token}" has an unstable split '
                    f"(coefficient {metric.coefficient:.3f})"
                ),
                position=index,
                suggestion="Contested split here may distort semantics",
            )
        )
    return warnings
