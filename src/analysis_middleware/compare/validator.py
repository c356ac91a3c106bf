"""Cross-model tokenization comparison with character-level alignment."""

from __future__ import annotations

import asyncio
from collections import Counter
from collections.abc import Callable

from loguru import logger

from analysis_middleware.capture.engine import DecisionCaptureEngine
from analysis_middleware.config import (
    SUPPORTED_MODELS,
    CaptureConfig,
    ModelProfile,
    model_type_for,
)
from analysis_middleware.errors import ModelComparisonError
from analysis_middleware.metrics.density import DensityCalculator
from analysis_middleware.obs.tracing import Timer
from analysis_middleware.tokenizer.adapter import TokenizerLoader, load_huggingface_tokenizer
from analysis_middleware.tokenizer.markers import is_fallback_token, strip_markers
from analysis_middleware.types import (
    AlignedToken,
    CharacterAlignmentEntry,
    DifferenceType,
    ModelComparisonResult,
    ModelDifference,
    ModelRecommendation,
    Significance,
    SingleModelAnalysis,
    TokenDecisionMetadata,
)
from analysis_middleware.vectors import mean

EngineFactory = Callable[[str], DecisionCaptureEngine]


class ModelCrossValidator:
    """Runs several tokenizers on the same text and explains their disagreements.

    Engines are cached per model name. Concurrent requests for a model that is
    still loading await the same task instead of loading it twice; a failed
    load is evicted so a later request can retry.
    """

    def __init__(
        self,
        *,
        tokenizer_loader: TokenizerLoader = load_huggingface_tokenizer,
        capture_config: CaptureConfig | None = None,
        density_calculator: DensityCalculator | None = None,
        engine_factory: EngineFactory | None = None,
    ) -> None:
        self._engine_factory = engine_factory or (
            lambda name: DecisionCaptureEngine(
                name, tokenizer_loader=tokenizer_loader, config=capture_config
            )
        )
        self.density_calculator = density_calculator or DensityCalculator()
        self._engines: dict[str, asyncio.Task[DecisionCaptureEngine]] = {}

    @property
    def loaded_models(self) -> list[str]:
        return [
            name
            for name, task in self._engines.items()
            if task.done() and not task.cancelled() and task.exception() is None
        ]

    async def initialize_model(self, model_name: str) -> DecisionCaptureEngine:
        task = self._engines.get(model_name)
        if task is None:
            task = asyncio.ensure_future(self._create_engine(model_name))
            self._engines[model_name] = task
        try:
            # Shielded so one cancelled waiter does not abort a shared load.
            return await asyncio.shield(task)
        except Exception:
            if self._engines.get(model_name) is task:
                del self._engines[model_name]
            raise

    async def compare_models(self, text: str, model_names: list[str]) -> ModelComparisonResult:
        names = list(dict.fromkeys(model_names))
        if not names:
            raise ModelComparisonError("No models requested for comparison")
        logger.info(f"[ModelCrossValidator] Comparing {len(names)} models")

        loaded = await asyncio.gather(
            *(self.initialize_model(name) for name in names), return_exceptions=True
        )
        engines: list[DecisionCaptureEngine] = []
        for name, result in zip(names, loaded):
            if isinstance(result, Exception):
                logger.warning(f"[ModelCrossValidator] Dropping {name}: {result}")
                continue
            if isinstance(result, BaseException):
                raise result
            engines.append(result)

        analyses = await asyncio.gather(*(self._analyze_model(text, engine) for engine in engines))
        valid = [analysis for analysis in analyses if analysis is not None]
        if not valid:
            raise ModelComparisonError(f"All {len(names)} models failed to analyze the input")

        alignment = self.build_character_alignment(text, valid)
        differences = self.identify_differences(alignment, valid)
        return ModelComparisonResult(
            input=text,
            models=valid,
            character_alignment=alignment,
            differences=differences,
            recommendation=self.generate_recommendation(valid, differences),
        )

    def build_character_alignment(
        self, text: str, analyses: list[SingleModelAnalysis]
    ) -> list[CharacterAlignmentEntry]:
        coverage = {
            analysis.model_name: _coverage_index(len(text), analysis.tokens)
            for analysis in analyses
        }

        alignment: list[CharacterAlignmentEntry] = []
        for char_index, char in enumerate(text):
            model_tokens: dict[str, AlignedToken] = {}
            for name, covering in coverage.items():
                aligned = covering[char_index]
                if aligned is not None:
                    model_tokens[name] = aligned
            alignment.append(
                CharacterAlignmentEntry(char_index=char_index, char=char, model_tokens=model_tokens)
            )
        return alignment

    def identify_differences(
        self,
        alignment: list[CharacterAlignmentEntry],
        analyses: list[SingleModelAnalysis],
    ) -> list[ModelDifference]:
        by_name = {analysis.model_name: analysis for analysis in analyses}
        differences: list[ModelDifference] = []
        covered_until = 0

        for entry in alignment:
            position = entry.char_index
            if position < covered_until or len(entry.model_tokens) < 2:
                continue

            unique_tokens = {aligned.token for aligned in entry.model_tokens.values()}
            if len(unique_tokens) <= 1:
                continue

            covering = {
                name: by_name[name].tokens[aligned.token_index]
                for name, aligned in entry.model_tokens.items()
            }
            differences.append(
                ModelDifference(
                    position=position,
                    type=_difference_type(list(covering.values())),
                    models={
                        name: [
                            token.token
                            for token in by_name[name].tokens[
                                max(0, aligned.token_index - 1) : aligned.token_index + 2
                            ]
                        ]
                        for name, aligned in entry.model_tokens.items()
                    },
                    significance=_significance(len(unique_tokens), len(entry.model_tokens)),
                )
            )
            # The same disagreement region is reported once.
            covered_until = max(
                position + 1, max(token.byte_range.end for token in covering.values())
            )

        return differences

    def generate_recommendation(
        self,
        analyses: list[SingleModelAnalysis],
        differences: list[ModelDifference],
    ) -> ModelRecommendation:
        """Score each model and pick the best one.

        score = 40 * coverage + 20 * (mean_tokens / own_tokens)
              + 10 * (mean_time / own_time) + 30 * consistency

        Ties keep the model that appears first.
        """

        mean_tokens = mean([float(len(analysis.tokens)) for analysis in analyses])
        mean_time = mean([analysis.processing_time for analysis in analyses])

        scores: dict[str, float] = {}
        for analysis in analyses:
            token_ratio = mean_tokens / len(analysis.tokens) if analysis.tokens else 1.0
            time_ratio = (
                mean_time / analysis.processing_time if analysis.processing_time > 0 else 1.0
            )
            consistency = _consistency(analysis.model_name, differences, len(analyses))
            scores[analysis.model_name] = (
                analysis.knowledge_coverage.score * 40
                + token_ratio * 20
                + time_ratio * 10
                + consistency * 30
            )

        best_model = ""
        best_score = float("-inf")
        for name, score in scores.items():
            if score > best_score:
                best_model, best_score = name, score

        best = next(analysis for analysis in analyses if analysis.model_name == best_model)
        reason = f"Highest overall score ({best_score:.1f})"
        if best.knowledge_coverage.level == "expert":
            reason += ", expert knowledge coverage"
        if len(best.tokens) < mean_tokens:
            reason += ", better compression"

        return ModelRecommendation(best_model=best_model, reason=reason, scores=scores)

    def supported_models(self) -> list[ModelProfile]:
        return list(SUPPORTED_MODELS)

    async def dispose(self) -> None:
        pending = [task for task in self._engines.values() if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._engines.clear()

    async def _create_engine(self, model_name: str) -> DecisionCaptureEngine:
        logger.info(f"[ModelCrossValidator] Initializing model: {model_name}")
        engine = self._engine_factory(model_name)
        await engine.initialize()
        return engine

    async def _analyze_model(
        self, text: str, engine: DecisionCaptureEngine
    ) -> SingleModelAnalysis | None:
        try:
            with Timer() as timer:
                capture = await engine.capture_decisions(text)
                coverage = self.density_calculator.calculate_knowledge_coverage(
                    text, capture.token_decisions, engine.vocab_size
                )
        except Exception as exc:
            logger.warning(f"[ModelCrossValidator] Analysis failed for {engine.model_name}: {exc}")
            return None

        return SingleModelAnalysis(
            model_name=engine.model_name,
            model_type=model_type_for(engine.model_name),
            tokens=capture.token_decisions,
            embeddings=[],
            knowledge_coverage=coverage,
            processing_time=timer.elapsed_ms,
            vocab_size=engine.vocab_size,
        )


def _coverage_index(
    length: int, tokens: list[TokenDecisionMetadata]
) -> list[AlignedToken | None]:
    """Map each character index to the first token whose range contains it."""
    covering: list[AlignedToken | None] = [None] * length
    for index, token in enumerate(tokens):
        start = max(0, token.byte_range.start)
        end = min(length, token.byte_range.end)
        for position in range(start, end):
            if covering[position] is None:
                covering[position] = AlignedToken(
                    token_index=index, token=token.token, token_id=token.token_id
                )
    return covering


def _difference_type(tokens: list[TokenDecisionMetadata]) -> DifferenceType:
    if any(t.decision_type == "fallback" or is_fallback_token(t.token) for t in tokens):
        return "unknown_handling"

    lengths = [len(strip_markers(t.token)) for t in tokens]
    longest, shortest = max(lengths), min(lengths)
    if longest > shortest * 1.5 and longest > 2:
        return "merge_difference"
    return "split_difference"


def _significance(unique_count: int, total_models: int) -> Significance:
    ratio = unique_count / total_models
    if ratio > 0.7:
        return "high"
    if ratio > 0.4:
        return "medium"
    return "low"


def _consistency(model_name: str, differences: list[ModelDifference], total_models: int) -> float:
    participated = 0
    consistent = 0
    for difference in differences:
        own = difference.models.get(model_name)
        if own is None:
            continue
        participated += 1
        votes = Counter("".join(tokens) for tokens in difference.models.values())
        if votes["".join(own)] > total_models / 2:
            consistent += 1
    return consistent / participated if participated else 1.0
