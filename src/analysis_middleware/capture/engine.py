"""Decision capture: replays tokenization as a bytes -> fullwords waterfall."""

from __future__ import annotations

import asyncio
import math
import re
import time
from dataclasses import dataclass, replace

from loguru import logger

from analysis_middleware.config import DEFAULT_PRIMARY_MODEL, CaptureConfig
from analysis_middleware.errors import TokenizerLoadError
from analysis_middleware.obs.tracing import Timer
from analysis_middleware.tokenizer.adapter import (
    TokenizerAdapter,
    TokenizerLoader,
    load_huggingface_tokenizer,
)
from analysis_middleware.tokenizer.markers import (
    has_continuation_prefix,
    is_byte_escape,
    is_fallback_token,
    is_unknown_token,
    strip_markers,
)
from analysis_middleware.types import (
    ByteRange,
    CaptureResult,
    DecisionType,
    DiscardedAlternative,
    LogicWaterfallData,
    MergeOperation,
    MergeSide,
    PathLogic,
    SemanticEntropy,
    StabilityLevel,
    StabilityMetrics,
    StageLevel,
    TokenDecisionMetadata,
    WaterfallStage,
)

BYTE_ENTROPY = math.log2(256)
UNRANKED = 99999

_CJK = re.compile(r"[\u4e00-\u9fff]")
_LATIN = re.compile(r"[a-zA-Z]")
_DIGIT = re.compile(r"[0-9]")
_COMMON_LATIN = re.compile(r"[etaoinshrdlu]", flags=re.IGNORECASE)


@dataclass(slots=True)
class _EncodedText:
    ids: list[int]
    texts: list[str]
    offsets: list[tuple[int, int]] | None


class DecisionCaptureEngine:
    """Wraps one tokenizer and reconstructs the decisions behind its output.

    The real tokenizer is only asked for its final ids. Everything else
    (byte and character stages, merge operations, stability) is synthesized
    from those ids and the vocabulary, so the merge records approximate what
    a greedy subword merger would have done rather than replaying it.
    """

    def __init__(
        self,
        model_name: str = DEFAULT_PRIMARY_MODEL,
        *,
        tokenizer_loader: TokenizerLoader = load_huggingface_tokenizer,
        config: CaptureConfig | None = None,
    ) -> None:
        self.model_name = model_name
        self.config = config or CaptureConfig()
        self._loader = tokenizer_loader
        self._adapter: TokenizerAdapter | None = None
        self._vocab: dict[str, int] = {}
        self._id_to_token: dict[int, str] = {}
        self._unknown_tokens: frozenset[str] = frozenset()

    @property
    def initialized(self) -> bool:
        return self._adapter is not None

    @property
    def vocab_size(self) -> int:
        return len(self._vocab)

    async def initialize(self) -> None:
        """Load the tokenizer. Load failures propagate as `TokenizerLoadError`."""
        if self._adapter is not None:
            return

        logger.info(f"[DecisionCaptureEngine] Loading tokenizer: {self.model_name}")
        try:
            adapter = await asyncio.to_thread(self._loader, self.model_name)
        except Exception as exc:
            raise TokenizerLoadError(self.model_name, str(exc)) from exc

        self._vocab = self._extract_vocabulary(adapter)
        self._id_to_token = {token_id: token for token, token_id in self._vocab.items()}
        try:
            self._unknown_tokens = frozenset(adapter.unknown_tokens)
        except Exception as exc:
            logger.warning(f"[DecisionCaptureEngine] Unknown-token lookup failed: {exc}")
            self._unknown_tokens = frozenset()
        self._adapter = adapter
        logger.info(
            f"[DecisionCaptureEngine] {self.model_name} vocabulary size: {self.vocab_size}"
        )

    async def capture_decisions(self, text: str) -> CaptureResult:
        await self.initialize()

        with Timer() as total:
            stages = [self._capture_byte_stage(text), self._capture_character_stage(text)]
            encoded = await self._encode(text)
            subword_stage = self._reconstruct(text, encoded, "subwords", record_merges=True)
            fullword_stage = self._reconstruct(text, encoded, "fullwords", record_merges=False)
            stages.extend([subword_stage, fullword_stage])

            token_decisions = [
                replace(token, path_logic=replace(token.path_logic, selected_path_index=index))
                for index, token in enumerate(fullword_stage.tokens)
            ]
            stability_metrics = self._calculate_stability_metrics(
                subword_stage.merge_operations, token_decisions
            )

        final_count = len(fullword_stage.tokens)
        waterfall = LogicWaterfallData(
            input=text,
            stages=stages,
            total_time=total.elapsed_ms,
            final_token_count=final_count,
            compression_ratio=len(text) / final_count if final_count else 0.0,
        )
        return CaptureResult(
            waterfall=waterfall,
            token_decisions=token_decisions,
            stability_metrics=stability_metrics,
        )

    def _extract_vocabulary(self, adapter: TokenizerAdapter) -> dict[str, int]:
        try:
            vocab = adapter.vocabulary()
        except Exception as exc:
            logger.warning(
                f"[DecisionCaptureEngine] Vocabulary extraction failed for "
                f"{self.model_name}: {exc}"
            )
            return {}
        if not vocab:
            logger.warning(
                f"[DecisionCaptureEngine] No vocabulary exposed by {self.model_name}; "
                "confidence falls back to id heuristics"
            )
        return dict(vocab)

    async def _encode(self, text: str) -> _EncodedText:
        adapter = self._adapter
        assert adapter is not None

        ids = await asyncio.to_thread(adapter.encode, text)
        try:
            texts = await asyncio.to_thread(adapter.batch_decode, [[i] for i in ids])
            if len(texts) != len(ids):
                raise ValueError(f"decoded {len(texts)} tokens for {len(ids)} ids")
        except Exception as exc:
            logger.warning(f"[DecisionCaptureEngine] batch_decode failed: {exc}")
            texts = [self._id_to_token.get(i, f"[UNK:{i}]") for i in ids]

        offsets: list[tuple[int, int]] | None = None
        if self.config.prefer_offset_mapping:
            try:
                offsets = await asyncio.to_thread(adapter.offset_mapping, text)
            except Exception as exc:
                logger.debug(f"[DecisionCaptureEngine] offset_mapping unavailable: {exc}")
                offsets = None
            if offsets is not None and len(offsets) != len(ids):
                logger.debug("[DecisionCaptureEngine] offset mapping length mismatch, ignoring")
                offsets = None

        return _EncodedText(ids=list(ids), texts=list(texts), offsets=offsets)

    def _capture_byte_stage(self, text: str) -> WaterfallStage:
        with Timer() as timer:
            data = text.encode("utf-8")
            tokens = [
                TokenDecisionMetadata(
                    token_id=value,
                    token=f"[0x{value:02x}]",
                    path_logic=PathLogic(depth=0, hit_count=1),
                    semantic_entropy=SemanticEntropy(
                        entropy_contribution=BYTE_ENTROPY,
                        entropy_ratio=1 / len(data),
                        frequency=1 / 256,
                        idf=math.log(256),
                    ),
                    byte_range=ByteRange(
                        start=offset,
                        end=offset + 1,
                        byte_length=1,
                        char_length=1,
                        original_text=chr(value),
                    ),
                    decision_type="direct",
                    confidence=1.0,
                )
                for offset, value in enumerate(data)
            ]
        return WaterfallStage(
            level="bytes",
            tokens=tokens,
            merge_operations=[],
            processing_time=timer.elapsed_ms,
            entropy=BYTE_ENTROPY * len(data),
        )

    def _capture_character_stage(self, text: str) -> WaterfallStage:
        idf = math.log(self.vocab_size or self.config.default_vocab_size)
        with Timer() as timer:
            tokens = [
                TokenDecisionMetadata(
                    token_id=ord(char),
                    token=char,
                    path_logic=PathLogic(depth=1, hit_count=1),
                    semantic_entropy=SemanticEntropy(
                        entropy_contribution=_char_entropy(char),
                        entropy_ratio=1 / len(text),
                        frequency=_char_frequency(char),
                        idf=idf,
                    ),
                    byte_range=ByteRange(
                        start=offset,
                        end=offset + 1,
                        byte_length=len(char.encode("utf-8")),
                        char_length=1,
                        original_text=char,
                    ),
                    decision_type="split",
                    confidence=0.9,
                )
                for offset, char in enumerate(text)
            ]
        return WaterfallStage(
            level="characters",
            tokens=tokens,
            merge_operations=[],
            processing_time=timer.elapsed_ms,
            entropy=sum(t.semantic_entropy.entropy_contribution for t in tokens),
        )

    def _reconstruct(
        self,
        text: str,
        encoded: _EncodedText,
        level: StageLevel,
        *,
        record_merges: bool,
    ) -> WaterfallStage:
        """Map decoded tokens back onto the source text.

        With an offset mapping the spans are exact. Without one, each cleaned
        token is searched forward from the last consumed offset; a token that
        cannot be found is pinned to the running offset.
        """

        tokens: list[TokenDecisionMetadata] = []
        operations: list[MergeOperation] = []
        char_offset = 0

        with Timer() as timer:
            for i, token_id in enumerate(encoded.ids):
                token_text = encoded.texts[i] or f"[TOKEN:{token_id}]"
                clean = strip_markers(token_text, self.config.continuation_prefixes)

                if encoded.offsets is not None:
                    start, end = encoded.offsets[i]
                    original = text[start:end]
                else:
                    position = text.find(clean, char_offset)
                    start = position if position >= 0 else char_offset
                    end = start + len(clean)
                    original = clean

                if record_merges and i > 0 and len(token_text) > 1:
                    previous_id = encoded.ids[i - 1]
                    previous_text = encoded.texts[i - 1] or f"[TOKEN:{previous_id}]"
                    operations.append(
                        MergeOperation(
                            step=len(operations),
                            left=MergeSide(
                                token=previous_text,
                                token_id=previous_id,
                                rank=_token_rank(previous_id),
                            ),
                            right=MergeSide(
                                token=token_text[0], token_id=ord(token_text[0]), rank=UNRANKED
                            ),
                            merged=MergeSide(
                                token=token_text, token_id=token_id, rank=_token_rank(token_id)
                            ),
                            discarded_alternatives=_alternative_merges(previous_text, token_text),
                            timestamp=time.time(),
                        )
                    )

                tokens.append(
                    TokenDecisionMetadata(
                        token_id=token_id,
                        token=token_text,
                        path_logic=PathLogic(
                            depth=len(token_text),
                            hit_count=1 if token_text in self._vocab else 0,
                        ),
                        semantic_entropy=self._token_entropy(token_id),
                        byte_range=ByteRange(
                            start=start,
                            end=end,
                            byte_length=len(original.encode("utf-8")),
                            char_length=len(original),
                            original_text=original,
                        ),
                        decision_type=self._decision_type(token_text),
                        confidence=self._confidence(token_id, token_text),
                    )
                )
                char_offset = end

        return WaterfallStage(
            level=level,
            tokens=tokens,
            merge_operations=operations,
            processing_time=timer.elapsed_ms,
            entropy=sum(t.semantic_entropy.entropy_contribution for t in tokens),
        )

    def _token_entropy(self, token_id: int) -> SemanticEntropy:
        rank = _token_rank(token_id)
        frequency = 1 / (rank + 1)
        vocab_size = self.vocab_size or self.config.default_vocab_size
        return SemanticEntropy(
            entropy_contribution=-math.log2(frequency + 0.0001),
            entropy_ratio=1 / (rank + 1),
            frequency=frequency,
            idf=math.log(vocab_size / (rank + 1)),
        )

    def _decision_type(self, token: str) -> DecisionType:
        if is_fallback_token(token, self._unknown_tokens):
            return "fallback"
        if has_continuation_prefix(token, self.config.continuation_prefixes):
            return "merge"
        if len(token) == 1:
            return "split"
        return "direct"

    def _confidence(self, token_id: int, token: str) -> float:
        if is_byte_escape(token) or is_unknown_token(token, self._unknown_tokens):
            return 0.3
        if token in self._vocab:
            return 0.95
        if token_id < 1000:
            return 0.9
        return 0.7

    @staticmethod
    def _calculate_stability_metrics(
        operations: list[MergeOperation], tokens: list[TokenDecisionMetadata]
    ) -> list[StabilityMetrics]:
        first_op_by_token: dict[int, MergeOperation] = {}
        for op in operations:
            first_op_by_token.setdefault(op.merged.token_id, op)

        metrics: list[StabilityMetrics] = []
        for token in tokens:
            op = first_op_by_token.get(token.token_id)
            if op is None:
                metrics.append(
                    StabilityMetrics(
                        coefficient=1.0,
                        top_score=1.0,
                        second_score=0.0,
                        score_delta=1.0,
                        level="stable",
                    )
                )
                continue

            top_score = 1 / (op.merged.rank + 1)
            second_score = (
                1 / (op.discarded_alternatives[0].rank + 1)
                if op.discarded_alternatives
                else 0.0
            )
            coefficient = 1 - (second_score / top_score) if second_score > 0 else 1.0
            coefficient = min(1.0, max(0.0, coefficient))
            metrics.append(
                StabilityMetrics(
                    coefficient=coefficient,
                    top_score=top_score,
                    second_score=second_score,
                    score_delta=top_score - second_score,
                    level=stability_level(coefficient),
                )
            )
        return metrics


def stability_level(coefficient: float) -> StabilityLevel:
    if coefficient >= 0.7:
        return "stable"
    if coefficient >= 0.5:
        return "moderate"
    if coefficient >= 0.3:
        return "unstable"
    return "critical"


def _token_rank(token_id: int) -> int:
    # Low ids are treated as the most frequent entries.
    return 0 if token_id < 100 else token_id


def _alternative_merges(previous: str, current: str) -> list[DiscardedAlternative]:
    if len(current) <= 2:
        return []
    return [
        DiscardedAlternative(
            left=previous,
            right=current[:-1],
            rank=UNRANKED,
            reason="Shorter merge available",
        )
    ]


def _char_entropy(char: str) -> float:
    if _CJK.match(char):
        return 13.0
    if _LATIN.match(char):
        return 4.7
    if _DIGIT.match(char):
        return 3.3
    return 6.0


def _char_frequency(char: str) -> float:
    if _COMMON_LATIN.match(char):
        return 0.08
    if _CJK.match(char):
        return 0.001
    return 0.02
