import pytest

from analysis_middleware.config import MiddlewareConfig
from analysis_middleware.embeddings.embedder import HashingEmbedder
from analysis_middleware.middleware import AnalysisMiddleware
from analysis_middleware.tokenizer.adapter import TokenizerAdapter
from analysis_middleware.tokenizer.wordpiece import WordPieceTokenizer

FINE_MODEL = "test/wordpiece-fine"
COARSE_MODEL = "test/wordpiece-coarse"
MISSING_MODEL = "test/does-not-exist"

_SHARED_TOKENS = [
    "hello", "world", "are", "fun", "the", "is", "a", "data", "machine", "learning",
    "model", "training", ",", ".", "!", "?",
]

VOCABULARIES = {
    FINE_MODEL: [*_SHARED_TOKENS, "token", "##izer", "##s"],
    COARSE_MODEL: [*_SHARED_TOKENS, "tokenizers", "token"],
}


def load_test_tokenizer(model_name: str) -> TokenizerAdapter:
    if model_name not in VOCABULARIES:
        raise OSError(f"{model_name} is not a known test model")
    return WordPieceTokenizer.from_tokens(VOCABULARIES[model_name])


@pytest.fixture
def tokenizer_loader():
    return load_test_tokenizer


@pytest.fixture
def middleware() -> AnalysisMiddleware:
    return AnalysisMiddleware(
        MiddlewareConfig(primary_model=FINE_MODEL),
        tokenizer_loader=load_test_tokenizer,
        embedder=HashingEmbedder(),
    )
