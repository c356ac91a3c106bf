from fastapi.testclient import TestClient

from analysis_middleware.config import MiddlewareConfig
from analysis_middleware.middleware import AnalysisMiddleware
from conftest import COARSE_MODEL, FINE_MODEL, MISSING_MODEL, load_test_tokenizer


def _client(monkeypatch, middleware: AnalysisMiddleware) -> TestClient:
    # Import after environment setup so the default app uses the hashing embedder.
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    from analysis_middleware.api.main import create_app

    return TestClient(create_app(middleware))


def test_api_health_models_analysis_and_compare(monkeypatch, middleware) -> None:
    with _client(monkeypatch, middleware) as client:
        health_resp = client.get("/health")
        assert health_resp.status_code == 200
        assert health_resp.json() == {
            "status": "ok",
            "primary_model": FINE_MODEL,
            "embedder": "HashingEmbedder",
        }

        models_resp = client.get("/analysis/models")
        assert models_resp.status_code == 200
        assert models_resp.json()["primary_model"] == FINE_MODEL
        assert len(models_resp.json()["items"]) == 7

        analysis_resp = client.post(
            "/analysis",
            json={
                "text": "hello world",
                "embed_query": True,
                "retrieved_chunks": [
                    {
                        "chunk_id": "doc-1",
                        "content": "hello there",
                        "tokens": [{"token": "hello", "token_id": 5, "position": 0}],
                        "overall_similarity": 0.7,
                    }
                ],
            },
        )
        assert analysis_resp.status_code == 200
        payload = analysis_resp.json()
        assert payload["trace_id"]
        assert [t["token"] for t in payload["token_decisions"]] == ["hello", "world"]
        assert payload["retrieval_path"]["query_id"] == payload["trace_id"]
        assert payload["stats"]["total_tokens"] == 2

        quick_resp = client.post("/analysis/quick", json={"text": "tokenizers"})
        assert quick_resp.status_code == 200
        assert len(quick_resp.json()["density_result"]["token_densities"]) == 3

        compare_resp = client.post(
            "/analysis/compare",
            json={"text": "tokenizers are fun", "model_names": [FINE_MODEL, COARSE_MODEL]},
        )
        assert compare_resp.status_code == 200
        assert len(compare_resp.json()["differences"]) == 1


def test_api_rejects_invalid_comparisons(monkeypatch, middleware) -> None:
    with _client(monkeypatch, middleware) as client:
        too_few = client.post(
            "/analysis/compare", json={"text": "hello", "model_names": [FINE_MODEL]}
        )
        assert too_few.status_code == 422

        all_failed = client.post(
            "/analysis/compare",
            json={"text": "hello", "model_names": [MISSING_MODEL, "test/also-missing"]},
        )
        assert all_failed.status_code == 422


def test_api_reports_unavailable_tokenizer(monkeypatch) -> None:
    middleware = AnalysisMiddleware(
        MiddlewareConfig(primary_model=MISSING_MODEL), tokenizer_loader=load_test_tokenizer
    )

    with _client(monkeypatch, middleware) as client:
        assert client.get("/health").json()["status"] == "degraded"

        resp = client.post("/analysis", json={"text": "hello"})
        assert resp.status_code == 503
        assert MISSING_MODEL in resp.json()["detail"]


def test_api_embeds_tokens_on_request(monkeypatch, middleware) -> None:
    with _client(monkeypatch, middleware) as client:
        resp = client.post(
            "/analysis", json={"text": "hello world", "embed_query": True, "embed_tokens": True}
        )

    assert resp.status_code == 200
    assert [m["token_id"] for m in resp.json()["embedding_mappings"]] == [5, 6]


def test_api_embed_query_without_embedder_warns(monkeypatch) -> None:
    middleware = AnalysisMiddleware(
        MiddlewareConfig(primary_model=FINE_MODEL), tokenizer_loader=load_test_tokenizer
    )

    with _client(monkeypatch, middleware) as client:
        resp = client.post("/analysis", json={"text": "hello", "embed_query": True})

    assert resp.status_code == 200
    assert "embedding" in {w["type"] for w in resp.json()["warnings"]}
