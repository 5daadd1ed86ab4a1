from conftest import FakeEmbed, FakeLLM
from innerself.utils.config import load_config
from innerself.utils.health_check import get_health_status
from innerself.utils.memory_store import InMemoryDocumentStore


def test_defaults(monkeypatch):
    for name in ("PIPELINE_MIN_TEXT_LENGTH", "PIPELINE_MIN_EVENT_YEAR", "PIPELINE_LOCK_STALE_SECONDS", "OPENSEARCH_USE_SSL"):
        monkeypatch.delenv(name, raising=False)
    config = load_config()
    assert config.pipeline.min_text_length == 10
    assert config.pipeline.min_event_year == 1985
    assert config.pipeline.max_future_years == 1
    assert config.pipeline.lock_stale_after == 180
    assert config.opensearch.use_ssl is True


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("PIPELINE_MIN_EVENT_YEAR", "1950")
    monkeypatch.setenv("PIPELINE_EXTRACTION_TIMEOUT", "12.5")
    monkeypatch.setenv("OPENSEARCH_USE_SSL", "false")
    monkeypatch.setenv("STORE_BACKEND", "memory")
    config = load_config()
    assert config.pipeline.min_event_year == 1950
    assert config.pipeline.extraction_timeout == 12.5
    assert config.opensearch.use_ssl is False
    assert config.pipeline.store_backend == "memory"


def test_health_status_reports_each_component(app_config):
    status = get_health_status(app_config, llm=FakeLLM(), embed=FakeEmbed(fail=True), store=InMemoryDocumentStore())
    assert status["bedrock_llm"]["healthy"] is True
    assert status["bedrock_embed"]["healthy"] is False
    assert status["document_store"]["healthy"] is True
    assert status["document_store"]["service"] == "In-memory store"
