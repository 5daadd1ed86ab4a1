import pytest

from conftest import FakeLLM, extraction_json
from innerself import mcp_interface


@pytest.fixture
def pipeline(make_pipeline, monkeypatch):
    pipeline = make_pipeline(llm=FakeLLM([extraction_json()]))
    monkeypatch.setattr(mcp_interface, "_pipeline", pipeline)
    return pipeline


def test_process_entry_tool_returns_plain_dict(pipeline):
    result = mcp_interface.process_entry("  Talked to dad about the move tonight and it got tense.  ")

    assert result["success"] is True
    assert result["entryId"]
    assert result["duplicate"] is False
    assert result["extraction"]["title"] == "Tense call with dad"
    assert result["extraction"]["people_mentioned"][0]["name"] == "Dad"
    assert all(d["ok"] for d in result["diagnostics"])


def test_process_entry_tool_rejects_empty_text(pipeline):
    result = mcp_interface.process_entry("")
    assert result["success"] is False
    assert result["extraction"] is None


def test_background_tool_reports_failure_as_boolean(make_pipeline, monkeypatch):
    # No scripted answer, so the model call fails
    monkeypatch.setattr(mcp_interface, "_pipeline", make_pipeline(llm=FakeLLM()))
    result = mcp_interface.process_background_features("entry-1", "Anything at all worth checking")
    assert result["success"] is False
    assert result["error"]


def test_get_pipeline_reuses_instance(pipeline):
    assert mcp_interface.get_pipeline() is pipeline


def test_health_tool_summarizes_components(monkeypatch):
    monkeypatch.setattr(mcp_interface, "get_health_status", lambda config: {
        "bedrock_llm": {"healthy": True},
        "document_store": {"healthy": False, "error": "red"},
    })
    result = mcp_interface.health()
    assert result["healthy"] is False
    assert result["components"]["document_store"]["error"] == "red"
