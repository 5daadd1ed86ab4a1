import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from datetime import timedelta

from conftest import FakeEmbed, FakeLLM, extraction_json
from innerself.services.entry_pipeline import (ANALYSIS_FAILED_MESSAGE, EMPTY_TEXT_MESSAGE, SAVE_FAILED_MESSAGE)
from innerself.utils.bedrock_llm import BedrockLLMError
from innerself.services.repositories import text_hash
from innerself.utils.document_store import (BELIEF_SYSTEM, EMBEDDINGS, EXTRACTED_ENTITIES, PEOPLE_MAP, PROCESSING_LOCKS,
                                            RAW_ENTRIES, DocumentConflictError, DocumentStoreError)
from innerself.utils.timestamp_utils import to_iso, utc_now

ENTRY = "Talked to dad about the move tonight. It got tense again and I felt like a kid."


def test_process_entry_persists_and_fans_out(make_pipeline, store):
    llm = FakeLLM([extraction_json()])
    result = make_pipeline(llm=llm).process_entry(ENTRY)

    assert result.success
    assert result.error is None
    assert not result.duplicate
    assert result.failed_steps == []
    assert {d.step for d in result.diagnostics} == {"context", "embedding", "people", "beliefs"}

    assert result.extraction.title == "Tense call with dad"
    assert result.extraction.ai_persona_used == "friend"
    assert store.get(EXTRACTED_ENTITIES, result.entry_id).document["entry_id"] == result.entry_id
    assert store.count(PEOPLE_MAP) == 1
    assert store.count(BELIEF_SYSTEM) == 1

    embedding = store.get(EMBEDDINGS, result.entry_id).document
    assert embedding["content_text"].startswith("Tense call with dad. ")
    assert embedding["metadata"]["people"] == ["Dad"]
    assert embedding["metadata"]["persona"] == "Son"

    raw = store.get(RAW_ENTRIES, result.entry_id).document
    assert raw["raw_text"] == ENTRY
    assert raw["source"] == "text"
    assert raw["input_metadata"]["entry_length_chars"] == len(ENTRY)
    assert raw["input_metadata"]["time_of_day"]


def test_identical_text_is_processed_once(make_pipeline, store):
    llm = FakeLLM([extraction_json(), extraction_json()])
    pipeline = make_pipeline(llm=llm)

    first = pipeline.process_entry(ENTRY)
    second = pipeline.process_entry(ENTRY)

    assert second.success
    assert second.duplicate
    assert second.entry_id == first.entry_id
    assert second.extraction == first.extraction
    assert len(llm.calls) == 1
    assert store.count(RAW_ENTRIES) == 1
    assert store.count(PEOPLE_MAP) == 1
    assert store.get(PEOPLE_MAP, pipeline.people.repository.person_id("Dad")).document["mention_count"] == 1


def test_short_input_takes_the_fast_path(make_pipeline, store):
    llm = FakeLLM()
    result = make_pipeline(llm=llm).process_entry("ok")

    assert result.success
    assert result.extraction.title == "ok"
    assert result.extraction.category == "reflection"
    assert llm.calls == []
    assert store.count(EXTRACTED_ENTITIES) == 1


def test_empty_text_is_rejected(make_pipeline, store):
    result = make_pipeline().process_entry("   ")
    assert not result.success
    assert result.error == EMPTY_TEXT_MESSAGE
    assert store.count(RAW_ENTRIES) == 0


def test_unknown_source_is_stored_as_text(make_pipeline, store):
    result = make_pipeline().process_entry("ok", source="fax")
    assert store.get(RAW_ENTRIES, result.entry_id).document["source"] == "text"


def test_voice_entry_keeps_audio_fields(make_pipeline, store):
    result = make_pipeline(llm=FakeLLM([extraction_json()])).process_entry(
        ENTRY, source="voice", audio_url="s3://bucket/clip.m4a", audio_duration_sec=42.5)
    raw = store.get(RAW_ENTRIES, result.entry_id).document
    assert raw["source"] == "voice"
    assert raw["audio_url"] == "s3://bucket/clip.m4a"
    assert raw["audio_duration_sec"] == 42.5


def test_embedding_failure_does_not_fail_the_entry(make_pipeline, store):
    result = make_pipeline(llm=FakeLLM([extraction_json()]), embed=FakeEmbed(fail=True)).process_entry(ENTRY)

    assert result.success
    assert "embedding" in result.failed_steps
    assert "people" not in result.failed_steps
    assert store.count(PEOPLE_MAP) == 1
    assert store.count(EMBEDDINGS) == 0


def test_extraction_failure_is_fatal_with_generic_message(make_pipeline, store):
    result = make_pipeline(llm=FakeLLM([BedrockLLMError("ThrottlingException: secret detail")])).process_entry(ENTRY)

    assert not result.success
    assert result.error == ANALYSIS_FAILED_MESSAGE
    assert "secret" not in result.error
    assert result.extraction is None
    assert store.count(RAW_ENTRIES) == 1
    assert store.count(EXTRACTED_ENTITIES) == 0


def test_extraction_timeout_is_fatal(make_pipeline, app_config):
    config = replace(app_config, pipeline=replace(app_config.pipeline, extraction_timeout=0.05))
    llm = FakeLLM([extraction_json()], delay=0.5)
    result = make_pipeline(llm=llm, config=config).process_entry(ENTRY)

    assert not result.success
    assert result.error == ANALYSIS_FAILED_MESSAGE


def test_resubmitting_unanalyzed_text_finishes_the_entry(make_pipeline, store):
    llm = FakeLLM([BedrockLLMError("down"), extraction_json()])
    pipeline = make_pipeline(llm=llm)

    failed = pipeline.process_entry(ENTRY)
    retried = pipeline.process_entry(ENTRY)

    assert not failed.success
    assert retried.success
    assert not retried.duplicate
    assert retried.entry_id == failed.entry_id
    assert store.count(RAW_ENTRIES) == 1
    assert store.count(EXTRACTED_ENTITIES) == 1


def test_reprocessing_replaces_the_analysis(make_pipeline, store):
    llm = FakeLLM([extraction_json(), extraction_json(title="Calmer call with dad")])
    pipeline = make_pipeline(llm=llm)

    first = pipeline.process_entry(ENTRY)
    created_at = store.get(RAW_ENTRIES, first.entry_id).document["created_at"]
    again = pipeline.process_entry(ENTRY + " Later we made up.", existing_entry_id=first.entry_id)

    assert again.success
    assert again.entry_id == first.entry_id
    assert store.count(RAW_ENTRIES) == 1
    assert store.count(EXTRACTED_ENTITIES) == 1
    assert store.count(EMBEDDINGS) == 1
    assert store.get(EXTRACTED_ENTITIES, first.entry_id).document["title"] == "Calmer call with dad"
    assert store.get(RAW_ENTRIES, first.entry_id).document["created_at"] == created_at


def test_recent_entries_are_sent_as_context(make_pipeline):
    llm = FakeLLM([extraction_json(), extraction_json(title="Gym")])
    pipeline = make_pipeline(llm=llm)

    pipeline.process_entry(ENTRY)
    pipeline.process_entry("Went to the gym and felt strong afterwards.")

    second_prompt = llm.calls[1]["messages"][0]["content"][0]["text"]
    assert "RECENT ENTRIES" in second_prompt
    assert "Tense call with dad" in second_prompt
    assert "RELATED PAST ENTRIES" in second_prompt


def test_context_failure_is_not_fatal(make_pipeline, monkeypatch):
    llm = FakeLLM([extraction_json()])
    pipeline = make_pipeline(llm=llm)

    def broken(count):
        raise DocumentStoreError("search unavailable")

    monkeypatch.setattr(pipeline.entities, "recent", broken)
    result = pipeline.process_entry(ENTRY)

    assert result.success
    assert result.failed_steps == ["context"]
    assert "RECENT ENTRIES" not in llm.calls[0]["messages"][0]["content"][0]["text"]


def test_raw_write_failure_is_fatal(make_pipeline, monkeypatch, store):
    llm = FakeLLM([extraction_json()])
    pipeline = make_pipeline(llm=llm)

    def broken(entry):
        raise DocumentStoreError("cluster red")

    monkeypatch.setattr(pipeline.raw_entries, "insert", broken)
    result = pipeline.process_entry(ENTRY)

    assert not result.success
    assert result.error == SAVE_FAILED_MESSAGE
    assert llm.calls == []


def test_entity_write_failure_is_fatal(make_pipeline, monkeypatch, store):
    pipeline = make_pipeline(llm=FakeLLM([extraction_json()]))

    def broken(entry_id, entity, created_at):
        raise DocumentStoreError("cluster red")

    monkeypatch.setattr(pipeline.entities, "insert", broken)
    result = pipeline.process_entry(ENTRY)

    assert not result.success
    assert result.error == SAVE_FAILED_MESSAGE
    assert store.count(PEOPLE_MAP) == 0


def test_concurrent_identical_submissions_share_one_run(make_pipeline, store):
    llm = FakeLLM([extraction_json(), extraction_json()], delay=0.3)
    pipeline = make_pipeline(llm=llm)

    with ThreadPoolExecutor(max_workers=2) as pool:
        results = list(pool.map(pipeline.process_entry, [ENTRY, ENTRY]))

    assert all(r.success for r in results)
    assert results[0].entry_id == results[1].entry_id
    assert sorted(r.duplicate for r in results) == [False, True]
    assert results[0].extraction == results[1].extraction
    assert len(llm.calls) == 1
    assert store.count(RAW_ENTRIES) == 1
    assert store.count(EXTRACTED_ENTITIES) == 1
    assert store.count(PROCESSING_LOCKS) == 0


def test_stale_processing_lock_is_taken_over(make_pipeline, store):
    store.create(PROCESSING_LOCKS, text_hash(ENTRY), {
        "id": text_hash(ENTRY),
        "owner": "crashed-run",
        "acquired_at": to_iso(utc_now() - timedelta(minutes=10)),
    })
    llm = FakeLLM([extraction_json()])
    result = make_pipeline(llm=llm).process_entry(ENTRY)

    assert result.success
    assert len(llm.calls) == 1
    assert store.get(PROCESSING_LOCKS, text_hash(ENTRY)) is None


def test_fresh_processing_lock_is_waited_for(make_pipeline, app_config, store):
    config = replace(app_config, pipeline=replace(app_config.pipeline, lock_stale_after=0.3))
    store.create(PROCESSING_LOCKS, text_hash(ENTRY), {
        "id": text_hash(ENTRY),
        "owner": "other-run",
        "acquired_at": to_iso(),
    })
    llm = FakeLLM([extraction_json()])

    started = time.monotonic()
    result = make_pipeline(llm=llm, config=config).process_entry(ENTRY)

    assert result.success
    assert time.monotonic() - started >= 0.2
    assert len(llm.calls) == 1


def test_lost_entity_insert_returns_the_saved_extraction(make_pipeline, monkeypatch, store):
    pipeline = make_pipeline(llm=FakeLLM([extraction_json()]))
    real_insert = pipeline.entities.insert

    def racing_insert(entry_id, entity, created_at):
        # Another run saves its analysis first
        real_insert(entry_id, replace(entity, title="Saved by the other run"), created_at)
        real_insert(entry_id, entity, created_at)

    monkeypatch.setattr(pipeline.entities, "insert", racing_insert)
    result = pipeline.process_entry(ENTRY)

    assert result.success
    assert result.duplicate
    assert result.error is None
    assert result.extraction.title == "Saved by the other run"
    assert store.count(EMBEDDINGS) == 0


def test_entity_conflict_without_saved_extraction_is_fatal(make_pipeline, monkeypatch):
    pipeline = make_pipeline(llm=FakeLLM([extraction_json()]))

    def conflicting(entry_id, entity, created_at):
        raise DocumentConflictError("already exists")

    monkeypatch.setattr(pipeline.entities, "insert", conflicting)
    result = pipeline.process_entry(ENTRY)

    assert not result.success
    assert result.error == SAVE_FAILED_MESSAGE


def test_deleted_entry_can_be_submitted_again(make_pipeline, store):
    llm = FakeLLM([extraction_json(), extraction_json()])
    pipeline = make_pipeline(llm=llm)

    first = pipeline.process_entry(ENTRY)
    assert pipeline.delete_entry(first.entry_id)
    second = pipeline.process_entry(ENTRY)

    assert second.success
    assert not second.duplicate
    assert second.entry_id != first.entry_id
    assert len(llm.calls) == 2
    assert store.get(RAW_ENTRIES, first.entry_id).document["deleted_at"]
    assert store.get(EMBEDDINGS, first.entry_id) is None
    assert store.get(EMBEDDINGS, second.entry_id) is not None


def test_delete_unknown_entry(make_pipeline):
    assert make_pipeline().delete_entry("no-such-entry") is False


def test_reprocessing_drops_the_old_embedding(make_pipeline, store):
    embed = FakeEmbed()
    pipeline = make_pipeline(llm=FakeLLM([extraction_json(), extraction_json()]), embed=embed)
    first = pipeline.process_entry(ENTRY)
    assert store.count(EMBEDDINGS) == 1

    embed.fail = True
    again = pipeline.process_entry(ENTRY, existing_entry_id=first.entry_id)

    assert again.success
    assert again.failed_steps == ["context", "embedding"]
    assert "embedding_cleanup" in {d.step for d in again.diagnostics if d.ok}
    assert store.count(EMBEDDINGS) == 0


def test_extraction_and_fan_out_use_separate_threads(make_pipeline):
    llm = FakeLLM([extraction_json()])
    embed = FakeEmbed()
    result = make_pipeline(llm=llm, embed=embed).process_entry(ENTRY)

    assert result.success
    assert llm.threads[0].startswith("innerself-extract")
    assert embed.document_threads[0].startswith("innerself-fanout")


def test_timed_out_extraction_does_not_block_the_next_entry(make_pipeline, app_config, store):
    config = replace(app_config, pipeline=replace(app_config.pipeline, extraction_timeout=0.2))

    def slow(call):
        time.sleep(1.0)
        return extraction_json()

    llm = FakeLLM([slow, extraction_json(title="Long walk after dinner")])
    pipeline = make_pipeline(llm=llm, config=config)

    timed_out = pipeline.process_entry(ENTRY)
    result = pipeline.process_entry("Went for a long walk after dinner and felt lighter.")

    assert not timed_out.success
    assert result.success
    assert result.failed_steps == []
    assert store.get(EMBEDDINGS, result.entry_id) is not None


def test_huge_model_scores_are_clamped(make_pipeline):
    result = make_pipeline(llm=FakeLLM([extraction_json(mood_score=10 ** 400)])).process_entry(ENTRY)

    assert result.success
    assert result.extraction.mood_score == 10
