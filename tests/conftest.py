import json
import os
import threading
import time

os.environ.setdefault("STORE_BACKEND", "memory")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest

from innerself.services.entry_pipeline import build_pipeline
from innerself.utils.bedrock_embed import BedrockEmbedError
from innerself.utils.bedrock_llm import BedrockLLMError
from innerself.utils.config import load_config
from innerself.utils.memory_store import InMemoryDocumentStore

DIMENSION = 8


class FakeLLM:
    """Stands in for BedrockLLM; replays scripted responses in order.

    A response may be a string, an exception instance to raise, or a
    callable taking the call kwargs.
    """

    def __init__(self, responses=None, delay=0.0):
        self.responses = list(responses or [])
        self.delay = delay
        self.calls = []
        self.threads = []
        self._lock = threading.Lock()

    def generate_response(self, messages, system_prompt, max_tokens=None, temperature=None, stop_sequences=None):
        call = {"messages": messages, "system_prompt": system_prompt, "stop_sequences": stop_sequences}
        with self._lock:
            self.calls.append(call)
            self.threads.append(threading.current_thread().name)
            response = self.responses.pop(0) if self.responses else BedrockLLMError("no scripted response left")
        if self.delay:
            time.sleep(self.delay)
        if isinstance(response, Exception):
            raise response
        if callable(response):
            response = response(call)
        return response, None

    def health_check(self):
        return True


class FakeEmbed:
    """Deterministic letter-frequency vectors, so similar text lands close."""

    def __init__(self, fail=False):
        self.fail = fail
        self.dimension = DIMENSION
        self.calls = 0
        self.document_threads = []

    def _vector(self, text):
        self.calls += 1
        if self.fail:
            raise BedrockEmbedError("embedding service unavailable")
        if not text or not text.strip():
            raise BedrockEmbedError("Empty text")
        vector = [0.0] * DIMENSION
        for ch in text.lower():
            if ch.isalpha():
                vector[ord(ch) % DIMENSION] += 1.0
        return vector

    def embed_document(self, text):
        self.document_threads.append(threading.current_thread().name)
        return self._vector(text)

    def embed_query(self, text):
        return self._vector(text)

    def health_check(self):
        return not self.fail


def extraction_json(**overrides):
    payload = {
        "category": "emotion",
        "title": "Tense call with dad",
        "content": "Talked to dad about the move and it got tense.",
        "mood_score": 4,
        "surface_emotion": "frustrated",
        "deeper_emotion": "fear of disappointing him",
        "core_need": "recognition",
        "triggers": ["career questions"],
        "defense_mechanism": "intellectualizing",
        "self_talk_tone": "critical",
        "energy_level": 3,
        "cognitive_pattern": "should_statements",
        "beliefs_revealed": ["I have to prove myself to my father"],
        "avoidance_signal": None,
        "growth_edge": "Saying what I want without justifying it",
        "identity_persona": "Son",
        "body_signals": ["tight chest"],
        "is_task": False,
        "task_status": None,
        "task_due_date": None,
        "people_mentioned": [
            {"name": "Dad", "relationship": "father", "sentiment": "frustrated", "context": "argued about the move"}
        ],
        "ai_response": "That sounds heavy.",
        "ai_persona_selected": "friend",
        "follow_up_question": "What did you want him to hear?",
    }
    payload.update(overrides)
    return "\n" + json.dumps(payload) + "\n"


@pytest.fixture
def app_config(monkeypatch):
    monkeypatch.setenv("STORE_BACKEND", "memory")
    monkeypatch.setenv("PIPELINE_EXTRACTION_TIMEOUT", "5")
    return load_config()


@pytest.fixture
def store():
    return InMemoryDocumentStore()


@pytest.fixture
def make_pipeline(app_config, store):
    pipelines = []

    def _make(llm=None, embed=None, config=None):
        pipeline = build_pipeline(config or app_config, store=store, llm=llm or FakeLLM(), embed=embed or FakeEmbed())
        pipelines.append(pipeline)
        return pipeline

    yield _make

    for pipeline in pipelines:
        pipeline.close()
