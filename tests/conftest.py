import json
from typing import Any, Dict, List, Optional

import pytest
import requests

from medrag.core.config import LLMSettings, PipelineConfig
from medrag.core.models import (
    ClinicalEntities,
    Gender,
    HitKind,
    LiteratureSource,
    MedicalCondition,
    MedicalSymptom,
    PatientInfo,
    Reference,
    SearchHit,
)


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeResponse:
    def __init__(self, json_data: Any = None, text: str = "", status_code: int = 200):
        self._json = json_data
        self.text = text if text else (json.dumps(json_data) if json_data is not None else "")
        self.status_code = status_code

    def json(self):
        if self._json is None:
            raise ValueError("no JSON body")
        return self._json

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"HTTP {self.status_code}")


class FakeSession:
    """Routes GET requests by URL substring to canned responses (or exceptions)."""

    def __init__(self, routes: Dict[str, Any]):
        self.routes = routes
        self.calls: List[Dict[str, Any]] = []

    def get(self, url, params=None, timeout=None):
        self.calls.append({"url": url, "params": dict(params or {}), "timeout": timeout})
        for needle, response in self.routes.items():
            if needle in url:
                if isinstance(response, Exception):
                    raise response
                return response
        return FakeResponse(status_code=404)


class FakeSearchClient:
    def __init__(self, hits: Optional[List[SearchHit]] = None, error: Optional[Exception] = None):
        self.hits = hits or []
        self.error = error
        self.calls = 0

    def search(self, entities, queries, max_results):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.hits)[:max_results]


class FakeExtractor:
    def __init__(self, entities: Optional[ClinicalEntities] = None, error: Optional[Exception] = None):
        self.entities = entities
        self.error = error
        self.calls = 0

    def extract(self, text):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.entities


class FakeUsage:
    def __init__(self, prompt_tokens=10, completion_tokens=5):
        self.prompt_tokens = prompt_tokens
        self.completion_tokens = completion_tokens
        self.total_tokens = prompt_tokens + completion_tokens


class FakeLLM:
    """Stands in for LLMService: same attributes, canned answers."""

    def __init__(self, reply: str = "", error: Optional[Exception] = None, has_credentials: bool = True):
        self.reply = reply
        self.error = error
        self.has_credentials = has_credentials
        self.observer = None
        self.prompts: List[str] = []
        self.token_usage = {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0}

    def call(self, prompt, model=None, temperature=None, max_tokens=None):
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        self.token_usage["total_tokens"] += 15
        return self.reply

    def embed(self, texts, model=None):
        return [[0.1, 0.2, 0.3] for _ in texts]


class FakeSource:
    def __init__(self, name: str, references: Optional[List[Reference]] = None, error: Optional[Exception] = None):
        self.name = name
        self.references = references or []
        self.error = error
        self.calls = 0

    def search(self, terms, options):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.references)


def make_reference(
    ref_id: str,
    title: str = "A study",
    year: Optional[int] = 2023,
    relevance: float = 0.8,
    source: LiteratureSource = LiteratureSource.PUBMED,
    abstract: str = "Abstract text.",
    citations: Optional[int] = None,
) -> Reference:
    return Reference(
        id=ref_id,
        title=title,
        year=year,
        relevance_score=relevance,
        source=source,
        abstract=abstract,
        journal="Journal",
        citation_count=citations,
    )


def similarity_hit(label: str, score: float) -> SearchHit:
    return SearchHit(kind=HitKind.SIMILARITY, label=label, score=score)


def keyword_hit(label: str, score: float) -> SearchHit:
    return SearchHit(kind=HitKind.KEYWORD, label=label, score=score)


@pytest.fixture
def heart_failure_entities() -> ClinicalEntities:
    return ClinicalEntities(
        patient_info=PatientInfo(age=72, gender=Gender.FEMALE),
        conditions=[
            MedicalCondition(name="Heart Failure", mesh="Heart Failure", confidence=0.9),
            MedicalCondition(name="Diabetes Mellitus", mesh="Diabetes Mellitus", confidence=0.8),
        ],
        symptoms=[
            MedicalSymptom(name="dyspnea on exertion"),
            MedicalSymptom(name="bilateral leg edema"),
        ],
        search_query="decompensated heart failure dyspnea edema",
        confidence=0.85,
    )


@pytest.fixture
def config() -> PipelineConfig:
    return PipelineConfig(name="test", run_id="test", debug=False, llm=LLMSettings(api_key="test-key"))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
