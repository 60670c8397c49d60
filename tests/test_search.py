import pytest

from medrag.core.config import ElasticsearchSettings, PipelineOptions
from medrag.core.models import ClinicalEntities, HitKind, PipelineState, SearchQueries
from medrag.core.service_manager import PipelineServices
from medrag.steps.search import FusedSearchStep, KeywordSearchClient, SimilaritySearchClient, symptom_flags

from conftest import FakeSearchClient, keyword_hit, similarity_hit


class FakeElasticsearch:
    def __init__(self, hits=None, error=None):
        self.hits = hits or []
        self.error = error
        self.calls = []

    def search(self, index, query, size, min_score):
        self.calls.append({"index": index, "query": query, "size": size, "min_score": min_score})
        if self.error is not None:
            raise self.error
        return {"hits": {"hits": self.hits[:size]}}


def _state(config, entities, queries):
    return PipelineState(options=PipelineOptions().resolve(config), entities=entities, queries=queries)


def test_symptom_flags():
    flags = symptom_flags(["Dyspnea on exertion", "bilateral leg swelling", "headache", "Chest pain at rest"])
    assert flags == [
        {"term": {"symptoms.shortness_of_breath": True}},
        {"term": {"symptoms.peripheral_edema": True}},
        {"term": {"symptoms.chest_pain": True}},
    ]


def test_keyword_query_structure(heart_failure_entities):
    client = KeywordSearchClient(FakeElasticsearch(), ElasticsearchSettings())
    query = client.build_query(heart_failure_entities, "heart failure")

    should = query["bool"]["should"]
    assert query["bool"]["minimum_should_match"] == 1
    assert should[0] == {"match": {"disease": {"query": "heart failure", "boost": 3.0, "fuzziness": "AUTO"}}}
    assert should[1] == {"match": {"disease": {"query": "Heart Failure", "boost": 2.5}}}
    assert should[2] == {"match": {"disease": {"query": "Diabetes Mellitus", "boost": 2.5}}}
    assert should[3] == {"bool": {"must": [{"term": {"symptoms.shortness_of_breath": True}}], "boost": 2.0}}
    assert should[4]["multi_match"]["query"] == "dyspnea on exertion bilateral leg edema"


def test_keyword_search_skips_empty_query():
    es = FakeElasticsearch()
    client = KeywordSearchClient(es, ElasticsearchSettings())
    assert client.search(ClinicalEntities(), SearchQueries(), 10) == []
    assert es.calls == []


def test_keyword_search_maps_hits(heart_failure_entities):
    es = FakeElasticsearch(hits=[
        {"_score": 8.1, "_source": {"disease": "Heart Failure"}},
        {"_score": 3.0, "_source": {"Disease": "Diabetic Nephropathy"}},
        {"_source": {"disease": "No score"}},
    ])
    settings = ElasticsearchSettings()
    client = KeywordSearchClient(es, settings)

    hits = client.search(heart_failure_entities, SearchQueries(keyword_query="heart failure"), 5)

    assert [(h.label, h.score, h.kind) for h in hits] == [
        ("Heart Failure", 8.1, HitKind.KEYWORD),
        ("Diabetic Nephropathy", 3.0, HitKind.KEYWORD),
    ]
    assert es.calls[0]["index"] == settings.keyword_index
    assert es.calls[0]["size"] == 5
    assert es.calls[0]["min_score"] == settings.min_keyword_score


def test_similarity_search_embeds_and_scores(heart_failure_entities):
    es = FakeElasticsearch(hits=[{"_score": 1.42, "_source": {"disease": "Heart Failure"}}])
    embedded = []

    def embed(texts):
        embedded.extend(texts)
        return [[0.5, 0.25]]

    client = SimilaritySearchClient(es, ElasticsearchSettings(), embed)
    hits = client.search(heart_failure_entities, SearchQueries(embedding_text="72 year old"), 10)

    assert embedded == ["72 year old"]
    assert hits[0].kind == HitKind.SIMILARITY
    script = es.calls[0]["query"]["script_score"]["script"]
    assert script["params"]["query_vector"] == [0.5, 0.25]
    assert "cosineSimilarity" in script["source"]


def test_similarity_search_without_text_does_nothing():
    es = FakeElasticsearch()
    client = SimilaritySearchClient(es, ElasticsearchSettings(), lambda texts: [[1.0]])
    assert client.search(ClinicalEntities(), SearchQueries(), 10) == []
    assert es.calls == []


# -------------------------------------------------------------------------
# Step
# -------------------------------------------------------------------------
def test_step_fuses_both_branches(config, heart_failure_entities):
    services = PipelineServices(
        similarity=FakeSearchClient([similarity_hit("Heart Failure", 1.42)]),
        keyword=FakeSearchClient([keyword_hit("Heart Failure", 8.1), keyword_hit("Diabetic Nephropathy", 3.0)]),
    )
    state = FusedSearchStep(config, services).run(_state(config, heart_failure_entities, SearchQueries()))

    fused = state.fused_search
    assert [r.label for r in fused.results] == ["Heart Failure", "Diabetic Nephropathy"]
    assert fused.similarity_results == 1
    assert fused.keyword_results == 2
    assert fused.total_found == 2
    # 0.85 + 0.15 overlap; the strong similarity hit was replaced by the keyword hit
    assert fused.confidence_score == pytest.approx(1.0)


def test_failing_branch_is_isolated(config, heart_failure_entities):
    services = PipelineServices(
        similarity=FakeSearchClient([similarity_hit("Heart Failure", 1.42)]),
        keyword=FakeSearchClient(error=ConnectionError("es down")),
    )
    state = FusedSearchStep(config, services).run(_state(config, heart_failure_entities, SearchQueries()))

    assert [(r.label, r.kind) for r in state.fused_search.results] == [("Heart Failure", HitKind.SIMILARITY)]
    assert state.fused_search.keyword_results == 0
    assert "keyword search unavailable" in state.notes
    assert state.execution_log[-1]["status"] == "ok"


def test_results_truncated_to_top_k(heart_failure_entities, config):
    config.elasticsearch.top_k = 2
    services = PipelineServices(
        similarity=FakeSearchClient([similarity_hit("A", 1.2), similarity_hit("B", 1.1)]),
        keyword=FakeSearchClient([keyword_hit("C", 5.0), keyword_hit("D", 4.0)]),
    )
    step = FusedSearchStep(config, services)

    state = step.run(_state(config, heart_failure_entities, SearchQueries()))

    assert [r.label for r in state.fused_search.results] == ["C", "D"]
    assert state.fused_search.total_found == 4


def test_step_skipped_without_clients(config, heart_failure_entities):
    state = FusedSearchStep(config, PipelineServices()).run(_state(config, heart_failure_entities, SearchQueries()))
    assert state.fused_search.results == []
    assert state.execution_log[-1]["status"] == "skipped"
