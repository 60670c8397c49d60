"""
Phase 2: fused search over the medical knowledge base.

Two Elasticsearch indices are queried side by side:

- SimilaritySearchClient embeds the patient description and scores every
  document with cosineSimilarity + 1.0 against its 'embedding' vector.
- KeywordSearchClient builds a bool/should query from the extracted entities
  (disease name, conditions, structured symptom flags, free-text symptoms).

FusedSearchStep runs both concurrently. A failing branch is logged and
contributes no hits; it never cancels the other branch or aborts the phase.
"""

import concurrent.futures
import time
from typing import Any, Callable, Dict, List, Optional, Protocol

from loguru import logger

from ..core.base import PipelineStep
from ..core.config import ElasticsearchSettings
from ..core.models import (
    ClinicalEntities,
    FusedSearchResponse,
    HitKind,
    Phase,
    PipelineState,
    SearchHit,
    SearchQueries,
)
from .fusion import fuse, hybrid_confidence

# Substring of an extracted symptom -> boolean flag field in the keyword index.
SYMPTOM_FIELDS = {
    "shortness of breath": "symptoms.shortness_of_breath",
    "dyspnea": "symptoms.shortness_of_breath",
    "peripheral edema": "symptoms.peripheral_edema",
    "swelling": "symptoms.peripheral_edema",
    "chest pain": "symptoms.chest_pain",
    "fatigue": "symptoms.fatigue",
    "palpitations": "symptoms.palpitations",
}


class SearchClient(Protocol):
    def search(self, entities: ClinicalEntities, queries: SearchQueries, max_results: int) -> List[SearchHit]: ...


def _label_of(source: Dict[str, Any]) -> str:
    return source.get("disease") or source.get("Disease") or ""


def _to_hits(response: Any, kind: HitKind) -> List[SearchHit]:
    body = getattr(response, "body", response) or {}
    hits = (body.get("hits") or {}).get("hits") or []
    out = []
    for hit in hits:
        source = hit.get("_source") or {}
        score = hit.get("_score")
        if score is None:
            continue
        out.append(SearchHit(kind=kind, label=_label_of(source), score=float(score), raw=source))
    return out


class SimilaritySearchClient:
    def __init__(self, es: Any, settings: ElasticsearchSettings, embed: Callable[[List[str]], List[List[float]]]):
        self.es = es
        self.settings = settings
        self.embed = embed

    def build_query(self, vector: List[float]) -> Dict[str, Any]:
        return {
            "script_score": {
                "query": {"match_all": {}},
                "script": {
                    "source": "cosineSimilarity(params.query_vector, 'embedding') + 1.0",
                    "params": {"query_vector": vector},
                },
            }
        }

    def search(self, entities: ClinicalEntities, queries: SearchQueries, max_results: int) -> List[SearchHit]:
        if not queries.embedding_text:
            return []
        vectors = self.embed([queries.embedding_text])
        if not vectors or not vectors[0]:
            logger.warning("[SimilaritySearch] empty embedding, skipping")
            return []

        response = self.es.search(
            index=self.settings.similarity_index,
            query=self.build_query(vectors[0]),
            size=max_results,
            min_score=self.settings.min_similarity_score,
        )
        hits = _to_hits(response, HitKind.SIMILARITY)
        logger.debug(f"[SimilaritySearch] {len(hits)} hits from {self.settings.similarity_index}")
        return hits


class KeywordSearchClient:
    def __init__(self, es: Any, settings: ElasticsearchSettings):
        self.es = es
        self.settings = settings

    def build_query(self, entities: ClinicalEntities, keyword_query: str) -> Dict[str, Any]:
        should: List[Dict[str, Any]] = []

        if keyword_query:
            should.append({"match": {"disease": {"query": keyword_query, "boost": 3.0, "fuzziness": "AUTO"}}})

        for name in entities.condition_names:
            should.append({"match": {"disease": {"query": name, "boost": 2.5}}})

        flags = symptom_flags(entities.symptom_names)
        if flags:
            should.append({"bool": {"must": flags, "boost": 2.0}})

        joined = " ".join(entities.symptom_names)
        if joined:
            should.append({
                "multi_match": {
                    "query": joined,
                    "fields": ["symptoms.*", "description", "clinical_presentation"],
                    "boost": 1.5,
                }
            })

        return {"bool": {"should": should, "minimum_should_match": 1}}

    def search(self, entities: ClinicalEntities, queries: SearchQueries, max_results: int) -> List[SearchHit]:
        query = self.build_query(entities, queries.keyword_query)
        if not query["bool"]["should"]:
            return []

        response = self.es.search(
            index=self.settings.keyword_index,
            query=query,
            size=max_results,
            min_score=self.settings.min_keyword_score,
        )
        hits = _to_hits(response, HitKind.KEYWORD)
        logger.debug(f"[KeywordSearch] {len(hits)} hits from {self.settings.keyword_index}")
        return hits


def symptom_flags(symptom_names: List[str]) -> List[Dict[str, Any]]:
    """One `term` clause per symptom that maps onto a structured flag (first match wins)."""
    flags = []
    for name in symptom_names:
        lowered = name.lower()
        for needle, field in SYMPTOM_FIELDS.items():
            if needle in lowered:
                flags.append({"term": {field: True}})
                break
    return flags


class FusedSearchStep(PipelineStep):
    phase = Phase.FUSED_SEARCH

    def should_run(self, state: PipelineState) -> bool:
        return self.services.similarity is not None or self.services.keyword is not None

    def execute(self, state: PipelineState) -> PipelineState:
        start = time.time()
        entities = state.entities or ClinicalEntities()
        max_results = self.config.elasticsearch.top_k

        branches: Dict[HitKind, Optional[SearchClient]] = {
            HitKind.SIMILARITY: self.services.similarity,
            HitKind.KEYWORD: self.services.keyword,
        }
        hits: Dict[HitKind, List[SearchHit]] = {kind: [] for kind in branches}

        with concurrent.futures.ThreadPoolExecutor(max_workers=2) as executor:
            future_map = {
                executor.submit(client.search, entities, state.queries, max_results): kind
                for kind, client in branches.items()
                if client is not None
            }
            for future in concurrent.futures.as_completed(future_map):
                kind = future_map[future]
                try:
                    hits[kind] = future.result()
                except Exception as e:
                    logger.warning(f"[{self.step_name}] {kind.value} search failed: {e}")
                    state.notes.append(f"{kind.value} search unavailable")

        similarity_hits = hits[HitKind.SIMILARITY]
        keyword_hits = hits[HitKind.KEYWORD]
        merged = fuse(
            similarity_hits,
            keyword_hits,
            trust_strong_similarity=self.config.trust_strong_similarity,
        )
        results = merged[:max_results]

        state.fused_search = FusedSearchResponse(
            results=results,
            total_found=len(merged),
            similarity_results=len(similarity_hits),
            keyword_results=len(keyword_hits),
            search_time_ms=int((time.time() - start) * 1000),
            confidence_score=hybrid_confidence(results, similarity_hits, keyword_hits, entities.confidence),
        )

        logger.info(
            f"[{self.step_name}] {len(results)} fused results "
            f"({len(similarity_hits)} similarity + {len(keyword_hits)} keyword)"
        )
        self.log_artifact("Fused Results", [
            {"label": r.label, "kind": r.kind.value, "score": r.score, "similarity_percent": r.similarity_percent}
            for r in results
        ])
        return state

    def fallback(self, state: PipelineState, error: Exception) -> PipelineState:
        state.fused_search = FusedSearchResponse()
        state.notes.append("fused search unavailable")
        return state
