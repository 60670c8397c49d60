"""
Construction of the external collaborators a pipeline talks to.

Every pipeline instance gets its own PubMed request queue and literature
cache, so two pipelines never share mutable state and tests can swap any
collaborator for an in-process fake.
"""

from dataclasses import dataclass
from typing import Any, Optional

import requests
from elasticsearch import Elasticsearch
from loguru import logger

from ..steps.intake import EntityExtractor, LLMEntityExtractor
from ..steps.literature import BioRxivSource, LiteratureSearch, MedRxivSource, PubMedSource
from ..steps.search import KeywordSearchClient, SearchClient, SimilaritySearchClient
from ..steps.synthesis import SynthesisEngine
from .cache import ResultCache
from .config import PipelineConfig
from .llm import LLMService
from .logging import PipelineObserver
from .rate_limit import RateLimitedQueue


@dataclass
class PipelineServices:
    llm: Optional[LLMService] = None
    extractor: Optional[EntityExtractor] = None
    similarity: Optional[SearchClient] = None
    keyword: Optional[SearchClient] = None
    literature: Optional[LiteratureSearch] = None
    synthesis: Optional[SynthesisEngine] = None


def build_elasticsearch(config: PipelineConfig) -> Elasticsearch:
    settings = config.elasticsearch
    return Elasticsearch(
        hosts=[settings.url],
        api_key=settings.api_key,
        request_timeout=settings.request_timeout,
        max_retries=3,
        retry_on_timeout=True,
    )


def build_literature(config: PipelineConfig, session: Optional[requests.Session] = None) -> LiteratureSearch:
    settings = config.literature
    if not settings.pubmed_api_key:
        logger.warning("PUBMED_API_KEY not set: PubMed requests limited to 3 per second")

    queue = RateLimitedQueue("pubmed", min_delay=settings.request_delay, maxsize=settings.queue_maxsize)
    cache = ResultCache(
        "literature",
        ttl=settings.cache_ttl,
        maxsize=settings.cache_maxsize,
        sweep_threshold=settings.cache_sweep_threshold,
    )
    session = session or requests.Session()
    return LiteratureSearch(
        pubmed=PubMedSource(settings, queue, session=session),
        preprints=[MedRxivSource(settings, session=session), BioRxivSource(settings, session=session)],
        cache=cache,
    )


def build_services(
    config: PipelineConfig,
    observer: Optional[PipelineObserver] = None,
    es: Any = None,
    llm: Optional[LLMService] = None,
) -> PipelineServices:
    """Default collaborators for `config`: Elasticsearch, the LLM service and the literature sources."""
    llm = llm or LLMService(config.llm, observer=observer)
    es = es if es is not None else build_elasticsearch(config)

    return PipelineServices(
        llm=llm,
        extractor=LLMEntityExtractor(llm, config.llm),
        similarity=SimilaritySearchClient(es, config.elasticsearch, embed=llm.embed),
        keyword=KeywordSearchClient(es, config.elasticsearch),
        literature=build_literature(config),
        synthesis=SynthesisEngine(llm, config.llm),
    )
