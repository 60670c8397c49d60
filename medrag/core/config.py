import os
from enum import Enum
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field


class SortBy(str, Enum):
    RELEVANCE = "relevance"
    DATE = "date"
    CITATIONS = "citations"


class ElasticsearchSettings(BaseModel):
    url: str = "http://localhost:9200"
    api_key: Optional[str] = None
    similarity_index: str = "medical-embeddings"
    keyword_index: str = "search-medical-2"
    request_timeout: float = 30.0
    top_k: int = Field(10, gt=0)
    min_similarity_score: float = 1.1
    min_keyword_score: float = 1.0


class LiteratureSettings(BaseModel):
    pubmed_base_url: str = "https://eutils.ncbi.nlm.nih.gov/entrez/eutils"
    medrxiv_base_url: str = "https://api.medrxiv.org/details"
    biorxiv_base_url: str = "https://api.biorxiv.org/details"
    pubmed_api_key: Optional[str] = None
    pubmed_tool: str = "medrag-evidence"
    pubmed_email: Optional[str] = None

    # NCBI allows 10 req/s with a key and 3 req/s without one.
    authenticated_delay: float = Field(0.1, ge=0.0)
    unauthenticated_delay: float = Field(0.334, ge=0.0)
    queue_maxsize: int = Field(1000, ge=0)

    cache_ttl: float = Field(24 * 60 * 60, gt=0)
    cache_maxsize: int = Field(1000, gt=0)
    cache_sweep_threshold: int = Field(100, ge=0)

    request_timeout: float = 15.0
    preprint_window_years: int = Field(2, ge=1)

    @property
    def request_delay(self) -> float:
        return self.authenticated_delay if self.pubmed_api_key else self.unauthenticated_delay


class LLMSettings(BaseModel):
    base_url: str = "http://localhost:11434/v1"
    api_key: Optional[str] = None
    model: str = "gemma3:12b"
    embedding_model: str = "nomic-embed-text"
    temperature: float = Field(0.2, ge=0.0)
    max_tokens: int = Field(2500, gt=0)
    extraction_temperature: float = Field(0.1, ge=0.0)
    extraction_max_tokens: int = Field(1000, gt=0)


class PipelineConfig(BaseModel):
    """
    Instance-level configuration for one MedicalEvidencePipeline.

    The toggles (literature, synthesis, max references, years back, MeSH usage)
    are the defaults for every run; PipelineOptions can override them per call.
    Assignments are validated, so a setter given a negative count raises.
    """
    model_config = ConfigDict(validate_assignment=True)

    name: str = "medrag"
    run_id: Optional[str] = None
    debug: bool = False

    include_recent_papers: bool = True
    enable_synthesis: bool = True
    max_references: int = Field(5, ge=0)
    years_back: int = Field(5, ge=0)
    use_mesh_terms: bool = True
    include_preprints: bool = True
    sort_by: SortBy = SortBy.RELEVANCE

    low_confidence_threshold: float = Field(0.5, ge=0.0, le=1.0)
    trust_strong_similarity: bool = False

    elasticsearch: ElasticsearchSettings = Field(default_factory=ElasticsearchSettings)
    literature: LiteratureSettings = Field(default_factory=LiteratureSettings)
    llm: LLMSettings = Field(default_factory=LLMSettings)

    @classmethod
    def from_env(cls, env_file: Optional[str] = None, **overrides: Any) -> "PipelineConfig":
        load_dotenv(env_file, override=False)

        es: Dict[str, Any] = {
            "url": os.getenv("ELASTICSEARCH_URL", "http://localhost:9200"),
            "api_key": os.getenv("ELASTICSEARCH_API_KEY", "").strip() or None,
        }
        literature: Dict[str, Any] = {
            "pubmed_api_key": os.getenv("PUBMED_API_KEY", "").strip() or None,
            "pubmed_tool": os.getenv("PUBMED_TOOL_NAME", "medrag-evidence").strip(),
            "pubmed_email": os.getenv("PUBMED_EMAIL", "").strip() or None,
        }
        llm: Dict[str, Any] = {
            "base_url": os.getenv("LLM_BASE_URL", "http://localhost:11434/v1"),
            "api_key": os.getenv("LLM_API_KEY", "").strip() or None,
        }
        if os.getenv("LLM_MODEL"):
            llm["model"] = os.environ["LLM_MODEL"]
        if os.getenv("LLM_EMBEDDING_MODEL"):
            llm["embedding_model"] = os.environ["LLM_EMBEDDING_MODEL"]

        data: Dict[str, Any] = {
            "debug": os.getenv("MEDRAG_DEBUG", "").strip().lower() in {"1", "true", "yes", "on"},
            "elasticsearch": es,
            "literature": literature,
            "llm": llm,
        }
        data.update(overrides)
        return cls.model_validate(data)


class RunOptions(BaseModel):
    """Fully resolved options for a single pipeline run."""
    model_config = ConfigDict(frozen=True)

    include_recent_papers: bool
    enable_synthesis: bool
    max_references: int
    years_back: int
    use_mesh_terms: bool
    include_preprints: bool
    sort_by: SortBy
    additional_context: Optional[str] = None


class PipelineOptions(BaseModel):
    """Per-call overrides. Unset fields fall back to the pipeline's PipelineConfig."""
    model_config = ConfigDict(extra="forbid")

    include_recent_papers: Optional[bool] = None
    enable_synthesis: Optional[bool] = None
    max_references: Optional[int] = Field(None, ge=0)
    years_back: Optional[int] = Field(None, ge=0)
    use_mesh_terms: Optional[bool] = None
    include_preprints: Optional[bool] = None
    sort_by: Optional[SortBy] = None
    additional_context: Optional[str] = None

    def resolve(self, config: PipelineConfig) -> RunOptions:
        merged = {
            "include_recent_papers": config.include_recent_papers,
            "enable_synthesis": config.enable_synthesis,
            "max_references": config.max_references,
            "years_back": config.years_back,
            "use_mesh_terms": config.use_mesh_terms,
            "include_preprints": config.include_preprints,
            "sort_by": config.sort_by,
        }
        merged.update(self.model_dump(exclude_none=True))
        return RunOptions(**merged)
