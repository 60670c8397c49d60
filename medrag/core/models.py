from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .config import RunOptions
from .parsing import clamp_unit


class Phase(str, Enum):
    INTAKE = "intake"
    FUSED_SEARCH = "fused_search"
    LITERATURE = "literature"
    SYNTHESIS = "synthesis"
    AGGREGATE = "aggregate"


# -------------------------------------------------------------------------
# Clinical entities (output of the extractor)
# -------------------------------------------------------------------------
class Gender(str, Enum):
    MALE = "M"
    FEMALE = "F"
    UNKNOWN = "unknown"


class Severity(str, Enum):
    MILD = "mild"
    MODERATE = "moderate"
    SEVERE = "severe"


class PatientInfo(BaseModel):
    age: Optional[int] = Field(None, ge=0, le=130)
    gender: Gender = Gender.UNKNOWN


class MedicalCondition(BaseModel):
    name: str
    mesh: Optional[str] = None
    confidence: float = 0.0

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp(cls, v):
        return clamp_unit(v)


class MedicalSymptom(BaseModel):
    name: str
    severity: Optional[Severity] = None


class ClinicalEntities(BaseModel):
    """Structured view of a transcript, as produced by an EntityExtractor."""
    patient_info: PatientInfo = Field(default_factory=PatientInfo)
    conditions: List[MedicalCondition] = Field(default_factory=list)
    symptoms: List[MedicalSymptom] = Field(default_factory=list)
    severity: Severity = Severity.MODERATE
    search_query: str = ""
    confidence: float = 0.0
    specialty_hint: Optional[str] = None

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp(cls, v):
        return clamp_unit(v)

    @property
    def symptom_names(self) -> List[str]:
        return [s.name for s in self.symptoms if s.name]

    @property
    def condition_names(self) -> List[str]:
        return [c.name for c in self.conditions if c.name]

    @property
    def mesh_terms(self) -> List[str]:
        return [c.mesh for c in self.conditions if c.mesh]


class SearchQueries(BaseModel):
    model_config = ConfigDict(frozen=True)

    embedding_text: str = ""
    keyword_query: str = ""


# -------------------------------------------------------------------------
# Search hits and fusion
# -------------------------------------------------------------------------
class HitKind(str, Enum):
    SIMILARITY = "similarity"
    KEYWORD = "keyword"


class SearchHit(BaseModel):
    """
    One scored hit from either search service.

    `label` is the entity name used as the dedup key. `score` is source-native:
    similarity scores follow the cosine + 1.0 convention, keyword scores are raw
    relevance scores; the two are not on the same scale.
    """
    model_config = ConfigDict(frozen=True)

    kind: HitKind
    label: str = ""
    score: float
    raw: Dict[str, Any] = Field(default_factory=dict)


class FusedResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    label: str
    score: float
    kind: HitKind
    similarity_percent: Optional[float] = None
    raw: Dict[str, Any] = Field(default_factory=dict)


class FusedSearchResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    results: List[FusedResult] = Field(default_factory=list)
    total_found: int = 0
    similarity_results: int = 0
    keyword_results: int = 0
    search_time_ms: int = 0
    confidence_score: float = 0.0


# -------------------------------------------------------------------------
# Literature
# -------------------------------------------------------------------------
class LiteratureSource(str, Enum):
    PUBMED = "pubmed"
    MEDRXIV = "medrxiv"
    BIORXIV = "biorxiv"


class Reference(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    doi: Optional[str] = None
    title: str
    authors: Tuple[str, ...] = ()
    journal: str = ""
    year: Optional[int] = None
    abstract: str = ""
    relevance_score: float = Field(ge=0.0, le=1.0)
    source: LiteratureSource
    url: str = ""
    open_access: bool = False
    citation_count: Optional[int] = None


class LiteratureSearchResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    references: List[Reference] = Field(default_factory=list)
    total_found: int = 0
    search_terms: List[str] = Field(default_factory=list)
    sources_searched: List[str] = Field(default_factory=list)
    search_time_ms: int = 0


# -------------------------------------------------------------------------
# Synthesis
# -------------------------------------------------------------------------
class EvidenceLevel(str, Enum):
    HIGH = "high"
    MODERATE = "moderate"
    LOW = "low"


class PatientSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    demographics: str = ""
    presentation: str = ""
    severity_assessment: str = ""


class PrimaryDiagnosis(BaseModel):
    model_config = ConfigDict(frozen=True)

    condition: str = ""
    confidence: float = Field(0.0, ge=0.0, le=1.0)
    reasoning: str = ""
    evidence_sources: Tuple[str, ...] = ()


class DifferentialDiagnosis(BaseModel):
    model_config = ConfigDict(frozen=True)

    condition: str = ""
    probability: float = Field(0.0, ge=0.0, le=1.0)
    reasoning: str = ""
    distinguishing_features: str = ""


class EvidenceAnalysis(BaseModel):
    model_config = ConfigDict(frozen=True)

    similarity_confidence: float = Field(0.0, ge=0.0, le=1.0)
    literature_support: float = Field(0.0, ge=0.0, le=1.0)
    source_concordance: float = Field(0.0, ge=0.0, le=1.0)
    overall_confidence: float = Field(0.0, ge=0.0, le=1.0)


class Recommendations(BaseModel):
    model_config = ConfigDict(frozen=True)

    immediate: Tuple[str, ...] = ()
    diagnostic_workup: Tuple[str, ...] = ()
    monitoring: Tuple[str, ...] = ()
    red_flags: Tuple[str, ...] = ()


class Citation(BaseModel):
    model_config = ConfigDict(frozen=True)

    reference: Reference
    relevance: str = ""
    evidence_level: EvidenceLevel = EvidenceLevel.MODERATE


class SynthesisMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    sources_consulted: int = 0
    synthesis_time_ms: int = 0
    data_completeness: float = Field(0.0, ge=0.0, le=1.0)
    extraction_confidence: float = Field(0.0, ge=0.0, le=1.0)


class SynthesisResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    patient_summary: PatientSummary = Field(default_factory=PatientSummary)
    primary_diagnosis: PrimaryDiagnosis
    differentials: Tuple[DifferentialDiagnosis, ...] = ()
    evidence_analysis: EvidenceAnalysis
    recommendations: Recommendations = Field(default_factory=Recommendations)
    citations: Tuple[Citation, ...] = ()
    metadata: SynthesisMetadata = Field(default_factory=SynthesisMetadata)


# -------------------------------------------------------------------------
# Pipeline state and result
# -------------------------------------------------------------------------
class EvidenceGrade(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class PipelineResult(BaseModel):
    """What run_pipeline hands back to the surrounding application."""
    model_config = ConfigDict(frozen=True)

    entities: ClinicalEntities
    search_queries: SearchQueries
    clinical_reasoning: str
    fused_results: List[FusedResult] = Field(default_factory=list)
    fused_search: FusedSearchResponse = Field(default_factory=FusedSearchResponse)
    references: List[Reference] = Field(default_factory=list)
    sources_searched: List[str] = Field(default_factory=list)
    synthesis: Optional[SynthesisResult] = None

    confidence_score: float = Field(0.0, ge=0.0, le=1.0)
    evidence_level: EvidenceGrade = EvidenceGrade.LOW
    data_completeness: float = Field(0.0, ge=0.0, le=1.0)
    sources_consulted: int = 0
    processing_time_ms: int = 0

    low_confidence: bool = False
    notes: List[str] = Field(default_factory=list)
    phase_log: List[Dict[str, Any]] = Field(default_factory=list)


class PipelineState(BaseModel):
    """The 'Source of Truth' passing between phases."""
    transcript: str = ""
    accumulated_symptoms: List[str] = Field(default_factory=list)
    options: RunOptions

    entities: Optional[ClinicalEntities] = None
    queries: SearchQueries = Field(default_factory=SearchQueries)
    fused_search: FusedSearchResponse = Field(default_factory=FusedSearchResponse)
    literature: LiteratureSearchResult = Field(default_factory=LiteratureSearchResult)
    synthesis: Optional[SynthesisResult] = None

    clinical_reasoning: str = ""
    confidence_score: float = 0.0
    evidence_level: EvidenceGrade = EvidenceGrade.LOW
    data_completeness: float = 0.0
    sources_consulted: int = 0
    low_confidence: bool = False

    notes: List[str] = Field(default_factory=list)
    execution_log: List[Dict[str, Any]] = Field(default_factory=list)

    def to_result(self, processing_time_ms: int) -> PipelineResult:
        return PipelineResult(
            entities=self.entities or ClinicalEntities(),
            search_queries=self.queries,
            clinical_reasoning=self.clinical_reasoning,
            fused_results=list(self.fused_search.results),
            fused_search=self.fused_search,
            references=list(self.literature.references),
            sources_searched=list(self.literature.sources_searched),
            synthesis=self.synthesis,
            confidence_score=self.confidence_score,
            evidence_level=self.evidence_level,
            data_completeness=self.data_completeness,
            sources_consulted=self.sources_consulted,
            processing_time_ms=processing_time_ms,
            low_confidence=self.low_confidence,
            notes=list(self.notes),
            phase_log=[dict(entry) for entry in self.execution_log],
        )
