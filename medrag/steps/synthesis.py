"""
Phase 4: evidence synthesis.

The LLM receives the patient entities, the top fused search results and the
top literature references, and answers with a JSON object. That answer is
untrusted: parse_synthesis() extracts the first JSON object from the text and
validates it into a SynthesisPayload, clamping every confidence/probability to
[0, 1], or returns a ParseFailure. Model citations are matched back to real
references and never invented.

SynthesisEngine.synthesize() returns None whenever a result cannot be produced
(no credentials, transport error, unparsable answer); the pipeline then falls
back to a templated summary.
"""

import time
from typing import Annotated, Any, Dict, List, Optional, Sequence, Union

from loguru import logger
from pydantic import AliasChoices, BaseModel, BeforeValidator, ConfigDict, Field, ValidationError

from ..core.base import PipelineStep
from ..core.config import LLMSettings
from ..core.llm import LLMService
from ..core.models import (
    Citation,
    ClinicalEntities,
    DifferentialDiagnosis,
    EvidenceAnalysis,
    EvidenceLevel,
    FusedSearchResponse,
    Gender,
    PatientSummary,
    Phase,
    PipelineState,
    PrimaryDiagnosis,
    Recommendations,
    Reference,
    SynthesisMetadata,
    SynthesisResult,
)
from ..core.parsing import as_text, as_text_list, clamp_unit, extract_json_object
from ..core.prompts import PROMPT_TMPL_SYNTHESIS

PROMPT_MAX_RESULTS = 5
PROMPT_MAX_REFERENCES = 5
ABSTRACT_PREVIEW_CHARS = 150
TITLE_MATCH_CHARS = 30
FALLBACK_CITATIONS = 3


# -------------------------------------------------------------------------
# Parse boundary
# -------------------------------------------------------------------------
def _dict_or_empty(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _dicts_only(value: Any) -> List[Dict[str, Any]]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, dict)]


def _optional_year(value: Any) -> Optional[int]:
    try:
        return int(str(value).strip()[:4])
    except (TypeError, ValueError):
        return None


Unit = Annotated[float, BeforeValidator(clamp_unit)]
Text = Annotated[str, BeforeValidator(as_text)]
TextList = Annotated[List[str], BeforeValidator(as_text_list)]
Year = Annotated[Optional[int], BeforeValidator(_optional_year)]


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class PatientSummaryPayload(_Payload):
    demographics: Text = ""
    presentation: Text = ""
    severity_assessment: Text = ""


class PrimaryDiagnosisPayload(_Payload):
    condition: Text = ""
    confidence: Unit = 0.0
    reasoning: Text = ""
    evidence_sources: TextList = Field(default_factory=list)


class DifferentialPayload(_Payload):
    condition: Text = ""
    probability: Unit = 0.0
    reasoning: Text = ""
    distinguishing_features: Text = ""


class EvidenceAnalysisPayload(_Payload):
    similarity_confidence: Unit = Field(
        0.0, validation_alias=AliasChoices("similarity_confidence", "elasticsearch_confidence")
    )
    literature_support: Unit = 0.0
    source_concordance: Unit = 0.0
    overall_confidence: Unit = 0.0


class RecommendationsPayload(_Payload):
    immediate_actions: TextList = Field(default_factory=list)
    diagnostic_workup: TextList = Field(default_factory=list)
    monitoring_requirements: TextList = Field(default_factory=list)
    red_flags: TextList = Field(default_factory=list)


class CitationPayload(_Payload):
    title: Text = ""
    year: Year = None
    relevance_to_case: Text = ""
    evidence_level: Text = ""


class SynthesisPayload(_Payload):
    patient_summary: Annotated[PatientSummaryPayload, BeforeValidator(_dict_or_empty)] = Field(
        default_factory=PatientSummaryPayload
    )
    primary_diagnosis: PrimaryDiagnosisPayload
    differential_diagnoses: Annotated[List[DifferentialPayload], BeforeValidator(_dicts_only)] = Field(
        default_factory=list
    )
    evidence_analysis: Annotated[EvidenceAnalysisPayload, BeforeValidator(_dict_or_empty)] = Field(
        default_factory=EvidenceAnalysisPayload
    )
    clinical_recommendations: Annotated[RecommendationsPayload, BeforeValidator(_dict_or_empty)] = Field(
        default_factory=RecommendationsPayload
    )
    scientific_citations: Annotated[List[CitationPayload], BeforeValidator(_dicts_only)] = Field(
        default_factory=list
    )


class ParseFailure(BaseModel):
    model_config = ConfigDict(frozen=True)

    reason: str
    raw: str = ""


def parse_synthesis(text: Optional[str]) -> Union[SynthesisPayload, ParseFailure]:
    data = extract_json_object(text)
    if data is None:
        return ParseFailure(reason="no JSON object in response", raw=text or "")
    if not isinstance(data.get("primary_diagnosis"), dict):
        return ParseFailure(reason="missing primary_diagnosis", raw=text or "")
    try:
        return SynthesisPayload.model_validate(data)
    except ValidationError as e:
        return ParseFailure(reason=f"invalid payload: {e.error_count()} errors", raw=text or "")


# -------------------------------------------------------------------------
# Citations and completeness
# -------------------------------------------------------------------------
def _evidence_level(value: str) -> EvidenceLevel:
    try:
        return EvidenceLevel(value.strip().lower())
    except ValueError:
        return EvidenceLevel.MODERATE


def match_citations(cited: Sequence[CitationPayload], references: Sequence[Reference]) -> List[Citation]:
    """
    Resolve model citations to real references by title prefix or year.

    Unmatched citations are dropped and each reference is cited at most once.
    A title match among unused references wins over a year match.
    When nothing matches, the top references are attached with moderate level.
    """
    citations: List[Citation] = []
    used = set()

    for item in cited:
        prefix = item.title.lower()[:TITLE_MATCH_CHARS].strip()
        unused = [ref for ref in references if ref.id not in used]
        match = next((ref for ref in unused if prefix and prefix in ref.title.lower()), None)
        if match is None and item.year is not None:
            match = next((ref for ref in unused if ref.year == item.year), None)
        if match is None:
            continue
        used.add(match.id)
        citations.append(Citation(
            reference=match,
            relevance=item.relevance_to_case or "Relevant to the clinical case",
            evidence_level=_evidence_level(item.evidence_level),
        ))

    if not citations:
        citations = [
            Citation(
                reference=ref,
                relevance="Relevant reference selected automatically",
                evidence_level=EvidenceLevel.MODERATE,
            )
            for ref in references[:FALLBACK_CITATIONS]
        ]
    return citations


def calculate_data_completeness(
    entities: ClinicalEntities,
    fused: FusedSearchResponse,
    references: Sequence[Reference],
) -> float:
    completeness = 0.0

    # Patient data (0.3)
    if entities.patient_info.age:
        completeness += 0.1
    if entities.patient_info.gender != Gender.UNKNOWN:
        completeness += 0.1
    if entities.symptoms:
        completeness += 0.1

    # Knowledge base (0.35)
    if fused.similarity_results > 0:
        completeness += 0.15
    if fused.keyword_results > 0:
        completeness += 0.1
    if fused.confidence_score > 0.7:
        completeness += 0.1

    # Literature (0.35)
    if references:
        completeness += 0.2
    if len(references) >= 3:
        completeness += 0.1
    if any(ref.abstract for ref in references):
        completeness += 0.05

    return min(completeness, 1.0)


# -------------------------------------------------------------------------
# Engine
# -------------------------------------------------------------------------
def describe_demographics(entities: ClinicalEntities) -> str:
    gender = {
        Gender.MALE: "male",
        Gender.FEMALE: "female",
    }.get(entities.patient_info.gender, "gender not specified")
    age = f"{entities.patient_info.age} years" if entities.patient_info.age else "age not reported"
    return f"{gender}, {age}"


def build_synthesis_prompt(
    entities: ClinicalEntities,
    fused: FusedSearchResponse,
    references: Sequence[Reference],
    additional_context: Optional[str] = None,
) -> str:
    search_summary = "\n".join(
        f"{i}. {r.label} ({r.kind.value} search, score: {r.score:.2f})"
        for i, r in enumerate(fused.results[:PROMPT_MAX_RESULTS], 1)
    ) or "(none)"

    literature_summary = "\n".join(
        f"{i}. {ref.title} ({ref.journal}, {ref.year or 'n.d.'}) - {ref.abstract[:ABSTRACT_PREVIEW_CHARS]}..."
        for i, ref in enumerate(references[:PROMPT_MAX_REFERENCES], 1)
    ) or "(none)"

    context = f"\nADDITIONAL CONTEXT\n{additional_context}\n" if additional_context else ""

    return PROMPT_TMPL_SYNTHESIS.format(
        demographics=describe_demographics(entities),
        symptoms=", ".join(entities.symptom_names) or "none reported",
        conditions=", ".join(entities.condition_names) or "none suspected",
        severity=entities.severity.value,
        extraction_confidence=f"{entities.confidence * 100:.1f}%",
        total_found=fused.total_found,
        similarity_count=fused.similarity_results,
        keyword_count=fused.keyword_results,
        search_summary=search_summary,
        reference_count=len(references),
        literature_summary=literature_summary,
        additional_context=context,
    )


class SynthesisEngine:
    def __init__(self, llm: Optional[LLMService], settings: LLMSettings):
        self.llm = llm
        self.settings = settings

    def is_available(self) -> bool:
        return self.llm is not None and self.llm.has_credentials

    def synthesize(
        self,
        entities: ClinicalEntities,
        fused: FusedSearchResponse,
        references: Sequence[Reference],
        additional_context: Optional[str] = None,
    ) -> Optional[SynthesisResult]:
        if not self.is_available():
            logger.warning("[SynthesisEngine] no LLM credentials configured, skipping synthesis")
            return None

        start = time.time()
        prompt = build_synthesis_prompt(entities, fused, references, additional_context)
        try:
            raw = self.llm.call(prompt, temperature=self.settings.temperature, max_tokens=self.settings.max_tokens)
        except RuntimeError as e:
            logger.warning(f"[SynthesisEngine] LLM call failed: {e}")
            return None

        parsed = parse_synthesis(raw)
        if isinstance(parsed, ParseFailure):
            logger.warning(f"[SynthesisEngine] could not parse synthesis: {parsed.reason}")
            return None

        return SynthesisResult(
            patient_summary=PatientSummary(**parsed.patient_summary.model_dump()),
            primary_diagnosis=PrimaryDiagnosis(
                condition=parsed.primary_diagnosis.condition,
                confidence=parsed.primary_diagnosis.confidence,
                reasoning=parsed.primary_diagnosis.reasoning,
                evidence_sources=tuple(parsed.primary_diagnosis.evidence_sources),
            ),
            differentials=tuple(
                DifferentialDiagnosis(**dd.model_dump()) for dd in parsed.differential_diagnoses
            ),
            evidence_analysis=EvidenceAnalysis(**parsed.evidence_analysis.model_dump()),
            recommendations=Recommendations(
                immediate=tuple(parsed.clinical_recommendations.immediate_actions),
                diagnostic_workup=tuple(parsed.clinical_recommendations.diagnostic_workup),
                monitoring=tuple(parsed.clinical_recommendations.monitoring_requirements),
                red_flags=tuple(parsed.clinical_recommendations.red_flags),
            ),
            citations=tuple(match_citations(parsed.scientific_citations, references)),
            metadata=SynthesisMetadata(
                sources_consulted=fused.total_found + len(references),
                synthesis_time_ms=int((time.time() - start) * 1000),
                data_completeness=calculate_data_completeness(entities, fused, references),
                extraction_confidence=entities.confidence,
            ),
        )


class SynthesisStep(PipelineStep):
    phase = Phase.SYNTHESIS

    def should_run(self, state: PipelineState) -> bool:
        return state.options.enable_synthesis and self.services.synthesis is not None

    def skip(self, state: PipelineState) -> PipelineState:
        state.synthesis = None
        return state

    def execute(self, state: PipelineState) -> PipelineState:
        result = self.services.synthesis.synthesize(
            state.entities or ClinicalEntities(),
            state.fused_search,
            state.literature.references,
            state.options.additional_context,
        )
        if result is None:
            state.notes.append("synthesis unavailable; using templated summary")
        else:
            self.log_artifact("Primary Diagnosis", result.primary_diagnosis.model_dump())
        state.synthesis = result
        return state

    def fallback(self, state: PipelineState, error: Exception) -> PipelineState:
        state.synthesis = None
        state.notes.append("synthesis failed; using templated summary")
        return state
