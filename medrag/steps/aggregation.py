"""
Phase 5: aggregation.

Turns the state left by the earlier phases into the scalar summary fields of
the result: confidence, evidence grade, data completeness, sources consulted
and the clinical reasoning text. This phase has no fallback; it only reads
values the earlier phases always leave in place.
"""

from typing import Optional, Sequence

from loguru import logger

from ..core.base import PipelineStep
from ..core.models import (
    ClinicalEntities,
    EvidenceGrade,
    FusedResult,
    FusedSearchResponse,
    Gender,
    Phase,
    PipelineState,
    Reference,
    SynthesisResult,
)
from .synthesis import describe_demographics

TOP_FUSED_IN_SUMMARY = 3


def aggregate_confidence(
    synthesis: Optional[SynthesisResult],
    entities: ClinicalEntities,
    fused: FusedSearchResponse,
    references: Sequence[Reference],
) -> float:
    if synthesis is not None:
        return synthesis.evidence_analysis.overall_confidence

    confidence = entities.confidence or 0.5
    if fused.confidence_score > 0.7:
        confidence += 0.15
    if len(references) >= 3:
        confidence += 0.10
    return min(confidence, 1.0)


def evidence_grade(confidence: float, references: Sequence[Reference], fused: FusedSearchResponse) -> EvidenceGrade:
    # similarity_results counts raw hits, including ones a keyword hit replaced during fusion
    if confidence > 0.8 and len(references) >= 3 and fused.similarity_results >= 1:
        return EvidenceGrade.HIGH
    if confidence > 0.6 and (len(references) >= 1 or len(fused.results) >= 2):
        return EvidenceGrade.MEDIUM
    return EvidenceGrade.LOW


def basic_completeness(entities: ClinicalEntities, fused: Sequence[FusedResult], references: Sequence[Reference]) -> float:
    completeness = 0.0
    if entities.symptoms:
        completeness += 0.3
    if entities.conditions:
        completeness += 0.2
    if fused:
        completeness += 0.3
    if references:
        completeness += 0.2
    return min(completeness, 1.0)


def templated_reasoning(entities: ClinicalEntities, fused: Sequence[FusedResult]) -> str:
    """Deterministic summary used when no synthesis is available. Never empty."""
    symptoms = ", ".join(entities.symptom_names) or "no specific symptoms reported"

    if fused:
        top = fused[:TOP_FUSED_IN_SUMMARY]
        labels = ", ".join(
            f"{r.label} ({r.similarity_percent:.1f}% similarity)" if r.similarity_percent is not None else r.label
            for r in top
        )
        return (
            f"Based on the reported symptoms ({symptoms}), the knowledge base suggests: {labels}. "
            f"Clinical correlation is required to confirm the diagnosis."
        )

    demographics = describe_demographics(entities) if (
        entities.patient_info.age or entities.patient_info.gender != Gender.UNKNOWN
    ) else "patient demographics not reported"
    return (
        f"Patient: {demographics}. Reported symptoms: {symptoms}. "
        f"Overall severity: {entities.severity.value}. "
        f"No matching conditions were found in the knowledge base; further clinical evaluation is recommended."
    )


class AggregationStep(PipelineStep):
    phase = Phase.AGGREGATE

    def execute(self, state: PipelineState) -> PipelineState:
        entities = state.entities or ClinicalEntities()
        fused = state.fused_search
        references = state.literature.references
        synthesis = state.synthesis

        state.confidence_score = aggregate_confidence(synthesis, entities, fused, references)
        state.evidence_level = evidence_grade(state.confidence_score, references, fused)
        state.sources_consulted = fused.total_found + len(references)

        if synthesis is not None:
            state.data_completeness = synthesis.metadata.data_completeness
        else:
            state.data_completeness = basic_completeness(entities, fused.results, references)

        reasoning = synthesis.primary_diagnosis.reasoning.strip() if synthesis is not None else ""
        state.clinical_reasoning = reasoning or templated_reasoning(entities, fused.results)

        logger.info(
            f"[{self.step_name}] confidence {state.confidence_score:.2f}, evidence {state.evidence_level.value}, "
            f"{state.sources_consulted} sources"
        )
        return state
