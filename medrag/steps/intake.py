"""
Phase 1: entity intake.

Turns the transcript into ClinicalEntities (unless the caller already supplied
them), merges the symptoms accumulated over the conversation, and derives the
three query strings used downstream (embedding text, keyword query,
literature query). Low extraction confidence is flagged on the result, never
fatal. When extraction is unavailable the phase falls back to symptom-only
entities built from the accumulated symptoms.
"""

from typing import Any, List, Optional, Protocol

from loguru import logger
from pydantic import ValidationError

from ..core.base import PipelineStep
from ..core.cache import ResultCache, make_key
from ..core.config import LLMSettings
from ..core.llm import LLMService
from ..core.models import (
    ClinicalEntities,
    Gender,
    MedicalCondition,
    MedicalSymptom,
    PatientInfo,
    Phase,
    PipelineState,
    SearchQueries,
    Severity,
)
from ..core.parsing import as_text, clamp_unit, extract_json_object
from ..core.prompts import PROMPT_TMPL_EXTRACTION


class EntityExtractor(Protocol):
    def extract(self, text: str) -> Optional[ClinicalEntities]: ...


class LLMEntityExtractor:
    """Prompts the LLM for the entity JSON; results are cached per transcript for one hour."""

    def __init__(self, llm: LLMService, settings: LLMSettings, cache: Optional[ResultCache] = None):
        self.llm = llm
        self.settings = settings
        self.cache: ResultCache[ClinicalEntities] = cache or ResultCache(
            "entity-extraction", ttl=60 * 60, maxsize=500, sweep_threshold=50
        )

    def extract(self, text: str) -> Optional[ClinicalEntities]:
        text = (text or "").strip()
        if not text:
            return None

        key = make_key(text)
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug("[LLMEntityExtractor] using cached extraction")
            return cached

        raw = self.llm.call(
            PROMPT_TMPL_EXTRACTION.format(transcript=text),
            temperature=self.settings.extraction_temperature,
            max_tokens=self.settings.extraction_max_tokens,
        )
        entities = parse_entities(raw)
        if entities is not None:
            self.cache.set(key, entities)
        return entities


def _parse_gender(value: Any) -> Gender:
    text = as_text(value).lower()
    if text in ("m", "male", "man"):
        return Gender.MALE
    if text in ("f", "female", "woman"):
        return Gender.FEMALE
    return Gender.UNKNOWN


def _parse_severity(value: Any) -> Optional[Severity]:
    try:
        return Severity(as_text(value).lower())
    except ValueError:
        return None


def _parse_age(value: Any) -> Optional[int]:
    try:
        age = int(float(value))
    except (TypeError, ValueError):
        return None
    return age if 0 <= age <= 130 else None


def parse_entities(raw: Optional[str]) -> Optional[ClinicalEntities]:
    """Validate the extractor's JSON answer; None when it is missing or malformed."""
    data = extract_json_object(raw)
    if data is None:
        logger.warning("[EntityIntake] no JSON object in extraction response")
        return None

    patient = data.get("patient_info")
    conditions = data.get("conditions")
    symptoms = data.get("symptoms")
    if not isinstance(patient, dict) or not isinstance(conditions, list) or not isinstance(symptoms, list):
        logger.warning("[EntityIntake] extraction response is missing required sections")
        return None

    try:
        return ClinicalEntities(
            patient_info=PatientInfo(age=_parse_age(patient.get("age")), gender=_parse_gender(patient.get("gender"))),
            conditions=[
                MedicalCondition(
                    name=as_text(c.get("name") or c.get("en")),
                    mesh=as_text(c.get("mesh")) or None,
                    confidence=clamp_unit(c.get("confidence")),
                )
                for c in conditions
                if isinstance(c, dict) and as_text(c.get("name") or c.get("en"))
            ],
            symptoms=[
                MedicalSymptom(name=as_text(s.get("name") or s.get("en")), severity=_parse_severity(s.get("severity")))
                for s in symptoms
                if isinstance(s, dict) and as_text(s.get("name") or s.get("en"))
            ],
            severity=_parse_severity(data.get("severity")) or Severity.MODERATE,
            search_query=as_text(data.get("search_query") or data.get("english_query")),
            confidence=clamp_unit(data.get("confidence")),
            specialty_hint=as_text(data.get("specialty_hint")) or None,
        )
    except ValidationError as e:
        logger.warning(f"[EntityIntake] invalid extraction payload: {e}")
        return None


def merge_symptoms(entities: ClinicalEntities, accumulated: List[str]) -> ClinicalEntities:
    """Append accumulated symptoms that are not already present (case-insensitive)."""
    seen = {name.strip().lower() for name in entities.symptom_names}
    extra = []
    for name in accumulated:
        name = (name or "").strip()
        if name and name.lower() not in seen:
            seen.add(name.lower())
            extra.append(MedicalSymptom(name=name))
    if not extra:
        return entities
    return entities.model_copy(update={"symptoms": list(entities.symptoms) + extra})


def symptom_only_entities(accumulated: List[str]) -> ClinicalEntities:
    return merge_symptoms(ClinicalEntities(confidence=0.0), accumulated)


def build_search_queries(entities: ClinicalEntities) -> SearchQueries:
    parts = []
    if entities.patient_info.age:
        parts.append(f"{entities.patient_info.age} year old")
    if entities.patient_info.gender != Gender.UNKNOWN:
        parts.append(f"{'male' if entities.patient_info.gender == Gender.MALE else 'female'} patient")
    if entities.symptom_names:
        parts.append(f"symptoms: {', '.join(entities.symptom_names)}")
    if entities.condition_names:
        parts.append(f"conditions: {', '.join(entities.condition_names)}")

    keyword_query = entities.search_query or " ".join(entities.symptom_names)

    return SearchQueries(
        embedding_text="; ".join(parts),
        keyword_query=keyword_query,
    )


class EntityIntakeStep(PipelineStep):
    phase = Phase.INTAKE

    def execute(self, state: PipelineState) -> PipelineState:
        entities = state.entities
        if entities is None:
            extractor: Optional[EntityExtractor] = self.services.extractor
            if extractor is not None and state.transcript.strip():
                entities = extractor.extract(state.transcript)
            if entities is None:
                logger.warning(f"[{self.step_name}] no entities extracted, using accumulated symptoms")
                state.notes.append("entity extraction unavailable; using accumulated symptoms only")
                entities = symptom_only_entities(state.accumulated_symptoms)
        return self._finish(state, entities)

    def fallback(self, state: PipelineState, error: Exception) -> PipelineState:
        state.notes.append("entity extraction failed; using accumulated symptoms only")
        entities = state.entities or symptom_only_entities(state.accumulated_symptoms)
        return self._finish(state, entities)

    def _finish(self, state: PipelineState, entities: ClinicalEntities) -> PipelineState:
        entities = merge_symptoms(entities, state.accumulated_symptoms)
        state.entities = entities
        state.queries = build_search_queries(entities)

        threshold = self.config.low_confidence_threshold
        if entities.confidence < threshold:
            state.low_confidence = True
            state.notes.append(
                f"low extraction confidence ({entities.confidence:.2f} < {threshold:.2f})"
            )

        self.log_artifact("Search Queries", state.queries.model_dump())
        logger.info(
            f"[{self.step_name}] {len(entities.symptoms)} symptoms, {len(entities.conditions)} conditions, "
            f"confidence {entities.confidence:.2f}"
        )
        return state
