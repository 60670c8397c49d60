import json

from medrag.core.config import LLMSettings, PipelineOptions
from medrag.core.models import ClinicalEntities, Gender, MedicalSymptom, PipelineState, Severity
from medrag.core.service_manager import PipelineServices
from medrag.steps.intake import (
    EntityIntakeStep,
    LLMEntityExtractor,
    build_search_queries,
    merge_symptoms,
    parse_entities,
    symptom_only_entities,
)

from conftest import FakeExtractor, FakeLLM

EXTRACTION_REPLY = {
    "patient_info": {"age": "72", "gender": "female"},
    "conditions": [
        {"name": "Heart Failure", "mesh": "Heart Failure", "confidence": 0.9},
        {"en": "Diabetes Mellitus", "confidence": "0.8"},
        {"confidence": 0.4},
    ],
    "symptoms": [
        {"name": "dyspnea on exertion", "severity": "Severe"},
        {"name": "leg swelling", "severity": "unclear"},
        "not an object",
    ],
    "severity": "moderate",
    "search_query": "heart failure dyspnea edema",
    "confidence": 0.85,
}


def _state(config, **kwargs):
    return PipelineState(options=PipelineOptions().resolve(config), **kwargs)


def test_parse_entities():
    entities = parse_entities("```json\n" + json.dumps(EXTRACTION_REPLY) + "\n```")

    assert entities.patient_info.age == 72
    assert entities.patient_info.gender == Gender.FEMALE
    assert entities.condition_names == ["Heart Failure", "Diabetes Mellitus"]
    assert entities.mesh_terms == ["Heart Failure"]
    assert entities.conditions[1].confidence == 0.8
    assert entities.symptom_names == ["dyspnea on exertion", "leg swelling"]
    assert entities.symptoms[0].severity == Severity.SEVERE
    assert entities.symptoms[1].severity is None
    assert entities.search_query == "heart failure dyspnea edema"
    assert entities.confidence == 0.85


def test_parse_entities_rejects_incomplete_answers():
    assert parse_entities("I could not find anything") is None
    assert parse_entities('{"patient_info": {}, "conditions": []}') is None
    assert parse_entities('{"patient_info": "n/a", "conditions": [], "symptoms": []}') is None


def test_parse_entities_drops_implausible_age():
    entities = parse_entities('{"patient_info": {"age": 200, "gender": "x"}, "conditions": [], "symptoms": []}')
    assert entities.patient_info.age is None
    assert entities.patient_info.gender == Gender.UNKNOWN
    assert entities.severity == Severity.MODERATE


def test_merge_symptoms_is_case_insensitive():
    entities = ClinicalEntities(symptoms=[MedicalSymptom(name="Fatigue")])
    merged = merge_symptoms(entities, ["fatigue", " chest pain ", "", "Chest Pain"])
    assert merged.symptom_names == ["Fatigue", "chest pain"]
    assert merge_symptoms(entities, ["FATIGUE"]) is entities


def test_symptom_only_entities():
    entities = symptom_only_entities(["cough", "fever"])
    assert entities.symptom_names == ["cough", "fever"]
    assert entities.conditions == []
    assert entities.confidence == 0.0


def test_build_search_queries(heart_failure_entities):
    queries = build_search_queries(heart_failure_entities)

    assert queries.embedding_text == (
        "72 year old; female patient; symptoms: dyspnea on exertion, bilateral leg edema; "
        "conditions: Heart Failure, Diabetes Mellitus"
    )
    assert queries.keyword_query == "decompensated heart failure dyspnea edema"


def test_build_search_queries_without_search_query():
    queries = build_search_queries(symptom_only_entities(["cough", "fever"]))
    assert queries.model_dump() == {"embedding_text": "symptoms: cough, fever", "keyword_query": "cough fever"}


# -------------------------------------------------------------------------
# LLM extractor
# -------------------------------------------------------------------------
def test_extractor_caches_per_transcript():
    llm = FakeLLM(reply=json.dumps(EXTRACTION_REPLY))
    extractor = LLMEntityExtractor(llm, LLMSettings())

    first = extractor.extract("72 yo woman, short of breath, swollen legs")
    second = extractor.extract("  72 yo woman, short of breath, swollen legs  ")

    assert first == second
    assert len(llm.prompts) == 1
    assert "72 yo woman, short of breath, swollen legs" in llm.prompts[0]


def test_extractor_does_not_cache_failures():
    llm = FakeLLM(reply="sorry")
    extractor = LLMEntityExtractor(llm, LLMSettings())
    assert extractor.extract("cough") is None
    assert extractor.extract("cough") is None
    assert len(llm.prompts) == 2


def test_extractor_ignores_blank_text():
    llm = FakeLLM(reply=json.dumps(EXTRACTION_REPLY))
    assert LLMEntityExtractor(llm, LLMSettings()).extract("   ") is None
    assert llm.prompts == []


# -------------------------------------------------------------------------
# Step
# -------------------------------------------------------------------------
def test_step_merges_accumulated_symptoms(config, heart_failure_entities):
    step = EntityIntakeStep(config, PipelineServices(extractor=FakeExtractor(heart_failure_entities)))
    state = step.run(_state(config, transcript="...", accumulated_symptoms=["fatigue", "Bilateral leg edema"]))

    assert state.entities.symptom_names == ["dyspnea on exertion", "bilateral leg edema", "fatigue"]
    assert "fatigue" in state.queries.embedding_text
    assert state.low_confidence is False
    assert state.execution_log[-1]["status"] == "ok"


def test_step_uses_supplied_entities(config, heart_failure_entities):
    extractor = FakeExtractor(ClinicalEntities())
    step = EntityIntakeStep(config, PipelineServices(extractor=extractor))
    state = step.run(_state(config, transcript="ignored", entities=heart_failure_entities))

    assert extractor.calls == 0
    assert state.entities.condition_names == ["Heart Failure", "Diabetes Mellitus"]


def test_step_falls_back_to_symptoms_when_extractor_raises(config):
    step = EntityIntakeStep(config, PipelineServices(extractor=FakeExtractor(error=RuntimeError("LLM down"))))
    state = step.run(_state(config, transcript="cough for a week", accumulated_symptoms=["cough"]))

    assert state.entities.symptom_names == ["cough"]
    assert state.queries.keyword_query == "cough"
    assert state.low_confidence is True
    assert "entity extraction failed; using accumulated symptoms only" in state.notes
    assert state.execution_log[-1]["status"] == "fallback"
    assert "LLM down" in state.execution_log[-1]["error"]


def test_step_flags_low_confidence(config, heart_failure_entities):
    weak = heart_failure_entities.model_copy(update={"confidence": 0.2})
    step = EntityIntakeStep(config, PipelineServices(extractor=FakeExtractor(weak)))
    state = step.run(_state(config, transcript="..."))

    assert state.low_confidence is True
    assert any(note.startswith("low extraction confidence") for note in state.notes)
