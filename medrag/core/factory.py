from typing import TYPE_CHECKING, Dict, Type

from ..steps.aggregation import AggregationStep
from ..steps.intake import EntityIntakeStep
from ..steps.literature import LiteratureSearchStep
from ..steps.search import FusedSearchStep
from ..steps.synthesis import SynthesisStep
from .base import PipelineStep
from .config import PipelineConfig
from .models import Phase

if TYPE_CHECKING:
    from .service_manager import PipelineServices


class StepFactory:
    _registry: Dict[Phase, Type[PipelineStep]] = {
        Phase.INTAKE: EntityIntakeStep,
        Phase.FUSED_SEARCH: FusedSearchStep,
        Phase.LITERATURE: LiteratureSearchStep,
        Phase.SYNTHESIS: SynthesisStep,
        Phase.AGGREGATE: AggregationStep,
    }

    @classmethod
    def register(cls, phase: Phase, step_class: Type[PipelineStep]):
        cls._registry[phase] = step_class

    @classmethod
    def create(cls, phase: Phase, config: PipelineConfig, services: "PipelineServices") -> PipelineStep:
        step_class = cls._registry.get(Phase(phase))
        if not step_class:
            raise ValueError(f"No step registered for phase '{phase}'.")
        return step_class(config, services)
