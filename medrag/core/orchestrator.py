import io
import time
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Union

from loguru import logger
from rich import box
from rich.console import Console
from rich.table import Table

from .config import PipelineConfig, PipelineOptions
from .factory import StepFactory
from .logging import PipelineLogger
from .models import ClinicalEntities, Phase, PipelineResult, PipelineState
from .service_manager import PipelineServices, build_services

PHASES = (Phase.INTAKE, Phase.FUSED_SEARCH, Phase.LITERATURE, Phase.SYNTHESIS, Phase.AGGREGATE)


class MedicalEvidencePipeline:
    """
    Transcript -> entities -> fused search -> literature -> synthesis -> aggregate.

    Each phase is a PipelineStep with its own fallback, so a failing optional
    phase degrades the result instead of aborting the run. The instance owns its
    configuration and collaborators; the toggle setters only affect later runs.
    """

    def __init__(self, config: Optional[PipelineConfig] = None, services: Optional[PipelineServices] = None):
        self.config = (config or PipelineConfig()).model_copy(deep=True)
        self.name = self.config.name
        self.run_id = self.config.run_id or datetime.now().strftime("%Y%m%d_%H%M%S")
        self.debug = self.config.debug

        self.logger = PipelineLogger(self.run_id, debug=self.debug)
        self.services = services or build_services(self.config, observer=self.logger)
        if self.services.llm is not None and self.services.llm.observer is None:
            self.services.llm.observer = self.logger

        self.steps = {}
        for phase in PHASES:
            step = StepFactory.create(phase, self.config, self.services)
            step.observer = self.logger
            self.steps[phase] = step

    # -------------------------------------------------------------------------
    # Toggles
    # -------------------------------------------------------------------------
    def set_literature_enabled(self, enabled: bool):
        self.config.include_recent_papers = enabled

    def set_synthesis_enabled(self, enabled: bool):
        self.config.enable_synthesis = enabled

    def set_max_references(self, max_references: int):
        self.config.max_references = max_references

    def set_years_back(self, years_back: int):
        self.config.years_back = years_back

    def set_use_mesh_terms(self, enabled: bool):
        self.config.use_mesh_terms = enabled

    # -------------------------------------------------------------------------
    # Running
    # -------------------------------------------------------------------------
    def run_pipeline(
        self,
        transcript: str,
        accumulated_symptoms: Optional[Sequence[str]] = None,
        options: Union[PipelineOptions, Dict[str, Any], None] = None,
        entities: Union[ClinicalEntities, Dict[str, Any], None] = None,
    ) -> PipelineResult:
        state = self.initial_state(transcript, accumulated_symptoms, options, entities)

        self.logger.on_run_start(self.name, self.run_id)
        logger.info(f"--- Launching Pipeline: {self.name} (ID={self.run_id}) ---")
        total_start = time.time()

        for phase in PHASES:
            state = self.run_phase(phase, state)

        total_duration = time.time() - total_start
        self.logger.on_run_end(total_duration)
        if self.debug:
            self._print_and_log_summary(state, total_duration)

        return state.to_result(int(total_duration * 1000))

    def run_phase(self, phase: Phase, state: PipelineState) -> PipelineState:
        """Run a single phase on `state`; callers use this to retry one phase."""
        step = self.steps[Phase(phase)]
        step.observer = self.logger
        return step.run(state)

    def initial_state(
        self,
        transcript: str,
        accumulated_symptoms: Optional[Sequence[str]] = None,
        options: Union[PipelineOptions, Dict[str, Any], None] = None,
        entities: Union[ClinicalEntities, Dict[str, Any], None] = None,
    ) -> PipelineState:
        if not isinstance(transcript, str):
            raise ValueError("transcript must be a string")
        if accumulated_symptoms is None:
            accumulated_symptoms = []
        if isinstance(accumulated_symptoms, str) or not all(isinstance(s, str) for s in accumulated_symptoms):
            raise ValueError("accumulated_symptoms must be a list of strings")

        if options is None:
            options = PipelineOptions()
        elif isinstance(options, dict):
            options = PipelineOptions.model_validate(options)
        if isinstance(entities, dict):
            entities = ClinicalEntities.model_validate(entities)

        if not transcript.strip() and not any(s.strip() for s in accumulated_symptoms) and entities is None:
            raise ValueError("nothing to analyse: transcript, accumulated_symptoms and entities are all empty")

        return PipelineState(
            transcript=transcript,
            accumulated_symptoms=list(accumulated_symptoms),
            options=options.resolve(self.config),
            entities=entities,
        )

    def close(self):
        self.logger.close()

    # -------------------------------------------------------------------------
    # Summary
    # -------------------------------------------------------------------------
    def _print_and_log_summary(self, state: PipelineState, total_duration: float):
        table = self._summary_table(state.execution_log, total_duration)

        Console().print(table)

        string_buffer = io.StringIO()
        Console(file=string_buffer, no_color=True, width=150).print(table)
        self.logger.log_summary(string_buffer.getvalue())

    def _summary_table(self, execution_log: List[Dict[str, Any]], total_duration: float) -> Table:
        table = Table(
            title=f"EXECUTION SUMMARY: {self.name}",
            title_justify="left",
            box=box.ROUNDED,
            show_header=True,
        )
        table.add_column("Phase", justify="left", no_wrap=True)
        table.add_column("Status", justify="left")
        table.add_column("Duration", justify="right")
        table.add_column("Tokens", justify="right")

        total_tokens = 0
        for entry in execution_log:
            tokens = int(entry.get("tokens") or 0)
            total_tokens += tokens
            status = entry.get("status", "ok")
            style = {"fallback": "yellow", "skipped": "dim"}.get(status, "green")
            table.add_row(
                str(entry.get("phase", "?")),
                f"[{style}]{status}[/{style}]",
                f"{float(entry.get('duration', 0.0)):.4f}s",
                str(tokens) if tokens > 0 else "-",
            )

        table.add_section()
        table.add_row("TOTAL", "", f"{total_duration:.4f}s", str(total_tokens))
        return table
