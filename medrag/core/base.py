import time
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Optional

from loguru import logger

from .config import PipelineConfig
from .llm import LLMService
from .logging import PipelineObserver
from .models import Phase, PipelineState

if TYPE_CHECKING:
    from .service_manager import PipelineServices


class PipelineStep(ABC):
    """
    One phase of the pipeline.

    Subclasses implement execute() and, when the phase is optional, fallback().
    run() is the wrapper the orchestrator calls: it times the phase, notifies the
    observer and appends one entry to state.execution_log. execute() works on a
    copy of the state, so a phase that fails halfway leaves nothing behind and
    its fallback (or a caller-driven retry) starts from the input state.
    """

    phase: Phase

    def __init__(self, config: PipelineConfig, services: "PipelineServices"):
        self.config = config
        self.services = services
        self.step_name = self.__class__.__name__
        self._step_tokens = 0

        # Injected by the orchestrator
        self.observer: Optional[PipelineObserver] = None

    @property
    def llm(self) -> Optional[LLMService]:
        return self.services.llm

    @property
    def has_fallback(self) -> bool:
        return type(self).fallback is not PipelineStep.fallback

    def add_step_tokens(self, tokens: int) -> None:
        self._step_tokens += int(tokens or 0)

    def run(self, state: PipelineState) -> PipelineState:
        """
        The standard execution wrapper.
        DO NOT OVERRIDE. Override execute() / fallback() / should_run() instead.
        """
        start_time = time.time()
        self._step_tokens = 0
        llm_tokens_before = self._llm_tokens()

        if self.observer:
            self.observer.on_step_start(self.step_name, state.options.model_dump(mode="json"), 0)

        status = "ok"
        error: Optional[str] = None
        if not self.should_run(state):
            status = "skipped"
            new_state = self.skip(state.model_copy(deep=True))
        else:
            try:
                new_state = self.execute(state.model_copy(deep=True))
            except Exception as e:
                if not self.has_fallback:
                    logger.error(f"[{self.step_name}] failed: {e}")
                    raise
                status = "fallback"
                error = f"{type(e).__name__}: {e}"
                logger.warning(f"[{self.step_name}] failed, using fallback: {error}")
                if self.observer:
                    self.observer.on_step_fallback(self.step_name, error, 0)
                new_state = self.fallback(state.model_copy(deep=True), e)

        duration = time.time() - start_time
        tokens = max(self._llm_tokens() - llm_tokens_before, 0) + self._step_tokens

        if self.observer:
            self.observer.on_step_end(self.step_name, duration, tokens, new_state.model_dump_json(indent=2), 0)

        new_state.execution_log.append({
            "phase": self.phase.value,
            "step": self.step_name,
            "status": status,
            "duration": duration,
            "tokens": tokens,
            "error": error,
        })
        return new_state

    def log_artifact(self, label: str, data: Any):
        """Call this inside execute() to log intermediate data."""
        if self.observer:
            self.observer.on_artifact(label, data, depth=1)

    def should_run(self, state: PipelineState) -> bool:
        return True

    def skip(self, state: PipelineState) -> PipelineState:
        return state

    def fallback(self, state: PipelineState, error: Exception) -> PipelineState:
        raise error

    def _llm_tokens(self) -> int:
        llm = self.llm
        return int(llm.token_usage["total_tokens"]) if llm is not None else 0

    @abstractmethod
    def execute(self, state: PipelineState) -> PipelineState:
        pass
