import json
import os
import sys
import threading
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from loguru import logger


class PipelineObserver(Protocol):
    def on_run_start(self, name: str, run_id: str): ...

    def on_step_start(self, step_name: str, config: Dict[str, Any], depth: int): ...

    def on_step_end(self, step_name: str, duration: float, tokens: int, state_json: str, depth: int): ...

    def on_step_fallback(self, step_name: str, error: str, depth: int): ...

    def on_artifact(self, label: str, data: Any, depth: int): ...

    def on_run_end(self, duration: float): ...

    def log_summary(self, summary_text: str): ...


class PipelineLogger:
    """
    Debug-mode run log.

    With debug on, every phase writes its settings, its (truncated) output state
    and any artifacts (LLM prompts, token usage, queries) to
    logs/pipeline_debug_<run_id>.log, and errors are echoed to stderr. With debug
    off every event is a no-op. Sinks are owned per instance and released by
    close(), so several pipelines can log side by side.
    """

    def __init__(self, run_id: str, debug: bool = True, log_dir: Optional[str] = None):
        self.debug = debug
        self.run_id = run_id
        self.log_file: Optional[str] = None
        self._handler_ids: List[int] = []
        self._lock = threading.RLock()

        if self.debug:
            if log_dir is None:
                # .../medrag/core/logging.py -> project root
                core_dir = os.path.dirname(os.path.abspath(__file__))
                project_root = os.path.dirname(os.path.dirname(core_dir))
                log_dir = os.path.join(project_root, "logs")
            os.makedirs(log_dir, exist_ok=True)
            self.log_file = os.path.join(log_dir, f"pipeline_debug_{run_id}.log")

            fmt = "<green>{time:H:mm:ss}</green>\n{message}\n"
            run_filter = lambda record: record["extra"].get("run_id") in (None, run_id)
            self._handler_ids.append(logger.add(self.log_file, format=fmt, level="DEBUG", filter=run_filter))
            self._handler_ids.append(logger.add(sys.stderr, format=fmt, level="ERROR", filter=run_filter))

    def close(self):
        for handler_id in self._handler_ids:
            try:
                logger.remove(handler_id)
            except ValueError:
                pass
        self._handler_ids = []

    def _format_json(self, data: Any) -> str:
        try:
            return json.dumps(data, indent=2, default=str).replace("\\n", "\n      ")
        except (TypeError, ValueError):
            return str(data)

    def _truncate_large_strings(self, obj: Any, max_len: int = 1000) -> Any:
        if isinstance(obj, str):
            if len(obj) > max_len:
                return obj[:max_len] + f"... [truncated {len(obj) - max_len} chars]"
            return obj
        if isinstance(obj, dict):
            return {k: self._truncate_large_strings(v, max_len) for k, v in obj.items()}
        if isinstance(obj, list):
            return [self._truncate_large_strings(i, max_len) for i in obj]
        return obj

    def _log(self, text: str, depth: int):
        if not self.debug:
            return
        indent = "   " * depth
        lines = text.splitlines()
        if not lines:
            return
        with self._lock:
            logger.bind(run_id=self.run_id).debug("\n".join(f"{indent}{line}" for line in lines))

    # -------------------------------------------------------------------------
    # PUBLIC EVENTS
    # -------------------------------------------------------------------------

    def on_run_start(self, name: str, run_id: str):
        divider = "=" * 80
        self._log(f"{divider}\nLAUNCHING PIPELINE: {name} (ID: {run_id})\n{divider}", 0)

    def on_step_start(self, step_name: str, config: Dict[str, Any], depth: int):
        safe_conf = {k: v for k, v in config.items() if k not in ("debug", "llm", "elasticsearch")}
        msg = (
            f"START STEP: {step_name}\n"
            f"--- SETTINGS ---\n"
            f"{self._format_json(safe_conf)}\n"
            f"----------------"
        )
        self._log(msg, depth)

    def on_step_end(self, step_name: str, duration: float, tokens: int, state_json: str, depth: int):
        try:
            clean_json_str = self._format_json(self._truncate_large_strings(json.loads(state_json)))
        except ValueError:
            clean_json_str = state_json

        stats = f"DURATION: {duration:.4f}s"
        if tokens > 0:
            stats += f" | TOKENS: {tokens}"

        divider = "=" * 80
        msg = (
            f"--- OUTPUT STATE ---\n"
            f"{clean_json_str}\n"
            f"{divider}\n"
            f"FINISHED: {step_name} | {stats}\n"
            f"{divider}"
        )
        self._log(msg, depth)

    def on_step_fallback(self, step_name: str, error: str, depth: int):
        self._log(f"!!! FALLBACK: {step_name}\n{error}", depth)

    def on_artifact(self, label: str, data: Any, depth: int):
        if isinstance(data, (dict, list)):
            content = self._format_json(self._truncate_large_strings(data, max_len=4000))
        else:
            content = str(data)
        stamp = datetime.now().strftime("%H:%M:%S")
        self._log(f">>> [ARTIFACT {stamp}] {label}\n{content}", depth)

    def on_run_end(self, duration: float):
        divider = "=" * 80
        self._log(f"{divider}\nTOTAL PIPELINE TIME: {duration:.4f}s\n{divider}", 0)

    def log_summary(self, summary_text: str):
        if not self.debug or not self.log_file:
            return
        with self._lock:
            with open(self.log_file, "a", encoding="utf-8") as f:
                f.write("\n" + summary_text + "\n")
