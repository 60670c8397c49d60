import uuid
from typing import Any, Dict, List, Optional

import openai

from .config import LLMSettings
from .logging import PipelineObserver


class LLMService:
    """
    Chat and embedding calls against an OpenAI-compatible endpoint.

    Token usage is accumulated per instance and reported to the observer as
    "LLM Usage Stats" artifacts. Transport errors surface as RuntimeError.
    """

    def __init__(self, settings: LLMSettings, observer: Optional[PipelineObserver] = None, client: Any = None):
        self.settings = settings
        self.observer = observer
        # The openai client refuses to start without a key; local servers ignore it.
        self.client = client or openai.OpenAI(
            base_url=settings.base_url,
            api_key=settings.api_key or "ollama",
        )

        self.token_usage = {
            "prompt_tokens": 0,
            "completion_tokens": 0,
            "total_tokens": 0,
        }

    @property
    def has_credentials(self) -> bool:
        return bool(self.settings.api_key)

    def call(self,
             prompt: str,
             model: Optional[str] = None,
             temperature: Optional[float] = None,
             max_tokens: Optional[int] = None,
             ) -> str:
        model = model or self.settings.model
        temperature = self.settings.temperature if temperature is None else temperature
        max_tokens = self.settings.max_tokens if max_tokens is None else max_tokens

        if max_tokens <= 0:
            raise ValueError("max_tokens must be a positive integer")
        if temperature < 0:
            raise ValueError("temperature must be a positive float")

        call_id = uuid.uuid4().hex
        if self.observer:
            self.observer.on_artifact(
                "LLM Prompt",
                {
                    "call_id": call_id,
                    "model": model,
                    "temperature": temperature,
                    "max_tokens": max_tokens,
                    "prompt": prompt,
                },
                depth=1,
            )

        try:
            response = self.client.chat.completions.create(
                model=model,
                messages=[{"role": "user", "content": prompt}],
                temperature=temperature,
                max_tokens=max_tokens,
            )
        except Exception as e:
            self._report_usage({"call_id": call_id, "model": model, "error": str(e)})
            raise RuntimeError(f"LLM Service Error [Model: {model}]: {e}") from e

        usage_data: Dict[str, Any] = {"call_id": call_id, "model": model}
        usage_data.update(self._track_usage(response))
        self._report_usage(usage_data)

        if not response.choices:
            return ""
        content = response.choices[0].message.content
        return content.strip() if content else ""

    def embed(self, texts: List[str], model: Optional[str] = None) -> List[List[float]]:
        model = model or self.settings.embedding_model
        if not texts:
            return []
        try:
            response = self.client.embeddings.create(model=model, input=texts)
        except Exception as e:
            self._report_usage({"model": model, "error": str(e)})
            raise RuntimeError(f"LLM Service Error [Model: {model}]: {e}") from e

        usage_data: Dict[str, Any] = {"model": model, "inputs": len(texts)}
        usage_data.update(self._track_usage(response))
        self._report_usage(usage_data)

        ordered = sorted(response.data, key=lambda item: item.index)
        return [list(item.embedding) for item in ordered]

    def _track_usage(self, response: Any) -> Dict[str, Optional[int]]:
        u = getattr(response, "usage", None)
        if not u:
            return {"prompt": None, "completion": None, "total": None}
        prompt_tokens = getattr(u, "prompt_tokens", 0) or 0
        completion_tokens = getattr(u, "completion_tokens", 0) or 0
        total_tokens = getattr(u, "total_tokens", 0) or 0
        self.token_usage["prompt_tokens"] += prompt_tokens
        self.token_usage["completion_tokens"] += completion_tokens
        self.token_usage["total_tokens"] += total_tokens
        return {"prompt": prompt_tokens, "completion": completion_tokens, "total": total_tokens}

    def _report_usage(self, usage_data: Dict[str, Any]):
        if self.observer:
            self.observer.on_artifact("LLM Usage Stats", usage_data, depth=1)
