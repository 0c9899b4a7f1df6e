from __future__ import annotations

import os
from typing import Any, Iterator

from openai import OpenAI


class LLMConfigError(RuntimeError):
    pass


class OpenAICompatibleChatClient:
    """Minimal OpenAI-compatible streaming chat client wrapper.

    We keep this small on purpose:
    - models/providers are swapped via OpenAI-compatible gateways (OPENAI_API_BASE)
    - callers own time budgets; this class only yields text fragments as they arrive
    """

    @staticmethod
    def _env_bool(name: str, default: bool = False) -> bool:
        raw = os.getenv(name)
        if raw is None:
            return default
        v = raw.strip().lower()
        if v in {"1", "true", "yes", "y", "on"}:
            return True
        if v in {"0", "false", "no", "n", "off"}:
            return False
        return default

    def __init__(
        self,
        *,
        base_url: str | None = None,
        api_key: str | None = None,
        model: str | None = None,
        timeout_s: float | None = None,
    ) -> None:
        self.base_url = (
            base_url
            or os.getenv("OPENAI_API_BASE")
            or os.getenv("OPENAI_BASE_URL")
            or "https://api.openai.com/v1"
        )
        self.api_key = api_key or os.getenv("OPENAI_API_KEY")
        self.model = model or os.getenv("LLM_MODEL") or os.getenv("OPENAI_MODEL") or "gpt-4o-mini"
        self.timeout_s = timeout_s
        # Only send `enable_thinking` when explicitly enabled; other gateways may reject it.
        self.enable_thinking = self._env_bool("AGENT_RUNS_LLM_ENABLE_THINKING", False)

        if not self.api_key:
            raise LLMConfigError("Missing OPENAI_API_KEY (or provide api_key explicitly).")

        self._client = OpenAI(base_url=self.base_url, api_key=self.api_key, timeout=self.timeout_s)

    def stream_text(
        self,
        *,
        messages: list[dict[str, Any]],
        temperature: float,
        max_tokens: int | None = None,
        model: str | None = None,
        timeout_s: float | None = None,
    ) -> Iterator[str]:
        """Yield content fragments of a streamed chat completion.

        Closing the generator early (e.g. when a slice budget elapses) closes the HTTP stream.
        """
        payload: dict[str, Any] = {
            "model": model or self.model,
            "messages": messages,
            "temperature": float(temperature),
            "stream": True,
        }
        if max_tokens:
            payload["max_tokens"] = int(max_tokens)
        if bool(self.enable_thinking):
            # OpenAI SDK supports passing non-standard provider params via `extra_body`.
            payload["extra_body"] = {"enable_thinking": True}

        client = self._client.with_options(timeout=timeout_s) if timeout_s is not None else self._client
        stream = client.chat.completions.create(**payload)
        try:
            for chunk in stream:
                if not chunk.choices:
                    continue
                text = getattr(chunk.choices[0].delta, "content", None)
                if text:
                    yield text
        finally:
            stream.close()
