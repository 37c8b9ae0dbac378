"""Completion provider adapters used for assessment generation.

Every provider exposes ``complete(system_prompt, user_prompt) -> str`` and raises
``CompletionError`` on transport failures, non-success statuses, or bodies that
carry no completion text. The hosted providers all speak the OpenAI-style chat
completions protocol and differ only in endpoint, credentials, default model,
and whether a JSON response mode can be requested.
"""

from __future__ import annotations

import abc
import logging
import os
import re
import time
from typing import Any, Dict, Optional

import requests

from env_validation import COMPLETION_PROVIDERS, get_env_float, get_env_int

logger = logging.getLogger(__name__)


class CompletionError(RuntimeError):
    """Raised when a provider cannot return completion text."""


def strip_think(text: str) -> str:
    """Drop ``<think>`` reasoning blocks emitted by reasoning models."""
    return re.sub(r"<think>.*?</think>", "", text or "", flags=re.DOTALL).strip()


class CompletionProvider(abc.ABC):
    provider_name: str = "unknown"

    def __init__(self, model: Optional[str] = None):
        self.model = model

    @abc.abstractmethod
    def complete(self, system_prompt: str, user_prompt: str) -> str:
        ...


_PROVIDER_DEFAULTS: Dict[str, Dict[str, Any]] = {
    "openai": {
        "url": "https://api.openai.com/v1/chat/completions",
        "model": "gpt-4o",
        "key_env": "OPENAI_API_KEY",
        "json_mode": True,
    },
    "groq": {
        "url": "https://api.groq.com/openai/v1/chat/completions",
        "model": "openai/gpt-oss-120b",
        "key_env": "GROQ_API_KEY",
        "json_mode": False,
    },
    "gpt4all": {
        "url": "http://localhost:4891/v1/chat/completions",
        "model": "DeepSeek-R1-Distill-Qwen-14B",
        "key_env": None,
        "json_mode": False,
    },
}


class ChatCompletionsProvider(CompletionProvider):
    """OpenAI-compatible ``/chat/completions`` client over ``requests``."""

    def __init__(
        self,
        provider_name: str,
        *,
        model: Optional[str] = None,
        url: Optional[str] = None,
        api_key: Optional[str] = None,
        json_mode: Optional[bool] = None,
        timeout: Optional[float] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ):
        defaults = _PROVIDER_DEFAULTS[provider_name]
        super().__init__(model=model or os.getenv("COMPLETION_MODEL") or defaults["model"])
        self.provider_name = provider_name
        self.url = url or os.getenv("COMPLETION_URL") or defaults["url"]
        key_env = defaults["key_env"]
        self._api_key = api_key if api_key is not None else (os.getenv(key_env, "").strip() if key_env else "")
        if key_env and not self._api_key:
            logger.warning("%s is not set; %s completions will fail", key_env, provider_name)
        self._requires_key = key_env is not None
        self.json_mode = defaults["json_mode"] if json_mode is None else json_mode
        self.timeout = timeout if timeout is not None else get_env_float("LLM_TIMEOUT", 60.0)
        self.temperature = temperature if temperature is not None else get_env_float("LLM_TEMPERATURE", 0.3)
        self.max_tokens = max_tokens if max_tokens is not None else get_env_int("LLM_MAX_TOKENS", 4000)
        self.last_usage: Dict[str, Optional[int]] = {}

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _payload(self, system_prompt: str, user_prompt: str) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": self.temperature,
        }
        if self.max_tokens:
            payload["max_tokens"] = int(self.max_tokens)
        if self.json_mode:
            payload["response_format"] = {"type": "json_object"}
        return payload

    def complete(self, system_prompt: str, user_prompt: str) -> str:
        if self._requires_key and not self._api_key:
            raise CompletionError(f"{self.provider_name} API key is not configured")

        start = time.perf_counter()
        try:
            r = requests.post(
                self.url,
                json=self._payload(system_prompt, user_prompt),
                headers=self._headers(),
                timeout=self.timeout,
            )
            r.raise_for_status()
            data = r.json()
        except requests.HTTPError as e:
            status = e.response.status_code if e.response is not None else "?"
            body = e.response.text[:300] if e.response is not None else ""
            raise CompletionError(f"{self.provider_name} HTTP {status}: {body}") from e
        except requests.RequestException as e:
            raise CompletionError(f"{self.provider_name} request failed: {e}") from e
        except ValueError as e:
            raise CompletionError(f"{self.provider_name} returned a non-JSON body") from e
        finally:
            latency_ms = int((time.perf_counter() - start) * 1000)
            logger.info(
                "completion call provider=%s model=%s latency_ms=%d",
                self.provider_name,
                self.model,
                latency_ms,
            )

        usage = data.get("usage") if isinstance(data, dict) else None
        if isinstance(usage, dict):
            self.last_usage = {
                "tokens_in": usage.get("prompt_tokens") or usage.get("input_tokens"),
                "tokens_out": usage.get("completion_tokens") or usage.get("output_tokens"),
            }

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            try:
                content = data["choices"][0]["text"]
            except (KeyError, IndexError, TypeError):
                raise CompletionError(f"Unexpected {self.provider_name} response: {str(data)[:300]}")

        if content is None:
            content = ""
        if not isinstance(content, str):
            raise CompletionError(
                f"Unexpected {self.provider_name} content type: {type(content).__name__}"
            )
        text = strip_think(content)
        if not text:
            raise CompletionError(f"No response content from {self.provider_name}")
        return text


class MockCompletionProvider(CompletionProvider):
    """Returns canned text; raises the configured error instead when given one."""

    provider_name: str = "mock"

    def __init__(self, model: Optional[str] = None, response: str = "", error: Optional[Exception] = None):
        super().__init__(model=model or "mock-assess-1")
        self.response = response
        self.error = error
        self.calls: list[tuple[str, str]] = []

    def complete(self, system_prompt: str, user_prompt: str) -> str:
        self.calls.append((system_prompt, user_prompt))
        if self.error is not None:
            raise self.error
        if not self.response:
            raise CompletionError("No response content from mock")
        return self.response


def get_completion_provider(provider: Optional[str] = None, model: Optional[str] = None) -> CompletionProvider:
    """Return a completion provider based on env or explicit overrides.

    Env precedence:
      - COMPLETION_PROVIDER
      - defaults to 'openai'
    Model from COMPLETION_MODEL if not given.
    """
    prov = (provider or os.getenv("COMPLETION_PROVIDER") or "openai").strip().lower()
    if prov not in COMPLETION_PROVIDERS:
        raise ValueError(f"Unknown completion provider: {prov}")
    if prov == "mock":
        return MockCompletionProvider(model=model)
    return ChatCompletionsProvider(prov, model=model)
