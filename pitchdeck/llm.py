"""Thin REST clients for the three model providers."""
from __future__ import annotations

import math
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests

from .errors import ErrorKind, InputValidationError, ProviderError
from .retry_utils import classify_exception, kind_from_status

PROVIDER_ENV_VARS = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
    "google": "GOOGLE_AI_API_KEY",
}

ANTHROPIC_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"
OPENAI_URL = "https://api.openai.com/v1/chat/completions"
GEMINI_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"


def estimate_tokens(text: str) -> int:
    return int(math.ceil(len(text or "") / 4))


@dataclass
class LLMConfig:
    provider: str
    model: str
    api_key: str = ""
    max_tokens: int = 8192
    temperature: float = 0.3
    timeout: float = 300.0


@dataclass
class LLMResponse:
    text: str
    input_tokens: int
    output_tokens: int


def _post(url: str, headers: Dict[str, str], payload: Dict[str, Any], timeout: float) -> Dict[str, Any]:
    try:
        r = requests.post(url, headers=headers, json=payload, timeout=timeout)
    except requests.exceptions.RequestException as exc:
        raise ProviderError(str(exc), kind=classify_exception(exc), original=exc) from exc

    if r.status_code >= 400:
        body = (r.text or "")[:2000]
        raise ProviderError(
            f"HTTP {r.status_code} from {url}: {body}",
            kind=kind_from_status(r.status_code, body),
            status_code=r.status_code,
        )
    try:
        return r.json()
    except ValueError as exc:
        raise ProviderError(f"Non-JSON response from {url}", kind=ErrorKind.BAD_REQUEST, original=exc) from exc


class AnthropicClient:
    def __init__(self, cfg: LLMConfig) -> None:
        self.cfg = cfg

    def complete(self, system: str, prompt: str) -> LLMResponse:
        headers = {
            "x-api-key": self.cfg.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        }
        payload = {
            "model": self.cfg.model,
            "max_tokens": self.cfg.max_tokens,
            "temperature": self.cfg.temperature,
            "system": system,
            "messages": [{"role": "user", "content": prompt}],
        }
        data = _post(ANTHROPIC_URL, headers, payload, self.cfg.timeout)
        text = "".join(b.get("text", "") for b in data.get("content", []) if b.get("type") == "text")
        usage = data.get("usage") or {}
        return LLMResponse(
            text=text,
            input_tokens=int(usage.get("input_tokens") or estimate_tokens(system + prompt)),
            output_tokens=int(usage.get("output_tokens") or estimate_tokens(text)),
        )


class OpenAIClient:
    def __init__(self, cfg: LLMConfig) -> None:
        self.cfg = cfg

    def complete(self, system: str, prompt: str) -> LLMResponse:
        headers = {"Authorization": f"Bearer {self.cfg.api_key}", "Content-Type": "application/json"}
        payload = {
            "model": self.cfg.model,
            "max_completion_tokens": self.cfg.max_tokens,
            "temperature": self.cfg.temperature,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": prompt},
            ],
        }
        data = _post(OPENAI_URL, headers, payload, self.cfg.timeout)
        choices = data.get("choices") or [{}]
        text = (choices[0].get("message") or {}).get("content") or ""
        usage = data.get("usage") or {}
        return LLMResponse(
            text=text,
            input_tokens=int(usage.get("prompt_tokens") or estimate_tokens(system + prompt)),
            output_tokens=int(usage.get("completion_tokens") or estimate_tokens(text)),
        )


class GeminiClient:
    def __init__(self, cfg: LLMConfig) -> None:
        self.cfg = cfg

    def _generate(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        headers = {"x-goog-api-key": self.cfg.api_key, "Content-Type": "application/json"}
        return _post(GEMINI_URL.format(model=self.cfg.model), headers, payload, self.cfg.timeout)

    @staticmethod
    def _parts(data: Dict[str, Any]):
        candidates = data.get("candidates") or [{}]
        return ((candidates[0].get("content") or {}).get("parts")) or []

    def complete(self, system: str, prompt: str) -> LLMResponse:
        payload = {
            "systemInstruction": {"parts": [{"text": system}]},
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {
                "maxOutputTokens": self.cfg.max_tokens,
                "temperature": self.cfg.temperature,
            },
        }
        data = self._generate(payload)
        text = "".join(p.get("text", "") for p in self._parts(data))
        usage = data.get("usageMetadata") or {}
        return LLMResponse(
            text=text,
            input_tokens=int(usage.get("promptTokenCount") or estimate_tokens(system + prompt)),
            output_tokens=int(usage.get("candidatesTokenCount") or estimate_tokens(text)),
        )

    def generate_image(self, prompt: str) -> LLMResponse:
        """Request an image; ``text`` of the response is the base64 payload."""
        payload = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {"responseModalities": ["IMAGE", "TEXT"]},
        }
        data = self._generate(payload)
        for part in self._parts(data):
            inline = part.get("inlineData") or part.get("inline_data")
            if inline and inline.get("data"):
                usage = data.get("usageMetadata") or {}
                return LLMResponse(
                    text=inline["data"],
                    input_tokens=int(usage.get("promptTokenCount") or estimate_tokens(prompt)),
                    output_tokens=int(usage.get("candidatesTokenCount") or 0),
                )
        raise ProviderError("No image data in response", kind=ErrorKind.BAD_REQUEST)


_CLIENTS = {
    "anthropic": AnthropicClient,
    "openai": OpenAIClient,
    "google": GeminiClient,
}


def api_key_for(provider: str) -> str:
    return os.environ.get(PROVIDER_ENV_VARS[provider], "").strip()


def init_llm(cfg: LLMConfig):
    if cfg.provider not in _CLIENTS:
        raise InputValidationError([f"Unknown provider: {cfg.provider}"])
    if not cfg.api_key:
        cfg.api_key = api_key_for(cfg.provider)
    if not cfg.api_key:
        raise InputValidationError([f"{PROVIDER_ENV_VARS[cfg.provider]} environment variable is required"])
    return _CLIENTS[cfg.provider](cfg)
