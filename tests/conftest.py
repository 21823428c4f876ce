from __future__ import annotations

import json
from pathlib import Path
from typing import Callable, List, Optional, Union

import pytest
import requests

from pitchdeck.llm import LLMResponse
from pitchdeck.models import PipelineSettings
from pitchdeck.pipeline_common import PipelinePaths, RunConfig, RunContext

PROVIDER_VARS = ("ANTHROPIC_API_KEY", "OPENAI_API_KEY", "GOOGLE_AI_API_KEY")

Reply = Union[str, Exception]


class FakeClient:
    """Stands in for a provider client; replies come from a handler or a queue."""

    def __init__(
        self,
        replies: Optional[List[Reply]] = None,
        handler: Optional[Callable[[str, str], Reply]] = None,
        input_tokens: int = 1000,
        output_tokens: int = 500,
    ) -> None:
        self.replies = list(replies or [])
        self.handler = handler
        self.input_tokens = input_tokens
        self.output_tokens = output_tokens
        self.prompts: List[str] = []

    def _reply(self, system: str, prompt: str) -> LLMResponse:
        self.prompts.append(prompt)
        reply = self.handler(system, prompt) if self.handler else self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return LLMResponse(text=reply, input_tokens=self.input_tokens, output_tokens=self.output_tokens)

    def complete(self, system: str, prompt: str) -> LLMResponse:
        return self._reply(system, prompt)

    def generate_image(self, prompt: str) -> LLMResponse:
        return self._reply("", prompt)


@pytest.fixture(autouse=True)
def no_provider_keys(monkeypatch):
    for var in PROVIDER_VARS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.delenv("PITCHDECK_ROOT_DIR", raising=False)


@pytest.fixture
def no_network(monkeypatch):
    """Fail the test on any HTTP request."""
    calls = []

    def refuse(*args, **kwargs):
        calls.append((args, kwargs))
        raise AssertionError("network call attempted")

    monkeypatch.setattr(requests, "post", refuse)
    monkeypatch.setattr(requests.Session, "request", refuse)
    return calls


DOC_TEMPLATE = (
    "{title}\n\n"
    "This document describes Acme Robotics, a warehouse automation company. "
    "It covers the market, the product and the go-to-market plan in detail. "
    "Revenue grew 40% quarter over quarter and the pilot with a national retailer expanded to five sites.\n"
)


@pytest.fixture
def project(tmp_path: Path) -> PipelinePaths:
    paths = PipelinePaths.from_root(tmp_path)
    paths.user_inputs.mkdir(parents=True)
    paths.story.write_text("# Story\n\nOpen with the pain of manual picking, close with the ask.\n", encoding="utf-8")
    paths.style_guide.write_text("# Style\n\nHeadlines under ten words. Whole-number metrics.\n", encoding="utf-8")
    paths.extracted_text.mkdir(parents=True)
    for name in ("market-report", "financials", "product-brief"):
        (paths.extracted_text / f"{name}.txt").write_text(DOC_TEMPLATE.format(title=name), encoding="utf-8")
    return paths


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def make_ctx(project: PipelinePaths, sleeps: List[float]):
    def factory(dry_run: bool = False, settings: Optional[PipelineSettings] = None, **kwargs) -> RunContext:
        cfg = RunConfig(paths=project, settings=settings or PipelineSettings(), dry_run=dry_run, **kwargs)
        return RunContext(cfg, sleep=sleeps.append)

    return factory


def fenced(data) -> str:
    return "Here is the result:\n```json\n" + json.dumps(data, indent=2) + "\n```\n"
