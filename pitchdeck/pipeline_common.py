"""Shared pieces for pipeline stages: paths, run config/context and the agent base."""
from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

from .cost_utils import CostTracker
from .errors import AgentError, InputValidationError
from .json_utils import parse_json_response
from .llm import LLMConfig, LLMResponse, estimate_tokens, init_llm
from .models import AgentSettings, PipelineSettings
from .prompt_logger import PromptLogger
from .retry_utils import RetryExecutor, RetryPolicy

logger = logging.getLogger("pitchdeck")
TQDM_NCOLS = 100
TRUNCATION_SUFFIX = "\n\n[... truncated ...]"


@dataclass(frozen=True)
class PipelinePaths:
    root: Path
    context_refs: Path
    extracted_text: Path
    user_inputs: Path
    story: Path
    style_guide: Path
    intermediate: Path
    prompts: Path
    debug: Path
    output: Path
    assets: Path
    config_file: Path
    deck_file: Path

    @classmethod
    def from_root(cls, root: Path) -> "PipelinePaths":
        root = Path(root).expanduser().resolve()
        intermediate = root / "intermediate"
        output = root / "output"
        return cls(
            root=root,
            context_refs=root / "context-refs",
            extracted_text=root / "extracted-text",
            user_inputs=root / "user-inputs",
            story=root / "user-inputs" / "story.md",
            style_guide=root / "user-inputs" / "style-guide.md",
            intermediate=intermediate,
            prompts=intermediate / "prompts",
            debug=intermediate / "debug",
            output=output,
            assets=output / "assets",
            config_file=root / "pipeline-config.json",
            deck_file=output / "investor-deck.pptx",
        )

    def artifact(self, name: str) -> Path:
        return self.intermediate / name


@dataclass
class RunConfig:
    paths: PipelinePaths
    settings: PipelineSettings = field(default_factory=PipelineSettings)
    dry_run: bool = False
    verbose: bool = False
    reasoning_mode: str = "extended_thinking"
    skip_images: bool = False


def load_settings(path: Path) -> PipelineSettings:
    path = Path(path)
    if not path.exists():
        logger.debug("No %s; using default settings.", path.name)
        return PipelineSettings()
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except ValueError as exc:
        raise InputValidationError([f"{path.name} is not valid JSON: {exc}"]) from exc
    try:
        return PipelineSettings.model_validate(raw)
    except ValidationError as exc:
        issues = [f"{'.'.join(str(x) for x in e['loc'])}: {e['msg']}" for e in exc.errors()]
        raise InputValidationError(issues) from exc


class RunContext:
    """Per-run state handed to every agent: one cost tracker, one prompt logger."""

    def __init__(
        self,
        config: RunConfig,
        cost_tracker: Optional[CostTracker] = None,
        prompt_logger: Optional[PromptLogger] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.paths = config.paths
        self.dry_run = config.dry_run
        self.cost_tracker = cost_tracker or CostTracker(max_cost=config.settings.max_cost)
        if prompt_logger is None and (config.dry_run or config.settings.logging.prompts):
            prompt_logger = PromptLogger(config.paths.root, dry_run=config.dry_run)
        self.prompt_logger = prompt_logger
        self.sleep = sleep

    def finish(self) -> None:
        """Persist the cost report and prompt manifest."""
        if self.cost_tracker.calls:
            self.cost_tracker.save(self.paths.artifact("cost-report.json"))
        if self.prompt_logger is not None and self.prompt_logger.entries:
            path = self.prompt_logger.save_manifest()
            logger.info("Prompt manifest: %s", path)


def read_text(path: Path, required: bool = True) -> str:
    path = Path(path)
    if not path.exists():
        if required:
            raise InputValidationError([f"Required file not found: {path}"])
        return ""
    return path.read_text(encoding="utf-8", errors="replace")


def read_json(path: Path) -> Any:
    path = Path(path)
    if not path.exists():
        raise InputValidationError([f"Required artifact not found: {path} (run the previous phase first)"])
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except ValueError as exc:
        raise InputValidationError([f"Artifact {path} is not valid JSON: {exc}"]) from exc


M = TypeVar("M", bound=BaseModel)


def validate_model(model: Type[M], data: Any, what: str, context: Optional[Dict[str, Any]] = None) -> M:
    """Validate ``data`` as ``model``; schema failures become an ``AgentError``."""
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        first = exc.errors()[0]
        where = ".".join(str(x) for x in first["loc"]) or "<root>"
        raise AgentError(
            f"{what} failed validation ({exc.error_count()} errors, first at {where}: {first['msg']})",
            original=exc,
            context=context,
        ) from exc


def write_json(path: Path, data: Any) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, ensure_ascii=False)
    return path


def truncate_text(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + TRUNCATION_SUFFIX


class BaseAgent:
    """Prompt -> provider call (with retry and cost tracking) -> repaired JSON."""

    name = "agent"
    provider = "anthropic"
    default_model = ""
    default_max_tokens = 8192
    default_temperature = 0.3

    def __init__(self, ctx: RunContext, settings: Optional[AgentSettings] = None, client=None) -> None:
        self.ctx = ctx
        self.settings = settings or AgentSettings()
        self.model = self.settings.model or self.default_model
        self.max_tokens = self.settings.max_tokens or self.default_max_tokens
        self.temperature = (
            self.settings.temperature if self.settings.temperature is not None else self.default_temperature
        )
        self._client = client

    @property
    def paths(self) -> PipelinePaths:
        return self.ctx.paths

    @property
    def dry_run(self) -> bool:
        return self.ctx.dry_run

    @property
    def client(self):
        if self._client is None:
            self._client = init_llm(
                LLMConfig(
                    provider=self.provider,
                    model=self.model,
                    max_tokens=self.max_tokens,
                    temperature=self.temperature,
                )
            )
        return self._client

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(attempts=self.settings.retry_attempts, base_delay=self.settings.retry_delay)

    def log_prompt(self, prompt_type: str, content: str, **metadata: Any) -> None:
        if self.ctx.prompt_logger is None:
            return
        self.ctx.prompt_logger.log_prompt(
            self.name,
            prompt_type,
            content,
            model=self.model,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            **metadata,
        )

    def log_dry_run(self, what: str, prompt: str) -> None:
        logger.info(
            "[DRY-RUN] %s would call %s/%s (~%s input tokens)",
            self.name,
            self.provider,
            self.model,
            estimate_tokens(prompt),
        )
        logger.debug("[DRY-RUN] %s: %s", what, prompt[:500])

    def call_model(self, system: str, prompt: str, context: Optional[Dict[str, Any]] = None) -> LLMResponse:
        def attempt() -> LLMResponse:
            resp = self.client.complete(system, prompt)
            self.ctx.cost_tracker.add_usage(self.provider, self.model, resp.input_tokens, resp.output_tokens)
            return resp

        executor = RetryExecutor(self.retry_policy(), sleep=self.ctx.sleep)
        return executor.run(attempt, context={"agent": self.name, **(context or {})})

    def parse_response(self, text: str) -> Any:
        return parse_json_response(text, scratch_dir=self.paths.debug)

    def call_json(self, system: str, prompt: str, prompt_type: str, **metadata: Any) -> Any:
        self.log_prompt(prompt_type, f"## System\n\n{system}\n\n## User\n\n{prompt}", **metadata)
        resp = self.call_model(system, prompt, context={"prompt_type": prompt_type, **metadata})
        return self.parse_response(resp.text)

    def load_system_prompt(self, filename: str, default: str) -> str:
        """Prompt override from ``<root>/prompts/<filename>`` if present."""
        path = self.paths.root / "prompts" / filename
        if path.exists():
            return path.read_text(encoding="utf-8")
        return default
