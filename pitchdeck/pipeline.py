"""Five-phase pipeline driver with resume, skip flags and credential pre-flight."""
from __future__ import annotations

import os
import sys
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, List, Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .errors import InputValidationError
from .llm import PROVIDER_ENV_VARS
from .models import DeckConfig
from .pipeline_classify import Classifier
from .pipeline_common import RunConfig, RunContext, logger, read_json, validate_model, write_json
from .pipeline_extract import Extractor
from .pipeline_generate import DeckGenerator, attach_images
from .pipeline_images import ImageGenerator
from .pipeline_render import Renderer
from .pipeline_synthesize import Synthesizer

PHASES = ("extract", "classify", "synthesize", "generate", "render")
PHASE_TITLES = {
    "extract": "Extract Text",
    "classify": "Classify Context",
    "synthesize": "Synthesize Content",
    "generate": "Generate Deck + Images",
    "render": "Render Deck",
}
PHASE_PROVIDERS = {"classify": "anthropic", "synthesize": "openai", "generate": "google"}
LLM_PHASES = frozenset(PHASE_PROVIDERS)


@dataclass
class PipelineOptions:
    from_phase: int = 1
    skip: FrozenSet[str] = field(default_factory=frozenset)
    assume_yes: bool = False
    non_interactive: bool = False
    combine_context: bool = False


@dataclass
class PhaseResult:
    name: str
    elapsed: float
    cost: float
    detail: str = ""


class Pipeline:
    def __init__(
        self,
        cfg: RunConfig,
        options: Optional[PipelineOptions] = None,
        ctx: Optional[RunContext] = None,
        clients: Optional[Dict[str, Any]] = None,
        input_fn: Callable[[str], str] = input,
        isatty: Optional[Callable[[], bool]] = None,
        console: Optional[Console] = None,
    ) -> None:
        self.cfg = cfg
        self.options = options or PipelineOptions()
        self.ctx = ctx or RunContext(cfg)
        self.clients = clients or {}
        self.input_fn = input_fn
        self.isatty = isatty or sys.stdin.isatty
        self.console = console or Console()
        self.results: List[PhaseResult] = []

    def phases_to_run(self) -> List[str]:
        if not 1 <= self.options.from_phase <= len(PHASES):
            raise InputValidationError([f"--from-phase must be between 1 and {len(PHASES)}"])
        return [p for i, p in enumerate(PHASES, 1) if i >= self.options.from_phase and p not in self.options.skip]

    def missing_credentials(self) -> List[str]:
        if self.cfg.dry_run:
            return []
        missing = []
        for phase in self.phases_to_run():
            provider = PHASE_PROVIDERS.get(phase)
            if provider is None:
                continue
            var = PROVIDER_ENV_VARS[provider]
            if not os.environ.get(var, "").strip() and var not in missing:
                missing.append(var)
        return missing

    def check_credentials(self) -> None:
        missing = self.missing_credentials()
        if not missing:
            return
        for var in missing:
            logger.warning("%s is not set", var)
        if self.options.assume_yes:
            logger.warning("Continuing without %s (--yes)", ", ".join(missing))
            return
        if self.options.non_interactive or not self.isatty():
            raise InputValidationError([f"{var} is required for the phases being run" for var in missing])
        answer = self.input_fn("Continue anyway? (y/N) ").strip().lower()
        if answer not in ("y", "yes"):
            raise InputValidationError(["Aborted: missing API keys"])

    def check_user_inputs(self) -> None:
        phases = self.phases_to_run()
        issues = []
        if LLM_PHASES.intersection(phases):
            for path in (self.cfg.paths.story, self.cfg.paths.style_guide):
                if not path.exists():
                    issues.append(f"Required input not found: {path}")
        paths = self.cfg.paths
        prior = {
            "classify": (paths.extracted_text, "extracted text"),
            "synthesize": (paths.artifact("classified-context.json"), "classification output"),
            "generate": (paths.artifact("synthesis-output.json"), "synthesis output"),
            "render": (paths.output / "deck-config.json", "deck config"),
        }
        # a phase whose producer does not run this time needs the producer's artifact on disk
        for phase in phases:
            producer = PHASES[PHASES.index(phase) - 1] if phase != PHASES[0] else None
            if producer is None or producer in phases or phase not in prior:
                continue
            path, label = prior[phase]
            ok = any(path.glob("*.txt")) if path.is_dir() else path.exists()
            if not ok:
                issues.append(f"Missing {label} at {path}; the {producer} phase must run first")
        if issues:
            raise InputValidationError(issues)

    def sanity_checks(self) -> None:
        logger.info("Running pre-flight checks...")
        self.check_user_inputs()
        self.check_credentials()
        self.cfg.paths.intermediate.mkdir(parents=True, exist_ok=True)
        self.cfg.paths.output.mkdir(parents=True, exist_ok=True)

    def _agent_settings(self, name: str):
        return getattr(self.cfg.settings.agents, name)

    def run_extract(self) -> str:
        extractor = Extractor(self.cfg.paths)
        report = extractor.run()
        if self.options.combine_context:
            extractor.combine()
        return f"{len(report['files'])} files"

    def run_classify(self) -> str:
        agent = Classifier(self.ctx, self._agent_settings("classifier"), self.clients.get("classifier"))
        result = agent.execute()
        return f"{result.documents_processed} docs, {len(result.missing_critical_info)} gaps"

    def run_synthesize(self) -> str:
        agent = Synthesizer(self.ctx, self._agent_settings("synthesizer"), self.clients.get("synthesizer"))
        synthesis = agent.execute()
        return f"{len(synthesis.get('slides') or [])} slides"

    def run_generate(self) -> str:
        generator = DeckGenerator(self.ctx, self._agent_settings("generator"), self.clients.get("generator"))
        deck = generator.execute()
        if self.cfg.skip_images:
            logger.info("Skipping image generation (--skip-images)")
            return f"{len(deck.slides)} slides, images skipped"

        images = ImageGenerator(self.ctx, self._agent_settings("image_generator"), self.clients.get("image_generator"))
        manifest = images.execute()
        if self.cfg.dry_run:
            return f"{len(deck.slides)} slides, {len(manifest['images'])} images (dry run)"

        deck = attach_images(deck, manifest, "intermediate/generated-images.json")
        write_json(self.cfg.paths.output / "deck-config.json", deck.model_dump())
        ok = len([v for v in manifest["images"].values() if v])
        return f"{len(deck.slides)} slides, {ok}/{len(manifest['images'])} images"

    def run_render(self) -> str:
        if self.cfg.dry_run:
            deck = validate_model(DeckConfig, read_json(self.cfg.paths.output / "deck-config.json"), "deck-config.json")
            logger.info("[DRY-RUN] would render %s slides to %s", len(deck.slides), self.cfg.paths.deck_file)
            return "dry run"
        path = Renderer(self.cfg.paths).run()
        return str(path.relative_to(self.cfg.paths.root))

    def run_phase(self, name: str) -> PhaseResult:
        handler = getattr(self, f"run_{name}")
        self.console.print(Panel(PHASE_TITLES[name], title=f"Phase {PHASES.index(name) + 1}", expand=False))
        cost_before = self.ctx.cost_tracker.total_cost
        start = time.monotonic()
        detail = handler()
        result = PhaseResult(
            name=name,
            elapsed=time.monotonic() - start,
            cost=self.ctx.cost_tracker.total_cost - cost_before,
            detail=detail,
        )
        self.results.append(result)
        logger.info("%s complete in %.1fs ($%.4f)", PHASE_TITLES[name], result.elapsed, result.cost)
        return result

    def print_summary(self) -> None:
        table = Table(title="PIPELINE SUMMARY")
        table.add_column("Phase")
        table.add_column("Elapsed", justify="right")
        table.add_column("Cost", justify="right")
        table.add_column("Result")
        for r in self.results:
            table.add_row(PHASE_TITLES[r.name], f"{r.elapsed:.1f}s", f"${r.cost:.4f}", r.detail)
        table.add_row("Total", "", f"${self.ctx.cost_tracker.total_cost:.4f}", "")
        self.console.print(table)

    def run(self) -> List[PhaseResult]:
        phases = self.phases_to_run()
        if not phases:
            logger.warning("Nothing to run: every phase is skipped")
            return []
        self.sanity_checks()
        try:
            for name in phases:
                self.run_phase(name)
        finally:
            self.ctx.finish()
        self.print_summary()
        return self.results
