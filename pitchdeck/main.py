"""CLI entrypoint for running the pitch deck pipeline from the terminal."""
from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from rich.console import Console
from rich.panel import Panel

from . import __version__
from .errors import PipelineError
from .logging_utils import setup_logging
from .pipeline import PHASE_TITLES, PHASES, Pipeline, PipelineOptions
from .pipeline_common import PipelinePaths, RunConfig, load_settings
from .pipeline_synthesize import REASONING_MODES
from .review_prompts import list_prompts, view_prompt

logger = logging.getLogger("pitchdeck")


def print_helper() -> None:
    print("pitchdeck help")
    print("")
    print("Quick start:")
    print("  pitchdeck run --root ./my-deck")
    print("  pitchdeck run --dry-run")
    print("  pitchdeck run --from-phase 3 --mode deep_research --yes")
    print("  pitchdeck classify --dry-run -v")
    print("")
    print("Project layout (under --root, $PITCHDECK_ROOT_DIR or the current directory):")
    print("  context-refs/                source PDFs, .md and .txt files")
    print("  user-inputs/story.md         narrative arc")
    print("  user-inputs/style-guide.md   style constraints")
    print("  pipeline-config.json         optional settings")
    print("")
    print("Phases: " + ", ".join(f"{i}={p}" for i, p in enumerate(PHASES, 1)))
    print("")
    print("API keys: ANTHROPIC_API_KEY (classify), OPENAI_API_KEY (synthesize), GOOGLE_AI_API_KEY (generate)")


def _common(p: argparse.ArgumentParser) -> None:
    p.add_argument("--root", default=None, help="Project root (default: $PITCHDECK_ROOT_DIR or current directory)")
    p.add_argument("-v", "--verbose", action="store_true", help="Verbose logging and stack traces")
    p.add_argument("--dry-run", action="store_true", help="Build and log prompts without calling any provider")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="pitchdeck", description="Turn source documents into an investor pitch deck.")
    p.add_argument("--version", action="version", version=f"pitchdeck {__version__}")
    sub = p.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run the full pipeline")
    _common(run)
    run.add_argument("--mode", choices=REASONING_MODES, default=None, help="Synthesis reasoning mode")
    run.add_argument("--from-phase", type=int, default=1, help="Start at phase N (1-5)")
    run.add_argument("--skip-extract", action="store_true", help="Skip phase 1")
    run.add_argument("--skip-classify", action="store_true", help="Skip phase 2")
    run.add_argument("--skip-synthesize", action="store_true", help="Skip phase 3")
    run.add_argument("--skip-images", action="store_true", help="Generate the deck config without images")
    run.add_argument("--combine", action="store_true", help="Also write output/combined-context.txt")
    run.add_argument("-y", "--yes", action="store_true", help="Continue even if API keys are missing")
    run.add_argument("--non-interactive", action="store_true", help="Fail instead of prompting")

    extract = sub.add_parser("extract", help="Phase 1: extract text from context-refs/")
    _common(extract)
    extract.add_argument("--combine", action="store_true", help="Also write output/combined-context.txt")

    classify = sub.add_parser("classify", help="Phase 2: classify extracted text by slide type")
    _common(classify)

    synth = sub.add_parser("synthesize", help="Phase 3: synthesize slide copy with citations")
    _common(synth)
    synth.add_argument("--mode", choices=REASONING_MODES, default=None, help="Reasoning mode")

    gen = sub.add_parser("generate", help="Phase 4: polish deck config and generate images")
    _common(gen)
    gen.add_argument("--skip-images", action="store_true", help="Skip image generation")

    render = sub.add_parser("render", help="Phase 5: render output/investor-deck.pptx")
    _common(render)

    prompts = sub.add_parser("prompts", help="List or view logged prompts")
    prompts.add_argument("--root", default=None, help="Project root")
    prompts.add_argument("--agent", default=None, help="Only list prompts from this agent")
    group = prompts.add_mutually_exclusive_group()
    group.add_argument("--list", action="store_true", help="List prompts (default)")
    group.add_argument("--view", metavar="NAME", help="Print a prompt by filename prefix or index")
    return p


def _root(arg: Optional[str]) -> Path:
    return Path(arg or os.environ.get("PITCHDECK_ROOT_DIR", ".")).expanduser().resolve()


def _options(args: argparse.Namespace) -> PipelineOptions:
    if args.command == "run":
        skip = {name for name in ("extract", "classify", "synthesize") if getattr(args, f"skip_{name}")}
        return PipelineOptions(
            from_phase=args.from_phase,
            skip=frozenset(skip),
            assume_yes=args.yes,
            non_interactive=args.non_interactive,
            combine_context=args.combine,
        )
    index = PHASES.index(args.command) + 1
    return PipelineOptions(
        from_phase=index,
        skip=frozenset(PHASES[index:]),
        non_interactive=True,
        combine_context=getattr(args, "combine", False),
    )


def main(argv: Optional[List[str]] = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    if argv and argv[0] == "help":
        print_helper()
        return 0

    args = build_parser().parse_args(argv)
    root = _root(args.root)
    load_dotenv(root / ".env", override=False)
    paths = PipelinePaths.from_root(root)
    console = Console()

    if args.command == "prompts":
        setup_logging(False)
        try:
            if args.view:
                view_prompt(paths.prompts, args.view, console=console)
            else:
                list_prompts(paths.prompts, agent=args.agent, console=console)
            return 0
        except PipelineError as exc:
            console.print(Panel(str(exc), title="Prompts", border_style="red"))
            return 1

    setup_logging(args.verbose, log_path=paths.intermediate / "run.log")
    title = "Pipeline" if args.command == "run" else PHASE_TITLES[args.command]

    try:
        settings = load_settings(paths.config_file)
        cfg = RunConfig(
            paths=paths,
            settings=settings,
            dry_run=args.dry_run,
            verbose=args.verbose,
            reasoning_mode=getattr(args, "mode", None) or "extended_thinking",
            skip_images=getattr(args, "skip_images", False),
        )
        if cfg.dry_run:
            logger.info("[DRY-RUN] No provider calls will be made")
        pipeline = Pipeline(cfg, _options(args), console=console)
        pipeline.run()
        console.print(f"\nOutput directory: {paths.output}")
        if paths.deck_file.exists():
            console.print(f"Deck: {paths.deck_file}")
        return 0
    except PipelineError as exc:
        console.print(Panel(str(exc), title=f"{title} Failed", border_style="red"))
        if args.verbose:
            console.print_exception()
        return 1
    except Exception:
        logger.exception("Unhandled error in pipeline run")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
