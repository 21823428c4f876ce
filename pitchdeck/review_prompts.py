"""List and view logged prompts."""
from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Optional

from rich.console import Console
from rich.table import Table

from .errors import InputValidationError
from .prompt_logger import MANIFEST_NAME


def load_manifest(prompts_dir: Path) -> Dict[str, Any]:
    path = Path(prompts_dir) / MANIFEST_NAME
    if not path.exists():
        raise InputValidationError([f"No prompt manifest at {path}; run a phase with --dry-run or logging.prompts enabled"])
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except ValueError as exc:
        raise InputValidationError([f"Prompt manifest {path} is not valid JSON: {exc}"]) from exc


def list_prompts(prompts_dir: Path, agent: Optional[str] = None, console: Optional[Console] = None) -> int:
    console = console or Console()
    manifest = load_manifest(prompts_dir)
    table = Table(title=f"PROMPTS ({manifest.get('total_prompts', 0)})")
    table.add_column("#", justify="right")
    table.add_column("File")
    table.add_column("Agent")
    table.add_column("Type")
    table.add_column("Tokens", justify="right")
    shown = 0
    for i, p in enumerate(manifest.get("prompts", []), 1):
        if agent and p.get("agent") != agent:
            continue
        table.add_row(str(i), p.get("filename", ""), p.get("agent", ""), p.get("type", ""), str(p.get("token_estimate", 0)))
        shown += 1
    console.print(table)
    for name, info in (manifest.get("prompts_by_agent") or {}).items():
        console.print(f"{name}: {info.get('count', 0)} prompts, ~{info.get('total_tokens', 0)} tokens")
    console.print(f"Total: ~{manifest.get('total_tokens_estimate', 0)} tokens")
    return shown


def view_prompt(prompts_dir: Path, name: str, console: Optional[Console] = None) -> str:
    """Print a prompt by filename, filename prefix, or 1-based manifest index."""
    console = console or Console()
    manifest = load_manifest(prompts_dir)
    prompts = manifest.get("prompts", [])
    match = None
    if name.isdigit() and 1 <= int(name) <= len(prompts):
        match = prompts[int(name) - 1]
    else:
        match = next((p for p in prompts if p.get("filename", "").startswith(name)), None)
    if match is None:
        raise InputValidationError([f"No logged prompt matches {name!r}"])
    text = (Path(prompts_dir) / match["filename"]).read_text(encoding="utf-8")
    console.print(text, markup=False, highlight=False)
    return text
