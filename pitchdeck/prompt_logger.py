"""Write every prompt (and dry-run would-call) to disk with a manifest."""
from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any, Dict, List

from .llm import estimate_tokens
from .time_utils import file_stamp, now_iso

logger = logging.getLogger("pitchdeck")

MANIFEST_NAME = "prompt-manifest.json"

_HEADER_FIELDS = (
    ("model", "Model"),
    ("temperature", "Temperature"),
    ("max_tokens", "Max Tokens"),
    ("document", "Document"),
    ("image_type", "Image Type"),
)


def _slug(s: str) -> str:
    return re.sub(r"[^a-zA-Z0-9]+", "-", s or "").strip("-").lower() or "prompt"


class PromptLogger:
    def __init__(self, root: Path, dry_run: bool = False) -> None:
        self.dir = Path(root) / "intermediate" / "prompts"
        self.dir.mkdir(parents=True, exist_ok=True)
        self.dry_run = dry_run
        self.entries: List[Dict[str, Any]] = []
        self._seq = 0

    def log_prompt(self, agent: str, prompt_type: str, content: str, **metadata: Any) -> Path:
        ts = now_iso()
        self._seq += 1
        filename = f"{file_stamp()}_{self._seq:03d}_{_slug(agent)}_{_slug(prompt_type)}.md"
        tokens = estimate_tokens(content)

        lines = [f"# Prompt: {agent} / {prompt_type}", ""]
        lines.append(f"- **Agent**: {agent}")
        lines.append(f"- **Type**: {prompt_type}")
        for key, label in _HEADER_FIELDS:
            if metadata.get(key) is not None:
                lines.append(f"- **{label}**: {metadata[key]}")
        lines.append(f"- **Timestamp**: {ts}")
        lines.append(f"- **Token Estimate**: {tokens}")
        lines.append(f"- **Characters**: {len(content)}")
        if self.dry_run:
            lines.append("- **Dry Run**: yes")
        lines += ["", "---", "", content, ""]

        path = self.dir / filename
        path.write_text("\n".join(lines), encoding="utf-8")

        self.entries.append(
            {
                "filename": filename,
                "agent": agent,
                "type": prompt_type,
                "timestamp": ts,
                "token_estimate": tokens,
                "characters": len(content),
                "metadata": {k: v for k, v in metadata.items() if v is not None},
            }
        )
        logger.debug("Logged prompt: %s", path)
        return path

    def _load_manifest(self) -> List[Dict[str, Any]]:
        path = self.dir / MANIFEST_NAME
        if not path.exists():
            return []
        try:
            return list(json.loads(path.read_text(encoding="utf-8")).get("prompts", []))
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable prompt manifest %s: %s", path, exc)
            return []

    def save_manifest(self) -> Path:
        """Merge this run's prompts into the manifest on disk."""
        merged = {p.get("filename"): p for p in self._load_manifest()}
        for entry in self.entries:
            merged[entry["filename"]] = entry
        prompts = sorted(merged.values(), key=lambda p: p.get("timestamp", ""))

        by_agent: Dict[str, Dict[str, Any]] = {}
        for p in prompts:
            slot = by_agent.setdefault(p.get("agent", "unknown"), {"count": 0, "total_tokens": 0, "prompts": []})
            slot["count"] += 1
            slot["total_tokens"] += int(p.get("token_estimate", 0))
            slot["prompts"].append(p.get("filename"))

        manifest = {
            "generated_at": now_iso(),
            "total_prompts": len(prompts),
            "total_tokens_estimate": sum(int(p.get("token_estimate", 0)) for p in prompts),
            "total_characters": sum(int(p.get("characters", 0)) for p in prompts),
            "prompts_by_agent": by_agent,
            "prompts": prompts,
        }
        path = self.dir / MANIFEST_NAME
        with path.open("w", encoding="utf-8") as f:
            json.dump(manifest, f, indent=2, ensure_ascii=False)
        return path
