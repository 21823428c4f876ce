from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

from .errors import AgentError
from .models import SLIDE_TYPES, ClassificationResult, SlideContext, ValidationReport
from .pipeline_common import BaseAgent, logger, read_json, read_text, validate_model, write_json
from .time_utils import now_iso

REASONING_MODES = ("standard", "extended_thinking", "deep_research")
LOW_CONFIDENCE = 0.7
MAX_SOURCES_PER_SLIDE = 5
MAX_ITEMS_PER_SOURCE = 10
MAX_CONFLICTS = 10

DEFAULT_MODE_SUFFIXES = {
    "standard": "Write the slides directly from the classified content.",
    "extended_thinking": (
        "Before writing each slide, weigh the competing sources, resolve conflicts explicitly "
        "and record that reasoning in reasoning_trace."
    ),
    "deep_research": (
        "Cross-check every figure across sources, prefer the most recent and most specific data, "
        "and flag anything you could not verify in reasoning_trace."
    ),
}

SYNTHESIZER_SYSTEM_PROMPT = f"""You write investor pitch deck copy from pre-classified source material.

Produce one slide per slide type, in this order: {", ".join(SLIDE_TYPES)}.

Return ONLY JSON:
{{
  "company": {{"name": "string", "tagline": "string"}},
  "slides": [
    {{
      "type": "<slide_type>",
      "headline": "string",
      "body": "string",
      "bullets": ["string"],
      "metrics": [{{"label": "string", "value": "string"}}],
      "citations": [{{"fact": "string", "source": "<filename>", "location": "string", "confidence": 0.0}}],
      "reasoning_trace": "string"
    }}
  ]
}}

Every number and factual claim needs a citation whose source is one of the provided filenames.
Write [TBD] where the sources do not support a claim.
"""


def format_conflict(conflict: Any) -> str:
    if isinstance(conflict, str):
        return conflict
    if not isinstance(conflict, dict):
        return str(conflict)
    inner = conflict.get("conflict")
    if inner is not None and len(conflict) <= 2:
        text = format_conflict(inner)
        return f"{text} ({conflict['source']})" if conflict.get("source") else text

    parts = []
    if conflict.get("type"):
        parts.append(f"[{conflict['type']}]")
    if conflict.get("description"):
        parts.append(str(conflict["description"]))
    if conflict.get("field") and isinstance(conflict.get("values"), list):
        parts.append(f"{conflict['field']}: {' vs '.join(str(v) for v in conflict['values'])}")
    if conflict.get("recommendation"):
        parts.append(f"recommendation: {conflict['recommendation']}")
    if conflict.get("severity"):
        parts.append(f"severity={conflict['severity']}")
    return " ".join(parts) or json.dumps(conflict, ensure_ascii=False)


def format_slide_context(slide_type: str, slide: SlideContext) -> str:
    q = slide.data_quality
    lines = [
        f"### {slide_type.upper()}",
        "",
        f"Data Quality: {q.completeness * 100:.0f}% complete, {q.source_count} sources",
        "",
    ]
    for source in slide.relevant_sources[:MAX_SOURCES_PER_SLIDE]:
        lines.append(f"**Source: {source.filename}** (relevance: {source.relevance_score:.2f})")
        items = [c for c in slide.all_content if getattr(c, "source", None) == source.filename]
        for item in items[:MAX_ITEMS_PER_SOURCE]:
            line = f"- [{item.type}] {item.content}"
            if item.confidence:
                line += f" (confidence: {item.confidence:.2f})"
            lines.append(line)
        lines.append("")
    if slide.conflicts:
        lines.append("**Conflicts to resolve:**")
        lines.extend(f"- {format_conflict(c)}" for c in slide.conflicts)
    return "\n".join(lines)


def extract_citations(synthesis: Dict[str, Any]) -> Dict[str, Any]:
    by_slide: Dict[str, List[Dict[str, Any]]] = {}
    by_source: Dict[str, List[Dict[str, Any]]] = {}
    low: List[Dict[str, Any]] = []
    total = 0
    for slide in synthesis.get("slides") or []:
        if not isinstance(slide, dict):
            continue
        slide_type = str(slide.get("type", "unknown"))
        cites = [c for c in slide.get("citations") or [] if isinstance(c, dict)]
        by_slide[slide_type] = cites
        total += len(cites)
        for c in cites:
            entry = {**c, "slide": slide_type}
            by_source.setdefault(str(c.get("source", "unknown")), []).append(entry)
            try:
                conf = float(c.get("confidence", 1.0))
            except (TypeError, ValueError):
                conf = 0.0
            if conf < LOW_CONFIDENCE:
                low.append(entry)
    return {
        "extracted_at": now_iso(),
        "total_citations": total,
        "by_slide": by_slide,
        "by_source": by_source,
        "low_confidence": low,
    }


def validate_synthesis(data: Any, known_sources: Optional[List[str]] = None) -> ValidationReport:
    report = ValidationReport()
    if not isinstance(data, dict) or not isinstance(data.get("slides"), list):
        report.errors.append("Missing slides array")
        return report
    if not (data.get("company") or {}).get("name"):
        report.warnings.append("Missing company.name")

    slides = [s for s in data["slides"] if isinstance(s, dict)]
    present = {s.get("type") for s in slides}
    for t in SLIDE_TYPES:
        if t not in present:
            report.warnings.append(f"Missing slide type: {t}")

    known = set(known_sources or [])
    for s in slides:
        cites = [c for c in s.get("citations") or [] if isinstance(c, dict)]
        if not cites:
            report.warnings.append(f"Slide {s.get('type', '?')} has no citations")
        if known:
            for c in cites:
                src = c.get("source")
                if src and src not in known:
                    report.warnings.append(f"Slide {s.get('type', '?')} cites unknown source: {src}")
    return report


class Synthesizer(BaseAgent):
    name = "synthesizer"
    provider = "openai"
    default_model = "gpt-5.2"
    default_max_tokens = 16384
    default_temperature = 0.3

    def __init__(self, ctx, settings=None, client=None, reasoning_mode: Optional[str] = None) -> None:
        super().__init__(ctx, settings, client)
        self.reasoning_mode = reasoning_mode or ctx.config.reasoning_mode
        if self.reasoning_mode not in REASONING_MODES:
            raise AgentError(
                f"Unknown reasoning mode: {self.reasoning_mode} (choose from {', '.join(REASONING_MODES)})"
            )

    def system_prompt(self) -> str:
        base = self.load_system_prompt("synthesizer-system.md", SYNTHESIZER_SYSTEM_PROMPT)
        modes = self.ctx.config.settings.reasoning_modes
        suffix = modes[self.reasoning_mode].system_suffix if self.reasoning_mode in modes else ""
        suffix = suffix or DEFAULT_MODE_SUFFIXES[self.reasoning_mode]
        return f"{base}\n\n## Active Reasoning Mode: {self.reasoning_mode}\n{suffix}"

    def build_user_prompt(self, classified: ClassificationResult, story: str, style_guide: str) -> str:
        settings = self.ctx.config.settings
        company = settings.company
        contexts = [format_slide_context(t, classified.slides[t]) for t in SLIDE_TYPES if t in classified.slides]
        gaps = "\n".join(f"- {m}" for m in classified.missing_critical_info) or "- None identified"
        conflicts = (
            "\n".join(f"- {format_conflict(c)}" for c in classified.conflicts[:MAX_CONFLICTS]) or "- None identified"
        )
        return (
            "## Company Information\n\n"
            f"Name: {company.get('name') or '[Company Name]'}\n"
            f"Short Name: {company.get('short_name', '')}\n\n"
            "Design Settings:\n```json\n"
            f"{json.dumps(settings.design, indent=2, ensure_ascii=False)}\n```\n\n"
            f"## Desired Story Arc\n\n{story}\n\n"
            f"## Style Guide Constraints\n\n{style_guide}\n\n"
            "## Classified Context by Slide Type\n\n" + "\n\n---\n\n".join(contexts) + "\n\n"
            f"## Missing Critical Information\n\n{gaps}\n\n"
            f"## Data Conflicts\n\n{conflicts}\n\n"
            "## Instructions\n\n"
            "Synthesize the classified content into all 12 slides. Use the most relevant sources, "
            "cite every fact and metric, include a reasoning_trace per slide, apply the style guide "
            "and follow the story arc. Return ONLY valid JSON in a ```json code block."
        )

    def mock_synthesis(self) -> Dict[str, Any]:
        company = self.ctx.config.settings.company
        return {
            "company": {"name": company.get("name") or "[DRY-RUN] Company", "tagline": "[DRY-RUN] Tagline"},
            "slides": [
                {
                    "type": t,
                    "headline": f"[DRY-RUN] {t.replace('_', ' ').title()}",
                    "body": f"[DRY-RUN] Mock synthesized content for {t}",
                    "citations": [
                        {"fact": f"[DRY-RUN] Mock fact for {t}", "source": "mock-source.txt", "confidence": 0.5}
                    ],
                    "reasoning_trace": "[DRY-RUN] No model call was made.",
                }
                for t in SLIDE_TYPES
            ],
            "synthetic": True,
        }

    def execute(self) -> Dict[str, Any]:
        classified = validate_model(
            ClassificationResult, read_json(self.paths.artifact("classified-context.json")), "classified-context.json"
        )
        story = read_text(self.paths.story)
        style_guide = read_text(self.paths.style_guide)
        system = self.system_prompt()
        prompt = self.build_user_prompt(classified, story, style_guide)
        logger.info("Reasoning mode: %s | prompt %sKB", self.reasoning_mode, round(len(prompt) / 1024))

        if self.dry_run:
            self.log_prompt("system", system)
            self.log_prompt("user", prompt)
            self.log_dry_run("synthesize", prompt)
            synthesis = self.mock_synthesis()
        else:
            synthesis = self.call_json(system, prompt, "synthesize")

        known = [p.name for p in self.paths.extracted_text.glob("*.txt")]
        report = validate_synthesis(synthesis, known_sources=None if self.dry_run else known)
        for w in report.warnings:
            logger.warning("Synthesis: %s", w)
        if not report.valid:
            raise AgentError("Synthesis output invalid: " + "; ".join(report.errors))

        synthesis.setdefault("metadata", {})
        synthesis["metadata"].update(
            {
                "synthesized_at": now_iso(),
                "reasoning_mode": self.reasoning_mode,
                "model": self.model,
                "cost_incurred": self.ctx.cost_tracker.total_cost,
                "warnings": report.warnings,
            }
        )
        write_json(self.paths.artifact("synthesis-output.json"), synthesis)
        write_json(self.paths.artifact("citations.json"), extract_citations(synthesis))
        return synthesis
