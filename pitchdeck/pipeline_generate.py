from __future__ import annotations

import json
from typing import Any, Dict, Optional

from .errors import AgentError
from .models import SLIDE_TYPES, DeckConfig, ValidationReport
from .pipeline_common import BaseAgent, logger, read_json, read_text, validate_model, write_json
from .time_utils import now_iso

IMAGE_DIMENSIONS = "1920x1080"
DEFAULT_COLORS = {"primary_color": "0A0A0A", "secondary_color": "1E3A5F", "accent_color": "5E5CE6"}

GENERATOR_SYSTEM_PROMPT = """You are the final editor of an investor pitch deck.

You receive synthesized slide copy with citations. Polish it for investor impact while
keeping every citation, every reasoning_trace and the slide order intact. Keep names,
terms and metrics consistent across slides. Never invent numbers.

Return ONLY JSON with the same shape as the input:
{"company": {...}, "design": {...}, "slides": [{"type": "...", ...}], "metadata": {...}}
"""

STORY_ARC: Dict[str, Dict[str, Any]] = {
    "title": {"position": 1, "phase": "Opening Hook", "tone": "Bold, confident"},
    "purpose": {"position": 2, "phase": "Opening Hook", "tone": "Mission-driven, authoritative"},
    "problem": {"position": 3, "phase": "Act 1: The Problem", "tone": "Urgent, compelling"},
    "solution": {"position": 4, "phase": "Act 2: The Solution", "tone": "Confident, clear"},
    "why_now": {"position": 5, "phase": "Act 3: Why Now", "tone": "Timely, opportunistic"},
    "market_size": {"position": 6, "phase": "Act 4: The Opportunity", "tone": "Ambitious, data-driven"},
    "competition": {"position": 7, "phase": "Act 4: The Opportunity", "tone": "Strategic, differentiated"},
    "product": {"position": 8, "phase": "Act 2: The Solution", "tone": "Technical, innovative"},
    "business_model": {"position": 9, "phase": "Act 4: The Opportunity", "tone": "Pragmatic, scalable"},
    "traction": {"position": 10, "phase": "Validation", "tone": "Proven, momentum-driven"},
    "team": {"position": 11, "phase": "Validation", "tone": "Credible, experienced"},
    "ask": {"position": 12, "phase": "Call to Action", "tone": "Direct, compelling"},
}


def _first(slide: Dict[str, Any], *keys: str, default: Any = "") -> Any:
    for k in keys:
        v = slide.get(k)
        if v:
            return v
    return default


def slide_type_template(slide_type: str, slide: Dict[str, Any], company: Dict[str, Any]) -> Dict[str, Any]:
    """Description, content fields, layout and style notes for one slide image."""
    headline = slide.get("headline")
    if slide_type == "title":
        return {
            "description": "Full title slide with company name and tagline centered on a dark background",
            "content": {
                "company_name": company.get("name") or slide.get("company_name") or "[Company Name]",
                "tagline": _first(slide, "tagline", "body"),
                "subtitle": slide.get("subtitle", ""),
            },
            "layout": "centered-hero",
            "style_notes": "Dark background. Company name in large white type. Tagline in italic below, with a subtle accent line.",
        }
    if slide_type == "purpose":
        return {
            "description": "Purpose statement slide with a left accent bar",
            "content": {"headline": headline or "OUR PURPOSE", "statement": _first(slide, "statement", "mission", "body")},
            "layout": "statement-hero",
            "style_notes": "Light background, left accent bar, one large centered statement.",
        }
    if slide_type == "problem":
        return {
            "description": "Problem slide with headline, bullets and an optional statistic callout",
            "content": {
                "headline": headline or "THE PROBLEM",
                "bullets": _first(slide, "bullets", "pain_points", default=[]),
                "statistic": slide.get("statistic"),
                "statistic_label": slide.get("statistic_label"),
            },
            "layout": "headline-bullets-stat",
            "style_notes": "At most 3 bullets of 12 words. Statistic callout in a large monospace face if present.",
        }
    if slide_type == "solution":
        return {
            "description": "Solution slide with value proposition and key benefits",
            "content": {
                "headline": headline or "OUR SOLUTION",
                "value_prop": _first(slide, "value_prop", "value_proposition", "body"),
                "benefits": _first(slide, "benefits", "bullets", default=[]),
            },
            "layout": "value-prop-benefits",
            "style_notes": "Bold headline, larger value proposition, 3-4 benefits with clear hierarchy.",
        }
    if slide_type == "why_now":
        return {
            "description": "Why-now slide with trend cards showing market timing",
            "content": {"headline": headline or "WHY NOW", "trends": _first(slide, "trends", "drivers", "bullets", default=[])},
            "layout": "trend-cards",
            "style_notes": "Three horizontal cards, each with title and description. Accent color on card headers.",
        }
    if slide_type == "market_size":
        return {
            "description": "Market size slide with a TAM/SAM/SOM visualization",
            "content": {
                "headline": headline or "MARKET OPPORTUNITY",
                "tam": slide.get("tam", ""),
                "tam_label": slide.get("tam_label") or "Total Addressable Market",
                "sam": slide.get("sam", ""),
                "sam_label": slide.get("sam_label") or "Serviceable Addressable Market",
                "som": slide.get("som", ""),
                "som_label": slide.get("som_label") or "Serviceable Obtainable Market",
            },
            "layout": "nested-circles",
            "style_notes": "Nested concentric circles, TAM outermost. Large dollar amounts with clear labels.",
        }
    if slide_type == "competition":
        return {
            "description": "Competitive positioning 2x2 matrix",
            "content": {
                "headline": headline or "COMPETITIVE POSITIONING",
                "x_axis_label": slide.get("x_axis_label") or "Feature A",
                "y_axis_label": slide.get("y_axis_label") or "Feature B",
                "competitors": slide.get("competitors") or [],
                "company_position": {"x": 0.85, "y": 0.85},
            },
            "layout": "2x2-matrix",
            "style_notes": "Company dot in the upper-right quadrant in the accent color; competitors as grey labelled dots.",
        }
    if slide_type == "product":
        return {
            "description": "Product slide with architecture or feature visualization",
            "content": {
                "headline": headline or "THE PRODUCT",
                "description": _first(slide, "description", "body"),
                "features": _first(slide, "features", "bullets", default=[]),
            },
            "layout": "product-features",
            "style_notes": "Clean product visual with numbered features on the right.",
        }
    if slide_type == "business_model":
        return {
            "description": "Business model slide with revenue streams and unit economics",
            "content": {
                "headline": headline or "BUSINESS MODEL",
                "revenue_streams": slide.get("revenue_streams") or [],
                "unit_economics": slide.get("unit_economics") or [],
            },
            "layout": "revenue-cards",
            "style_notes": "Revenue stream cards; unit economics as key metrics.",
        }
    if slide_type == "traction":
        return {
            "description": "Traction slide with key metrics and a timeline",
            "content": {
                "headline": headline or "TRACTION",
                "metrics": slide.get("metrics") or [],
                "milestones": slide.get("milestones") or [],
            },
            "layout": "metrics-timeline",
            "style_notes": "Large metric callouts with a horizontal timeline below; accent color on milestone markers.",
        }
    if slide_type == "team":
        return {
            "description": "Team slide with founder and leadership cards",
            "content": {"headline": headline or "THE TEAM", "members": _first(slide, "members", "team", default=[])},
            "layout": "team-cards",
            "style_notes": "Cards with photo placeholder circles, name, title and one key credential.",
        }
    if slide_type == "ask":
        return {
            "description": "Ask slide with funding amount, use of funds and milestones",
            "content": {
                "headline": headline or "THE ASK",
                "amount": _first(slide, "amount", "funding_amount"),
                "use_of_funds": slide.get("use_of_funds") or [],
                "milestones": _first(slide, "milestones", "next_milestones", default=[]),
            },
            "layout": "ask-funds-milestones",
            "style_notes": "Funding amount as the hero; use of funds as segmented bar; milestones below.",
        }
    return {
        "description": f"Full slide for {slide_type}",
        "content": {k: v for k, v in slide.items() if k not in ("citations", "reasoning_trace")},
        "layout": "generic",
        "style_notes": "Professional investor presentation styling.",
    }


def style_essentials(design: Dict[str, Any], style_guide: str, max_chars: int = 1500) -> str:
    if not style_guide and not design:
        return ""
    lines = ["## MANDATORY VISUAL SPECIFICATIONS", ""]
    colors = {k: v for k, v in design.items() if k.endswith("_color")}
    if colors:
        lines.append("### Colors")
        lines.extend(f"- {k.replace('_', ' ').title()}: #{str(v).lstrip('#')}" for k, v in colors.items())
        lines.append("")
    fonts = {k: v for k, v in design.items() if "font" in k}
    if fonts:
        lines.append("### Typography")
        lines.extend(f"- {k.replace('_', ' ').title()}: {v}" for k, v in fonts.items())
        lines.append("")
    if style_guide:
        excerpt = style_guide.strip()[:max_chars]
        lines += ["### Style guide excerpt", "", excerpt]
    return "\n".join(lines).strip()


def funds_segment(item: Any) -> str:
    """``{"category": "R&D", "percent": 40}`` reads as ``R&D: 40%``."""
    if not isinstance(item, dict):
        return str(item)
    category = item.get("category") or item.get("name") or item.get("label") or ""
    percent = item.get("percent", item.get("percentage"))
    if percent in (None, ""):
        return str(category)
    return f"{category}: {str(percent).rstrip('%')}%"


def build_image_prompts(deck: Dict[str, Any], style_guide: str) -> Dict[str, Dict[str, Any]]:
    design = {**DEFAULT_COLORS, **(deck.get("design") or {})}
    company = deck.get("company") or {}
    essentials = style_essentials(design, style_guide)
    prompts: Dict[str, Dict[str, Any]] = {}
    for slide in deck.get("slides") or []:
        slide_type = slide.get("type")
        if not slide_type:
            continue
        arc = STORY_ARC.get(slide_type, {"position": 0, "phase": "General", "tone": "Professional"})
        tmpl = slide_type_template(slide_type, slide, company)
        prompts[slide_type] = {
            "slide_type": slide_type,
            "description": tmpl["description"],
            "content": tmpl["content"],
            "layout": tmpl["layout"],
            "style": (
                "Professional investor presentation. Use exact colors: "
                f"primary #{design['primary_color']}, secondary #{design['secondary_color']}, "
                f"accent #{design['accent_color']}. {tmpl['style_notes']}"
            ),
            "style_notes": tmpl["style_notes"],
            "dimensions": IMAGE_DIMENSIONS,
            "narrative_context": (
                "## NARRATIVE CONTEXT\n"
                f"Slide position: {arc['position']} of {len(SLIDE_TYPES)}\n"
                f"Story arc phase: {arc['phase']}\n"
                f"Emotional tone: {arc['tone']}"
            ),
            "style_guide_reference": essentials,
        }

    ask = next((s for s in deck.get("slides") or [] if s.get("type") == "ask"), None)
    funds = (ask or {}).get("use_of_funds") or []
    segments = [funds_segment(u) for u in (funds if isinstance(funds, list) else [funds])]
    if segments:
        prompts["use_of_funds"] = {
            "slide_type": "use_of_funds",
            "description": "Horizontal stacked bar or pie chart showing the use of funds allocation",
            "content": {"headline": "USE OF FUNDS", "use_of_funds": segments},
            "layout": "funds-chart",
            "style": (
                "Clean financial graphic in the brand palette: "
                f"primary #{design['primary_color']}, accent #{design['accent_color']}. Clear percentage labels."
            ),
            "style_notes": "Clear percentage labels, no decorative clutter.",
            "dimensions": IMAGE_DIMENSIONS,
            "style_guide_reference": essentials,
        }
    return prompts


def validate_deck_config(data: Any) -> ValidationReport:
    report = ValidationReport()
    if not isinstance(data, dict):
        report.errors.append("Deck config is not a JSON object")
        return report
    company = data.get("company")
    if not (isinstance(company, dict) and company.get("name")):
        report.errors.append("Missing company.name")
    if not data.get("design"):
        report.warnings.append("Missing design object")
    slides = data.get("slides")
    if not isinstance(slides, list):
        report.errors.append("Missing or invalid slides array")
        return report
    found = {s.get("type") for s in slides if isinstance(s, dict)}
    for t in SLIDE_TYPES:
        if t not in found:
            report.warnings.append(f"Missing slide type: {t}")
    tbd = json.dumps(slides, ensure_ascii=False).count("[TBD")
    if tbd:
        report.warnings.append(f"Found {tbd} [TBD] entries in slides")
    return report


def attach_images(deck: DeckConfig, manifest: Dict[str, Any], manifest_path: Optional[str] = None) -> DeckConfig:
    """Return a copy of ``deck`` with generated image paths set on matching slides."""
    if deck.metadata.get("image_manifest"):
        raise AgentError("Deck already has an image manifest attached; regenerate the deck config first")
    images = {k: v for k, v in (manifest.get("images") or {}).items() if v}
    slides = []
    for slide in deck.slides:
        updates: Dict[str, Any] = {}
        if slide.type in images:
            updates["image"] = images[slide.type]
        if slide.type == "ask" and images.get("use_of_funds"):
            updates["use_of_funds_image"] = images["use_of_funds"]
        slides.append(type(slide).model_validate({**slide.model_dump(), **updates}) if updates else slide)
    metadata = {
        **deck.metadata,
        "image_manifest": manifest_path or "intermediate/generated-images.json",
        "images_attached_at": now_iso(),
        "images_attached": len([s for s in slides if s.image]),
    }
    return deck.model_copy(update={"slides": slides, "metadata": metadata})


class DeckGenerator(BaseAgent):
    name = "generator"
    provider = "google"
    default_model = "gemini-3-pro-preview"
    default_max_tokens = 16384
    default_temperature = 0.4

    def build_prompt(self, synthesis: Dict[str, Any], style_guide: str, story: str) -> str:
        settings = self.ctx.config.settings
        company = settings.company
        name = company.get("name") or (synthesis.get("company") or {}).get("name") or "[Company Name]"
        return (
            "## Design Configuration\n\n```json\n"
            f"{json.dumps(settings.design, indent=2, ensure_ascii=False)}\n```\n\n"
            f"## Company Information\n\nName: {name}\nShort Name: {company.get('short_name', '')}\n\n"
            f"## Style Guide\n\n{style_guide}\n\n"
            f"## Story Arc & Narrative\n\n{story}\n\n"
            "## Synthesis Output to Polish\n\n```json\n"
            f"{json.dumps(synthesis, indent=2, ensure_ascii=False)}\n```\n\n"
            "## Instructions\n\n"
            "1. Polish all slide content for maximum investor impact\n"
            "2. Keep names, terms and metrics consistent across slides\n"
            "3. Apply the style guide strictly\n"
            "4. Follow the story arc\n"
            "5. Output the final deck config\n\n"
            "Return ONLY valid JSON in a ```json code block."
        )

    def mock_deck(self, synthesis: Dict[str, Any]) -> Dict[str, Any]:
        slides = []
        for s in synthesis.get("slides") or []:
            if isinstance(s, dict) and s.get("type"):
                slides.append({**s, "headline": f"[DRY-RUN] Polished {s['type']} headline"})
        return {
            "company": {"name": "[DRY-RUN] Mock Company"},
            "design": {"primary_color": "1E3A5F", "secondary_color": "4A90D9", "accent_color": "F5A623"},
            "slides": slides,
            "metadata": {"dry_run": True, "timestamp": now_iso()},
            "synthetic": True,
        }

    def execute(self) -> DeckConfig:
        synthesis = read_json(self.paths.artifact("synthesis-output.json"))
        style_guide = read_text(self.paths.style_guide)
        story = read_text(self.paths.story, required=False)
        system = self.load_system_prompt("generator-system.md", GENERATOR_SYSTEM_PROMPT)
        prompt = self.build_prompt(synthesis, style_guide, story)
        logger.info("Generator prompt %sKB", round(len(prompt) / 1024))

        if self.dry_run:
            self.log_prompt("user", prompt)
            self.log_dry_run("polish deck", prompt)
            data = self.mock_deck(synthesis)
        else:
            data = self.call_json(system, prompt, "polish")

        report = validate_deck_config(data)
        for w in report.warnings:
            logger.warning("Deck config: %s", w)
        if not report.valid:
            raise AgentError("Deck config validation failed: " + ", ".join(report.errors))

        metadata = data.get("metadata") if isinstance(data.get("metadata"), dict) else {}
        settings_design = self.ctx.config.settings.design
        if settings_design and isinstance(data.get("design") or {}, dict):
            data["design"] = {**settings_design, **(data.get("design") or {})}

        deck = validate_model(
            DeckConfig,
            {
                **data,
                "slides": [s for s in data["slides"] if isinstance(s, dict) and s.get("type")],
                "metadata": {**metadata, "generated_at": now_iso(), "warnings": report.warnings},
            },
            "Deck config",
        )
        image_prompts = build_image_prompts(deck.model_dump(), style_guide)
        deck = deck.model_copy(update={"image_prompts": image_prompts})
        write_json(self.paths.output / "deck-config.json", deck.model_dump())
        write_json(self.paths.artifact("image-prompts.json"), image_prompts)
        logger.info("Deck config written with %s slides and %s image prompts", len(deck.slides), len(image_prompts))
        return deck
