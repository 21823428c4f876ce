from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional

from pptx import Presentation
from pptx.dml.color import RGBColor
from pptx.enum.text import PP_ALIGN
from pptx.util import Inches, Pt

from .errors import InputValidationError
from .models import DeckConfig, SlideContent
from .pipeline_common import PipelinePaths, logger, read_json, validate_model

SLIDE_W = Inches(13.333)
SLIDE_H = Inches(7.5)
MARGIN = Inches(0.6)

BULLET_KEYS = ("bullets", "benefits", "features", "trends", "pain_points", "use_of_funds", "milestones", "competitors")
BODY_KEYS = ("body", "statement", "value_prop", "description", "tagline", "subtitle", "content")


def hex_to_rgb(value: Any, default: str = "1E3A5F") -> RGBColor:
    s = str(value or default).lstrip("#")
    try:
        return RGBColor.from_string(s.upper()[:6])
    except ValueError:
        return RGBColor.from_string(default)


def _as_text(item: Any) -> str:
    if isinstance(item, dict):
        label = item.get("label") or item.get("name") or item.get("title") or ""
        value = item.get("value") or item.get("description") or item.get("role") or item.get("amount") or ""
        return f"{label}: {value}".strip(": ") if label and value else str(label or value or "")
    return str(item)


def slide_bullets(slide: Dict[str, Any], limit: int = 6) -> List[str]:
    out: List[str] = []
    for key in BULLET_KEYS:
        v = slide.get(key)
        if isinstance(v, list):
            out.extend(_as_text(x) for x in v if x)
    for m in slide.get("metrics") or []:
        out.append(_as_text(m))
    return [b for b in out if b][:limit]


def speaker_notes(slide: SlideContent) -> str:
    lines = []
    if slide.reasoning_trace:
        lines.append(f"Reasoning: {slide.reasoning_trace}")
    if slide.citations:
        lines.append("Sources:")
        for c in slide.citations:
            loc = f" ({c.location})" if c.location else ""
            lines.append(f"- {c.fact} [{c.source}{loc}]")
    return "\n".join(lines)


class Renderer:
    """Render ``deck-config.json`` into a 16:9 .pptx file."""

    def __init__(self, paths: PipelinePaths) -> None:
        self.paths = paths

    def resolve_image(self, image: Optional[str]) -> Optional[Path]:
        if not image:
            return None
        p = Path(image)
        if not p.is_absolute():
            p = self.paths.root / p
        if not p.exists():
            logger.warning("Image not found, rendering text layout instead: %s", p)
            return None
        return p

    @staticmethod
    def _fill_background(slide, color: RGBColor) -> None:
        fill = slide.background.fill
        fill.solid()
        fill.fore_color.rgb = color

    @staticmethod
    def _add_text(slide, text: str, top, height, size: int, color: RGBColor, bold: bool = False, align=PP_ALIGN.LEFT):
        box = slide.shapes.add_textbox(MARGIN, top, SLIDE_W - 2 * MARGIN, height)
        tf = box.text_frame
        tf.word_wrap = True
        p = tf.paragraphs[0]
        p.alignment = align
        run = p.add_run()
        run.text = text
        run.font.size = Pt(size)
        run.font.bold = bold
        run.font.color.rgb = color
        return tf

    def add_image_slide(self, prs, image: Path):
        slide = prs.slides.add_slide(prs.slide_layouts[6])
        slide.shapes.add_picture(str(image), 0, 0, width=SLIDE_W, height=SLIDE_H)
        return slide

    def add_text_slide(self, prs, slide_data: SlideContent, company: Dict[str, Any], design: Dict[str, Any]):
        data = slide_data.model_dump()
        primary = hex_to_rgb(design.get("primary_color"), "0A0A0A")
        accent = hex_to_rgb(design.get("accent_color"), "5E5CE6")
        light = RGBColor(0xFF, 0xFF, 0xFF)
        dark = RGBColor(0x11, 0x11, 0x11)

        slide = prs.slides.add_slide(prs.slide_layouts[6])
        if slide_data.type == "title":
            self._fill_background(slide, primary)
            name = company.get("name") or data.get("headline") or "Company"
            self._add_text(slide, name, Inches(2.6), Inches(1.2), 54, light, bold=True, align=PP_ALIGN.CENTER)
            tagline = data.get("tagline") or data.get("body") or company.get("tagline") or ""
            if tagline:
                self._add_text(slide, str(tagline), Inches(3.9), Inches(1.0), 24, accent, align=PP_ALIGN.CENTER)
            return slide

        headline = data.get("headline") or slide_data.type.replace("_", " ").upper()
        self._add_text(slide, str(headline), Inches(0.5), Inches(1.0), 34, primary, bold=True)
        body = next((data[k] for k in BODY_KEYS if isinstance(data.get(k), str) and data.get(k)), "")
        top = Inches(1.6)
        if body:
            self._add_text(slide, body, top, Inches(1.2), 18, dark)
            top = Inches(2.9)
        bullets = slide_bullets(data)
        if bullets:
            tf = self._add_text(slide, f"• {bullets[0]}", top, SLIDE_H - top - MARGIN, 18, dark)
            for b in bullets[1:]:
                p = tf.add_paragraph()
                run = p.add_run()
                run.text = f"• {b}"
                run.font.size = Pt(18)
                run.font.color.rgb = dark
        return slide

    def render(self, deck: DeckConfig, out_path: Optional[Path] = None) -> Path:
        out_path = Path(out_path or self.paths.deck_file)
        prs = Presentation()
        prs.slide_width = SLIDE_W
        prs.slide_height = SLIDE_H

        image_slides = 0
        for sl in deck.slides:
            image = self.resolve_image(sl.image)
            if image is not None:
                slide = self.add_image_slide(prs, image)
                image_slides += 1
            else:
                slide = self.add_text_slide(prs, sl, deck.company, deck.design)
            notes = speaker_notes(sl)
            if notes:
                slide.notes_slide.notes_text_frame.text = notes

        out_path.parent.mkdir(parents=True, exist_ok=True)
        prs.save(str(out_path))
        logger.info("Rendered %s slides (%s image slides): %s", len(deck.slides), image_slides, out_path)
        return out_path

    def run(self) -> Path:
        config_path = self.paths.output / "deck-config.json"
        deck = validate_model(DeckConfig, read_json(config_path), config_path.name)
        if not deck.slides:
            raise InputValidationError([f"{config_path} has no slides"])
        return self.render(deck)
