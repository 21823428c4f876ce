"""Image payload validation, placeholder rendering and image prompt assembly."""
from __future__ import annotations

import base64
import binascii
import io
import re
from pathlib import Path
from typing import Any, Dict, List, Union

from PIL import Image, ImageDraw

from .errors import ImageValidationError

MIN_IMAGE_BYTES = 1024
PNG_MAGIC = b"\x89PNG"
JPEG_MAGIC = b"\xff\xd8"
PLACEHOLDER_SIZE = (1600, 900)


def decode_image(payload: Union[str, bytes]) -> bytes:
    if isinstance(payload, bytes):
        return payload
    try:
        return base64.b64decode(payload.split(",")[-1], validate=False)
    except (binascii.Error, ValueError) as exc:
        raise ImageValidationError(f"payload is not valid base64 ({exc})") from exc


def validate_image_bytes(data: bytes) -> str:
    """Return the detected format ("png" or "jpeg") or raise ``ImageValidationError``."""
    if len(data) < MIN_IMAGE_BYTES:
        raise ImageValidationError(f"only {len(data)} bytes (minimum {MIN_IMAGE_BYTES})")
    if data.startswith(PNG_MAGIC):
        return "png"
    if data.startswith(JPEG_MAGIC):
        return "jpeg"
    raise ImageValidationError(f"unrecognized header {data[:4].hex()}")


def placeholder_png(label: str, size=PLACEHOLDER_SIZE) -> bytes:
    img = Image.new("RGB", size, "#f3f4f6")
    draw = ImageDraw.Draw(img)
    w, h = size
    draw.rectangle([20, 20, w - 21, h - 21], outline="#9ca3af", width=4)
    text = f"Image unavailable: {label}"
    draw.text((w // 2, h // 2), text, fill="#4b5563", anchor="mm")
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def write_image(data: bytes, path: Path) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    return path


def _label(key: str) -> str:
    words = re.sub(r"([a-z])([A-Z])", r"\1 \2", key).replace("_", " ")
    return words[:1].upper() + words[1:]


def format_content_for_prompt(content: Dict[str, Any]) -> str:
    lines: List[str] = []
    for key, value in content.items():
        if value in (None, "", [], {}):
            continue
        if isinstance(value, list):
            lines.append(f"{_label(key)}:")
            for item in value:
                if isinstance(item, dict):
                    lines.append("  - " + ", ".join(f"{_label(k)}: {v}" for k, v in item.items() if v not in (None, "")))
                else:
                    lines.append(f"  - {item}")
        elif isinstance(value, dict):
            lines.append(f"{_label(key)}: " + ", ".join(f"{k}={v}" for k, v in value.items()))
        else:
            lines.append(f"{_label(key)}: {value}")
    return "\n".join(lines)


def build_image_prompt(slide_type: str, data: Dict[str, Any]) -> str:
    content = data.get("content") or {}
    sections = []
    if data.get("style_guide_reference"):
        sections.append(data["style_guide_reference"])
    if data.get("narrative_context"):
        sections.append(data["narrative_context"])
    sections.append(
        f"## SLIDE TYPE: {slide_type.upper()}\n{data.get('description', '')}\n"
        f"Dimensions: {data.get('dimensions', '1920x1080')}"
    )
    body = format_content_for_prompt(content)
    if body:
        sections.append(f"## CONTENT TO RENDER\n{body}")
    sections.append(f"## LAYOUT\n{data.get('layout', 'generic')}")
    if data.get("style"):
        sections.append(f"## STYLE NOTES\n{data['style']}")

    text_elements = [str(content[k]) for k in ("headline", "company_name", "tagline", "amount") if content.get(k)]
    if text_elements:
        sections.append("## TEXT ELEMENTS (render exactly)\n" + "\n".join(f"- {t}" for t in text_elements))
    if content.get("company_position"):
        pos = content["company_position"]
        sections.append(f"## POSITIONS\nCompany marker at x={pos.get('x')}, y={pos.get('y')} (0-1 scale)")
    if content.get("milestones"):
        sections.append("## MILESTONES\n" + "\n".join(f"- {m}" for m in content["milestones"]))
    if content.get("use_of_funds"):
        sections.append("## SEGMENTS\n" + "\n".join(f"- {s}" for s in content["use_of_funds"]))

    sections.append(
        "## OUTPUT REQUIREMENTS\n"
        "- A complete, presentation-ready 16:9 slide\n"
        "- All text spelled exactly as given, fully legible\n"
        "- No watermarks, no placeholder lorem ipsum"
    )
    return "\n\n".join(sections)
