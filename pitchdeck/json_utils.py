"""Extraction and mechanical repair of JSON embedded in model responses.

Each repair step is a pure ``str -> str`` pass. ``repair_json`` runs them in
``REPAIR_PASSES`` order; ``parse_json_response`` only reaches for the repairs
when a direct parse fails.
"""
from __future__ import annotations

import json
import logging
import re
import tempfile
from pathlib import Path
from typing import Any, Callable, List, Optional, Tuple

from .errors import ResponseParseError
from .time_utils import file_stamp

logger = logging.getLogger("pitchdeck")

_FENCE_RE = re.compile(r"```(?:json|JSON)?[ \t]*\n?([\s\S]*?)```")
_OPEN_FENCE_RE = re.compile(r"```(?:json|JSON)?[ \t]*\n?([\s\S]*)$")
_LITERAL_RE = re.compile(r"-?(?:0|[1-9]\d*)(?:\.\d+)?(?:[eE][+-]?\d+)?|true|false|null")
_ESCAPES = {"\n": "\\n", "\r": "\\r", "\t": "\\t"}


def _balanced_span(t: str, start: int) -> str:
    """Span from ``start`` to its matching closer, or to the end if it never closes."""
    depth = 0
    in_str = esc = False
    for j in range(start, len(t)):
        ch = t[j]
        if in_str:
            if esc:
                esc = False
            elif ch == "\\":
                esc = True
            elif ch == '"':
                in_str = False
        elif ch == '"':
            in_str = True
        elif ch in "{[":
            depth += 1
        elif ch in "}]":
            depth -= 1
            if depth == 0:
                return t[start : j + 1]
    return t[start:].rstrip()


def extract_json_text(text: str) -> Optional[str]:
    """Return the JSON document embedded in ``text``.

    A fenced block is preferred and returned whole when it already parses.
    Otherwise the balanced span starting at the first ``{`` or ``[`` is used,
    whichever comes first.
    """
    t = (text or "").strip()
    m = _FENCE_RE.search(t) or _OPEN_FENCE_RE.search(t)
    if m and ("{" in m.group(1) or "[" in m.group(1)):
        t = m.group(1).strip()
        try:
            json.loads(t)
            return t
        except json.JSONDecodeError:
            pass

    starts = [i for i in (t.find("{"), t.find("[")) if i != -1]
    if not starts:
        return None
    return _balanced_span(t, min(starts))


def _mask_strings(text: str) -> str:
    """Replace string literal interiors with ``_`` so regexes only see structure."""
    out = list(text)
    in_str = esc = False
    for i, ch in enumerate(text):
        if in_str:
            if esc:
                esc = False
                out[i] = "_"
            elif ch == "\\":
                esc = True
                out[i] = "_"
            elif ch == '"':
                in_str = False
            else:
                out[i] = "_"
        elif ch == '"':
            in_str = True
    return "".join(out)


def _sub_outside_strings(pattern: "re.Pattern[str]", repl: str, text: str) -> str:
    # Matches come from the masked copy; every group the replacements use lies
    # outside string interiors, so the masked and original text agree there.
    masked = _mask_strings(text)
    parts: List[str] = []
    last = 0
    for m in pattern.finditer(masked):
        parts.append(text[last : m.start()])
        parts.append(m.expand(repl))
        last = m.end()
    parts.append(text[last:])
    return "".join(parts)


_TRAILING_COMMA_RE = re.compile(r",(\s*[}\]])")
_MISSING_COMMA_RE = re.compile(r'("|\d|true|false|null|\]|\})(\s*\n\s*)("|\[|\{)')
_ADJACENT_RE = re.compile(r"([}\]])(\s*)([{\[])")
_DOUBLE_COMMA_RE = re.compile(r",(\s*,)+")


def strip_trailing_commas(text: str) -> str:
    return _sub_outside_strings(_TRAILING_COMMA_RE, r"\1", text)


def insert_missing_commas(text: str) -> str:
    """Add a comma between two values separated only by a line break."""
    return _sub_outside_strings(_MISSING_COMMA_RE, r"\1,\2\3", text)


def separate_adjacent_containers(text: str) -> str:
    """``}{``, ``][``, ``]{`` and ``}[`` become comma separated."""
    return _sub_outside_strings(_ADJACENT_RE, r"\1,\2\3", text)


def collapse_double_commas(text: str) -> str:
    return _sub_outside_strings(_DOUBLE_COMMA_RE, ",", text)


def escape_control_chars(text: str) -> str:
    """Escape raw control characters that appear inside string literals."""
    out: List[str] = []
    in_str = esc = False
    for ch in text:
        if in_str:
            if esc:
                esc = False
                if ord(ch) < 0x20:
                    # the pending backslash starts the escape
                    out.append(_ESCAPES.get(ch, f"\\u{ord(ch):04x}")[1:])
                    continue
            elif ch == "\\":
                esc = True
            elif ch == '"':
                in_str = False
            elif ord(ch) < 0x20:
                out.append(_ESCAPES.get(ch, f"\\u{ord(ch):04x}"))
                continue
        elif ch == '"':
            in_str = True
        out.append(ch)
    return "".join(out)


def _close_open_string(text: str) -> str:
    in_str = False
    dangling: Optional[int] = None
    i, n = 0, len(text)
    while i < n:
        ch = text[i]
        if in_str:
            if ch == "\\":
                if i + 1 >= n:
                    dangling = i
                    break
                if text[i + 1] == "u":
                    hexpart = text[i + 2 : i + 6]
                    if len(hexpart) < 4 and i + 2 + len(hexpart) >= n:
                        dangling = i
                        break
                    i += 6
                    continue
                i += 2
                continue
            if ch == '"':
                in_str = False
        elif ch == '"':
            in_str = True
        i += 1
    if dangling is not None:
        return text[:dangling] + '"'
    if in_str:
        return text + '"'
    return text


def _tokens(text: str) -> List[Tuple[str, int, int]]:
    out: List[Tuple[str, int, int]] = []
    i, n = 0, len(text)
    while i < n:
        ch = text[i]
        if ch.isspace():
            i += 1
        elif ch in "{}[]:,":
            out.append((ch, i, i + 1))
            i += 1
        elif ch == '"':
            j = i + 1
            while j < n and text[j] != '"':
                j += 2 if text[j] == "\\" else 1
            out.append(("str", i, min(j + 1, n)))
            i = j + 1
        else:
            j = i
            while j < n and not text[j].isspace() and text[j] not in '{}[]:,"':
                j += 1
            out.append(("lit", i, j))
            i = j
    return out


def _naive_close(text: str) -> str:
    closers: List[str] = []
    in_str = esc = False
    for ch in text:
        if in_str:
            if esc:
                esc = False
            elif ch == "\\":
                esc = True
            elif ch == '"':
                in_str = False
        elif ch == '"':
            in_str = True
        elif ch in "{[":
            closers.append("}" if ch == "{" else "]")
        elif ch in "}]" and closers and closers[-1] == ch:
            closers.pop()
    if not closers:
        return text
    return re.sub(r"[\s,:]+$", "", text) + "".join(reversed(closers))


def close_open_brackets(text: str) -> str:
    """Close a document that was cut off mid-way.

    An open string is closed first. The text is then cut back to the last
    point where every open container holds only complete members (so a bare
    key, a dangling colon, a trailing comma or a partial literal is dropped)
    and the missing closers are appended.
    """
    body = _close_open_string(text)
    toks = _tokens(body)

    # frame: [closer, state]
    stack: List[List[str]] = []
    started = False
    cut: Optional[Tuple[int, List[str]]] = None

    def expecting_value() -> bool:
        if not stack:
            return not started
        closer, state = stack[-1]
        if closer == "]":
            return state in ("value_or_end", "value")
        return state == "value"

    def value_done(end: int) -> None:
        nonlocal cut
        if stack:
            stack[-1][1] = "after_value"
        cut = (end, [f[0] for f in stack])

    for idx, (kind, start, end) in enumerate(toks):
        top = stack[-1] if stack else None
        if kind in "{[" and expecting_value():
            started = True
            if kind == "{":
                stack.append(["}", "key_or_end"])
            else:
                stack.append(["]", "value_or_end"])
            cut = (end, [f[0] for f in stack])
        elif kind in "}]" and top and top[0] == kind and top[1] in ("key_or_end", "value_or_end", "after_value"):
            stack.pop()
            value_done(end)
        elif kind == ":" and top and top[0] == "}" and top[1] == "colon":
            top[1] = "value"
        elif kind == "," and top and top[1] == "after_value":
            top[1] = "key" if top[0] == "}" else "value"
        elif kind == "str" and top and top[0] == "}" and top[1] in ("key_or_end", "key"):
            top[1] = "colon"
        elif kind == "str" and expecting_value():
            value_done(end)
        elif kind == "lit" and expecting_value():
            if _LITERAL_RE.fullmatch(body[start:end]) or idx < len(toks) - 1:
                value_done(end)
            else:
                break
        else:
            return _naive_close(body)

    if not stack:
        return body
    if cut is None:
        return _naive_close(body)
    offset, closers = cut
    return body[:offset] + "".join(reversed(closers))


REPAIR_PASSES: Tuple[Callable[[str], str], ...] = (
    strip_trailing_commas,
    insert_missing_commas,
    separate_adjacent_containers,
    collapse_double_commas,
    escape_control_chars,
    close_open_brackets,
)


def repair_json(text: str) -> str:
    for fix in REPAIR_PASSES:
        text = fix(text)
    return text


def _save_scratch(raw: str, scratch_dir: Optional[Path]) -> Optional[Path]:
    base = Path(scratch_dir) if scratch_dir else Path(tempfile.gettempdir())
    path = base / f"json-parse-error-{file_stamp()}.json"
    try:
        base.mkdir(parents=True, exist_ok=True)
        path.write_text(raw or "", encoding="utf-8")
    except OSError as exc:
        logger.warning("Could not save unparseable response to %s: %s", path, exc)
        return None
    return path


def parse_json_response(text: str, scratch_dir: Optional[Path] = None) -> Any:
    """Parse model output as JSON, repairing common defects if needed.

    Args:
        text (str): raw model reply.
        scratch_dir (Optional[Path]): where to keep the raw reply on failure
            (system temp dir by default).

    Returns:
        Any: the decoded document.
    """
    try:
        return json.loads(text)
    except (TypeError, json.JSONDecodeError):
        pass

    candidate = extract_json_text(text)
    if candidate is None:
        path = _save_scratch(text, scratch_dir)
        raise ResponseParseError("No JSON found in model response", path)

    try:
        return json.loads(candidate)
    except json.JSONDecodeError:
        logger.debug("Direct JSON parse failed; attempting repair.")

    repaired = repair_json(candidate)
    try:
        return json.loads(repaired)
    except json.JSONDecodeError as exc:
        path = _save_scratch(text, scratch_dir)
        raise ResponseParseError(f"Failed to parse JSON after repair: {exc}", path, original=exc) from exc
