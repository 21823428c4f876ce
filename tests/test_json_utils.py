from __future__ import annotations

import json

import pytest

from pitchdeck.errors import ResponseParseError
from pitchdeck.json_utils import (
    REPAIR_PASSES,
    close_open_brackets,
    collapse_double_commas,
    escape_control_chars,
    extract_json_text,
    insert_missing_commas,
    parse_json_response,
    separate_adjacent_containers,
    strip_trailing_commas,
)

DOC = {
    "name": "Acme",
    "metrics": [1, 2, 3],
    "team": [{"role": "CEO", "years": 12}, {"role": "CTO"}],
    "ok": True,
    "nested": {"a": {"b": [None, False]}},
}


def _inside_string(prefix: str) -> bool:
    in_str = esc = False
    for ch in prefix:
        if in_str:
            if esc:
                esc = False
            elif ch == "\\":
                esc = True
            elif ch == '"':
                in_str = False
        elif ch == '"':
            in_str = True
    return in_str


def _keys(obj) -> set:
    if isinstance(obj, dict):
        out = set(obj)
        for v in obj.values():
            out |= _keys(v)
        return out
    if isinstance(obj, list):
        out = set()
        for v in obj:
            out |= _keys(v)
        return out
    return set()


@pytest.mark.parametrize(
    "text",
    [
        json.dumps(DOC),
        '{"c": {"d": "x\\ny"}, "e": -3.5e2}',
        '[1, 2.5, "three"]',
        '"plain"',
        '{"s": "has } and ] and \\" inside"}',
        "{}",
    ],
)
def test_valid_json_is_returned_as_is(text, tmp_path):
    assert parse_json_response(text, scratch_dir=tmp_path) == json.loads(text)
    assert list(tmp_path.iterdir()) == []


def test_truncated_document_parses_at_every_cut_point():
    s = json.dumps(DOC)
    allowed = _keys(DOC)
    for i in range(1, len(s)):
        prefix = s[:i]
        if _inside_string(prefix):
            continue
        repaired = close_open_brackets(prefix)
        parsed = json.loads(repaired)
        assert _keys(parsed) <= allowed, prefix


def test_truncated_string_value_is_closed(tmp_path):
    assert parse_json_response('{"summary": "Revenue grew', scratch_dir=tmp_path) == {"summary": "Revenue grew"}


def test_literal_newline_in_string_is_preserved(tmp_path):
    raw = '{"body": "line one\nline two", "n": 1}'
    assert parse_json_response(raw, scratch_dir=tmp_path) == {"body": "line one\nline two", "n": 1}


def test_missing_commas_between_lines(tmp_path):
    raw = '{\n  "a": 1\n  "b": [1, 2]\n  "c": {"d": true}\n}'
    assert parse_json_response(raw, scratch_dir=tmp_path) == {"a": 1, "b": [1, 2], "c": {"d": True}}


def test_fenced_block_with_trailing_comma(tmp_path):
    raw = 'Here you go:\n```json\n{"a": [1, 2,]}\n```\nThanks'
    assert parse_json_response(raw, scratch_dir=tmp_path) == {"a": [1, 2]}


def test_unterminated_fence_is_extracted():
    assert extract_json_text('```json\n{"a": 1') == '{"a": 1'


def test_commas_inside_strings_are_untouched(tmp_path):
    raw = '{"note": "a,, b ,}", "x": [1,]}'
    assert parse_json_response(raw, scratch_dir=tmp_path) == {"note": "a,, b ,}", "x": [1]}


def test_unrecoverable_response_is_saved(tmp_path):
    with pytest.raises(ResponseParseError) as ei:
        parse_json_response('{"a": 1 "b"}', scratch_dir=tmp_path)
    saved = list(tmp_path.glob("json-parse-error-*.json"))
    assert len(saved) == 1
    assert saved[0].read_text(encoding="utf-8") == '{"a": 1 "b"}'
    assert ei.value.scratch_path == saved[0]


def test_no_json_at_all(tmp_path):
    with pytest.raises(ResponseParseError):
        parse_json_response("I could not produce that.", scratch_dir=tmp_path)


def test_individual_passes():
    assert strip_trailing_commas("[1, 2, ]") == "[1, 2 ]"
    assert insert_missing_commas('["a"\n"b"]') == '["a",\n"b"]'
    assert separate_adjacent_containers('[{"a": 1}{"b": 2}]') == '[{"a": 1},{"b": 2}]'
    assert collapse_double_commas('{"a": 1,, "b": 2}') == '{"a": 1, "b": 2}'
    assert escape_control_chars('{"a": "x\ty\x01"}') == '{"a": "x\\ty\\u0001"}'
    assert close_open_brackets('{"a": [1, {"b": "c') == '{"a": [1, {"b": "c"}]}'
    assert close_open_brackets('{"a": 1, "b') == '{"a": 1}'
    assert close_open_brackets('{"a": "x\\') == '{"a": "x"}'
    assert len(REPAIR_PASSES) == 6


def test_passes_leave_valid_json_alone():
    s = json.dumps(DOC, indent=2)
    for fix in REPAIR_PASSES:
        assert fix(s) == s


@pytest.mark.parametrize(
    "raw",
    [
        'Here:\n```json\n[{"a": 1}, {"b": 2}]\n```\n',
        'Results: [{"a": 1}, {"b": 2}]',
        'Results:\n[\n  {"a": 1},\n  {"b": 2},\n]',
    ],
)
def test_top_level_arrays_are_kept_whole(raw, tmp_path):
    assert parse_json_response(raw, scratch_dir=tmp_path) == [{"a": 1}, {"b": 2}]


def test_object_before_array_still_wins():
    assert extract_json_text('Answer {"a": [1, 2]} and [3]') == '{"a": [1, 2]}'


def test_backslash_before_raw_control_char(tmp_path):
    assert escape_control_chars('{"a": "x\\\ny"}') == '{"a": "x\\ny"}'
    assert escape_control_chars('{"a": "x\\\x02"}') == '{"a": "x\\u0002"}'
    assert parse_json_response('{"a": "x\\\ny"}', scratch_dir=tmp_path) == {"a": "x\ny"}
