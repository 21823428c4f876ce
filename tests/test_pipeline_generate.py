from __future__ import annotations

import base64
import io
import json

import pytest
from conftest import FakeClient, fenced
from PIL import Image

from pitchdeck.errors import AgentError
from pitchdeck.models import SLIDE_TYPES, DeckConfig, PipelineSettings
from pitchdeck.pipeline_common import write_json
from pitchdeck.pipeline_generate import (
    DeckGenerator,
    attach_images,
    build_image_prompts,
    funds_segment,
    validate_deck_config,
)
from pitchdeck.pipeline_images import ImageGenerator


def _deck(**overrides) -> dict:
    deck = {
        "company": {"name": "Acme"},
        "design": {"primary_color": "111111"},
        "slides": [{"type": t, "headline": t.title()} for t in SLIDE_TYPES],
    }
    deck.update(overrides)
    return deck


def test_validate_deck_config():
    assert validate_deck_config(_deck()).warnings == []

    report = validate_deck_config(_deck(company={}, design={}))
    assert report.errors == ["Missing company.name"]
    assert "Missing design object" in report.warnings

    report = validate_deck_config(_deck(slides="none"))
    assert "Missing or invalid slides array" in report.errors

    slides = [{"type": "title", "headline": "[TBD]"}, {"type": "ask", "amount": "[TBD] seed"}]
    report = validate_deck_config(_deck(slides=slides))
    assert report.valid
    assert "Found 2 [TBD] entries in slides" in report.warnings
    assert "Missing slide type: team" in report.warnings


def test_image_prompts_carry_design_and_narrative():
    deck = _deck()
    deck["slides"][-1].update({"amount": "$5M", "use_of_funds": ["Hiring 60%", "R&D 40%"]})
    prompts = build_image_prompts(deck, "Use sentence case for headlines.")

    assert list(prompts) == [*SLIDE_TYPES, "use_of_funds"]
    ask = prompts["ask"]
    assert ask["content"]["amount"] == "$5M"
    assert ask["layout"] == "ask-funds-milestones"
    assert "#111111" in ask["style"]
    assert "Slide position: 12 of 12" in ask["narrative_context"]
    assert "Use sentence case" in ask["style_guide_reference"]
    assert prompts["title"]["content"]["company_name"] == "Acme"
    assert prompts["competition"]["content"]["company_position"] == {"x": 0.85, "y": 0.85}


def test_attach_images_returns_new_deck_and_refuses_second_attach():
    deck = DeckConfig.model_validate(_deck())
    manifest = {"images": {"title": "output/assets/title.png", "team": None, "use_of_funds": "output/assets/uof.png"}}

    attached = attach_images(deck, manifest)

    assert deck.metadata == {}
    assert all(s.image is None for s in deck.slides)
    by_type = {s.type: s for s in attached.slides}
    assert by_type["title"].image == "output/assets/title.png"
    assert by_type["team"].image is None
    assert by_type["ask"].model_dump()["use_of_funds_image"] == "output/assets/uof.png"
    assert attached.metadata["images_attached"] == 1
    assert attached.metadata["image_manifest"] == "intermediate/generated-images.json"

    with pytest.raises(AgentError):
        attach_images(attached, manifest)


def test_generator_merges_settings_design(make_ctx, project):
    write_json(project.artifact("synthesis-output.json"), {"company": {"name": "Acme"}, "slides": _deck()["slides"]})
    settings = PipelineSettings(design={"primary_color": "222222", "font_heading": "Inter"})
    client = FakeClient([fenced(_deck())])

    deck = DeckGenerator(make_ctx(settings=settings), client=client).execute()

    # model output wins over configured design values
    assert deck.design == {"primary_color": "111111", "font_heading": "Inter"}
    assert '"font_heading": "Inter"' in client.prompts[0]
    prompts = json.loads(project.artifact("image-prompts.json").read_text(encoding="utf-8"))
    assert "Font Heading: Inter" in prompts["title"]["style_guide_reference"]
    assert deck.metadata["warnings"] == []


def test_generator_rejects_invalid_config(make_ctx, project):
    write_json(project.artifact("synthesis-output.json"), {"slides": []})
    client = FakeClient([fenced({"design": {}, "slides": []})])
    with pytest.raises(AgentError, match="Missing company.name"):
        DeckGenerator(make_ctx(), client=client).execute()
    assert not (project.output / "deck-config.json").exists()


def test_dry_run_deck_is_synthetic(make_ctx, project, no_network):
    write_json(project.artifact("synthesis-output.json"), {"slides": [{"type": "title"}, {"type": "ask"}]})
    deck = DeckGenerator(make_ctx(dry_run=True)).execute()
    assert deck.model_dump()["synthetic"] is True
    assert [s.headline for s in deck.slides] == ["[DRY-RUN] Polished title headline", "[DRY-RUN] Polished ask headline"]
    assert set(deck.image_prompts) == {"title", "ask"}


def test_funds_segment():
    assert funds_segment({"category": "R&D", "percent": 40}) == "R&D: 40%"
    assert funds_segment({"category": "Hiring", "percent": "60%"}) == "Hiring: 60%"
    assert funds_segment({"name": "Ops"}) == "Ops"
    assert funds_segment("Sales 20%") == "Sales 20%"


def test_use_of_funds_image_reaches_the_ask_slide(make_ctx, project):
    deck = _deck()
    deck["slides"][-1]["use_of_funds"] = [{"category": "Hiring", "percent": 60}, {"category": "R&D", "percent": 40}]
    prompts = build_image_prompts(deck, "")
    funds = prompts["use_of_funds"]
    assert funds["content"]["use_of_funds"] == ["Hiring: 60%", "R&D: 40%"]
    assert "#111111" in funds["style"]
    assert "use_of_funds" not in build_image_prompts(_deck(), "")

    buf = io.BytesIO()
    Image.effect_noise((320, 180), 64).convert("RGB").save(buf, format="PNG")
    png = base64.b64encode(buf.getvalue()).decode()
    client = FakeClient(handler=lambda system, prompt: png)
    write_json(project.artifact("image-prompts.json"), {"ask": prompts["ask"], "use_of_funds": funds})

    manifest = ImageGenerator(make_ctx(), client=client).execute()

    assert manifest["images"]["use_of_funds"] == "output/assets/use_of_funds.png"
    assert (project.assets / "use_of_funds.png").exists()
    assert any("## SEGMENTS\n- Hiring: 60%\n- R&D: 40%" in p for p in client.prompts)
    attached = attach_images(DeckConfig.model_validate(deck), manifest)
    ask = attached.slides[-1].model_dump()
    assert ask["image"] == "output/assets/ask.png"
    assert ask["use_of_funds_image"] == "output/assets/use_of_funds.png"


def test_generator_tolerates_null_fields(make_ctx, project):
    write_json(project.artifact("synthesis-output.json"), {"company": {"name": "Acme"}, "slides": _deck()["slides"]})
    reply = _deck(design=None)
    reply["slides"][0]["citations"] = [{"fact": "ARR $2M", "source": None, "location": 3, "confidence": None}, None]
    reply["slides"][1]["reasoning_trace"] = None

    deck = DeckGenerator(make_ctx(), client=FakeClient([fenced(reply)])).execute()

    citation = deck.slides[0].citations[0]
    assert (citation.source, citation.location, citation.confidence) == ("", "3", 1.0)
    assert len(deck.slides[0].citations) == 1
    assert deck.design == {}
    assert "Missing design object" in deck.metadata["warnings"]


def test_generator_schema_failure_is_an_agent_error(make_ctx, project):
    write_json(project.artifact("synthesis-output.json"), {"company": {"name": "Acme"}, "slides": []})
    reply = _deck(design="dark theme")
    with pytest.raises(AgentError, match="Deck config failed validation"):
        DeckGenerator(make_ctx(), client=FakeClient([fenced(reply)])).execute()
