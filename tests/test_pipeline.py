from __future__ import annotations

import base64
import io
import json

import pytest
from conftest import FakeClient, fenced
from PIL import Image
from pptx import Presentation
from rich.console import Console

from pitchdeck import pipeline, pipeline_common
from pitchdeck.errors import InputValidationError
from pitchdeck.models import SLIDE_TYPES
from pitchdeck.pipeline import Pipeline, PipelineOptions
from pitchdeck.pipeline_common import RunConfig, write_json


def _quiet() -> Console:
    return Console(file=io.StringIO())


def _pipeline(project, dry_run=False, ctx=None, **options) -> Pipeline:
    cfg = ctx.config if ctx is not None else RunConfig(paths=project, dry_run=dry_run)
    return Pipeline(
        cfg,
        PipelineOptions(**options),
        ctx=ctx,
        input_fn=lambda prompt: "n",
        isatty=lambda: False,
        console=_quiet(),
    )


def test_credentials_follow_the_phases_being_run(project, monkeypatch):
    p = _pipeline(project, from_phase=2, skip=frozenset({"synthesize"}))
    assert p.missing_credentials() == ["ANTHROPIC_API_KEY", "GOOGLE_AI_API_KEY"]

    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-test")
    assert p.missing_credentials() == ["GOOGLE_AI_API_KEY"]

    assert _pipeline(project, from_phase=5).missing_credentials() == []
    assert _pipeline(project, dry_run=True).missing_credentials() == []


def test_missing_credentials_prompt_or_fail(project):
    with pytest.raises(InputValidationError, match="OPENAI_API_KEY is required"):
        _pipeline(project, from_phase=3, non_interactive=True).check_credentials()
    # stdin is not a terminal
    with pytest.raises(InputValidationError):
        _pipeline(project, from_phase=3).check_credentials()

    _pipeline(project, from_phase=3, assume_yes=True).check_credentials()

    answers = []
    p = Pipeline(
        RunConfig(paths=project),
        PipelineOptions(from_phase=3),
        input_fn=lambda prompt: answers.append(prompt) or "y",
        isatty=lambda: True,
        console=_quiet(),
    )
    p.check_credentials()
    assert answers == ["Continue anyway? (y/N) "]

    p.input_fn = lambda prompt: "no"
    with pytest.raises(InputValidationError, match="Aborted"):
        p.check_credentials()


def test_resume_requires_prior_artifact(project):
    with pytest.raises(InputValidationError, match="classification output"):
        _pipeline(project, dry_run=True, from_phase=3).check_user_inputs()

    write_json(project.artifact("classified-context.json"), {"slides": {}})
    _pipeline(project, dry_run=True, from_phase=3).check_user_inputs()


def test_skipped_producer_requires_its_artifact(project):
    # extract runs, classify is skipped, synthesize needs classify's output
    p = _pipeline(project, dry_run=True, skip=frozenset({"classify"}))
    with pytest.raises(InputValidationError, match="classification output") as ei:
        p.check_user_inputs()
    assert "the classify phase must run first" in ei.value.issues[0]

    p = _pipeline(project, dry_run=True, from_phase=2, skip=frozenset({"synthesize", "generate"}))
    with pytest.raises(InputValidationError) as ei:
        p.check_user_inputs()
    assert len(ei.value.issues) == 1
    assert "deck config" in ei.value.issues[0]

    write_json(project.artifact("classified-context.json"), {"slides": {}})
    _pipeline(project, dry_run=True, skip=frozenset({"classify"})).check_user_inputs()


def test_llm_phases_require_story_and_style_guide(project):
    project.story.unlink()
    with pytest.raises(InputValidationError) as ei:
        _pipeline(project, dry_run=True, from_phase=2).check_user_inputs()
    assert any("story.md" in issue for issue in ei.value.issues)

    # render alone does not need them
    write_json(project.output / "deck-config.json", {"slides": []})
    _pipeline(project, dry_run=True, from_phase=5).check_user_inputs()


def test_invalid_start_phase(project):
    with pytest.raises(InputValidationError, match="--from-phase"):
        _pipeline(project, from_phase=7).phases_to_run()


def test_everything_skipped_runs_nothing(project):
    p = _pipeline(project, from_phase=4, skip=frozenset({"generate", "render"}))
    assert p.run() == []


def test_dry_run_from_classify(project, no_network):
    p = _pipeline(project, dry_run=True, from_phase=2)
    results = p.run()

    assert [r.name for r in results] == ["classify", "synthesize", "generate", "render"]
    assert no_network == []
    assert p.ctx.cost_tracker.total_cost == 0.0
    assert (project.prompts / "prompt-manifest.json").exists()
    assert not project.artifact("cost-report.json").exists()
    assert not project.deck_file.exists()
    deck = json.loads((project.output / "deck-config.json").read_text(encoding="utf-8"))
    assert deck["synthetic"] is True


def _png_b64() -> str:
    buf = io.BytesIO()
    Image.effect_noise((320, 180), 64).convert("RGB").save(buf, format="PNG")
    return base64.b64encode(buf.getvalue()).decode()


def test_full_run_with_fake_providers(project, make_ctx, monkeypatch):
    for var in ("ANTHROPIC_API_KEY", "OPENAI_API_KEY", "GOOGLE_AI_API_KEY"):
        monkeypatch.setenv(var, "test-key")

    def classify(system, prompt):
        if prompt.startswith("Build a table of contents"):
            return fenced({"documents": []})
        return fenced(
            {
                "document_type": "report",
                "slide_relevance": {
                    t: {"score": 0.9, "items": [{"type": "fact", "content": f"{t} evidence", "confidence": 0.8}]}
                    for t in SLIDE_TYPES
                },
            }
        )

    slides = [
        {"type": t, "headline": t.upper(), "citations": [{"fact": "f", "source": "financials.txt"}]} for t in SLIDE_TYPES
    ]
    clients = {
        "classifier": FakeClient(handler=classify),
        "synthesizer": FakeClient([fenced({"company": {"name": "Acme"}, "slides": slides})]),
        "generator": FakeClient([fenced({"company": {"name": "Acme"}, "design": {"primary_color": "0A0A0A"}, "slides": slides})]),
        "image_generator": FakeClient(handler=lambda system, prompt: _png_b64()),
    }
    ctx = make_ctx()
    p = _pipeline(project, ctx=ctx, from_phase=2)
    p.clients = clients

    results = p.run()

    assert [r.name for r in results] == ["classify", "synthesize", "generate", "render"]
    assert results[0].cost > 0
    deck = json.loads((project.output / "deck-config.json").read_text(encoding="utf-8"))
    assert deck["metadata"]["images_attached"] == len(SLIDE_TYPES)
    assert deck["slides"][0]["image"] == "output/assets/title.png"
    assert len(Presentation(str(project.deck_file)).slides) == len(SLIDE_TYPES)
    report = json.loads(project.artifact("cost-report.json").read_text(encoding="utf-8"))
    assert report["call_count"] == 4 + 1 + 1 + len(SLIDE_TYPES)


def test_driver_modules_are_documented():
    assert pipeline.__doc__.startswith("Five-phase pipeline driver")
    assert pipeline_common.__doc__.startswith("Shared pieces for pipeline stages")
