from __future__ import annotations

import json

import pytest
from conftest import FakeClient, fenced

from pitchdeck.errors import CostLimitError, ErrorKind, ProviderError
from pitchdeck.models import SLIDE_TYPES, ContentItem, DataQuality, PipelineSettings, SlideContext
from pitchdeck.pipeline_classify import Classifier, identify_gaps
from pitchdeck.pipeline_generate import DeckGenerator
from pitchdeck.pipeline_synthesize import Synthesizer

COVERED = [t for t in SLIDE_TYPES if t != "team"]


def classification_for(filename: str) -> dict:
    return {
        "document_type": "report",
        "slide_relevance": {
            t: {
                "score": 0.8,
                "items": [
                    {"type": "statistic", "content": f"{t} figure from {filename}", "location": "p. 2", "confidence": 0.9}
                ],
            }
            for t in COVERED
        },
        "conflicts": ["FY24 revenue differs from the financial model"] if filename == "financials.txt" else [],
    }


def classifier_handler(system: str, prompt: str):
    if prompt.startswith("Build a table of contents"):
        return fenced({"documents": [], "recommended_processing_order": []})
    filename = prompt.split("\n", 1)[0].replace("## Document: ", "").strip()
    return fenced(classification_for(filename))


def synthesis_reply() -> str:
    return fenced(
        {
            "company": {"name": "Acme Robotics", "tagline": "Picking, automated"},
            "slides": [
                {
                    "type": t,
                    "headline": f"{t} headline",
                    "body": f"{t} body",
                    "citations": [{"fact": f"{t} fact", "source": "market-report.txt", "confidence": 0.9}],
                    "reasoning_trace": "single source",
                }
                for t in COVERED
            ],
        }
    )


def deck_reply() -> str:
    return fenced(
        {
            "company": {"name": "Acme Robotics"},
            "design": {"primary_color": "0A0A0A", "secondary_color": "1E3A5F", "accent_color": "5E5CE6"},
            "slides": [{"type": t, "headline": f"Polished {t}", "citations": []} for t in COVERED],
        }
    )


def test_missing_team_content_flows_through_to_deck_warnings(make_ctx, project):
    ctx = make_ctx()
    result = Classifier(ctx, client=FakeClient(handler=classifier_handler)).execute()

    assert result.documents_processed == 3
    assert "team: No content found" in result.missing_critical_info
    assert not any(g.startswith("traction") for g in result.missing_critical_info)
    assert result.slides["market_size"].data_quality.completeness == 1.0
    assert {c["source"] for c in result.conflicts} == {"financials.txt"}
    assert all(getattr(i, "source", None) for i in result.slides["problem"].all_content)
    for name in ("table-of-contents.json", "classified-context.json", "relevance-matrix.json"):
        assert project.artifact(name).exists()
    # one table-of-contents call plus one call per document
    assert len(ctx.cost_tracker.calls) == 4

    synthesis = Synthesizer(ctx, client=FakeClient([synthesis_reply()])).execute()
    assert "Missing slide type: team" in synthesis["metadata"]["warnings"]
    assert synthesis["metadata"]["reasoning_mode"] == "extended_thinking"

    deck = DeckGenerator(ctx, client=FakeClient([deck_reply()])).execute()
    assert "Missing slide type: team" in deck.metadata["warnings"]
    assert [s.type for s in deck.slides] == COVERED
    assert set(deck.image_prompts) == set(COVERED)
    saved = json.loads((project.output / "deck-config.json").read_text(encoding="utf-8"))
    assert saved["company"]["name"] == "Acme Robotics"


def test_dry_run_classifies_without_network(make_ctx, project, no_network):
    ctx = make_ctx(dry_run=True)
    result = Classifier(ctx).execute()

    assert no_network == []
    assert ctx.cost_tracker.calls == []
    assert result.synthetic
    assert result.documents_processed == 3
    items = result.slides["team"].all_content
    assert items and all(i.synthetic for i in items)
    assert all(i.content.startswith("[DRY-RUN]") for i in items)
    # system prompt, table of contents and one prompt per document
    assert len(ctx.prompt_logger.entries) == 5
    assert len(list(project.prompts.glob("*.md"))) == 5


def test_failing_document_is_skipped(make_ctx):
    def handler(system, prompt):
        if prompt.startswith("## Document: financials.txt"):
            return ProviderError("invalid api key", kind=ErrorKind.AUTH, status_code=401)
        return classifier_handler(system, prompt)

    result = Classifier(make_ctx(), client=FakeClient(handler=handler)).execute()
    assert result.documents_processed == 2
    assert result.slides["problem"].data_quality.source_count == 2


def test_short_documents_are_skipped(make_ctx, project):
    (project.extracted_text / "stub.txt").write_text("too short", encoding="utf-8")
    client = FakeClient(handler=classifier_handler)
    result = Classifier(make_ctx(), client=client).execute()
    assert result.documents_processed == 3
    assert not any(p.startswith("## Document: stub.txt") for p in client.prompts)


def test_cost_ceiling_stops_classification(make_ctx):
    ctx = make_ctx(settings=PipelineSettings(max_cost=0.015))
    client = FakeClient(handler=classifier_handler)
    with pytest.raises(CostLimitError):
        Classifier(ctx, client=client).execute()
    # 0.0105 per call: the second call crosses the ceiling and is still recorded
    assert len(ctx.cost_tracker.calls) == 2


def test_limited_information_gap():
    slides = {
        "purpose": SlideContext(
            all_content=[ContentItem(type="mission", content="Make every warehouse autonomous")],
            data_quality=DataQuality(source_count=0, completeness=0.0),
        )
    }
    assert identify_gaps(slides) == ["purpose: Limited vision information"]


def test_gaps_are_capped():
    slides = {t: SlideContext() for t in SLIDE_TYPES}
    gaps = identify_gaps(slides)
    assert len(gaps) == 10
    assert gaps[0] == "title: No content found"


def test_null_fields_in_a_classification_are_tolerated(make_ctx):
    def handler(system, prompt):
        if prompt.startswith("## Document: financials.txt"):
            return fenced(
                {
                    "document_type": None,
                    "slide_relevance": {
                        "team": {"score": None, "items": [{"content": None, "confidence": None}]},
                        "traction": {"score": "0.9", "items": [{"type": None, "content": "ARR $2M", "location": 3}, None]},
                    },
                    "missing_critical": [None, "cap table"],
                }
            )
        return classifier_handler(system, prompt)

    result = Classifier(make_ctx(), client=FakeClient(handler=handler)).execute()

    assert result.documents_processed == 3
    # a null score counts as zero relevance
    assert result.slides["team"].data_quality.source_count == 0
    item = next(i for i in result.slides["traction"].all_content if i.content == "ARR $2M")
    assert (item.type, item.location, item.confidence) == ("fact", "3", 0.5)
