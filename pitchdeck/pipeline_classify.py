from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List, Optional

from tqdm import tqdm

from .errors import AgentError, CostLimitError
from .models import (
    SLIDE_TYPES,
    ClassificationResult,
    ContentItem,
    DataQuality,
    DocumentClassification,
    SlideContext,
    SlideRelevance,
    SourceRelevance,
)
from .pipeline_common import TQDM_NCOLS, BaseAgent, logger, read_text, truncate_text, validate_model, write_json
from .time_utils import now_iso

MIN_DOCUMENT_CHARS = 100
MAX_DOCUMENT_CHARS = 100000
TOC_PREVIEW_CHARS = 2000
SOURCE_THRESHOLD = 0.3
HIGH_QUALITY_THRESHOLD = 0.7
MAX_GAPS = 10

FACT_TYPES = ("fact", "statistic")
METRIC_TYPES = ("metric", "statistic")

# Keywords each slide is expected to evidence; matched against item types and text.
CRITICAL_REQUIREMENTS: Dict[str, List[str]] = {
    "title": ["company_name", "tagline"],
    "purpose": ["mission", "vision"],
    "problem": ["pain_point", "statistic"],
    "solution": ["value_proposition", "feature"],
    "why_now": ["timing_factor", "trend"],
    "market_size": ["tam", "sam", "market_size", "market"],
    "competition": ["competitor", "differentiation"],
    "product": ["feature", "capability"],
    "business_model": ["revenue_model", "pricing", "unit_economics"],
    "traction": ["metric", "milestone", "customer"],
    "team": ["founder", "executive", "background", "bio"],
    "ask": ["funding_amount", "use_of_funds"],
}

CLASSIFIER_SYSTEM_PROMPT = f"""You are an analyst preparing source material for an investor pitch deck.

For the document you are given, decide how relevant it is to each slide type and
extract the concrete content that supports each one.

Slide types: {", ".join(SLIDE_TYPES)}

Return ONLY JSON with this shape:
{{
  "document_type": "string",
  "slide_relevance": {{
    "<slide_type>": {{
      "score": 0.0,
      "items": [
        {{"type": "fact|statistic|quote|metric|...", "content": "string", "location": "string", "confidence": 0.0}}
      ]
    }}
  }},
  "conflicts": ["string"],
  "missing_critical": ["string"]
}}

Rules:
- Scores and confidences are between 0 and 1.
- Only extract content that appears in the document; never invent numbers.
- Use an empty items list for slide types the document does not support.
"""


def _label(req: str) -> str:
    return req.replace("_", " ")


def merge_classifications(classifications: List[DocumentClassification]) -> ClassificationResult:
    """Build the cross-document aggregate from per-document results."""
    slides: Dict[str, SlideContext] = {}
    for slide_type in SLIDE_TYPES:
        sources: List[SourceRelevance] = []
        all_content: List[ContentItem] = []
        for doc in classifications:
            rel = doc.slide_relevance.get(slide_type)
            if rel is None or rel.score <= SOURCE_THRESHOLD:
                continue
            tagged = [ContentItem.model_validate({**item.model_dump(), "source": doc.filename}) for item in rel.items]
            sources.append(
                SourceRelevance(
                    filename=doc.filename,
                    relevance_score=rel.score,
                    facts=[i for i in tagged if i.type in FACT_TYPES],
                    quotes=[i for i in tagged if i.type == "quote"],
                    metrics=[i for i in tagged if i.type in METRIC_TYPES],
                )
            )
            all_content.extend(tagged)

        sources.sort(key=lambda s: s.relevance_score, reverse=True)
        n = len(sources)
        slides[slide_type] = SlideContext(
            relevant_sources=sources,
            all_content=all_content,
            data_quality=DataQuality(
                source_count=n,
                completeness=min(1.0, n / 3),
                avg_confidence=sum(s.relevance_score for s in sources) / n if n else 0.0,
            ),
        )

    conflicts: List[Any] = []
    for doc in classifications:
        conflicts.extend({"source": doc.filename, "conflict": c} for c in doc.conflicts)

    return ClassificationResult(
        slides=slides,
        missing_critical_info=identify_gaps(slides),
        conflicts=conflicts,
        documents_processed=len(classifications),
        classified_at=now_iso(),
        synthetic=any(d.synthetic for d in classifications),
    )


def identify_gaps(slides: Dict[str, SlideContext]) -> List[str]:
    """Keyword heuristic for slides lacking evidence. Best effort, not exhaustive."""
    gaps: List[str] = []
    for slide_type, requirements in CRITICAL_REQUIREMENTS.items():
        slide = slides.get(slide_type)
        if slide is None:
            continue
        has_content = bool(slide.all_content)
        has_strong_source = any(s.relevance_score > HIGH_QUALITY_THRESHOLD for s in slide.relevant_sources)
        if not has_content and not has_strong_source:
            gaps.append(f"{slide_type}: No content found")
            continue
        if slide.data_quality.completeness >= 0.3 or len(slide.all_content) >= 2:
            continue
        types = [(c.type or "").lower() for c in slide.all_content]
        text = " ".join((c.content or "").lower() for c in slide.all_content)
        for req in requirements:
            if not any(req in t for t in types) and _label(req) not in text:
                gaps.append(f"{slide_type}: Limited {_label(req)} information")

    unique = list(dict.fromkeys(gaps))
    return unique[:MAX_GAPS]


def build_relevance_matrix(classifications: List[DocumentClassification]) -> Dict[str, Any]:
    return {
        "documents": [d.filename for d in classifications],
        "slide_types": list(SLIDE_TYPES),
        "scores": [
            [round(d.slide_relevance[t].score, 3) if t in d.slide_relevance else 0.0 for t in SLIDE_TYPES]
            for d in classifications
        ],
    }


class Classifier(BaseAgent):
    name = "classifier"
    provider = "anthropic"
    default_model = "claude-sonnet-4-20250514"
    default_max_tokens = 8192

    def list_documents(self) -> List[Path]:
        return sorted(self.paths.extracted_text.glob("*.txt"))

    def build_toc_prompt(self, documents: Dict[str, str]) -> str:
        blocks = []
        for name, content in documents.items():
            preview = content[:TOC_PREVIEW_CHARS]
            blocks.append(
                f"### {name}\nWords: {len(content.split())} | Characters: {len(content)}\n\n{preview}"
            )
        return (
            "Build a table of contents for the document set below, which will be used to write an "
            "investor pitch deck.\n\n"
            "Return ONLY JSON:\n"
            "{\n"
            '  "documents": [{"filename": "string", "document_type": "string", "content_category": "string",\n'
            '                 "key_topics": ["string"], "estimated_relevance": {"<slide_type>": 0.0}, "summary": "string"}],\n'
            '  "overall_coverage": {"strong_areas": ["string"], "weak_areas": ["string"], "potential_conflicts": ["string"]},\n'
            '  "recommended_processing_order": ["filename"]\n'
            "}\n\n"
            f"Slide types: {', '.join(SLIDE_TYPES)}\n\n"
            "Documents (previews):\n\n" + "\n\n".join(blocks)
        )

    def mock_toc(self, documents: Dict[str, str]) -> Dict[str, Any]:
        return {
            "documents": [
                {
                    "filename": name,
                    "document_type": "unknown",
                    "content_category": "[DRY-RUN]",
                    "key_topics": [],
                    "estimated_relevance": {t: 0.5 for t in SLIDE_TYPES},
                    "summary": f"[DRY-RUN] Mock summary for {name}",
                }
                for name in documents
            ],
            "overall_coverage": {"strong_areas": [], "weak_areas": [], "potential_conflicts": []},
            "recommended_processing_order": list(documents),
            "synthetic": True,
        }

    def build_table_of_contents(self, documents: Dict[str, str], system: str) -> Dict[str, Any]:
        prompt = self.build_toc_prompt(documents)
        self.log_prompt("toc", prompt)
        if self.dry_run:
            self.log_dry_run("table of contents", prompt)
            return self.mock_toc(documents)
        resp = self.call_model(system, prompt, context={"prompt_type": "toc"})
        toc = self.parse_response(resp.text)
        return toc if isinstance(toc, dict) else {"documents": toc}

    def build_user_prompt(
        self,
        filename: str,
        content: str,
        story: str,
        style_guide: str,
        toc: Optional[Dict[str, Any]] = None,
    ) -> str:
        toc_block = ""
        if toc:
            toc_block = (
                "\n## Document set overview\n\n"
                + json.dumps(toc, indent=2, ensure_ascii=False)[:6000]
                + "\n\nUse the overview to avoid duplicating content that other documents cover better.\n"
            )
        return (
            f"## Document: {filename}\n\n"
            f"{truncate_text(content, MAX_DOCUMENT_CHARS)}\n"
            f"{toc_block}\n"
            f"## Company story\n\n{story}\n\n"
            f"## Style guide\n\n{style_guide}\n\n"
            "## Instructions\n\n"
            "Classify this document against every slide type and extract supporting items. "
            "Return only the JSON object described in the system prompt."
        )

    @staticmethod
    def mock_classification(filename: str) -> DocumentClassification:
        return DocumentClassification(
            filename=filename,
            document_type="[DRY-RUN] mock",
            slide_relevance={
                t: SlideRelevance(
                    score=0.5,
                    items=[
                        ContentItem(
                            type="mock",
                            content=f"[DRY-RUN] Mock content for {t} from {filename}",
                            location="n/a",
                            confidence=0.5,
                            synthetic=True,
                        )
                    ],
                )
                for t in SLIDE_TYPES
            },
            synthetic=True,
        )

    def classify_document(
        self,
        filename: str,
        content: str,
        system: str,
        story: str,
        style_guide: str,
        toc: Optional[Dict[str, Any]] = None,
    ) -> DocumentClassification:
        prompt = self.build_user_prompt(filename, content, story, style_guide, toc)
        self.log_prompt("classify", prompt, document=filename)
        if self.dry_run:
            self.log_dry_run(f"classify {filename}", prompt)
            return self.mock_classification(filename)

        resp = self.call_model(system, prompt, context={"document": filename})
        data = self.parse_response(resp.text)
        if not isinstance(data, dict):
            raise AgentError(f"Classification for {filename} is not a JSON object", context={"document": filename})
        relevance = data.get("slide_relevance") or data.get("slideRelevance") or {}
        if not isinstance(relevance, dict):
            relevance = {}
        return validate_model(
            DocumentClassification,
            {
                "filename": filename,
                "document_type": data.get("document_type") or data.get("documentType") or "unknown",
                "slide_relevance": {k: v for k, v in relevance.items() if k in SLIDE_TYPES and isinstance(v, dict)},
                "conflicts": data.get("conflicts") or [],
                "missing_critical": data.get("missing_critical") or data.get("missingCritical") or [],
            },
            f"Classification for {filename}",
            context={"document": filename},
        )

    def execute(self) -> ClassificationResult:
        story = read_text(self.paths.story)
        style_guide = read_text(self.paths.style_guide)
        system = self.load_system_prompt("classifier-system.md", CLASSIFIER_SYSTEM_PROMPT)
        self.log_prompt("system", system)

        files = self.list_documents()
        if not files:
            raise AgentError(f"No extracted text files in {self.paths.extracted_text}")

        documents: Dict[str, str] = {}
        for path in files:
            content = path.read_text(encoding="utf-8", errors="replace")
            if len(content.strip()) < MIN_DOCUMENT_CHARS:
                logger.warning("Skipping %s (under %s characters)", path.name, MIN_DOCUMENT_CHARS)
                continue
            documents[path.name] = content
        if not documents:
            raise AgentError("Every extracted document is too short to classify")

        toc = self.build_table_of_contents(documents, system)
        write_json(self.paths.artifact("table-of-contents.json"), toc)

        classifications: List[DocumentClassification] = []
        for name, content in tqdm(documents.items(), desc="Classify", unit="doc", ncols=TQDM_NCOLS, dynamic_ncols=False):
            try:
                classifications.append(self.classify_document(name, content, system, story, style_guide, toc))
            except CostLimitError:
                raise
            except AgentError as exc:
                logger.error("Failed to classify %s: %s", name, exc)

        if not classifications:
            raise AgentError("No document could be classified")

        result = merge_classifications(classifications)
        write_json(self.paths.artifact("classified-context.json"), result.model_dump())
        write_json(self.paths.artifact("relevance-matrix.json"), build_relevance_matrix(classifications))
        logger.info(
            "Classified %s/%s documents; %s gaps", len(classifications), len(documents), len(result.missing_critical_info)
        )
        return result
