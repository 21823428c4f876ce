from __future__ import annotations

import importlib.util
import shutil
import subprocess
import sys
import tempfile
from pathlib import Path
from typing import Dict, List, Optional

from tqdm import tqdm

from .errors import InputValidationError
from .pipeline_common import TQDM_NCOLS, PipelinePaths, logger, write_json
from .time_utils import now_iso

MIN_CHARS = 100
TEXT_SUFFIXES = (".md", ".txt")


class Extractor:
    """Turn everything under ``context-refs/`` into plain text files."""

    def __init__(self, paths: PipelinePaths, timeout: float = 600.0) -> None:
        self.paths = paths
        self.timeout = timeout

    @staticmethod
    def markitdown_cmd() -> Optional[List[str]]:
        exe = shutil.which("markitdown")
        if exe:
            return [exe]
        if importlib.util.find_spec("markitdown") is not None:
            return [sys.executable, "-m", "markitdown"]
        return None

    @staticmethod
    def ocr_available() -> bool:
        return shutil.which("pdftoppm") is not None and shutil.which("tesseract") is not None

    def _run(self, cmd: List[str]) -> subprocess.CompletedProcess:
        return subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout)

    def convert_pdf(self, pdf: Path) -> str:
        cmd = self.markitdown_cmd()
        if cmd is None:
            return ""
        r = self._run(cmd + [str(pdf)])
        if r.returncode != 0:
            logger.warning("markitdown failed for %s. Tail:\n%s", pdf.name, r.stderr[-1000:])
            return ""
        return r.stdout

    def ocr_pdf(self, pdf: Path) -> str:
        if not self.ocr_available():
            logger.warning("OCR tools (pdftoppm, tesseract) not found; skipping OCR for %s", pdf.name)
            return ""
        with tempfile.TemporaryDirectory(prefix="pitchdeck-ocr-") as tmp:
            prefix = Path(tmp) / "page"
            r = self._run(["pdftoppm", "-r", "300", "-png", str(pdf), str(prefix)])
            if r.returncode != 0:
                logger.warning("pdftoppm failed for %s: %s", pdf.name, r.stderr[-500:])
                return ""
            pages = []
            for i, img in enumerate(sorted(Path(tmp).glob("page*.png")), 1):
                o = self._run(["tesseract", str(img), "stdout"])
                if o.returncode == 0:
                    pages.append(f"--- Page {i} ---\n{o.stdout}")
            return "\n\n".join(pages)

    def extract_pdf(self, pdf: Path) -> Dict[str, object]:
        text = self.convert_pdf(pdf)
        method = "markitdown"
        if len(text.strip()) < MIN_CHARS:
            logger.info("Low text yield from %s (%s chars); trying OCR", pdf.name, len(text.strip()))
            ocr = self.ocr_pdf(pdf)
            if len(ocr.strip()) > len(text.strip()):
                text, method = ocr, "ocr"
        if not text.strip():
            text, method = f"# Extraction failed for: {pdf.name}\n", "failed"
        out = self.paths.extracted_text / f"{pdf.stem}.txt"
        out.write_text(text, encoding="utf-8")
        return {"source": pdf.name, "output": out.name, "method": method, "chars": len(text)}

    def copy_text(self, src: Path) -> Dict[str, object]:
        out = self.paths.extracted_text / f"{src.stem}.txt"
        shutil.copyfile(src, out)
        return {"source": src.name, "output": out.name, "method": "copy", "chars": len(out.read_text(encoding="utf-8", errors="replace"))}

    def run(self) -> Dict[str, object]:
        src_dir = self.paths.context_refs
        if not src_dir.is_dir():
            raise InputValidationError([f"Source directory not found: {src_dir}"])
        self.paths.extracted_text.mkdir(parents=True, exist_ok=True)

        sources = sorted(p for p in src_dir.iterdir() if p.is_file() and not p.name.startswith("."))
        pdfs = [p for p in sources if p.suffix.lower() == ".pdf"]
        texts = [p for p in sources if p.suffix.lower() in TEXT_SUFFIXES]
        if pdfs and self.markitdown_cmd() is None:
            raise InputValidationError(["markitdown is not installed (pip install 'markitdown[pdf]')"])

        files: List[Dict[str, object]] = []
        for src in texts:
            files.append(self.copy_text(src))
        for pdf in tqdm(pdfs, desc="Extract PDFs", unit="pdf", ncols=TQDM_NCOLS, dynamic_ncols=False):
            files.append(self.extract_pdf(pdf))

        skipped = [p.name for p in sources if p not in pdfs and p not in texts]
        for name in skipped:
            logger.debug("Skipping unsupported file: %s", name)

        report = {
            "extracted_at": now_iso(),
            "files": files,
            "skipped": skipped,
            "failed": [f["source"] for f in files if f["method"] == "failed"],
            "total_chars": sum(int(f["chars"]) for f in files),
        }
        write_json(self.paths.artifact("extraction-report.json"), report)
        logger.info("Extracted %s files (%s failed)", len(files), len(report["failed"]))
        return report

    def combine(self) -> Path:
        """Concatenate the extracted texts into ``output/combined-context.txt``."""
        parts = []
        for txt in sorted(self.paths.extracted_text.glob("*.txt")):
            body = txt.read_text(encoding="utf-8", errors="replace")
            parts.append("=" * 80 + f"\nSOURCE: {txt.name}\n" + "=" * 80 + f"\n\n{body.strip()}\n")
        out = self.paths.output / "combined-context.txt"
        out.parent.mkdir(parents=True, exist_ok=True)
        out.write_text("\n".join(parts), encoding="utf-8")
        logger.info("Combined %s files into %s", len(parts), out)
        return out
