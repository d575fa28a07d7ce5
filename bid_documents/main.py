"""
main.py — Pipeline orchestration for BidDocGen.

One call generates one bid document. Stages:

  [1/5] fetch the analysis's uploaded files from storage
  [2/5] extract text from each (bounded pool, one wall-clock budget)
  [3/5] look for the document's template among the texts
  [4/5] compose the prompt (template mode or free mode)
  [5/5] call the completion gateway and validate the result

Nothing is cached between calls and nothing is written back to storage;
saving the generated document is the web app's job.

Failure policy: a missing document name / analysis id or a missing
gateway key stops the run before any work is done. A file that can't be
downloaded or read is logged and skipped. Gateway errors from the final
call propagate with their classified type.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import threading
import time
from pathlib import Path
from typing import List, Optional

from bid_documents.config import config
from bid_documents.errors import BidGenerationError, GenerationCancelled, InputError
from bid_documents.export import render_docx
from bid_documents.ingestion import extract_all
from bid_documents.llm_client import CompletionClient
from bid_documents.prompts import compose_prompt
from bid_documents.schemas import GenerationRequest, GenerationResult, RawFile
from bid_documents.storage import FileStore, LocalFileStore
from bid_documents.templates import locate_template

logger = logging.getLogger("bid_documents")


class BidDocumentPipeline:
    """
    End-to-end generation for one document.

    Usage:
        pipeline = BidDocumentPipeline(LocalFileStore("uploads"))
        result = pipeline.run(GenerationRequest(analysis_id="42", document_name="Анкета участника"))
    """

    def __init__(self, store: FileStore, client: Optional[CompletionClient] = None):
        self.store = store
        self._client = client

    @property
    def client(self) -> CompletionClient:
        # created lazily so a missing key surfaces as ConfigurationError on first use
        if self._client is None:
            self._client = CompletionClient()
        return self._client

    def run(
        self,
        request: GenerationRequest,
        cancel_event: Optional[threading.Event] = None,
    ) -> GenerationResult:
        if not request.analysis_id or not request.document_name:
            raise InputError("Необходимо указать analysisId и documentName.")
        client = self.client

        overall_start = time.time()
        deadline = time.monotonic() + config.extraction.wall_clock_budget_s
        logger.info("=" * 60)
        logger.info("Generating %r for analysis %s", request.document_name, request.analysis_id)
        logger.info("=" * 60)

        # ── Stage 1: Fetch files ─────────────────────────────────
        t0 = time.time()
        logger.info("[1/5] Fetching uploaded files ...")
        raw_files = self._fetch_files(request.analysis_id, deadline, cancel_event)
        analysis = self._fetch_analysis(request.analysis_id)
        logger.info("  ✓ %d file(s) in %.1fs", len(raw_files), time.time() - t0)

        # ── Stage 2: Text extraction ─────────────────────────────
        t0 = time.time()
        logger.info("[2/5] Extracting text ...")
        extracted = extract_all(
            raw_files,
            client=client,
            cancel_event=cancel_event,
            budget_s=max(0.0, deadline - time.monotonic()),
        )
        logger.info("  ✓ %d text(s) in %.1fs", len(extracted), time.time() - t0)

        # ── Stage 3: Template search ─────────────────────────────
        t0 = time.time()
        logger.info("[3/5] Locating template ...")
        decision = locate_template(request.document_name, extracted)
        if decision.found:
            logger.info(
                "  ✓ template from %s (%d chars) in %.2fs",
                ", ".join(decision.matched_file_names), len(decision.template_text), time.time() - t0,
            )
        else:
            logger.info("  ⊘ no template, free generation")

        # ── Stage 4: Prompt ──────────────────────────────────────
        logger.info("[4/5] Composing prompt ...")
        prompt = compose_prompt(
            request.document_name,
            decision,
            profile=request.company_data,
            bid_amount=request.bid_amount_data,
            tender_context=request.tender_context,
            analysis=analysis,
        )

        # ── Stage 5: Generation ──────────────────────────────────
        if cancel_event is not None and cancel_event.is_set():
            raise GenerationCancelled()
        t0 = time.time()
        logger.info("[5/5] Generating document (%s mode) ...", prompt.mode)
        document = client.generate(prompt, fallback_title=request.document_name)
        logger.info("  ✓ %d section(s) in %.1fs", len(document.sections), time.time() - t0)

        logger.info("DONE in %.1fs | template=%s", time.time() - overall_start, decision.found)
        return GenerationResult(
            document=document,
            has_template=decision.found,
            matched_files=decision.matched_file_names,
        )

    def _fetch_files(
        self,
        analysis_id: str,
        deadline: float,
        cancel_event: Optional[threading.Event],
    ) -> List[RawFile]:
        try:
            stored = self.store.list_files(analysis_id)
        except Exception as exc:
            # no files just means free generation
            logger.warning("Could not list files for analysis %s: %s", analysis_id, exc)
            return []

        raw_files: List[RawFile] = []
        for item in stored:
            if time.monotonic() > deadline or (cancel_event is not None and cancel_event.is_set()):
                logger.warning("Stopped downloading with %d file(s) left", len(stored) - len(raw_files))
                break
            try:
                data = self.store.download(item.file_path)
            except Exception as exc:
                logger.warning("Download of %s failed: %s", item.file_path, exc)
                continue
            raw_files.append(RawFile.from_upload(item.file_name, data, item.content_type))
        return raw_files

    def _fetch_analysis(self, analysis_id: str):
        try:
            return self.store.get_analysis(analysis_id)
        except Exception as exc:
            logger.warning("Could not load analysis %s: %s", analysis_id, exc)
            return None


def _load_json(path: Optional[str]) -> Optional[dict]:
    if not path:
        return None
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="bid_documents",
        description="BidDocGen — generate a filled bid document from uploaded tender files",
    )
    parser.add_argument("--analysis-id", required=True, help="Folder name under --store holding the uploads")
    parser.add_argument("--document", required=True, help='Document to generate, e.g. "Анкета участника"')
    parser.add_argument("--store", default="uploads", help="Local upload root (default: uploads)")
    parser.add_argument("--company", default=None, help="JSON file with the participant's company card")
    parser.add_argument("--bid-amount", default=None, help="JSON file with bid amount / VAT data")
    parser.add_argument("--context-file", default=None, help="Text file with tender context")
    parser.add_argument("--output", "-o", default=None, help="JSON output path (default: stdout)")
    parser.add_argument("--docx", default=None, help="Also write the document as .docx here")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose logging")

    args = parser.parse_args()

    level = logging.DEBUG if args.verbose else getattr(logging, config.log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
        datefmt="%H:%M:%S",
    )

    context = Path(args.context_file).read_text(encoding="utf-8") if args.context_file else None
    request = GenerationRequest(
        analysis_id=args.analysis_id,
        document_name=args.document,
        company_data=_load_json(args.company),
        bid_amount_data=_load_json(args.bid_amount),
        tender_context=context,
    )

    pipeline = BidDocumentPipeline(LocalFileStore(args.store))
    try:
        result = pipeline.run(request)
    except BidGenerationError as exc:
        logger.error("%s: %s %s", type(exc).__name__, exc.message, exc.detail)
        sys.exit(1)

    payload = json.dumps(result.model_dump(by_alias=True), indent=2, ensure_ascii=False)
    if args.output:
        Path(args.output).write_text(payload, encoding="utf-8")
        logger.info("Output written to: %s", args.output)
    else:
        print(payload)

    if args.docx:
        Path(args.docx).write_bytes(render_docx(result.document))
        logger.info("DOCX written to: %s", args.docx)


if __name__ == "__main__":
    main()
