"""
ingestion.py — Text extraction from uploaded tender files.

Everything that turns a RawFile into plain text lives here. Each file
kind has an ordered chain of strategies; the first one that succeeds
wins:

    Word package  -> document.xml flattening -> vision transcription
    Plain text    -> decode
    PDF           -> vision transcription
    Image         -> vision transcription

Strategies return an ExtractionOutcome instead of raising, and the
outcome records which strategy produced the text.

The multi-file phase runs on a small thread pool under one wall-clock
budget. When the budget runs out we stop handing out work and return
what we have.
"""

from __future__ import annotations

import html
import logging
import re
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from bid_documents.archive import WORD_DOCUMENT_PATH, ArchiveReader, get_archive_reader
from bid_documents.config import config
from bid_documents.schemas import ExtractedText, FileKind, RawFile

logger = logging.getLogger(__name__)


@dataclass
class ExtractionOutcome:
    ok: bool
    text: str = ""
    strategy: str = ""
    reason: str = ""

    @classmethod
    def success(cls, strategy: str, text: str) -> "ExtractionOutcome":
        return cls(ok=True, text=text, strategy=strategy)

    @classmethod
    def failure(cls, strategy: str, reason: str) -> "ExtractionOutcome":
        return cls(ok=False, strategy=strategy, reason=reason)


@dataclass
class ExtractionContext:
    """What a strategy may use. `deadline` is a time.monotonic() value or None."""
    client: Optional[object] = None
    reader: Optional[ArchiveReader] = None
    deadline: Optional[float] = None

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())


# ── Word XML flattening ──────────────────────────────────────────────────

_PARAGRAPH_TAGS = {"w:p"}
_BREAK_TAGS = {"w:br", "w:cr"}
# field codes and tracked deletions are not visible text
_HIDDEN_TEXT_TAGS = {"w:instrText", "w:delText"}


def _tag_name(tag: str) -> str:
    tag = tag.lstrip("/")
    end = len(tag)
    for i, ch in enumerate(tag):
        if ch.isspace() or ch == "/":
            end = i
            break
    return tag[:end]


def flatten_word_xml(xml: str) -> str:
    """
    Flatten WordprocessingML to text.

    Everything between '<' and '>' is dropped, but the tag name decides
    what goes into the output first: <w:p> starts a line, <w:br>/<w:cr>
    break one, <w:tab> is a tab (except tab-stop definitions inside
    <w:tabs>). Table rows come out as one line each with " | " between
    cells, which is the same convention the vision transcription uses.
    Runs of 3+ newlines collapse to exactly 2. No trimming here.
    """
    out: List[str] = []
    i = 0
    n = len(xml)
    hidden = 0
    in_tab_stops = False
    # one bool per open row: "next cell is the first one"
    rows: List[bool] = []
    # one int per open cell: paragraphs seen so far
    cells: List[int] = []

    while i < n:
        lt = xml.find("<", i)
        if lt == -1:
            if not hidden:
                out.append(xml[i:])
            break
        if lt > i and not hidden:
            out.append(xml[i:lt])
        gt = xml.find(">", lt + 1)
        if gt == -1:
            # truncated tag at the end of a damaged part
            break
        tag = xml[lt + 1:gt]
        i = gt + 1

        if tag.startswith(("?", "!")):
            continue

        closing = tag.startswith("/")
        self_closing = tag.endswith("/")
        name = _tag_name(tag)

        if name == "w:tabs":
            in_tab_stops = not closing and not self_closing
        elif name in _HIDDEN_TEXT_TAGS:
            if not self_closing:
                hidden = max(0, hidden - 1) if closing else hidden + 1
        elif name == "w:tr":
            if closing:
                if rows:
                    rows.pop()
            else:
                out.append("\n")
                if not self_closing:
                    rows.append(True)
        elif name == "w:tc":
            if closing:
                if cells:
                    cells.pop()
            else:
                if rows:
                    if not rows[-1]:
                        out.append(" | ")
                    rows[-1] = False
                if not self_closing:
                    cells.append(0)
        elif name in _PARAGRAPH_TAGS and not closing:
            if cells:
                if cells[-1]:
                    out.append(" ")
                cells[-1] += 1
            else:
                out.append("\n")
        elif name in _BREAK_TAGS and not closing:
            out.append(" " if cells else "\n")
        elif name == "w:tab" and not closing and not in_tab_stops:
            out.append("\t")

    text = html.unescape("".join(out))
    return re.sub(r"\n{3,}", "\n\n", text)


# ── Strategies ───────────────────────────────────────────────────────────

def _word_xml_strategy(raw: RawFile, ctx: ExtractionContext) -> ExtractionOutcome:
    name = "word_xml"
    reader = ctx.reader or get_archive_reader()
    xml_bytes = reader.read_member(raw.data, WORD_DOCUMENT_PATH)
    if xml_bytes is None:
        return ExtractionOutcome.failure(name, f"{WORD_DOCUMENT_PATH} not readable")

    text = flatten_word_xml(xml_bytes.decode("utf-8", errors="replace")).strip()
    if len(text) < config.extraction.min_docx_chars:
        return ExtractionOutcome.failure(
            name, f"only {len(text)} chars after flattening (< {config.extraction.min_docx_chars})"
        )
    return ExtractionOutcome.success(name, text)


def _plain_text_strategy(raw: RawFile, ctx: ExtractionContext) -> ExtractionOutcome:
    try:
        text = raw.data.decode("utf-8-sig")
    except UnicodeDecodeError:
        # Old Windows exports of 1C/Excel are cp1251. Wrong guess = mojibake, not a crash.
        text = raw.data.decode("cp1251", errors="replace")
    if not text.strip():
        return ExtractionOutcome.failure("plain_text", "empty file")
    return ExtractionOutcome.success("plain_text", text)


def _vision_strategy(raw: RawFile, ctx: ExtractionContext) -> ExtractionOutcome:
    name = "vision"
    if ctx.client is None:
        return ExtractionOutcome.failure(name, "no completion client configured")

    timeout = config.llm.vision_timeout_s
    remaining = ctx.remaining()
    if remaining is not None:
        if remaining <= 0:
            return ExtractionOutcome.failure(name, "extraction budget exhausted")
        timeout = min(timeout, remaining)

    mime = raw.mime_type
    if raw.declared_kind is FileKind.WORD_PACKAGE:
        mime = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
    text = ctx.client.transcribe(raw.data, mime, raw.name, timeout_s=timeout)
    if not text or not text.strip():
        return ExtractionOutcome.failure(name, "empty transcription")
    return ExtractionOutcome.success(name, text.strip())


Strategy = Callable[[RawFile, ExtractionContext], ExtractionOutcome]


def strategies_for(raw: RawFile) -> List[Strategy]:
    kind = raw.declared_kind
    if kind is FileKind.WORD_PACKAGE:
        return [_word_xml_strategy, _vision_strategy]
    if kind is FileKind.PLAIN_TEXT:
        return [_plain_text_strategy]
    if kind is FileKind.PDF:
        return [_vision_strategy]
    if raw.is_image:
        return [_vision_strategy]
    return []


def extract_text(
    raw: RawFile,
    client: Optional[object] = None,
    reader: Optional[ArchiveReader] = None,
    deadline: Optional[float] = None,
) -> str:
    """
    Best-effort plain text for one file. Empty string when every strategy
    failed. Does not raise for bad file contents.
    """
    ctx = ExtractionContext(client=client, reader=reader, deadline=deadline)
    chain = strategies_for(raw)
    if not chain:
        logger.info("No extraction strategy for %s (%s)", raw.name, raw.mime_type)
        return ""

    for strategy in chain:
        t0 = time.time()
        outcome = strategy(raw, ctx)
        if outcome.ok:
            logger.info(
                "Extracted %s via %s: %d chars in %.1fs",
                raw.name, outcome.strategy, len(outcome.text), time.time() - t0,
            )
            return outcome.text
        logger.info("Strategy %s gave nothing for %s: %s", outcome.strategy, raw.name, outcome.reason)

    return ""


# ── Multi-file orchestration ─────────────────────────────────────────────

def extract_all(
    raw_files: List[RawFile],
    client: Optional[object] = None,
    cancel_event: Optional[threading.Event] = None,
    budget_s: Optional[float] = None,
    max_workers: Optional[int] = None,
    reader: Optional[ArchiveReader] = None,
) -> List[ExtractedText]:
    """
    Extract every file under one wall-clock budget.

    Results keep the input order (template concatenation depends on it).
    Files that produced no text, failed, were cut off by the budget, or
    were skipped because `cancel_event` was set are simply absent.
    """
    if not raw_files:
        return []

    budget_s = config.extraction.wall_clock_budget_s if budget_s is None else budget_s
    max_workers = max_workers or config.extraction.max_workers
    deadline = time.monotonic() + budget_s
    # shared "time's up" signal; workers check it before starting
    stop = threading.Event()
    max_bytes = config.extraction.max_file_size_mb * 1024 * 1024

    def _work(raw: RawFile) -> Optional[str]:
        if stop.is_set() or (cancel_event is not None and cancel_event.is_set()):
            return None
        if len(raw.data) > max_bytes:
            logger.warning(
                "Skipping %s: %.1f MB exceeds %d MB limit",
                raw.name, len(raw.data) / (1024 * 1024), config.extraction.max_file_size_mb,
            )
            return None
        return extract_text(raw, client=client, reader=reader, deadline=deadline)

    texts: Dict[int, str] = {}
    executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="extract")
    try:
        futures: Dict[Future, int] = {
            executor.submit(_work, raw): idx for idx, raw in enumerate(raw_files)
        }
        pending = set(futures)
        while pending:
            if cancel_event is not None and cancel_event.is_set():
                logger.warning("Extraction cancelled with %d file(s) outstanding", len(pending))
                break
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.warning(
                    "Extraction budget of %.0fs exhausted, skipping %d file(s)",
                    budget_s, len(pending),
                )
                break
            done, pending = wait(pending, timeout=min(remaining, 0.5), return_when=FIRST_COMPLETED)
            for fut in done:
                idx = futures[fut]
                try:
                    text = fut.result()
                except Exception as exc:
                    # one broken file must not take the others down with it
                    logger.warning("Extraction of %s failed: %s", raw_files[idx].name, exc)
                    continue
                if text:
                    texts[idx] = text
    finally:
        stop.set()
        # running vision calls finish on their own timeout; don't block on them
        executor.shutdown(wait=False, cancel_futures=True)

    results = [
        ExtractedText(source_file_name=raw_files[idx].name, text=texts[idx])
        for idx in sorted(texts)
    ]
    logger.info("Extracted text from %d/%d file(s)", len(results), len(raw_files))
    return results
