"""
templates.py — Decide which uploaded file is the form we have to fill.

Tender packages usually ship the bid forms themselves ("Форма 2. Анкета
участника", "Приложение 3 к документации"), either as separate files or
buried in the main documentation. If we find the form, the generator
reproduces it and only fills the blanks; if not, it writes a standard
form from scratch. Very short matches are discarded as noise.

Matching rules, in order, per file:
  (a) normalized file name contains the first 20 chars of the name
  (b) normalized body contains the whole normalized name
  (c) significant-word overlap name vs file name > 40%
  (d) significant-word overlap name vs first 2000 chars of body > 40%
If nothing matches, a second pass accepts any whole text with >= 50%
overlap. All thresholds live in config.template.

Comparisons run on the native text and on a Latin transliteration, so
"forma_2_anketa.docx" can claim "Форма 2: Анкета участника".
"""

from __future__ import annotations

import logging
import re
from pathlib import PurePosixPath
from typing import Iterable, List, Optional, Set

from bid_documents.config import config
from bid_documents.schemas import ExtractedText, TemplateDecision

logger = logging.getLogger(__name__)

_NOT_ALLOWED = re.compile(r"[^a-z0-9а-яё\s]+")
_SPACES = re.compile(r"\s+")

_TRANSLIT = {
    "а": "a", "б": "b", "в": "v", "г": "g", "д": "d", "е": "e", "ё": "e",
    "ж": "zh", "з": "z", "и": "i", "й": "y", "к": "k", "л": "l", "м": "m",
    "н": "n", "о": "o", "п": "p", "р": "r", "с": "s", "т": "t", "у": "u",
    "ф": "f", "х": "kh", "ц": "ts", "ч": "ch", "ш": "sh", "щ": "shch",
    "ъ": "", "ы": "y", "ь": "", "э": "e", "ю": "yu", "я": "ya",
}


def normalize(text: str) -> str:
    """Lower-case, punctuation/underscores to spaces, collapse whitespace."""
    text = _NOT_ALLOWED.sub(" ", (text or "").lower())
    return _SPACES.sub(" ", text).strip()


def transliterate(text: str) -> str:
    return "".join(_TRANSLIT.get(ch, ch) for ch in text)


def normalize_file_name(file_name: str) -> str:
    # basename without extension: "docs/Форма_2.docx" -> "форма 2"
    stem = PurePosixPath(file_name.replace("\\", "/")).stem
    return normalize(stem)


def significant_words(text: str) -> List[str]:
    min_len = config.template.min_word_len
    return [w for w in text.split() if len(w) >= min_len]


def _stems(words: Iterable[str]) -> Set[str]:
    n = config.template.stem_length
    return {w[:n] for w in words}


def word_overlap(name: str, candidate: str) -> float:
    """
    Share of the name's significant words that appear in `candidate`.

    Both arguments must already be normalized. A word "appears" when its
    stem (first few letters) matches a candidate word's stem, natively or
    after transliteration; this absorbs Russian case endings.
    """
    words = significant_words(name)
    if not words:
        return 0.0
    candidate_words = candidate.split()
    native = _stems(candidate_words)
    latin = _stems(transliterate(w) for w in candidate_words)

    n = config.template.stem_length
    hits = 0
    for w in words:
        if w[:n] in native or transliterate(w)[:n] in latin:
            hits += 1
    return hits / len(words)


def _contains(haystack: str, needle: str) -> bool:
    if not needle:
        return False
    return needle in haystack or transliterate(needle) in transliterate(haystack)


def _match_reason(doc_name: str, item: ExtractedText) -> Optional[str]:
    """Which rule (a-d) made this file a template, or None."""
    cfg = config.template
    file_name = normalize_file_name(item.source_file_name)
    body = normalize(item.text)

    if _contains(file_name, doc_name[:cfg.name_prefix_chars].strip()):
        return "file name prefix"
    if _contains(body, doc_name):
        return "body substring"
    if word_overlap(doc_name, file_name) > cfg.file_overlap_threshold:
        return "file name overlap"
    if word_overlap(doc_name, normalize(item.text[:cfg.head_chars])) > cfg.file_overlap_threshold:
        return "body head overlap"
    return None


def _assemble(matches: List[ExtractedText]) -> TemplateDecision:
    body_chars = sum(len(m.text.strip()) for m in matches)
    if body_chars <= config.template.min_template_chars:
        if matches:
            logger.info(
                "Discarding %d template match(es): only %d chars, below %d",
                len(matches), body_chars, config.template.min_template_chars,
            )
        return TemplateDecision.not_found()

    if len(matches) == 1:
        template_text = matches[0].text.strip()
    else:
        template_text = "\n\n".join(
            f"=== {m.source_file_name} ===\n{m.text.strip()}" for m in matches
        )
    return TemplateDecision(
        found=True,
        template_text=template_text,
        matched_file_names=[m.source_file_name for m in matches],
    )


def locate_template(document_name: str, extracted: List[ExtractedText]) -> TemplateDecision:
    """
    Pick the template source(s) for `document_name` among extracted texts.

    All matches are kept, in processing order. `found` is False (and the
    text empty) when nothing matches or the matches are too short to be a
    real form.
    """
    doc_name = normalize(document_name)
    if not doc_name or not extracted:
        return TemplateDecision.not_found()

    matches: List[ExtractedText] = []
    for item in extracted:
        reason = _match_reason(doc_name, item)
        if reason:
            logger.info("Template match for %r: %s (%s)", document_name, item.source_file_name, reason)
            matches.append(item)

    if not matches:
        # Long documents dilute the head-of-text check; look at everything.
        threshold = config.template.text_overlap_threshold
        for item in extracted:
            score = word_overlap(doc_name, normalize(item.text))
            if score >= threshold:
                logger.info(
                    "Loose template match for %r: %s (overlap %.0f%%)",
                    document_name, item.source_file_name, score * 100,
                )
                matches.append(item)

    decision = _assemble(matches)
    if not decision.found:
        logger.info("No template found for %r among %d file(s)", document_name, len(extracted))
    return decision
