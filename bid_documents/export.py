"""
export.py — GeneratedDocument -> .docx via python-docx.

Times New Roman 12pt, centered bold title, bold section headings, one
paragraph per content line. Runs of lines that contain "|" become a
Word table; the prompt asks the model to lay out tabular content that way.
"""

from __future__ import annotations

import io
import logging
import re
from typing import List

from docx import Document
from docx.enum.text import WD_ALIGN_PARAGRAPH
from docx.shared import Pt

from bid_documents.schemas import GeneratedDocument

logger = logging.getLogger(__name__)

# markdown-style separator rows: |---|:---:|
_SEPARATOR_ROW = re.compile(r"^\s*\|?\s*:?-{3,}:?\s*(\|\s*:?-{3,}:?\s*)*\|?\s*$")


def _is_table_line(line: str) -> bool:
    return "|" in line and line.strip() != "|"


def split_table_row(line: str) -> List[str]:
    line = line.strip()
    if line.startswith("|"):
        line = line[1:]
    if line.endswith("|"):
        line = line[:-1]
    return [cell.strip() for cell in line.split("|")]


def _add_table(doc, lines: List[str]) -> None:
    rows = [split_table_row(l) for l in lines if not _SEPARATOR_ROW.match(l)]
    if not rows:
        return
    width = max(len(r) for r in rows)
    table = doc.add_table(rows=len(rows), cols=width)
    table.style = "Table Grid"
    for r_idx, row in enumerate(rows):
        for c_idx in range(width):
            table.cell(r_idx, c_idx).text = row[c_idx] if c_idx < len(row) else ""


def _add_content(doc, content: str) -> None:
    lines = content.split("\n")
    i = 0
    while i < len(lines):
        if _is_table_line(lines[i]):
            j = i
            while j < len(lines) and _is_table_line(lines[j]):
                j += 1
            _add_table(doc, lines[i:j])
            i = j
            continue
        if lines[i].strip():
            doc.add_paragraph(lines[i])
        i += 1


def render_docx(document: GeneratedDocument) -> bytes:
    """Build the .docx in memory and return its bytes."""
    doc = Document()
    normal = doc.styles["Normal"]
    normal.font.name = "Times New Roman"
    normal.font.size = Pt(12)

    title = doc.add_paragraph()
    title.alignment = WD_ALIGN_PARAGRAPH.CENTER
    run = title.add_run(document.title)
    run.bold = True
    run.font.size = Pt(14)

    for section in document.sections:
        if section.heading.strip():
            heading = doc.add_paragraph()
            heading.add_run(section.heading.strip()).bold = True
        _add_content(doc, section.content)

    if document.signature_block.strip():
        spacer = doc.add_paragraph()
        spacer.paragraph_format.space_before = Pt(24)
        for line in document.signature_block.split("\n"):
            doc.add_paragraph(line)

    buffer = io.BytesIO()
    doc.save(buffer)
    data = buffer.getvalue()
    logger.info("Rendered %r to DOCX (%d bytes, %d sections)", document.title, len(data), len(document.sections))
    return data


def safe_file_name(title: str, limit: int = 80) -> str:
    """Title -> something every OS accepts as a file name."""
    name = re.sub(r'[\\/:*?"<>|\r\n\t]+', "_", title).strip(" ._")
    return (name[:limit] or "document") + ".docx"
