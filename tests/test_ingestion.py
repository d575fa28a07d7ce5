"""
test_ingestion.py — Tests for text extraction.

Word XML flattening is tested on hand-written fragments; the strategy
chain and the multi-file phase use in-memory .docx packages and a fake
vision client, so nothing leaves the process.

Run with:
    python tests/test_ingestion.py
    python -m pytest tests/test_ingestion.py -v
"""

from __future__ import annotations

import io
import sys
import threading
import time
import zipfile
from pathlib import Path
from unittest.mock import patch

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))
sys.path.insert(0, str(Path(__file__).resolve().parent))

from bid_documents.config import config
from bid_documents.ingestion import extract_all, extract_text, flatten_word_xml, strategies_for
from bid_documents.schemas import FileKind, RawFile
from samples import FakeVisionClient, make_docx

LONG_PARAGRAPH = "Настоящим подтверждаем согласие участника закупки с условиями исполнения контракта."
DOCX_MIME = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"


# ═══════════════════════════════════════════════════════════════════════════
# Word XML flattening
# ═══════════════════════════════════════════════════════════════════════════

def test_paragraphs_become_newlines():
    assert flatten_word_xml("<w:p/>Hello<w:p/>World") == "\nHello\nWorld"
    assert flatten_word_xml("<w:p><w:pPr></w:pPr><w:r><w:t>X</w:t></w:r></w:p>") == "\nX"
    print("  ✓ test_paragraphs_become_newlines")


def test_newline_runs_collapse_to_two():
    assert flatten_word_xml("<w:p/><w:p/><w:p/><w:p/><w:p/>A") == "\n\nA"
    assert "\n\n\n" not in flatten_word_xml("<w:p/>" * 20 + "B" + "<w:br/>" * 10 + "C")
    print("  ✓ test_newline_runs_collapse_to_two")


def test_tabs_and_breaks():
    xml = "<w:r><w:t>A</w:t><w:tab/><w:t>B</w:t><w:br/><w:t>C</w:t></w:r>"
    assert flatten_word_xml(xml) == "A\tB\nC"
    print("  ✓ test_tabs_and_breaks")


def test_tab_stop_definitions_are_not_tabs():
    xml = '<w:p><w:pPr><w:tabs><w:tab w:val="left" w:pos="720"/></w:tabs></w:pPr><w:t>Дата</w:t></w:p>'
    assert flatten_word_xml(xml) == "\nДата"
    print("  ✓ test_tab_stop_definitions_are_not_tabs")


def test_table_rows_are_pipe_separated():
    xml = (
        "<w:tbl>"
        "<w:tr><w:tc><w:p><w:r><w:t>ИНН</w:t></w:r></w:p></w:tc>"
        "<w:tc><w:p><w:r><w:t>7701234567</w:t></w:r></w:p></w:tc></w:tr>"
        "<w:tr><w:tc><w:p><w:t>КПП</w:t></w:p></w:tc><w:tc><w:p/></w:tc></w:tr>"
        "</w:tbl>"
    )
    assert flatten_word_xml(xml) == "\nИНН | 7701234567\nКПП | "
    print("  ✓ test_table_rows_are_pipe_separated")


def test_entities_and_hidden_text():
    xml = "<w:t>ООО &quot;Ромашка&quot; &amp; Ко</w:t><w:instrText> PAGE </w:instrText><w:t>1</w:t>"
    assert flatten_word_xml(xml) == 'ООО "Ромашка" & Ко1'
    assert flatten_word_xml("<w:delText>удалено</w:delText>ok") == "ok"
    print("  ✓ test_entities_and_hidden_text")


def test_damaged_tail_does_not_raise():
    assert flatten_word_xml("<w:p/>text<w:r") == "\ntext"
    print("  ✓ test_damaged_tail_does_not_raise")


# ═══════════════════════════════════════════════════════════════════════════
# Single-file strategies
# ═══════════════════════════════════════════════════════════════════════════

def test_docx_text_without_vision():
    raw = RawFile.from_upload("anketa.docx", make_docx([LONG_PARAGRAPH, "Подпись"]))
    client = FakeVisionClient(text="should not be used")
    text = extract_text(raw, client=client)
    assert text == LONG_PARAGRAPH + "\nПодпись"
    assert client.calls == []
    print("  ✓ test_docx_text_without_vision")


def test_stored_docx():
    raw = RawFile.from_upload("anketa.docx", make_docx([LONG_PARAGRAPH], compression=zipfile.ZIP_STORED))
    assert extract_text(raw) == LONG_PARAGRAPH
    print("  ✓ test_stored_docx")


def test_short_docx_falls_back_to_vision():
    raw = RawFile.from_upload("scan.docx", make_docx(["Форма"]))
    client = FakeVisionClient(text="  Распознанный текст формы  ")
    assert extract_text(raw, client=client) == "Распознанный текст формы"
    assert len(client.calls) == 1
    assert client.calls[0]["mime_type"] == DOCX_MIME
    print("  ✓ test_short_docx_falls_back_to_vision")


def test_docx_without_document_part():
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        zf.writestr("[Content_Types].xml", "<Types/>")
    raw = RawFile.from_upload("broken.docx", buf.getvalue())
    assert extract_text(raw) == ""
    assert extract_text(raw, client=FakeVisionClient(text="из картинки")) == "из картинки"
    print("  ✓ test_docx_without_document_part")


def test_plain_text_encodings():
    utf8 = RawFile.from_upload("notes.txt", "\ufeffТехническое задание".encode("utf-8"))
    cp1251 = RawFile.from_upload("old.txt", "Техническое задание".encode("cp1251"))
    assert extract_text(utf8) == "Техническое задание"
    assert extract_text(cp1251) == "Техническое задание"
    print("  ✓ test_plain_text_encodings")


def test_pdf_and_images_go_to_vision():
    pdf = RawFile.from_upload("tz.pdf", b"%PDF-1.7 binary")
    image = RawFile.from_upload("scan.jpg", b"\xff\xd8\xff")
    assert pdf.declared_kind is FileKind.PDF
    assert image.is_image
    client = FakeVisionClient(text="текст")
    assert extract_text(pdf, client=client) == "текст"
    assert extract_text(image, client=client) == "текст"
    assert [c["mime_type"] for c in client.calls] == ["application/pdf", "image/jpeg"]
    # without a client there is nothing to try
    assert extract_text(pdf) == ""
    print("  ✓ test_pdf_and_images_go_to_vision")


def test_unsupported_files_are_empty():
    raw = RawFile.from_upload("setup.exe", b"MZ\x90\x00")
    client = FakeVisionClient(text="nope")
    assert strategies_for(raw) == []
    assert extract_text(raw, client=client) == ""
    assert client.calls == []
    print("  ✓ test_unsupported_files_are_empty")


def test_classification_by_content_type():
    assert RawFile.from_upload("blob", b"", "application/pdf").declared_kind is FileKind.PDF
    assert RawFile.from_upload("blob", b"", "text/plain; charset=utf-8").declared_kind is FileKind.PLAIN_TEXT
    assert RawFile.from_upload("Форма.DOCX", b"").declared_kind is FileKind.WORD_PACKAGE
    print("  ✓ test_classification_by_content_type")


# ═══════════════════════════════════════════════════════════════════════════
# Multi-file phase
# ═══════════════════════════════════════════════════════════════════════════

def test_extract_all_keeps_input_order():
    files = [
        RawFile.from_upload("slow.pdf", b"%PDF"),
        RawFile.from_upload("b.txt", "второй файл".encode("utf-8")),
        RawFile.from_upload("empty.txt", b"   "),
    ]
    client = FakeVisionClient(text="первый файл", delay_s=0.2)
    results = extract_all(files, client=client, max_workers=3)
    assert [r.source_file_name for r in results] == ["slow.pdf", "b.txt"]
    assert results[0].text == "первый файл"
    assert results[1].text == "второй файл"
    print("  ✓ test_extract_all_keeps_input_order")


def test_one_broken_file_does_not_stop_the_rest():
    files = [
        RawFile.from_upload("broken.png", b"\x89PNG"),
        RawFile.from_upload("ok.txt", "Анкета участника".encode("utf-8")),
    ]
    client = FakeVisionClient(text="x", fail_for="broken.png")
    results = extract_all(files, client=client)
    assert [r.source_file_name for r in results] == ["ok.txt"]
    print("  ✓ test_one_broken_file_does_not_stop_the_rest")


def test_budget_returns_partial_results():
    files = [
        RawFile.from_upload("a.txt", "первый".encode("utf-8")),
        RawFile.from_upload("slow.pdf", b"%PDF"),
        RawFile.from_upload("c.txt", "третий".encode("utf-8")),
    ]
    client = FakeVisionClient(text="медленно", delay_s=2.0)
    t0 = time.monotonic()
    results = extract_all(files, client=client, budget_s=0.5, max_workers=1)
    elapsed = time.monotonic() - t0
    assert elapsed < 1.5, f"extract_all blocked for {elapsed:.1f}s"
    assert [r.source_file_name for r in results] == ["a.txt"]
    print("  ✓ test_budget_returns_partial_results")


def test_cancelled_before_start():
    cancel = threading.Event()
    cancel.set()
    files = [RawFile.from_upload("a.txt", b"text")]
    assert extract_all(files, cancel_event=cancel) == []
    assert extract_all([]) == []
    print("  ✓ test_cancelled_before_start")


def test_oversized_files_are_skipped():
    files = [RawFile.from_upload("big.txt", b"x" * 2048)]
    with patch.object(config.extraction, "max_file_size_mb", 0):
        assert extract_all(files) == []
    print("  ✓ test_oversized_files_are_skipped")


def run_all_tests():
    print("\n" + "=" * 60)
    print("  BidDocGen — Text Extraction")
    print("=" * 60 + "\n")

    tests = [
        test_paragraphs_become_newlines,
        test_newline_runs_collapse_to_two,
        test_tabs_and_breaks,
        test_tab_stop_definitions_are_not_tabs,
        test_table_rows_are_pipe_separated,
        test_entities_and_hidden_text,
        test_damaged_tail_does_not_raise,
        test_docx_text_without_vision,
        test_stored_docx,
        test_short_docx_falls_back_to_vision,
        test_docx_without_document_part,
        test_plain_text_encodings,
        test_pdf_and_images_go_to_vision,
        test_unsupported_files_are_empty,
        test_classification_by_content_type,
        test_extract_all_keeps_input_order,
        test_one_broken_file_does_not_stop_the_rest,
        test_budget_returns_partial_results,
        test_cancelled_before_start,
        test_oversized_files_are_skipped,
    ]

    passed = failed = 0
    for test_fn in tests:
        try:
            test_fn()
            passed += 1
        except Exception as exc:
            failed += 1
            print(f"  ✗ {test_fn.__name__} FAILED: {exc}")

    print(f"\n  Results: {passed} passed, {failed} failed, {len(tests)} total\n")
    return failed == 0


if __name__ == "__main__":
    sys.exit(0 if run_all_tests() else 1)
