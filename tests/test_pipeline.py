"""
test_pipeline.py — End-to-end tests for BidDocGen.

These tests run the whole generation flow without network access: files
come from an in-memory or temp-dir store, the gateway is a fake session
returning canned completions. They validate:
  - free mode when no upload matches the document name
  - template mode with a real (in-memory) .docx
  - input / configuration / cancellation failures
  - the HTTP surface: status mapping, JSON body, DOCX export
  - the local file store used by the CLI

Run with:
    python tests/test_pipeline.py
    python -m pytest tests/test_pipeline.py -v
"""

from __future__ import annotations

import io
import json
import logging
import sys
import tempfile
import threading
from pathlib import Path
from unittest.mock import patch

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))
sys.path.insert(0, str(Path(__file__).resolve().parent))

from docx import Document
from fastapi.testclient import TestClient

import api.main as api_main
from bid_documents.config import config
from bid_documents.errors import ConfigurationError, GenerationCancelled, InputError, RateLimited
from bid_documents.export import render_docx, safe_file_name
from bid_documents.llm_client import CompletionClient
from bid_documents.main import BidDocumentPipeline
from bid_documents.schemas import AnalysisInfo, GeneratedDocument, GenerationRequest
from bid_documents.storage import LocalFileStore
from samples import FakeSession, MemoryStore, completion, make_docx, make_response

logging.basicConfig(level=logging.INFO, format="%(levelname)s | %(message)s")
logger = logging.getLogger(__name__)

CONSENT = "Согласие на обработку персональных данных"
ANKETA = "Форма 2: Анкета участника"
TZ_TEXT = "Техническое задание на поставку компьютерной техники. Поставка ноутбуков в количестве 10 штук."
ANKETA_PARAGRAPHS = [
    "Анкета участника закупки",
    "1. Полное наименование участника: ________",
    "2. ИНН / КПП: ________",
]

CONSENT_REPLY = json.dumps({
    "title": CONSENT,
    "sections": [
        {"heading": "", "content": "Я, [___], действуя от имени ООО Ромашка (ИНН 7701234567), даю согласие ..."},
    ],
    "signature_block": "Генеральный директор ____________ /[___]/\nДата: [___]",
}, ensure_ascii=False)

ANKETA_REPLY = "```json\n" + json.dumps({
    "title": "Анкета участника закупки",
    "sections": [{"heading": "", "content": "1. Полное наименование участника: ООО Ромашка\n2. ИНН / КПП: 7701234567 / [___]"}],
    "signature_block": "",
}, ensure_ascii=False) + "\n```"

ROMASHKA = {"participant_type": "legal_entity", "full_name": "ООО Ромашка", "inn": "7701234567"}


def _pipeline(files, reply, analysis=None):
    session = FakeSession([completion(reply)])
    client = CompletionClient(api_key="test-key", session=session)
    store = MemoryStore(files, analysis=analysis)
    return BidDocumentPipeline(store, client=client), session, store


def _request(document_name, **extra):
    body = {"analysisId": "42", "documentName": document_name, "companyData": ROMASHKA}
    body.update(extra)
    return GenerationRequest.model_validate(body)


def _raises(exc_type, fn, *args, **kwargs):
    try:
        fn(*args, **kwargs)
    except exc_type as exc:
        return exc
    raise AssertionError(f"{exc_type.__name__} not raised")


# ═══════════════════════════════════════════════════════════════════════════
# Pipeline
# ═══════════════════════════════════════════════════════════════════════════

def test_free_mode_end_to_end():
    pipeline, session, _ = _pipeline(
        {"tz.txt": TZ_TEXT.encode("utf-8")},
        CONSENT_REPLY,
        analysis=AnalysisInfo(id="42", title="Поставка ноутбуков", procurement_type="44-fz"),
    )
    result = pipeline.run(_request(CONSENT, tenderContext="Заказчик: школа № 5"))

    assert result.has_template is False
    assert result.matched_files == []
    text = result.document.plain_text()
    assert "ООО Ромашка" in text
    assert "[___]" in text

    assert len(session.calls) == 1
    user_prompt = session.calls[0]["json"]["messages"][1]["content"]
    assert "ООО Ромашка" in user_prompt
    assert "- Телефон: [___]" in user_prompt
    assert "НЕ найден" in user_prompt
    assert "Заказчик: школа № 5" in user_prompt
    assert "Поставка ноутбуков" in user_prompt
    print("  ✓ test_free_mode_end_to_end")


def test_template_mode_end_to_end():
    pipeline, session, _ = _pipeline(
        {"forma_2_anketa.docx": make_docx(ANKETA_PARAGRAPHS), "tz.txt": TZ_TEXT.encode("utf-8")},
        ANKETA_REPLY,
    )
    result = pipeline.run(_request(ANKETA))

    assert result.has_template is True
    assert result.matched_files == ["forma_2_anketa.docx"]
    assert result.document.title == "Анкета участника закупки"

    messages = session.calls[0]["json"]["messages"]
    assert "Воспроизводи шаблон" in messages[0]["content"]
    assert "2. ИНН / КПП: ________" in messages[1]["content"]
    assert "ноутбуков" not in messages[1]["content"]
    print("  ✓ test_template_mode_end_to_end")


def test_missing_inputs_fail_before_any_work():
    pipeline, session, store = _pipeline({"tz.txt": b"x"}, CONSENT_REPLY)
    _raises(InputError, pipeline.run, GenerationRequest(analysis_id="42", document_name="  "))
    _raises(InputError, pipeline.run, GenerationRequest(analysis_id="", document_name=CONSENT))
    assert store.downloads == []
    assert session.calls == []
    print("  ✓ test_missing_inputs_fail_before_any_work")


def test_missing_key_is_configuration_error():
    store = MemoryStore({"tz.txt": b"x"})
    with patch.object(config.llm, "api_key", ""):
        exc = _raises(ConfigurationError, BidDocumentPipeline(store).run, _request(CONSENT))
    assert exc.status_code == 500
    assert store.downloads == []
    print("  ✓ test_missing_key_is_configuration_error")


def test_cancelled_run_skips_generation():
    pipeline, session, store = _pipeline({"tz.txt": TZ_TEXT.encode("utf-8")}, CONSENT_REPLY)
    cancel = threading.Event()
    cancel.set()
    _raises(GenerationCancelled, pipeline.run, _request(CONSENT), cancel)
    assert store.downloads == []
    assert session.calls == []
    print("  ✓ test_cancelled_run_skips_generation")


def test_unreadable_uploads_degrade_to_free_mode():
    class FlakyStore(MemoryStore):
        def download(self, path):
            if path.endswith(".pdf"):
                raise OSError("storage unavailable")
            return super().download(path)

    session = FakeSession([completion(CONSENT_REPLY)])
    pipeline = BidDocumentPipeline(
        FlakyStore({"scan.pdf": b"%PDF", "junk.bin": b"\x00\x01"}),
        client=CompletionClient(api_key="test-key", session=session),
    )
    result = pipeline.run(_request(CONSENT))
    assert result.has_template is False
    assert len(session.calls) == 1
    print("  ✓ test_unreadable_uploads_degrade_to_free_mode")


def test_gateway_errors_propagate():
    session = FakeSession([make_response(429, {"error": "rate limited"})])
    pipeline = BidDocumentPipeline(MemoryStore({}), client=CompletionClient(api_key="k", session=session))
    exc = _raises(RateLimited, pipeline.run, _request(CONSENT))
    assert exc.status_code == 429
    print("  ✓ test_gateway_errors_propagate")


# ═══════════════════════════════════════════════════════════════════════════
# HTTP surface
# ═══════════════════════════════════════════════════════════════════════════

def test_api_generate_success():
    pipeline, _, _ = _pipeline({"tz.txt": TZ_TEXT.encode("utf-8")}, CONSENT_REPLY)
    client = TestClient(api_main.app)
    with patch.object(api_main, "get_pipeline", return_value=pipeline):
        resp = client.post("/generate-bid-documents", json={
            "analysisId": "42", "documentName": CONSENT, "companyData": ROMASHKA,
        })
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["hasTemplate"] is False
    assert body["document"]["title"] == CONSENT
    assert body["document"]["sections"][0]["content"].startswith("Я, [___]")
    print("  ✓ test_api_generate_success")


def test_api_error_statuses():
    client = TestClient(api_main.app)
    cases = [
        (make_response(429, "quota"), 429, "Превышен лимит запросов. Попробуйте позже."),
        (make_response(402, "billing"), 402, "Необходимо пополнить баланс AI."),
        (make_response(500, "boom"), 500, None),
        (completion("никакого JSON"), 500, None),
    ]
    for reply, status, message in cases:
        session = FakeSession([reply])
        pipeline = BidDocumentPipeline(MemoryStore({}), client=CompletionClient(api_key="k", session=session))
        with patch.object(api_main, "get_pipeline", return_value=pipeline):
            resp = client.post("/generate-bid-documents", json={"analysisId": "42", "documentName": CONSENT})
        assert resp.status_code == status, (status, resp.text)
        assert resp.json()["error"]
        if message:
            assert resp.json()["error"] == message
    print("  ✓ test_api_error_statuses")


def test_api_bad_requests():
    client = TestClient(api_main.app)
    pipeline, session, _ = _pipeline({}, CONSENT_REPLY)
    with patch.object(api_main, "get_pipeline", return_value=pipeline):
        missing = client.post("/generate-bid-documents", json={"analysisId": "42"})
        not_json = client.post(
            "/generate-bid-documents", content=b"not json", headers={"content-type": "application/json"}
        )
        not_object = client.post("/generate-bid-documents", json=["a", "b"])
    assert missing.status_code == 400 and missing.json()["error"]
    assert not_json.status_code == 400
    assert not_object.status_code == 400
    assert session.calls == []
    print("  ✓ test_api_bad_requests")


def test_api_export_docx():
    client = TestClient(api_main.app)
    resp = client.post("/export/docx", json={
        "title": "Анкета участника",
        "sections": [{"heading": "Сведения", "content": "| ИНН | 7701234567 |\n|---|---|\n| КПП | [___] |"}],
        "signature_block": "Директор ____ /[___]/",
    })
    assert resp.status_code == 200, resp.text
    assert "filename*=UTF-8''" in resp.headers["content-disposition"]
    doc = Document(io.BytesIO(resp.content))
    assert doc.paragraphs[0].text == "Анкета участника"
    assert len(doc.tables) == 1
    print("  ✓ test_api_export_docx")


def test_api_health():
    resp = TestClient(api_main.app).get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "healthy"
    print("  ✓ test_api_health")


# ═══════════════════════════════════════════════════════════════════════════
# Export and storage
# ═══════════════════════════════════════════════════════════════════════════

def test_render_docx_tables_and_signature():
    document = GeneratedDocument(
        title="Анкета",
        sections=[
            {"heading": "1. Реквизиты", "content": "Сведения об участнике:\n| ИНН | 7701234567 |\n|---|---|\n| КПП | [___] |\nКонец"},
        ],
        signature_block="Генеральный директор\n____ /[___]/",
    )
    doc = Document(io.BytesIO(render_docx(document)))
    texts = [p.text for p in doc.paragraphs]
    assert texts[0] == "Анкета"
    assert "1. Реквизиты" in texts
    assert "Сведения об участнике:" in texts and "Конец" in texts
    assert "____ /[___]/" in texts

    table = doc.tables[0]
    assert len(table.rows) == 2
    assert table.cell(0, 0).text == "ИНН"
    assert table.cell(1, 1).text == "[___]"
    print("  ✓ test_render_docx_tables_and_signature")


def test_safe_file_name():
    assert safe_file_name("Анкета/участника") == "Анкета_участника.docx"
    assert safe_file_name("???") == "document.docx"
    print("  ✓ test_safe_file_name")


def test_local_file_store():
    with tempfile.TemporaryDirectory() as tmp:
        folder = Path(tmp) / "42"
        folder.mkdir()
        (folder / "tz.txt").write_text(TZ_TEXT, encoding="utf-8")
        (folder / "forma_2_anketa.docx").write_bytes(make_docx(ANKETA_PARAGRAPHS))
        (folder / "analysis.json").write_text(
            json.dumps({"title": "Поставка ноутбуков", "procurement_type": "223-fz"}, ensure_ascii=False),
            encoding="utf-8",
        )

        store = LocalFileStore(tmp)
        files = store.list_files("42")
        assert [f.file_name for f in files] == ["forma_2_anketa.docx", "tz.txt"]
        assert store.download(files[1].file_path) == TZ_TEXT.encode("utf-8")

        info = store.get_analysis("42")
        assert info.id == "42"
        assert info.procurement_label == "223-ФЗ"

        assert store.list_files("missing") == []
        _raises(ValueError, store.download, "../outside.txt")
    print("  ✓ test_local_file_store")


def run_all_tests():
    print("\n" + "=" * 60)
    print("  BidDocGen — End-to-End")
    print("=" * 60 + "\n")

    tests = [
        test_free_mode_end_to_end,
        test_template_mode_end_to_end,
        test_missing_inputs_fail_before_any_work,
        test_missing_key_is_configuration_error,
        test_cancelled_run_skips_generation,
        test_unreadable_uploads_degrade_to_free_mode,
        test_gateway_errors_propagate,
        test_api_generate_success,
        test_api_error_statuses,
        test_api_bad_requests,
        test_api_export_docx,
        test_api_health,
        test_render_docx_tables_and_signature,
        test_safe_file_name,
        test_local_file_store,
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
