"""
schemas.py — Pydantic v2 models for the generation contract.

GeneratedDocument is the one shape everything downstream depends on:
the DOCX export and the saved-documents table. Completions go through
`GeneratedDocument.from_llm_payload`, which repairs the common drift
(sections as plain strings, missing title) and rejects the rest.

Participant and bid amount fields are all optional: a missing field is
rendered as the placeholder marker, never rejected.
"""

from __future__ import annotations

import re
from enum import Enum
from pathlib import PurePosixPath
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class FileKind(str, Enum):
    WORD_PACKAGE = "word_package"
    PLAIN_TEXT = "plain_text"
    PDF = "pdf"
    OTHER = "other"


_KIND_BY_SUFFIX = {
    ".docx": FileKind.WORD_PACKAGE,
    ".docm": FileKind.WORD_PACKAGE,
    ".txt": FileKind.PLAIN_TEXT,
    ".md": FileKind.PLAIN_TEXT,
    ".csv": FileKind.PLAIN_TEXT,
    ".pdf": FileKind.PDF,
}

_MIME_BY_SUFFIX = {
    ".docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    ".docm": "application/vnd.ms-word.document.macroEnabled.12",
    ".txt": "text/plain",
    ".md": "text/plain",
    ".csv": "text/csv",
    ".pdf": "application/pdf",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
}


class RawFile(BaseModel):
    """An uploaded file as fetched from storage. Never persisted by us."""
    name: str
    data: bytes = Field(repr=False)
    declared_kind: FileKind = FileKind.OTHER
    mime_type: str = "application/octet-stream"

    @classmethod
    def from_upload(cls, name: str, data: bytes, content_type: str = "") -> "RawFile":
        """Classify by extension first, then by MIME type."""
        suffix = PurePosixPath(name.lower()).suffix
        ctype = (content_type or "").lower().strip()

        kind = _KIND_BY_SUFFIX.get(suffix)
        if kind is None:
            if ctype == "application/pdf":
                kind = FileKind.PDF
            elif "wordprocessingml" in ctype:
                kind = FileKind.WORD_PACKAGE
            elif ctype.startswith("text/"):
                kind = FileKind.PLAIN_TEXT
            else:
                kind = FileKind.OTHER

        mime = _MIME_BY_SUFFIX.get(suffix) or ctype or "application/octet-stream"
        return cls(name=name, data=data, declared_kind=kind, mime_type=mime)

    @property
    def is_image(self) -> bool:
        return self.mime_type.startswith("image/")


class ExtractedText(BaseModel):
    """Text derived from one RawFile. Frozen once built."""
    model_config = ConfigDict(frozen=True)

    source_file_name: str
    text: str
    is_template_candidate_for: Optional[str] = None


class TemplateDecision(BaseModel):
    """Outcome of the template search for one generation request."""
    found: bool = False
    template_text: str = ""
    matched_file_names: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _empty_when_not_found(self) -> "TemplateDecision":
        if not self.found and self.template_text:
            raise ValueError("template_text must be empty when no template was found")
        return self

    @classmethod
    def not_found(cls) -> "TemplateDecision":
        return cls(found=False, template_text="", matched_file_names=[])


def _blank_to_none(v: Any) -> Any:
    if v is None:
        return None
    if isinstance(v, (int, float)) and not isinstance(v, bool):
        return str(v)
    if isinstance(v, str):
        v = v.strip()
        return v or None
    return v


class ParticipantProfile(BaseModel):
    """
    Company card of the bidder. Every field may be absent.

    Field names follow the `companies` table, which in turn follows the
    Russian registry card (ИНН/КПП/ОГРН...), so the UI can pass the row
    through without renaming.
    """
    model_config = ConfigDict(extra="ignore")

    participant_type: Optional[Literal["legal_entity", "ip", "self_employed"]] = None
    full_name: Optional[str] = None
    short_name: Optional[str] = None
    inn: Optional[str] = None
    kpp: Optional[str] = None
    ogrn: Optional[str] = None
    okpo: Optional[str] = None
    okato: Optional[str] = None
    oktmo: Optional[str] = None
    okved: Optional[str] = None
    legal_address: Optional[str] = None
    actual_address: Optional[str] = None
    director_name: Optional[str] = None
    director_position: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    bank_name: Optional[str] = None
    bank_bik: Optional[str] = None
    bank_account: Optional[str] = None
    bank_corr_account: Optional[str] = None
    bank_inn: Optional[str] = None
    bank_kpp: Optional[str] = None
    vat_rate: Optional[str] = None
    tax_system: Optional[str] = None

    @field_validator("*", mode="before")
    @classmethod
    def _normalize_blank(cls, v: Any) -> Any:
        return _blank_to_none(v)

    @field_validator("participant_type", mode="before")
    @classmethod
    def _legacy_participant_type(cls, v: Any) -> Any:
        # the wizard used "enterprise" before self-employed support landed
        if v in ("enterprise", "ul", "company"):
            return "legal_entity"
        return v


class BidAmountData(BaseModel):
    """Bid price as saved on the bid-amount step. VAT is included in `amount`."""
    model_config = ConfigDict(extra="ignore")

    amount: Optional[float] = None
    vat_rate: Optional[str] = None
    vat_amount: Optional[float] = None
    total_with_vat: Optional[float] = None
    amount_without_vat: Optional[float] = None
    amount_words: Optional[str] = None
    vat_amount_words: Optional[str] = None
    total_words: Optional[str] = None

    @field_validator("vat_rate", "amount_words", "vat_amount_words", "total_words", mode="before")
    @classmethod
    def _normalize_text(cls, v: Any) -> Any:
        return _blank_to_none(v)

    @property
    def vat_exempt(self) -> bool:
        return self.vat_rate is not None and self.vat_rate.lower() in ("none", "без ндс")

    @property
    def vat_percent(self) -> Optional[float]:
        """Numeric rate in [0, 100), or None for "none"/unknown/out of range."""
        if self.vat_rate is None or self.vat_exempt:
            return None
        try:
            rate = float(self.vat_rate.rstrip("%").replace(",", "."))
        except ValueError:
            return None
        if not 0 <= rate < 100:
            return None
        return rate

    def with_vat_breakdown(self) -> "BidAmountData":
        """Fill vat_amount / amount_without_vat / total_with_vat when derivable."""
        if self.amount is None:
            return self
        updates: Dict[str, Any] = {}
        rate = self.vat_percent
        vat_amount = self.vat_amount
        if vat_amount is None:
            if rate is not None:
                vat_amount = round(self.amount * rate / (100 + rate), 2)
            elif self.vat_exempt:
                vat_amount = 0.0
            else:
                # unparseable rate, leave the VAT lines as placeholders
                return self
            updates["vat_amount"] = vat_amount
        if self.amount_without_vat is None:
            updates["amount_without_vat"] = round(self.amount - vat_amount, 2)
        if self.total_with_vat is None:
            updates["total_with_vat"] = self.amount
        return self.model_copy(update=updates)


class DocumentSection(BaseModel):
    heading: str = ""
    content: str = ""

    @field_validator("heading", "content", mode="before")
    @classmethod
    def _coerce_text(cls, v: Any) -> str:
        if v is None:
            return ""
        if isinstance(v, list):
            v = "\n".join(str(x) for x in v)
        return normalize_line_breaks(str(v))


class GeneratedDocument(BaseModel):
    """The output contract of the generator."""
    title: str
    sections: List[DocumentSection] = Field(min_length=1)
    signature_block: str = ""

    @field_validator("title")
    @classmethod
    def title_must_not_be_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("title cannot be empty or whitespace")
        return v.strip()

    @field_validator("signature_block", mode="before")
    @classmethod
    def _coerce_signature(cls, v: Any) -> str:
        if v is None:
            return ""
        if isinstance(v, list):
            v = "\n".join(str(x) for x in v)
        return normalize_line_breaks(str(v))

    @classmethod
    def from_llm_payload(cls, payload: Any, fallback_title: str = "") -> "GeneratedDocument":
        """
        Repair and validate a parsed completion.

        Repairs: missing title -> fallback_title; sections given as plain
        strings, or as one bare string; a top-level "content" with no
        sections; sections that are entirely empty are dropped. Raises
        ValueError (or pydantic's ValidationError, a subclass) when nothing
        usable is left.
        """
        if not isinstance(payload, dict):
            raise ValueError(f"expected a JSON object, got {type(payload).__name__}")

        raw_sections = payload.get("sections")
        if raw_sections is None and payload.get("content"):
            raw_sections = [{"heading": "", "content": payload["content"]}]
        if isinstance(raw_sections, (str, dict)):
            raw_sections = [raw_sections]

        sections: List[Dict[str, Any]] = []
        for item in raw_sections or []:
            if isinstance(item, str):
                item = {"heading": "", "content": item}
            if not isinstance(item, dict):
                continue
            section = DocumentSection(
                heading=item.get("heading") or item.get("title") or "",
                content=item.get("content") or item.get("text") or "",
            )
            if section.heading.strip() or section.content.strip():
                sections.append(section.model_dump())

        title = payload.get("title") or fallback_title
        signature = payload.get("signature_block") or payload.get("signatureBlock") or ""
        return cls.model_validate(
            {"title": title, "sections": sections, "signature_block": signature}
        )

    def plain_text(self) -> str:
        parts = [self.title]
        for section in self.sections:
            if section.heading:
                parts.append(section.heading)
            parts.append(section.content)
        if self.signature_block:
            parts.append(self.signature_block)
        return "\n\n".join(parts)


def normalize_line_breaks(text: str) -> str:
    """
    CRLF/CR -> LF. Literal "\\n" escapes are turned into newlines only when
    the text has no real line breaks: that is the double-encoded case. Text
    that already has newlines keeps its backslashes (paths like C:\\new).
    """
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    if "\n" in text:
        return text
    return re.sub(r"\\n", "\n", text)


class AnalysisInfo(BaseModel):
    """The bits of the `analyses` row the prompt uses."""
    model_config = ConfigDict(extra="ignore")

    id: str = ""
    title: Optional[str] = None
    procurement_type: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def _id_as_str(cls, v: Any) -> str:
        return "" if v is None else str(v)

    @property
    def procurement_label(self) -> str:
        if self.procurement_type == "44-fz":
            return "44-ФЗ"
        if self.procurement_type == "223-fz":
            return "223-ФЗ"
        return "Коммерческая"


class ComposedPrompt(BaseModel):
    system_instruction: str
    user_prompt: str
    mode: Literal["template", "free"]


# Request/response of the HTTP surface. camelCase aliases match the web client.

class GenerationRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    analysis_id: str = Field(default="", alias="analysisId")
    document_name: str = Field(default="", alias="documentName")
    company_data: Optional[ParticipantProfile] = Field(default=None, alias="companyData")
    tender_context: Optional[str] = Field(default=None, alias="tenderContext")
    bid_amount_data: Optional[BidAmountData] = Field(default=None, alias="bidAmountData")

    @field_validator("analysis_id", "document_name", mode="before")
    @classmethod
    def _strip(cls, v: Any) -> Any:
        if v is None:
            return ""
        return str(v).strip()


class GenerationResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    document: GeneratedDocument
    has_template: bool = Field(alias="hasTemplate")
    matched_files: List[str] = Field(default_factory=list, alias="matchedFiles")
