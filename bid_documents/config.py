"""
config.py — Central configuration for BidDocGen.

All tunable params live here so nobody has to hunt through the matcher,
the extractor and the client when a threshold or a budget changes. In
production most of these are overridden by environment variables.

The template-matching thresholds are heuristics, not a contract. They
came from the first version of the generator and were only spot-checked
against a handful of real 44-FZ/223-FZ packages, so treat them as knobs.
"""

from dataclasses import dataclass, field
import os
import logging

logger = logging.getLogger(__name__)

DEFAULT_VISION_PROMPT = (
    "Извлеки ВЕСЬ текст из этого документа. Сохрани структуру: заголовки, "
    "нумерованные списки, пункты. Таблицы передай построчно, разделяя "
    "столбцы символом |, одна строка таблицы на одной строке текста. "
    "Ничего не сокращай и не пересказывай, верни только текст документа."
)


@dataclass
class ArchiveConfig:
    """
    Settings for the ZIP local-header reader.

    Word packages from some generators (old 1C exports, a couple of
    e-procurement portals) ship borderline deflate streams. A single bad
    entry must never hang a request, so inflation is time-boxed and
    capped in output size.
    """
    inflate_timeout_s: float = float(os.getenv("INFLATE_TIMEOUT_S", "5.0"))
    # Input is fed to zlib in slices so the deadline can be checked between them.
    inflate_chunk_bytes: int = 64 * 1024
    max_inflated_bytes: int = 64 * 1024 * 1024
    # "local_headers" = our own scanner, "zipfile" = stdlib central-directory reader
    backend: str = os.getenv("ARCHIVE_BACKEND", "local_headers")


@dataclass
class ExtractionConfig:
    """
    Per-file text extraction settings.

    The 50-char gate catches Word packages where document.xml was missing
    or flattened to nothing (strict OOXML, macro-enabled variants). Below
    that we'd rather pay for a vision call than feed an empty template.
    """
    min_docx_chars: int = 50
    # Hosting platforms cut requests off at ~60s, so the whole
    # extraction phase gets 40s and the generation call gets the rest.
    wall_clock_budget_s: float = float(os.getenv("EXTRACTION_BUDGET_S", "40"))
    max_workers: int = int(os.getenv("EXTRACTION_WORKERS", "3"))
    max_file_size_mb: int = 20
    vision_prompt: str = DEFAULT_VISION_PROMPT


@dataclass
class TemplateConfig:
    """
    Template locator thresholds.

    40% of the document name's significant words is enough for a file
    name like "forma_2_anketa.docx" to claim "Форма 2: Анкета участника".
    The whole-text pass is looser in scope but stricter in ratio (50%)
    because long texts match common words by accident.
    """
    name_prefix_chars: int = 20
    file_overlap_threshold: float = 0.40
    text_overlap_threshold: float = 0.50
    head_chars: int = 2000
    min_template_chars: int = 50
    min_word_len: int = 4
    stem_length: int = 5


@dataclass
class PromptConfig:
    """Size budgets for the generation prompt."""
    template_budget_chars: int = 30000
    context_budget_chars: int = 5000
    placeholder: str = "[___]"


@dataclass
class LLMConfig:
    """
    OpenAI-compatible chat completion gateway.

    Any provider exposing /chat/completions with the messages shape works.
    Gemini Flash is the default: it accepts PDFs as inline data URLs,
    which the vision fallback relies on.
    """
    api_url: str = os.getenv("LLM_API_URL", "https://ai.gateway.lovable.dev/v1")
    api_key: str = os.getenv("LLM_API_KEY", os.getenv("LOVABLE_API_KEY", ""))
    model: str = os.getenv("LLM_MODEL", "google/gemini-2.5-flash")
    vision_model: str = os.getenv("LLM_VISION_MODEL", "google/gemini-2.5-flash")
    request_timeout_s: float = 120.0
    vision_timeout_s: float = 25.0


@dataclass
class StorageConfig:
    """Supabase storage/REST settings. Unused with the local file store."""
    supabase_url: str = os.getenv("SUPABASE_URL", "")
    supabase_key: str = os.getenv("SUPABASE_SERVICE_ROLE_KEY", "")
    bucket: str = os.getenv("SUPABASE_BUCKET", "documents")
    request_timeout_s: float = 30.0


@dataclass
class Config:
    """Master config — instantiated once, used everywhere."""
    archive: ArchiveConfig = field(default_factory=ArchiveConfig)
    extraction: ExtractionConfig = field(default_factory=ExtractionConfig)
    template: TemplateConfig = field(default_factory=TemplateConfig)
    prompt: PromptConfig = field(default_factory=PromptConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)

    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    def __post_init__(self):
        """Validate on startup so a bad env var fails fast instead of
        silently matching every file as a template."""
        for name in ("file_overlap_threshold", "text_overlap_threshold"):
            value = getattr(self.template, name)
            if not 0 < value <= 1:
                raise ValueError(f"{name} must be in (0, 1], got {value}")

        if self.archive.backend not in ("local_headers", "zipfile"):
            raise ValueError(f"Unknown archive backend: {self.archive.backend}")

        if self.archive.inflate_timeout_s >= self.extraction.wall_clock_budget_s:
            logger.warning(
                "Inflate timeout (%.1fs) is not shorter than the extraction "
                "budget (%.1fs). One corrupt entry can eat the whole budget.",
                self.archive.inflate_timeout_s, self.extraction.wall_clock_budget_s,
            )

        if self.extraction.max_workers < 1:
            raise ValueError(f"max_workers must be >= 1, got {self.extraction.max_workers}")


# Singleton; every module imports this same instance
config = Config()
