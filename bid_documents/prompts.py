"""
prompts.py — Build the generation prompt.

Two modes:
  template  a form was found among the uploads; reproduce it exactly and
            fill only the blanks
  free      nothing found; write the standard form for this document type

Both modes list every participant field, always with its label. Missing
values are rendered as the placeholder marker "[___]"; the model copies
the marker instead of inventing an INN or a bank account, and the user
fills the holes afterwards.

Prompts are Russian because the documents are. The JSON contract at the
bottom is shared with llm_client / GeneratedDocument.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Tuple

from bid_documents.config import config
from bid_documents.schemas import (
    AnalysisInfo,
    BidAmountData,
    ComposedPrompt,
    ParticipantProfile,
    TemplateDecision,
)

logger = logging.getLogger(__name__)

SYSTEM_INSTRUCTION = (
    "Ты генерируешь тендерные документы для участников закупок в РФ. "
    "Отвечай ТОЛЬКО валидным JSON-объектом, без markdown и без пояснений."
)

_PARTICIPANT_TYPE_LABELS = {
    "legal_entity": "Юридическое лицо",
    "ip": "Индивидуальный предприниматель",
    "self_employed": "Самозанятый",
}

# (label, ParticipantProfile attribute); order is the order of a registry card
PARTICIPANT_FIELDS: List[Tuple[str, str]] = [
    ("Полное наименование", "full_name"),
    ("Сокращённое наименование", "short_name"),
    ("ИНН", "inn"),
    ("КПП", "kpp"),
    ("ОГРН/ОГРНИП", "ogrn"),
    ("ОКПО", "okpo"),
    ("ОКАТО", "okato"),
    ("ОКТМО", "oktmo"),
    ("ОКВЭД", "okved"),
    ("Юридический адрес", "legal_address"),
    ("Фактический адрес", "actual_address"),
    ("Руководитель (ФИО)", "director_name"),
    ("Должность руководителя", "director_position"),
    ("Телефон", "phone"),
    ("Email", "email"),
    ("Банк", "bank_name"),
    ("БИК", "bank_bik"),
    ("Р/с", "bank_account"),
    ("К/с", "bank_corr_account"),
    ("ИНН банка", "bank_inn"),
    ("КПП банка", "bank_kpp"),
    ("Ставка НДС", "vat_rate"),
    ("Система налогообложения", "tax_system"),
]

JSON_CONTRACT = """Ответь ТОЛЬКО JSON-объектом следующей структуры:
{
  "title": "Точное название документа",
  "sections": [
    {
      "heading": "Заголовок раздела (если нет — пустая строка)",
      "content": "Текст раздела. Используй \\n для переносов строк. Таблицы — строками вида: ячейка | ячейка | ячейка"
    }
  ],
  "signature_block": "Блок подписи: должность, ФИО, место для подписи и печати, дата"
}
Без markdown, без пояснений вне JSON."""


def _truncate(text: str, budget: int) -> str:
    text = (text or "").strip()
    if len(text) <= budget:
        return text
    logger.info("Truncating prompt input from %d to %d chars", len(text), budget)
    return text[:budget] + "\n[...текст сокращён...]"


def _format_money(value: Optional[float]) -> Optional[str]:
    if value is None:
        return None
    # 1234567.5 -> "1 234 567,50 руб."
    return f"{value:,.2f}".replace(",", " ").replace(".", ",") + " руб."


def render_participant_block(profile: Optional[ParticipantProfile]) -> str:
    placeholder = config.prompt.placeholder
    profile = profile or ParticipantProfile()
    participant_type = _PARTICIPANT_TYPE_LABELS.get(profile.participant_type or "", placeholder)
    lines = [f"- Тип участника: {participant_type}"]
    for label, attr in PARTICIPANT_FIELDS:
        value = getattr(profile, attr)
        lines.append(f"- {label}: {value if value else placeholder}")
    return "\n".join(lines)


def render_bid_amount_block(bid: Optional[BidAmountData]) -> str:
    placeholder = config.prompt.placeholder
    if bid is None:
        bid = BidAmountData()
    bid = bid.with_vat_breakdown()

    if bid.vat_exempt:
        vat_line = "НДС не облагается"
        vat_rate = "Без НДС"
    else:
        vat_line = _format_money(bid.vat_amount) or placeholder
        if bid.vat_amount_words:
            vat_line += f" ({bid.vat_amount_words})"
        vat_rate = f"{bid.vat_rate.rstrip('%')}%" if bid.vat_percent is not None else placeholder

    amount = _format_money(bid.amount) or placeholder
    if bid.amount_words:
        amount += f" ({bid.amount_words})"

    return "\n".join([
        f"- Цена заявки (с учётом НДС): {amount}",
        f"- Ставка НДС: {vat_rate}",
        f"- В т.ч. НДС: {vat_line}",
        f"- Цена без НДС: {_format_money(bid.amount_without_vat) or placeholder}",
    ])


def render_tender_block(info: Optional[AnalysisInfo], tender_context: Optional[str]) -> str:
    placeholder = config.prompt.placeholder
    lines = []
    if info is not None:
        lines.append(f"- Название закупки: {info.title or placeholder}")
        lines.append(f"- Тип закупки: {info.procurement_label}")
    context = _truncate(tender_context or "", config.prompt.context_budget_chars)
    if context:
        lines.append(context)
    return "\n".join(lines) if lines else "(сведения о закупке не переданы)"


def _template_prompt(document_name: str, decision: TemplateDecision, blocks: str) -> str:
    template = _truncate(decision.template_text, config.prompt.template_budget_chars)
    placeholder = config.prompt.placeholder
    files = ", ".join(decision.matched_file_names)
    return f"""Ты — эксперт по подготовке тендерной документации в РФ. Заполни документ "{document_name}" для подачи заявки на участие в закупке.

В документации закупки найден ШАБЛОН этого документа (файлы: {files}).

ШАБЛОН ДОКУМЕНТА:
<<<
{template}
>>>

{blocks}

ПРАВИЛА ЗАПОЛНЕНИЯ:
1. Воспроизведи структуру и формулировки шаблона ТОЧНО, слово в слово.
2. НЕ добавляй, НЕ удаляй и НЕ переставляй разделы, пункты и строки таблиц. Порядок разделов в ответе — как в шаблоне.
3. Заполняй ТОЛЬКО пропуски: пустые скобки, подчёркивания, "указать", "(наименование участника)", пустые ячейки таблиц — данными участника и заявки.
4. Если для пропуска нет данных — оставь в этом месте "{placeholder}". Ничего не выдумывай.
5. Таблицы передавай построчно: одна строка таблицы — одна строка текста, ячейки разделены символом |.
6. Если шаблон содержит несколько форм, заполни только форму "{document_name}".

{JSON_CONTRACT}"""


def _free_prompt(document_name: str, blocks: str) -> str:
    placeholder = config.prompt.placeholder
    return f"""Ты — эксперт по подготовке тендерной документации в РФ. Сгенерируй заполненный документ "{document_name}" для подачи заявки на участие в закупке.

Шаблон этого документа в документации закупки НЕ найден. Составь документ по стандартной форме, принятой для документов такого типа в закупках по 44-ФЗ/223-ФЗ.

{blocks}

ТРЕБОВАНИЯ:
1. Сгенерируй полный текст документа, максимально приближённый к стандартным формам тендерной документации.
2. Подставь все известные реквизиты участника в соответствующие поля.
3. Где данные не указаны — поставь "{placeholder}" как плейсхолдер для ручного заполнения. Не убирай подпись поля.
4. Сведения о закупке используй только те, что переданы выше. Не выдумывай номера, даты, суммы и условия.
5. Используй деловой стиль, соответствующий тендерной документации РФ.
6. Таблицы передавай построчно: одна строка таблицы — одна строка текста, ячейки разделены символом |.
7. Добавь место для подписи и печати в конце документа. Дату документа укажи как "{placeholder}".

{JSON_CONTRACT}"""


def compose_prompt(
    document_name: str,
    decision: TemplateDecision,
    profile: Optional[ParticipantProfile] = None,
    bid_amount: Optional[BidAmountData] = None,
    tender_context: Optional[str] = None,
    analysis: Optional[AnalysisInfo] = None,
) -> ComposedPrompt:
    """Merge everything we know into one instruction; mode follows decision.found."""
    blocks = "\n\n".join([
        "ДАННЫЕ УЧАСТНИКА:\n" + render_participant_block(profile),
        "ЦЕНА ЗАЯВКИ:\n" + render_bid_amount_block(bid_amount),
        "ДАННЫЕ ЗАКУПКИ:\n" + render_tender_block(analysis, tender_context),
    ])

    if decision.found:
        mode = "template"
        user_prompt = _template_prompt(document_name, decision, blocks)
        system = SYSTEM_INSTRUCTION + " Воспроизводи шаблон без изменений структуры."
    else:
        mode = "free"
        user_prompt = _free_prompt(document_name, blocks)
        system = SYSTEM_INSTRUCTION

    logger.info("Composed %s-mode prompt for %r (%d chars)", mode, document_name, len(user_prompt))
    return ComposedPrompt(system_instruction=system, user_prompt=user_prompt, mode=mode)
