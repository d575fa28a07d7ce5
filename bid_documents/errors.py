"""
errors.py — Typed failures that reach the caller.

Only two things are fatal by nature: a missing required input field and
a missing gateway credential. Everything on the extraction side degrades
to empty text instead of raising, so the classes here are mostly about
the final generation call. Each carries the HTTP status the API layer
should answer with and a message that is safe to show to the user.
"""

from __future__ import annotations


class BidGenerationError(Exception):
    """Base class. `message` is user-displayable (Russian UI)."""

    status_code = 500
    default_message = "Не удалось сгенерировать документ."

    def __init__(self, message: str = "", detail: str = ""):
        self.message = message or self.default_message
        # detail is for logs only, never returned to the client
        self.detail = detail
        super().__init__(self.message)


class InputError(BidGenerationError):
    status_code = 400
    default_message = "Некорректный запрос."


class ConfigurationError(BidGenerationError):
    status_code = 500
    default_message = "Сервис генерации не настроен."


class RateLimited(BidGenerationError):
    status_code = 429
    default_message = "Превышен лимит запросов. Попробуйте позже."


class BillingRequired(BidGenerationError):
    status_code = 402
    default_message = "Необходимо пополнить баланс AI."


class UpstreamError(BidGenerationError):
    status_code = 500
    default_message = "Ошибка сервиса генерации. Попробуйте позже."


class MalformedResponse(BidGenerationError):
    status_code = 500
    default_message = "Не удалось разобрать ответ сервиса генерации."


class GenerationCancelled(BidGenerationError):
    # nginx's "client closed request"
    status_code = 499
    default_message = "Генерация отменена."
