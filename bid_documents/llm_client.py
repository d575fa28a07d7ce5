"""
llm_client.py — Chat-completion gateway client.

Two calls go through here:
  generate()    the final document generation, strict JSON expected
  transcribe()  the vision fallback for PDFs/images/broken .docx

generate() is single-shot. Retries are the caller's call; we only
classify:

    429 -> RateLimited      402 -> BillingRequired
    anything else / network  -> UpstreamError
    unparseable body         -> MalformedResponse

Models wrap JSON in ```json fences or add a chatty sentence in front of
it despite being told not to. The parser strips fences, tries a direct
parse, then tries the span from the first "{" to the last "}". Anything
else is MalformedResponse.
"""

from __future__ import annotations

import base64
import json
import logging
import re
import time
from typing import Any, Dict, List, Optional, Union

import requests

from bid_documents.config import config
from bid_documents.errors import (
    BidGenerationError,
    BillingRequired,
    ConfigurationError,
    MalformedResponse,
    RateLimited,
    UpstreamError,
)
from bid_documents.schemas import ComposedPrompt, GeneratedDocument

logger = logging.getLogger(__name__)

_FENCE_OPEN = re.compile(r"^\s*```[A-Za-z0-9_-]*[ \t]*\r?\n?")
_FENCE_CLOSE = re.compile(r"\r?\n?```\s*$")


def strip_code_fences(text: str) -> str:
    """Remove a ```/```json wrapper if the whole reply is fenced, else any stray fences."""
    text = (text or "").strip()
    if text.startswith("```"):
        text = _FENCE_OPEN.sub("", text, count=1)
        text = _FENCE_CLOSE.sub("", text, count=1)
    else:
        text = re.sub(r"```(?:json|JSON)?\s*", "", text)
    return text.strip()


def parse_json_payload(text: str) -> Any:
    """
    Fence-strip, parse, and on failure parse the first-"{"-to-last-"}" span.

    Raises MalformedResponse when both attempts fail.
    """
    cleaned = strip_code_fences(text)
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        pass

    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start != -1 and end > start:
        try:
            return json.loads(cleaned[start:end + 1])
        except json.JSONDecodeError as exc:
            raise MalformedResponse(detail=f"brace-span parse failed: {exc}") from exc

    raise MalformedResponse(detail=f"no JSON object in response: {cleaned[:200]!r}")


def classify_status(status_code: int, body: str = "") -> BidGenerationError:
    """Map a non-2xx gateway status to the error the caller sees."""
    if status_code == 429:
        return RateLimited(detail=body[:500])
    if status_code == 402:
        return BillingRequired(detail=body[:500])
    return UpstreamError(
        message=f"Ошибка сервиса генерации ({status_code}). Попробуйте позже.",
        detail=body[:500],
    )


def _message_text(data: Dict[str, Any]) -> str:
    """choices[0].message.content, tolerating the list-of-parts form."""
    try:
        content = data["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
        raise MalformedResponse(detail=f"unexpected completion shape: {str(data)[:200]}")
    if isinstance(content, list):
        content = "".join(
            part.get("text", "") for part in content if isinstance(part, dict)
        )
    return content or ""


class CompletionClient:
    """
    Thin wrapper over POST {api_url}/chat/completions.

    A requests.Session is reused for connection pooling; tests pass their
    own session-like object.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_url: Optional[str] = None,
        model: Optional[str] = None,
        vision_model: Optional[str] = None,
        session: Optional[requests.Session] = None,
    ):
        self.api_key = api_key if api_key is not None else config.llm.api_key
        if not self.api_key:
            raise ConfigurationError(detail="LLM_API_KEY (or LOVABLE_API_KEY) is not set")
        self.api_url = (api_url or config.llm.api_url).rstrip("/")
        self.model = model or config.llm.model
        self.vision_model = vision_model or config.llm.vision_model
        self.session = session or requests.Session()

    def _post(self, payload: Dict[str, Any], timeout_s: float) -> requests.Response:
        return self.session.post(
            f"{self.api_url}/chat/completions",
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
            json=payload,
            timeout=timeout_s,
        )

    def complete(
        self,
        system: str,
        user_content: Union[str, List[Dict[str, Any]]],
        model: Optional[str] = None,
        timeout_s: Optional[float] = None,
    ) -> str:
        """One chat completion. Raises the classified errors above."""
        payload = {
            "model": model or self.model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user_content},
            ],
        }
        t0 = time.time()
        try:
            response = self._post(payload, timeout_s or config.llm.request_timeout_s)
        except requests.RequestException as exc:
            raise UpstreamError(detail=f"gateway request failed: {exc}") from exc

        if not response.ok:
            logger.error("Gateway returned %d: %s", response.status_code, response.text[:300])
            raise classify_status(response.status_code, response.text)

        try:
            data = response.json()
        except ValueError as exc:
            raise MalformedResponse(detail="gateway body is not JSON") from exc

        text = _message_text(data)
        logger.info("Completion: %d chars in %.1fs (model=%s)", len(text), time.time() - t0, payload["model"])
        return text

    def generate(self, prompt: ComposedPrompt, fallback_title: str = "") -> GeneratedDocument:
        """Run the composed prompt and return a validated GeneratedDocument."""
        raw = self.complete(prompt.system_instruction, prompt.user_prompt)
        payload = parse_json_payload(raw)
        try:
            return GeneratedDocument.from_llm_payload(payload, fallback_title=fallback_title)
        except ValueError as exc:
            logger.error("Completion parsed but failed validation: %s", exc)
            raise MalformedResponse(detail=str(exc)) from exc

    def transcribe(
        self,
        data: bytes,
        mime_type: str,
        file_name: str = "",
        timeout_s: Optional[float] = None,
    ) -> str:
        """
        Vision fallback: send the file inline and get its text back.

        Returns "" on any failure. A file we can't read is an empty file
        as far as template matching is concerned.
        """
        encoded = base64.b64encode(data).decode("ascii")
        content = [
            {"type": "text", "text": config.extraction.vision_prompt},
            {"type": "image_url", "image_url": {"url": f"data:{mime_type};base64,{encoded}"}},
        ]
        try:
            text = self.complete(
                "Ты распознаёшь текст документов. Возвращай только текст документа.",
                content,
                model=self.vision_model,
                timeout_s=timeout_s or config.llm.vision_timeout_s,
            )
        except BidGenerationError as exc:
            logger.warning("Vision transcription of %s failed: %s (%s)", file_name, exc.message, exc.detail)
            return ""
        return strip_code_fences(text)
