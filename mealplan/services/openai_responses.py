from __future__ import annotations

import logging
from typing import Any, Dict

import httpx
from openai import OpenAI, OpenAIError

from ..config import get_settings
from ..errors import GenerationError

logger = logging.getLogger(__name__)

RESPONSES_URL = "https://api.openai.com/v1/responses"


def call_openai_responses(
    *,
    stage: str,
    model: str,
    system_prompt: str,
    user_prompt: str,
    max_output_tokens: int,
    reasoning_effort: str | None = None,
) -> str:
    """Call the OpenAI Responses API for one generation stage and return its text.

    Blocking; callers on the event loop wrap it in ``asyncio.to_thread``.
    Every failure surfaces as ``GenerationError`` tagged with ``stage``.
    """
    settings = get_settings()
    if not settings.openai_api_key:
        raise GenerationError(stage, "Content generation is not configured")
    payload: Dict[str, Any] = {
        "model": model,
        "input": [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ],
        "max_output_tokens": max_output_tokens,
        "text": {"format": {"type": "json_object"}},
    }
    if reasoning_effort:
        payload["reasoning"] = {"effort": reasoning_effort}

    client = OpenAI(
        api_key=settings.openai_api_key,
        timeout=settings.openai_request_timeout_seconds,
    )
    responses_client = getattr(client, "responses", None)
    if responses_client is None or not hasattr(responses_client, "create"):
        logger.warning("OpenAI client missing Responses API; falling back to HTTP call stage=%s", stage)
        return _call_over_http(stage, payload, settings)

    try:
        response = responses_client.create(**payload)
    except OpenAIError as exc:
        logger.error("OpenAI Responses API call failed stage=%s error=%s", stage, exc)
        raise GenerationError(stage, "Unable to reach the content generation service") from exc

    if getattr(response, "status", "completed") != "completed":
        reason = getattr(getattr(response, "incomplete_details", None), "reason", "unknown")
        logger.error("OpenAI Responses API returned incomplete status stage=%s reason=%s", stage, reason)
        raw = _extract_response_text(response)
        raise GenerationError(stage, f"Generation did not complete ({reason})", raw or None)
    text = _extract_response_text(response)
    if not text:
        raise GenerationError(stage, "Generation returned empty output")
    return text


def _call_over_http(stage: str, payload: Dict[str, Any], settings) -> str:
    try:
        resp = httpx.post(
            RESPONSES_URL,
            json=payload,
            headers={
                "Authorization": f"Bearer {settings.openai_api_key}",
                "Content-Type": "application/json",
            },
            timeout=settings.openai_request_timeout_seconds,
        )
    except httpx.TimeoutException as exc:
        logger.error(
            "HTTP timeout calling OpenAI Responses API stage=%s after=%ss",
            stage,
            settings.openai_request_timeout_seconds,
        )
        raise GenerationError(stage, "Timed out while waiting for the content generation service") from exc
    except httpx.HTTPError as exc:  # pragma: no cover - network failure path
        logger.error("HTTP error calling OpenAI Responses API stage=%s error=%s", stage, exc)
        raise GenerationError(stage, "Unable to reach the content generation service") from exc

    if resp.status_code >= 400:
        logger.error("OpenAI Responses REST API returned %s stage=%s: %s", resp.status_code, stage, resp.text)
        raise GenerationError(stage, "Content generation call failed", resp.text)

    text = _extract_response_text(resp.json())
    if not text:
        raise GenerationError(stage, "Generation returned empty output")
    return text


def _extract_response_text(response: Any) -> str:
    output = getattr(response, "output", None)
    if output is None and isinstance(response, dict):
        output = response.get("output")
    chunks: list[str] = []
    for block in output or []:
        content = getattr(block, "content", None)
        if content is None and isinstance(block, dict):
            content = block.get("content")
        for part in content or []:
            text = getattr(part, "text", None)
            if text is None and isinstance(part, dict):
                text = part.get("text")
            if text:
                chunks.append(text)
    return "".join(chunks).strip()
