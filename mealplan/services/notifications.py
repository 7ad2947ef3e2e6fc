from __future__ import annotations

import html
import logging
from typing import Any, Dict, Optional

import httpx

from ..config import get_settings

logger = logging.getLogger(__name__)

RESEND_EMAILS_URL = "https://api.resend.com/emails"


def plan_ready_subject(theme_name: Optional[str]) -> str:
    if theme_name:
        return f"Your {theme_name} Meal Plan is Ready!"
    return "Your Meal Plan is Ready!"


def _plan_ready_html(*, display_name: Optional[str], plan_url: str, theme_name: Optional[str]) -> str:
    greeting = f"Hi {html.escape(display_name)}," if display_name else "Hi there,"
    theme_line = (
        f"<p>This week's theme is <strong>{html.escape(theme_name)}</strong>.</p>" if theme_name else ""
    )
    return (
        f"<p>{greeting}</p>"
        "<p>Your new 7-day meal plan has finished generating.</p>"
        f"{theme_line}"
        f'<p><a href="{html.escape(plan_url)}">View your meal plan</a></p>'
    )


async def send_plan_ready_email(
    *,
    to_email: str,
    meal_plan_id: str,
    display_name: Optional[str] = None,
    theme_name: Optional[str] = None,
    client: httpx.AsyncClient | None = None,
) -> Optional[str]:
    """Send the "meal plan ready" e-mail through Resend.

    Returns the provider message id, or ``None`` when e-mail is not configured.
    HTTP failures raise ``httpx.HTTPError`` for the caller to record.
    """
    settings = get_settings()
    if not settings.resend_api_key:
        logger.info("Resend not configured; skipping plan ready email plan=%s", meal_plan_id)
        return None

    plan_url = f"{settings.app_public_url.rstrip('/')}/meal-plan/{meal_plan_id}"
    payload: Dict[str, Any] = {
        "from": settings.email_from,
        "to": [to_email],
        "subject": plan_ready_subject(theme_name),
        "html": _plan_ready_html(display_name=display_name, plan_url=plan_url, theme_name=theme_name),
    }
    if settings.email_reply_to:
        payload["reply_to"] = settings.email_reply_to
    headers = {"Authorization": f"Bearer {settings.resend_api_key}"}

    if client is not None:
        resp = await client.post(RESEND_EMAILS_URL, json=payload, headers=headers)
    else:
        async with httpx.AsyncClient(timeout=10) as owned:
            resp = await owned.post(RESEND_EMAILS_URL, json=payload, headers=headers)
    if resp.status_code >= 400:
        logger.error("Resend returned %s plan=%s: %s", resp.status_code, meal_plan_id, resp.text)
    resp.raise_for_status()
    message_id = (resp.json() or {}).get("id")
    logger.info("Plan ready email sent plan=%s message=%s", meal_plan_id, message_id)
    return message_id
