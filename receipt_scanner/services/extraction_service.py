# receipt_scanner/services/extraction_service.py
from __future__ import annotations

import base64
import json
from datetime import date as date_cls
from typing import Any, Dict, Optional

from openai import OpenAI, OpenAIError
from pydantic import ValidationError

from receipt_scanner.config import Settings, get_settings
from receipt_scanner.errors import ExtractionError, NotConfiguredError
from receipt_scanner.logging_utils import get_logger
from receipt_scanner.schemas import ReceiptData

log = get_logger(__name__)

REQUEST_TIMEOUT = 120.0

SYSTEM_PROMPT = (
    "You are a strict JSON generator. Output ONLY a single JSON object that matches the "
    "requested fields. No prose, no markdown fences, no trailing text."
)

# -----------------------------------------------------------------------------
# Prompt
# -----------------------------------------------------------------------------

_DAY_FIRST_RULES = """
DATE RULES (receipts here are DAY/MONTH/YEAR):
- The FIRST number is ALWAYS the day, the SECOND number is ALWAYS the month.
- Never read a date as MM/DD/YYYY.
- "09/11/2024" or "9/11/2024" is 9 November 2024 -> "2024-11-09"
- "11/09/2024" is 11 September 2024 -> "2024-09-11"
- "15/03/2024" is 15 March 2024 -> "2024-03-15"
- Output the date as YYYY-MM-DD.
- If the format is ambiguous, use DD/MM/YYYY.
- The date is never in the future. If your reading gives a future date, reconsider.
"""

_MONTH_FIRST_RULES = """
DATE RULES:
- Output the date as YYYY-MM-DD.
- The date is never in the future. If your reading gives a future date, reconsider.
"""


def build_prompt(use_today_date: bool = False, date_order: str = "DMY") -> str:
    extract_date = not use_today_date

    fields: Dict[str, Any] = {
        "merchantName": "string, the store or merchant name",
        "total": "number, the final total paid",
        "items": [{"name": "string", "price": "number"}],
    }
    if extract_date:
        fields["date"] = "string, the transaction date in YYYY-MM-DD"

    wanted = "the merchant name, transaction date, total amount" if extract_date \
        else "the merchant name, total amount"

    parts = [
        f"Analyze the provided receipt image. Extract {wanted}, "
        "and a list of all items with their corresponding prices.",
    ]
    if extract_date:
        parts.append(_DAY_FIRST_RULES if date_order.upper() == "DMY" else _MONTH_FIRST_RULES)
    parts.append("Return JSON with exactly these keys:\n" + json.dumps(fields, indent=2))
    parts.append(
        "If a value is not clear, make a reasonable guess or use an empty string, "
        "or 0 for numbers."
    )
    return "\n".join(parts)


# -----------------------------------------------------------------------------
# Response handling
# -----------------------------------------------------------------------------

def strip_code_fences(text: str) -> str:
    t = (text or "").strip()
    if t.startswith("```json"):
        t = t[len("```json"):]
    elif t.startswith("```"):
        t = t[3:]
    else:
        return t
    if t.rstrip().endswith("```"):
        t = t.rstrip()[:-3]
    return t.strip()


def _to_data_url(image_bytes: bytes, mime_type: str) -> str:
    b64 = base64.b64encode(image_bytes).decode("ascii")
    return f"data:{mime_type or 'image/jpeg'};base64,{b64}"


def parse_receipt_json(text: str, *, use_today_date: bool = False, today: Optional[date_cls] = None) -> ReceiptData:
    payload = json.loads(strip_code_fences(text))
    if not isinstance(payload, dict):
        raise ExtractionError("Failed to parse receipt data correctly.")

    if use_today_date:
        payload["date"] = (today or date_cls.today()).isoformat()

    if not payload.get("merchantName") and not payload.get("merchant_name"):
        raise ExtractionError("Failed to parse receipt data correctly.")
    if payload.get("items") is None:
        raise ExtractionError("Failed to parse receipt data correctly.")

    if payload.get("total") in (None, ""):
        payload["total"] = 0
    payload["date"] = str(payload.get("date") or "")
    payload.pop("id", None)

    return ReceiptData.model_validate(payload)


# -----------------------------------------------------------------------------
# Public API
# -----------------------------------------------------------------------------

def _client(settings: Settings) -> OpenAI:
    if not settings.vision_configured:
        raise NotConfiguredError("Vision model is not configured. Set OPENAI_API_KEY.")
    return OpenAI(api_key=settings.openai_api_key)


def analyze_receipt(
    image_bytes: bytes,
    mime_type: str,
    *,
    use_today_date: bool = False,
    settings: Optional[Settings] = None,
    client: Any = None,
    today: Optional[date_cls] = None,
) -> ReceiptData:
    """
    Send one receipt image to the vision model and return a draft record.

    Raises NotConfiguredError without an API key, ExtractionError for every
    other failure ("Failed to analyze receipt: ...").
    """
    settings = settings or get_settings()
    client = client or _client(settings)

    messages = [
        {"role": "system", "content": SYSTEM_PROMPT},
        {
            "role": "user",
            "content": [
                {"type": "text", "text": build_prompt(use_today_date, settings.date_order)},
                {"type": "image_url", "image_url": {"url": _to_data_url(image_bytes, mime_type)}},
            ],
        },
    ]

    try:
        log.info("Calling vision model '%s' (%d bytes, today=%s)", settings.vision_model, len(image_bytes), use_today_date)
        completion = client.chat.completions.create(
            model=settings.vision_model,
            messages=messages,
            response_format={"type": "json_object"},
            temperature=0,
            timeout=REQUEST_TIMEOUT,
        )
        choice = completion.choices[0] if getattr(completion, "choices", None) else None
        text = choice.message.content if choice is not None else None
        if not text:
            raise ExtractionError("The model returned an empty response.")

        data = parse_receipt_json(text, use_today_date=use_today_date, today=today)
    except (ExtractionError, OpenAIError, ValueError, ValidationError) as e:
        # json.JSONDecodeError is a ValueError
        log.error("Error analyzing receipt: %s", e)
        raise ExtractionError(f"Failed to analyze receipt: {e}") from e

    log.info("Extracted %s %s total=%.2f items=%d", data.merchant_name, data.date, data.total, len(data.items))
    return data
