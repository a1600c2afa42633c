from __future__ import annotations

import base64
import json
import logging
import re
from typing import Optional
from urllib.error import URLError
from urllib.request import Request, urlopen

from pydantic import ValidationError
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from config import get_settings
from errors import ExternalServiceError
from schemas import MonthlyStats, ReceiptDraft

logger = logging.getLogger(__name__)

API_ROOT = "https://generativelanguage.googleapis.com/v1/models"

FALLBACK_INSIGHTS = [
    "Review your highest expense category this month.",
    "Setting a budget could improve savings.",
    "Recurring expenses may offer cost-cut opportunities.",
]

RECEIPT_PROMPT = """
Analyze this receipt image and extract the following information.
Return ONLY valid JSON in exactly this shape:
{
  "amount": number,
  "date": "ISO date string",
  "description": "string",
  "merchantName": "string",
  "category": "string"
}
Use a short description of the purchased items. Pick the category from:
housing, transportation, groceries, utilities, entertainment, food, shopping,
healthcare, education, personal, travel, insurance, gifts, bills,
other-expense. If the image is not a receipt, return an empty object.
"""

_FENCE = re.compile(r"```(?:json)?", re.IGNORECASE)


def strip_code_fences(text: str) -> str:
    return _FENCE.sub("", text).strip()


class GeminiClient:
    """Minimal generateContent client: one prompt in, the first text part out."""

    def __init__(self, model: str, api_key: Optional[str] = None) -> None:
        self.settings = get_settings()
        self.model = model
        self.api_key = api_key if api_key is not None else self.settings.gemini_api_key

    @retry(
        retry=retry_if_exception_type((URLError, TimeoutError)),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        reraise=True,
    )
    def generate(self, parts: list[dict[str, object]]) -> str:
        if not self.api_key:
            raise ExternalServiceError("Gemini API key is not configured")
        url = f"{API_ROOT}/{self.model}:generateContent?key={self.api_key}"
        body = json.dumps({"contents": [{"role": "user", "parts": parts}]})
        req = Request(
            url,
            data=body.encode("utf-8"),
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        with urlopen(req, timeout=self.settings.gemini_timeout_secs) as resp:
            payload = json.loads(resp.read().decode("utf-8"))
        try:
            return payload["candidates"][0]["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError) as exc:
            raise ExternalServiceError("Unexpected Gemini response") from exc


class ReceiptScanner:
    def __init__(self, client: Optional[GeminiClient] = None) -> None:
        self.client = client or GeminiClient(get_settings().gemini_receipt_model)

    def scan(self, image: bytes, mime_type: str) -> ReceiptDraft:
        parts = [
            {
                "inlineData": {
                    "mimeType": mime_type,
                    "data": base64.b64encode(image).decode("ascii"),
                }
            },
            {"text": RECEIPT_PROMPT},
        ]
        try:
            text = self.client.generate(parts)
            data = json.loads(strip_code_fences(text))
            if not isinstance(data, dict) or not data:
                raise ValueError("Receipt response is not a receipt object")
            return ReceiptDraft.model_validate(data)
        except (ExternalServiceError, OSError, ValueError, ValidationError) as exc:
            logger.warning(f"receipt_scan_failed: mime={mime_type} error={exc!r}")
            raise ExternalServiceError("Failed to scan receipt") from exc


def _insight_prompt(stats: MonthlyStats, month: str) -> str:
    categories = ", ".join(
        f"{category}: ${amount}" for category, amount in stats.by_category.items()
    )
    return f"""
Analyze this financial data and provide 3 concise, actionable insights.
Focus on spending patterns and practical advice.
Keep it friendly and conversational.

Financial Data for {month}:
- Total Income: ${stats.total_income}
- Total Expenses: ${stats.total_expenses}
- Net Income: ${stats.net}
- Expense Categories: {categories}

Return ONLY valid JSON:
["insight 1", "insight 2", "insight 3"]
"""


class InsightGenerator:
    def __init__(self, client: Optional[GeminiClient] = None) -> None:
        self.client = client or GeminiClient(get_settings().gemini_insight_model)

    def generate(self, stats: MonthlyStats, month: str) -> list[str]:
        try:
            text = self.client.generate([{"text": _insight_prompt(stats, month)}])
            insights = json.loads(strip_code_fences(text))
        except (ExternalServiceError, OSError, ValueError) as exc:
            logger.warning(f"insight_generation_failed: month={month} error={exc!r}")
            return list(FALLBACK_INSIGHTS)
        if (
            not isinstance(insights, list)
            or len(insights) != 3
            or not all(isinstance(item, str) and item.strip() for item in insights)
        ):
            logger.warning(f"insight_generation_failed: month={month} error=shape")
            return list(FALLBACK_INSIGHTS)
        return [item.strip() for item in insights]
