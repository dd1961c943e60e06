from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Optional, Sequence
from urllib.error import URLError
from urllib.request import Request, urlopen

from pydantic import ValidationError

from config import get_settings
from schemas import Insight

INSIGHT_SAMPLE_SIZE = 50
CHAT_SAMPLE_SIZE = 100

MISSING_KEY_INSIGHT = Insight(
    title="Insights Not Configured",
    content="Set LEDGER_INSIGHTS_URL (and an API key if required) to generate insights.",
    kind="neutral",
)
FAILED_INSIGHT = Insight(
    title="Analysis Failed",
    content="Could not generate insights at this time. Please try again later.",
    kind="negative",
)
MISSING_KEY_ANSWER = "Insights are not configured."
FAILED_ANSWER = "Sorry, I had trouble analyzing that request."


class InsightsUnavailable(RuntimeError):
    pass


@dataclass(frozen=True)
class LedgerLine:
    day: str
    description: str
    amount: str
    category: str

    def render(self) -> str:
        return f"{self.day}: {self.description} - {self.amount} ({self.category})"


def _insights_prompt(lines: Sequence[LedgerLine], aggregates: dict) -> str:
    sample = "\n".join(line.render() for line in lines[:INSIGHT_SAMPLE_SIZE])
    totals = json.dumps(aggregates, sort_keys=True)
    return (
        "Analyze the following financial transaction data.\n"
        "Provide 3 distinct, short, and actionable insights or observations.\n"
        "Focus on spending habits, potential savings, or unusual patterns.\n"
        'Answer with a JSON array of {"title", "content", "kind"} objects where kind '
        "is one of positive, negative, neutral, action.\n\n"
        f"Totals: {totals}\n\nData Snippet:\n{sample}\n"
    )


def _chat_prompt(question: str, lines: Sequence[LedgerLine]) -> str:
    sample = "\n".join(line.render() for line in lines[:CHAT_SAMPLE_SIZE])
    return (
        "You are a helpful financial assistant.\n"
        f'User Question: "{question}"\n\n'
        f"Here is a sample of their recent transaction data:\n{sample}\n\n"
        "Answer the question based on this data. Be concise and friendly.\n"
    )


class InsightsClient:
    """Thin client for an HTTP text-generation endpoint.

    The endpoint receives ``{"prompt": ..., "format": "json"|"text"}`` and
    answers ``{"text": ...}``.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> None:
        settings = get_settings()
        self.url = url if url is not None else settings.insights_url
        self.api_key = api_key if api_key is not None else settings.insights_api_key
        self.timeout = timeout if timeout is not None else settings.insights_timeout_secs

    @property
    def configured(self) -> bool:
        return bool(self.url)

    def _generate(self, prompt: str, *, fmt: str) -> str:
        if not self.url:
            raise InsightsUnavailable("Insights endpoint is not configured")
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        body = json.dumps({"prompt": prompt, "format": fmt}).encode("utf-8")
        req = Request(self.url, data=body, headers=headers, method="POST")
        try:
            with urlopen(req, timeout=self.timeout) as resp:
                payload = json.loads(resp.read().decode("utf-8"))
        except (URLError, TimeoutError, json.JSONDecodeError) as exc:
            raise InsightsUnavailable("Failed to reach the insights endpoint") from exc
        text = payload.get("text") if isinstance(payload, dict) else None
        if not isinstance(text, str):
            raise InsightsUnavailable("Unexpected insights endpoint response")
        return text

    def insights(self, lines: Sequence[LedgerLine], aggregates: dict) -> list[Insight]:
        text = self._generate(_insights_prompt(lines, aggregates), fmt="json")
        if not text.strip():
            return []
        try:
            items = json.loads(text)
            return [Insight.model_validate(item) for item in items]
        except (json.JSONDecodeError, TypeError, ValidationError) as exc:
            raise InsightsUnavailable("Insights endpoint returned malformed JSON") from exc

    def answer(self, question: str, lines: Sequence[LedgerLine]) -> str:
        text = self._generate(_chat_prompt(question, lines), fmt="text")
        return text or "I couldn't generate an answer."
