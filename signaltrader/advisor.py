from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Protocol

import requests

from signaltrader.config import AdvisorConfig
from signaltrader.policy.contracts import OrderPreview
from signaltrader.signals.models import AggregatedConviction

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class AdvisorVerdict:
    approve: bool
    confidence: float
    rationale: str = ""
    model: str | None = None


class DecisionAdvisor(Protocol):
    def review(self, preview: OrderPreview, conviction: AggregatedConviction | None) -> AdvisorVerdict | None:
        ...


def passes_gate(verdict: AdvisorVerdict | None, min_confidence: float) -> bool:
    return verdict is not None and verdict.approve and verdict.confidence >= min_confidence


def build_review_context(preview: OrderPreview, conviction: AggregatedConviction | None) -> dict[str, Any]:
    context: dict[str, Any] = {
        "symbol": preview.symbol,
        "side": preview.side,
        "order_type": preview.order_type,
        "estimated_price": str(preview.estimated_price),
        "estimated_cost": str(preview.estimated_cost),
        "asset_class": preview.asset_class,
    }
    if conviction is not None:
        context.update(
            {
                "sentiment": round(conviction.sentiment, 4),
                "weighted_volume": round(conviction.weighted_volume, 4),
                "source_count": conviction.source_count,
                "sources": list(conviction.sources),
            }
        )
    return context


def _build_prompt(context: dict[str, Any]) -> str:
    summary = json.dumps(context, indent=2, ensure_ascii=False)
    return (
        "You review proposed stock and crypto entries driven by social and news sentiment."
        " Respond ONLY with a JSON object containing approve (true/false),"
        " confidence (0-1 float) and reason (short string).\n\n"
        f"Proposed trade:\n{summary}"
    )


def parse_verdict(content: str, model: str | None = None) -> AdvisorVerdict:
    text = content.strip()
    if text.startswith("```"):
        text = text.strip("`")
        if text.lower().startswith("json"):
            text = text[4:]
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid JSON response: {exc}") from exc
    if not isinstance(data, dict):
        raise ValueError("advisor response is not a JSON object")

    approve_value = data.get("approve")
    if isinstance(approve_value, bool):
        approve = approve_value
    elif isinstance(approve_value, str):
        approve = approve_value.strip().lower() in {"true", "yes", "y"}
    else:
        approve = False

    try:
        confidence = max(0.0, min(float(data.get("confidence", 0.0)), 1.0))
    except (TypeError, ValueError):
        confidence = 0.0
    return AdvisorVerdict(
        approve=approve,
        confidence=round(confidence, 3),
        rationale=str(data.get("reason", "")).strip(),
        model=model,
    )


class ChatCompletionsAdvisor:
    """OpenAI-compatible chat completions endpoint used as an opaque entry gate."""

    def __init__(self, config: AdvisorConfig, api_key: str, *, session: requests.Session | None = None):
        self.config = config
        self.api_key = api_key
        self.session = session or requests.Session()

    def review(self, preview: OrderPreview, conviction: AggregatedConviction | None) -> AdvisorVerdict | None:
        context = build_review_context(preview, conviction)
        body = {
            "model": self.config.model,
            "temperature": 0.2,
            "max_tokens": self.config.max_tokens,
            "response_format": {"type": "json_object"},
            "messages": [
                {"role": "system", "content": "Trade approval analyst"},
                {"role": "user", "content": _build_prompt(context)},
            ],
        }
        try:
            response = self.session.post(
                f"{self.config.base_url.rstrip('/')}/chat/completions",
                headers={"Authorization": f"Bearer {self.api_key}"},
                json=body,
                timeout=self.config.timeout_seconds,
            )
            response.raise_for_status()
            payload = response.json()
            content = payload["choices"][0]["message"]["content"] or ""
            verdict = parse_verdict(content, model=self.config.model)
        except (requests.RequestException, KeyError, IndexError, TypeError, ValueError) as exc:
            LOGGER.warning("Advisor unavailable for %s: %s", preview.symbol, exc)
            return None
        LOGGER.info(
            "Advisor verdict %s approve=%s conf=%.3f reason=%s",
            preview.symbol,
            verdict.approve,
            verdict.confidence,
            verdict.rationale or "-",
        )
        return verdict
