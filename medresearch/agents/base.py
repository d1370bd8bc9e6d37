from __future__ import annotations

import json
import re
import time
from typing import Any

from medresearch.engine import Pricing, StageModel
from medresearch.errors import ResearchError
from medresearch.models.research import CallMetrics
from medresearch.services import logger as log_service

_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


def parse_json_reply(text: str) -> dict[str, Any]:
    """Parse a JSON object from a model reply, tolerating markdown fences and
    prose around the object."""
    cleaned = _FENCE.sub("", (text or "").strip()).strip()
    try:
        payload = json.loads(cleaned)
    except json.JSONDecodeError:
        start, end = cleaned.find("{"), cleaned.rfind("}")
        if start == -1 or end <= start:
            raise ValueError("model reply contains no JSON object")
        try:
            payload = json.loads(cleaned[start : end + 1])
        except json.JSONDecodeError as exc:
            raise ValueError(f"model reply is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise ValueError("model reply JSON is not an object")
    return payload


class ModelAgent:
    """Base for single-call agents (router, planner, reflection).

    Wraps one non-streaming model call with timing, token accounting and the
    structured ``LLM_CALL`` log line.
    """

    name: str = "agent"
    error: type[ResearchError] = ResearchError

    def __init__(self, llm: Any, stage: StageModel, pricing: Pricing | None = None):
        self.llm = llm
        self.stage = stage
        self.pricing = pricing or Pricing()

    async def ask(self, system: str, user: str, json_mode: bool = False) -> tuple[str, CallMetrics]:
        t0 = time.monotonic()
        try:
            response = await self.llm.messages.create(
                model=self.stage.model,
                max_tokens=self.stage.max_tokens,
                system=system,
                messages=[{"role": "user", "content": user}],
                temperature=self.stage.temperature,
                json_mode=json_mode,
            )
        except Exception as exc:
            log_service.log_llm_call(
                model=self.stage.model,
                caller=self.name,
                duration_ms=int((time.monotonic() - t0) * 1000),
                status="error",
                error=str(exc),
            )
            raise
        elapsed_ms = int((time.monotonic() - t0) * 1000)
        usage = response.usage
        log_service.log_llm_call(
            model=self.stage.model,
            caller=self.name,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            duration_ms=elapsed_ms,
        )
        metrics = CallMetrics(
            model=self.stage.model,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            cost=self.pricing.cost(usage.input_tokens, usage.output_tokens),
            latency_ms=elapsed_ms,
        )
        return response.text, metrics

    async def ask_json(self, system: str, user: str) -> tuple[dict[str, Any], CallMetrics]:
        """One call whose reply must be a JSON object; any failure is raised
        as the agent's ``error`` type."""
        try:
            text, metrics = await self.ask(system, user, json_mode=True)
            return parse_json_reply(text), metrics
        except Exception as exc:
            raise self.error(f"{self.name} call failed: {exc}") from exc


def as_str_list(value: Any) -> tuple[str, ...]:
    if not isinstance(value, list):
        return ()
    return tuple(str(v).strip() for v in value if str(v).strip())


def clamp(value: Any, low: float = 0.0, high: float = 1.0, default: float = 0.0) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return max(low, min(high, number))
