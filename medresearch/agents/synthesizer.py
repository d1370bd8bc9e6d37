from __future__ import annotations

import asyncio
import time
from datetime import date
from typing import Callable

from medresearch.engine import Pricing, StageModel
from medresearch.errors import SynthesisError
from medresearch.models.research import (
    HistoryTurn,
    Query,
    RankedSource,
    ResponseSynthesis,
    Tier,
)
from medresearch.services import logger as log_service
from medresearch.services.prompt_store import prompt_version, render_prompt

HISTORY_TURNS = 6
LANGUAGE_NAMES = {"tr": "Turkish", "en": "English"}


def format_sources(sources: list[RankedSource]) -> str:
    blocks = []
    for ranked in sources:
        source = ranked.source
        meta = ", ".join(
            str(part)
            for part in (source.venue, source.year, source.source_type.value)
            if part
        )
        blocks.append(f"[{ranked.rank}] {source.title} ({meta})\n{source.snippet}\nURL: {source.url}")
    return "Sources:\n\n" + "\n\n".join(blocks) + "\n" if blocks else ""


def format_recall(turns: list[HistoryTurn]) -> str:
    if not turns:
        return "No matching earlier conversation was found.\n"
    lines = [f"{turn.role}: {turn.content}" for turn in turns]
    return "Recalled conversation:\n" + "\n".join(lines) + "\n"


def _tier_instructions(tier: Tier) -> str:
    if tier == Tier.RECALL:
        return render_prompt("synthesis.tier_recall")
    if tier == Tier.MODEL:
        return render_prompt("synthesis.tier_model")
    return render_prompt("synthesis.tier_research")


class SynthesisStreamer:
    """Streams the final answer token by token.

    Each chunk is handed to ``on_token`` as soon as it arrives. On cancellation
    the synthesis is marked partial and the cancellation propagates. A provider
    failure is recorded on the synthesis and raised as ``SynthesisError``; text
    already streamed stays on ``synthesis.response``.
    """

    name = "synthesis"

    def __init__(self, llm, stage: StageModel, pricing: Pricing | None = None):
        self.llm = llm
        self.stage = stage
        self.pricing = pricing or Pricing()

    def prepare(self, sources_provided: int) -> ResponseSynthesis:
        return ResponseSynthesis(
            model=self.stage.model,
            temperature=self.stage.temperature,
            prompt_version=prompt_version(),
            sources_provided=sources_provided,
        )

    def build_messages(
        self,
        query: Query,
        tier: Tier,
        sources: list[RankedSource],
        recalled: list[HistoryTurn] | None = None,
    ) -> tuple[str, list[dict[str, str]]]:
        system = render_prompt(
            "synthesis.system",
            today=date.today().isoformat(),
            language=LANGUAGE_NAMES.get(query.language, query.language),
            tier_instructions=_tier_instructions(tier),
        )
        if tier == Tier.RECALL:
            context = format_recall(recalled or [])
        else:
            context = format_sources(sources)
        messages: list[dict[str, str]] = [
            {"role": turn.role, "content": turn.content}
            for turn in query.history[-HISTORY_TURNS:]
            if turn.role in ("user", "assistant") and turn.content
        ]
        messages.append(
            {"role": "user", "content": render_prompt("synthesis.user", context_block=context, question=query.text)}
        )
        return system, messages

    async def stream(
        self,
        synthesis: ResponseSynthesis,
        system: str,
        messages: list[dict[str, str]],
        on_token: Callable[[str], object],
    ) -> ResponseSynthesis:
        t0 = time.monotonic()
        try:
            async with self.llm.messages.stream(
                model=self.stage.model,
                max_tokens=self.stage.max_tokens,
                system=system,
                messages=messages,
                temperature=self.stage.temperature,
            ) as stream:
                async for text in stream.text_stream:
                    synthesis.append(text)
                    on_token(text)
                final = await stream.get_final_message()
        except asyncio.CancelledError:
            synthesis.partial = True
            synthesis.finish_reason = "cancelled"
            self._finish(synthesis, t0)
            raise
        except Exception as exc:
            synthesis.partial = True
            synthesis.finish_reason = "error"
            synthesis.error = str(exc) or type(exc).__name__
            self._finish(synthesis, t0)
            log_service.log_llm_call(
                model=self.stage.model,
                caller=self.name,
                output_tokens=synthesis.tokens_emitted,
                duration_ms=synthesis.latency_ms,
                status="error",
                error=synthesis.error,
            )
            raise SynthesisError(synthesis.error) from exc

        synthesis.input_tokens = final.usage.input_tokens
        synthesis.output_tokens = final.usage.output_tokens or synthesis.tokens_emitted
        synthesis.finish_reason = final.finish_reason or "stop"
        synthesis.cost = self.pricing.cost(synthesis.input_tokens, synthesis.output_tokens)
        self._finish(synthesis, t0)
        log_service.log_llm_call(
            model=self.stage.model,
            caller=self.name,
            input_tokens=synthesis.input_tokens,
            output_tokens=synthesis.output_tokens,
            duration_ms=synthesis.latency_ms,
        )
        return synthesis

    @staticmethod
    def _finish(synthesis: ResponseSynthesis, t0: float) -> None:
        synthesis.latency_ms = int((time.monotonic() - t0) * 1000)
        synthesis.ended_at = time.time()
