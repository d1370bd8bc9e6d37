from __future__ import annotations

from loguru import logger

from medresearch.agents.base import ModelAgent, as_str_list
from medresearch.errors import PlanningError
from medresearch.models.research import Query, ResearchPlan, RouterDecision
from medresearch.services.prompt_store import render_prompt

DEFAULT_ESTIMATED_ROUNDS = 2
MAX_FOCUS_AREAS = 8


def default_plan(reason: str) -> ResearchPlan:
    return ResearchPlan(
        estimated_rounds=DEFAULT_ESTIMATED_ROUNDS,
        strategy="default",
        focus_areas=(),
        reasoning=reason,
        is_default=True,
    )


class ResearchPlanner(ModelAgent):
    """Single model call proposing strategy and focus areas for deep research.

    Never raises: any failure, including an unusable reply, yields the default
    plan so round 1 can still run.
    """

    name = "planner"
    error = PlanningError

    async def plan(self, query: Query, decision: RouterDecision) -> ResearchPlan:
        system = render_prompt("planner.system")
        user = render_prompt(
            "planner.user",
            question=query.text,
            router_reasoning=decision.reasoning or "n/a",
        )
        try:
            payload, metrics = await self.ask_json(system, user)
        except PlanningError as exc:
            logger.warning(f"Planner failed, using default plan: {exc}")
            return default_plan(f"Planning unavailable: {type(exc.__cause__).__name__}")

        try:
            estimated = int(payload.get("estimatedRounds", DEFAULT_ESTIMATED_ROUNDS))
        except (TypeError, ValueError):
            estimated = DEFAULT_ESTIMATED_ROUNDS

        focus_areas: list[str] = []
        for area in as_str_list(payload.get("focusAreas")):
            if area.lower() not in (a.lower() for a in focus_areas):
                focus_areas.append(area)

        return ResearchPlan(
            estimated_rounds=max(estimated, 1),
            strategy=str(payload.get("strategy") or "focused").strip(),
            focus_areas=tuple(focus_areas[:MAX_FOCUS_AREAS]),
            reasoning=str(payload.get("reasoning") or "").strip(),
            metrics=metrics,
        )
