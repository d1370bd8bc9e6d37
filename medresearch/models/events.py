from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class EventType(str, Enum):
    ROUTING = "routing"
    TIER_SELECTED = "tier_selected"
    RECALL_RESULTS = "recall_results"
    PLANNING_STARTED = "planning_started"
    PLANNING_COMPLETE = "planning_complete"
    ROUND_STARTED = "round_started"
    API_STARTED = "api_started"
    API_COMPLETED = "api_completed"
    ROUND_COMPLETE = "round_complete"
    REFLECTION_STARTED = "reflection_started"
    REFLECTION_COMPLETE = "reflection_complete"
    SOURCE_SELECTION_STARTED = "source_selection_started"
    SYNTHESIS_PREPARATION = "synthesis_preparation"
    SYNTHESIS_STARTED = "synthesis_started"
    TOKEN = "token"
    COMPLETE = "complete"
    ERROR = "error"


TERMINAL_EVENTS = frozenset({EventType.COMPLETE, EventType.ERROR})


@dataclass
class ResearchEvent:
    type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    sequence: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_EVENTS

    def to_payload(self) -> dict[str, Any]:
        return {"type": self.type.value, "sequence": self.sequence, **self.data}

    def format(self) -> str:
        return f"event: {self.type.value}\ndata: {json.dumps(self.to_payload(), default=str)}\n\n"
