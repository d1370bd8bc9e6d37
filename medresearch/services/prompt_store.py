"""Prompt catalog loader.

Prompts live in ``medresearch/prompts/prompts.json`` keyed by stage. Long
prompts are stored as lists of lines and joined on load. Placeholders use
``string.Template`` syntax (``$question``). The file is re-read when its
mtime changes, so prompt edits apply without a restart.
"""
from __future__ import annotations

import json
from pathlib import Path
from string import Template
from typing import Any

PROMPTS_PATH = Path(__file__).resolve().parents[1] / "prompts" / "prompts.json"

REQUIRED_PROMPTS = (
    "router.system",
    "router.user",
    "planner.system",
    "planner.user",
    "analyzer.system",
    "analyzer.user",
    "reflection.system",
    "reflection.user",
    "synthesis.system",
    "synthesis.user",
    "synthesis.tier_recall",
    "synthesis.tier_model",
    "synthesis.tier_research",
)


class PromptCatalog:
    def __init__(self, path: Path):
        self.path = path
        self._data: dict[str, Any] | None = None
        self._stamp: tuple[Path, int] | None = None

    def data(self) -> dict[str, Any]:
        stamp = (self.path, self.path.stat().st_mtime_ns)
        if self._data is None or self._stamp != stamp:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
            if not isinstance(payload, dict):
                raise ValueError(f"Prompt catalog must be a JSON object: {self.path}")
            self._data, self._stamp = payload, stamp
        return self._data

    def text(self, key: str) -> str:
        node: Any = self.data()
        for part in key.split("."):
            if not isinstance(node, dict) or part not in node:
                raise KeyError(f"Prompt key not found: {key}")
            node = node[part]
        if isinstance(node, list) and all(isinstance(line, str) for line in node):
            return "\n".join(node)
        if not isinstance(node, str):
            raise TypeError(f"Prompt key must map to a string or list of lines: {key}")
        return node

    def render(self, key: str, **values: Any) -> str:
        template = Template(self.text(key))
        try:
            return template.substitute(**values)
        except KeyError as exc:
            raise KeyError(f"Missing template value '{exc.args[0]}' for prompt '{key}'") from exc

    @property
    def version(self) -> str:
        return str(self.data().get("version", "unversioned"))

    def missing(self, keys: tuple[str, ...] = REQUIRED_PROMPTS) -> list[str]:
        """Keys the pipeline needs that the catalog lacks or cannot render."""
        absent = []
        for key in keys:
            try:
                self.text(key)
            except (KeyError, TypeError):
                absent.append(key)
        return absent


catalog = PromptCatalog(PROMPTS_PATH)


def render_prompt(key: str, **values: Any) -> str:
    return catalog.render(key, **values)


def prompt_version() -> str:
    """Version tag of the loaded catalog, recorded on every synthesis."""
    return catalog.version
