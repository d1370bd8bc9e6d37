from __future__ import annotations

import json
import os

import pytest

from medresearch.services.prompt_store import PromptCatalog, catalog, prompt_version, render_prompt


def test_render_prompt_substitutes_template_values():
    prompt = render_prompt(
        "synthesis.system",
        today="2026-02-21",
        language="Turkish",
        tier_instructions="Answer from your own knowledge.",
    )
    assert "2026-02-21" in prompt
    assert "(Turkish)" in prompt
    assert "Answer from your own knowledge." in prompt


def test_line_lists_are_joined():
    prompt = render_prompt("router.system")
    assert "\nTIERS:\n" in prompt


def test_render_prompt_raises_for_unknown_key():
    with pytest.raises(KeyError):
        render_prompt("missing.prompt.key")


def test_render_prompt_raises_for_missing_value():
    with pytest.raises(KeyError, match="question"):
        render_prompt("synthesis.user", context_block="")


def test_prompt_version_is_recorded():
    assert prompt_version() != "unversioned"


def test_shipped_catalog_has_every_pipeline_prompt():
    assert catalog.missing() == []


class TestPromptCatalog:
    def test_reports_missing_and_non_text_keys(self, tmp_path):
        path = tmp_path / "prompts.json"
        path.write_text(json.dumps({"router": {"system": "x", "user": 3}}), encoding="utf-8")
        local = PromptCatalog(path)
        assert local.missing(("router.system", "router.user", "planner.system")) == [
            "router.user",
            "planner.system",
        ]
        assert local.version == "unversioned"

    def test_reloads_when_file_changes(self, tmp_path):
        path = tmp_path / "prompts.json"
        path.write_text(json.dumps({"version": "a", "p": "one $x"}), encoding="utf-8")
        local = PromptCatalog(path)
        assert local.render("p", x="1") == "one 1"

        path.write_text(json.dumps({"version": "b", "p": "two $x"}), encoding="utf-8")
        os.utime(path, ns=(path.stat().st_atime_ns, path.stat().st_mtime_ns + 1_000_000))
        assert local.render("p", x="2") == "two 2"
        assert local.version == "b"

    def test_rejects_non_object_catalog(self, tmp_path):
        path = tmp_path / "prompts.json"
        path.write_text("[]", encoding="utf-8")
        with pytest.raises(ValueError):
            PromptCatalog(path).data()
