"""Tests for the terminal entry point."""
from unittest.mock import AsyncMock, patch

import pytest

from medresearch import cli
from tests.fakes import FakeLLM, make_config, router_reply


def test_question_is_positional():
    with patch.object(cli, "run_research", new=AsyncMock()) as run_research:
        cli.main(["Metformin", "yan", "etkileri", "--user", "u7", "--quiet"])

    run_research.assert_awaited_once_with("Metformin yan etkileri", "u7", show_tokens=False)


def test_question_is_required(capsys):
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args([])
    assert "question" in capsys.readouterr().err


@pytest.mark.asyncio
async def test_run_research_prints_stream(capsys):
    llm = FakeLLM(replies={"router": router_reply(1)}, tokens=["A1C ", "bir ", "kan testidir."])
    with patch.object(cli.EngineConfig, "from_settings", return_value=make_config(llm, [])):
        await cli.run_research("A1C nedir?", "u1")

    out = capsys.readouterr().out
    assert "Question: A1C nedir?" in out
    assert "Tier 1 (model)" in out
    assert "A1C bir kan testidir." in out
    assert "Complete (model)" in out
