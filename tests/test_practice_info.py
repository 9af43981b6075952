"""Tests for the getPracticeInfo tool."""

from __future__ import annotations

import asyncio

import pytest

from voice_receptionist.tools.catalog import default_registry


def _ask(tool_context, args):
    return asyncio.run(default_registry().invoke("getPracticeInfo", args, tool_context))


class TestPracticeInfo:
    def test_known_category(self, tool_context):
        outcome = _ask(tool_context, {"category": "hours"})
        assert outcome.ok
        assert outcome.payload == {
            "category": "hours",
            "information": "Monday 8:00 AM - 5:00 PM, Friday 8:00 AM - 1:00 PM",
        }

    @pytest.mark.parametrize("category, expected", [
        ("Address", "location"),
        ("price", "fees"),
        (" phone ", "contact"),
    ])
    def test_aliases(self, tool_context, category, expected):
        assert _ask(tool_context, {"category": category}).payload["category"] == expected

    def test_unknown_category_returns_everything(self, tool_context):
        outcome = _ask(tool_context, {"category": "parking on the moon"})
        assert outcome.ok
        assert outcome.payload["category"] == "all"
        assert set(outcome.payload["information"]) >= {"hours", "location", "services"}

    def test_no_category_returns_everything(self, tool_context):
        assert _ask(tool_context, {}).payload["category"] == "all"

    def test_never_touches_the_provider(self, tool_context, provider):
        _ask(tool_context, {"category": "services"})
        assert provider.mock_calls == []
