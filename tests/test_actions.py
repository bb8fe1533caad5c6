"""Tests for the best-effort action wrapper."""

from unittest.mock import AsyncMock

from rivemart.services.actions import run_best_effort


class TestRunBestEffort:
    async def test_success(self):
        result = await run_best_effort("notify", AsyncMock(return_value=True))
        assert result.ok
        assert result.detail == ""

    async def test_returned_value_is_kept_as_detail(self):
        result = await run_best_effort("ticket", AsyncMock(return_value=555))
        assert result.ok
        assert result.detail == "555"

    async def test_false_means_skipped(self):
        result = await run_best_effort("role", AsyncMock(return_value=False))
        assert not result.ok
        assert result.detail == "skipped"

    async def test_none_means_skipped(self):
        result = await run_best_effort("ticket", AsyncMock(return_value=None))
        assert not result.ok

    async def test_exception_is_not_raised(self):
        """A failing collaborator is reported, never propagated."""
        result = await run_best_effort("notify", AsyncMock(side_effect=RuntimeError("discord down")))
        assert not result.ok
        assert result.name == "notify"
        assert "discord down" in result.detail

    async def test_arguments_are_forwarded(self):
        func = AsyncMock(return_value=True)
        await run_best_effort("notify", func, "record", flag=True)
        func.assert_awaited_once_with("record", flag=True)
