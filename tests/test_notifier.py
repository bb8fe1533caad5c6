"""Tests for the Discord order notifier."""

import dataclasses
from unittest.mock import AsyncMock, MagicMock

import pytest

from rivemart.services.notifier import OrderNotifier, mask_email
from tests.helpers import make_payload


@pytest.fixture
async def record(pipeline):
    result = await pipeline.process("order.paid", make_payload()["data"])
    return result.record


def make_bot(channel=None):
    bot = MagicMock()
    bot.get_channel.return_value = channel
    bot.guilds = []
    return bot


def fields(embed):
    return {field.name: field.value for field in embed.fields}


class TestMaskEmail:
    @pytest.mark.parametrize(
        ("email", "expected"),
        [
            ("buyer@example.com", "buy***@example.com"),
            ("a@b.com", "a***@b.com"),
            ("", "Unknown"),
            (None, "Unknown"),
            ("not-an-email", "Unknown"),
        ],
    )
    def test_mask(self, email, expected):
        assert mask_email(email) == expected


class TestOrderEmbed:
    def test_embed_carries_order_fields(self, settings, record):
        embed = OrderNotifier(make_bot(), settings).build_order_embed(record)
        values = fields(embed)

        assert values["🆔 Order ID"] == "`1001`"
        assert values["🎮 Roblox Username"] == "Foo123"
        assert values["📧 Email"] == "buy***@example.com"
        assert values["🌍 Country"] == "GB"
        assert values["💷 Total (GBP)"] == "£12.00"
        assert values["💵 Total (USD)"] == "$15.25"
        assert "VIP Pass x1" in values["📦 Products"]
        assert "buyer@example.com" not in str(embed.to_dict())
        assert embed.footer.text == "RiveMart • Automated Order System"

    def test_estimated_secondary_total_is_labelled(self, settings, record):
        record.secondary_estimated = True
        embed = OrderNotifier(make_bot(), settings).build_order_embed(record)
        assert "💵 Total (USD) est." in fields(embed)


class TestSend:
    async def test_send_order_posts_to_order_channel(self, settings, record):
        channel = MagicMock()
        channel.send = AsyncMock()
        bot = make_bot(channel)

        assert await OrderNotifier(bot, settings).send_order(record) is True

        bot.get_channel.assert_called_with(111)
        channel.send.assert_awaited_once()

    async def test_send_order_without_channel(self, settings, record):
        unconfigured = dataclasses.replace(settings, order_channel_id=None)
        assert await OrderNotifier(make_bot(), unconfigured).send_order(record) is False

    async def test_channel_found_through_guild(self, settings, record):
        channel = MagicMock()
        channel.send = AsyncMock()
        guild = MagicMock()
        guild.get_channel.return_value = channel
        bot = make_bot(None)
        bot.guilds = [guild]

        assert await OrderNotifier(bot, settings).send_completion(record) is True
        guild.get_channel.assert_called_with(222)
        channel.send.assert_awaited_once()

    async def test_review_notice_needs_a_review(self, settings, record):
        channel = MagicMock()
        channel.send = AsyncMock()
        notifier = OrderNotifier(make_bot(channel), settings)

        assert await notifier.send_review(record) is False
        channel.send.assert_not_awaited()
