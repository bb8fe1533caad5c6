"""Tests for buyer role grants and support tickets against a mocked guild."""

import dataclasses
from unittest.mock import AsyncMock, MagicMock

import discord
import pytest

from rivemart.services.fulfillment import DiscordFulfillment
from tests.helpers import make_payload


@pytest.fixture
async def record(pipeline):
    result = await pipeline.process("order.paid", make_payload()["data"])
    return result.record


@pytest.fixture
def member():
    fake = MagicMock()
    fake.mention = "<@123456789012345678>"
    fake.add_roles = AsyncMock()
    return fake


@pytest.fixture
def guild(member):
    fake = MagicMock()
    fake.id = 333
    fake.get_member.return_value = member
    fake.get_channel.return_value = MagicMock(spec=discord.CategoryChannel)

    channel = MagicMock()
    channel.id = 777
    channel.send = AsyncMock()
    fake.create_text_channel = AsyncMock(return_value=channel)
    return fake


@pytest.fixture
def bot(guild):
    fake = MagicMock()
    fake.get_guild.return_value = guild
    return fake


@pytest.fixture
def configured(settings):
    return dataclasses.replace(settings, buyer_role_id=444, ticket_category_id=666, staff_role_id=888)


class TestGrantRole:
    async def test_role_is_added_once(self, bot, configured, store, record, member):
        fulfillment = DiscordFulfillment(bot, configured, store)

        assert await fulfillment.grant_role(record) is True
        assert await fulfillment.grant_role(record) is True

        member.add_roles.assert_awaited_once()
        assert record.role_granted

    async def test_skipped_without_role_configured(self, bot, settings, store, record, member):
        assert await DiscordFulfillment(bot, settings, store).grant_role(record) is False
        member.add_roles.assert_not_awaited()

    async def test_buyer_not_in_guild(self, bot, guild, configured, store, record):
        guild.get_member.return_value = None
        guild.fetch_member = AsyncMock(side_effect=discord.NotFound(MagicMock(status=404), "Unknown Member"))

        assert await DiscordFulfillment(bot, configured, store).grant_role(record) is False
        assert not record.role_granted


class TestOpenTicket:
    async def test_private_channel_is_created(self, bot, guild, configured, store, record, member):
        channel_id = await DiscordFulfillment(bot, configured, store).open_ticket(record)

        assert channel_id == 777
        assert record.ticket_channel_id == 777
        kwargs = guild.create_text_channel.await_args.kwargs
        assert kwargs["name"] == "order-1001"
        assert kwargs["overwrites"][guild.default_role].read_messages is False
        assert kwargs["overwrites"][member].read_messages is True
        assert "1001" in kwargs["topic"]

    async def test_welcome_failure_keeps_channel(self, bot, guild, configured, store, record):
        channel = guild.create_text_channel.return_value
        channel.send = AsyncMock(side_effect=discord.HTTPException(MagicMock(status=403), "Missing Access"))

        assert await DiscordFulfillment(bot, configured, store).open_ticket(record) == 777
        assert record.ticket_channel_id == 777

    async def test_second_call_reuses_channel(self, bot, guild, configured, store, record):
        fulfillment = DiscordFulfillment(bot, configured, store)
        await fulfillment.open_ticket(record)

        assert await fulfillment.open_ticket(record) == 777
        guild.create_text_channel.assert_awaited_once()

    async def test_no_guild(self, bot, configured, store, record):
        bot.get_guild.return_value = None
        assert await DiscordFulfillment(bot, configured, store).open_ticket(record) is None
        assert record.ticket_channel_id is None
