from typing import Any, Optional

import discord

from ..config import Settings
from ..utils import money
from ..utils.constants import Colors, Emojis
from ..utils.logger import logger
from .orders import OrderRecord

FIELD_LIMIT = 1024


def mask_email(email: Optional[str]) -> str:
    if not email or "@" not in email:
        return "Unknown"
    name, _, domain = email.partition("@")
    return f"{name[:3]}***@{domain}"


class OrderNotifier:
    """Posts order and chat notices to the configured Discord channels."""

    def __init__(self, bot: discord.Client, settings: Settings):
        self.bot = bot
        self.settings = settings

    def build_order_embed(self, record: OrderRecord) -> discord.Embed:
        embed = discord.Embed(title=f"{Emojis.STORE} New Order Received", color=Colors.PRIMARY)

        item_lines = [
            f"- {line.name} x{line.quantity} ({money.display(line.line_total, record.currency)})"
            for line in record.lines[:10]
        ]
        embed.add_field(
            name="📦 Products",
            value="\n".join(item_lines)[:FIELD_LIMIT] if item_lines else "Unknown",
            inline=False,
        )
        embed.add_field(name="🔢 Quantity", value=str(record.quantity or 1), inline=True)
        embed.add_field(
            name=f"💷 Total ({record.currency})",
            value=money.display(record.total, record.currency),
            inline=True,
        )
        secondary_label = f"💵 Total ({record.secondary_currency})"
        if record.secondary_estimated:
            secondary_label += " est."
        embed.add_field(
            name=secondary_label,
            value=money.display(record.secondary_total, record.secondary_currency),
            inline=True,
        )
        embed.add_field(name="🏷 Coupon", value=record.coupon[:FIELD_LIMIT], inline=True)
        embed.add_field(name="🎮 Roblox Username", value=record.attribute[:FIELD_LIMIT], inline=True)
        embed.add_field(name="📧 Email", value=mask_email(record.email), inline=True)
        embed.add_field(name="🌍 Country", value=record.country[:FIELD_LIMIT], inline=True)
        embed.add_field(name="💬 Discord", value=record.chat_handle[:FIELD_LIMIT], inline=True)
        embed.add_field(name="💳 Payment Status", value=f"{Emojis.SUCCESS} {record.payment_status}", inline=True)
        embed.add_field(name="🆔 Order ID", value=f"`{record.order_id}`", inline=True)
        embed.add_field(name="⏰ Order Time (UTC)", value=record.created_display, inline=False)
        embed.set_footer(text=f"{self.settings.shop_name} • Automated Order System")
        return embed

    async def send_order(self, record: OrderRecord) -> bool:
        channel = self._resolve_channel(self.settings.order_channel_id)
        if channel is None:
            logger.warning("Order channel is not configured. Set ORDER_CHANNEL_ID.")
            return False

        await channel.send(embed=self.build_order_embed(record))
        return True

    async def send_completion(self, record: OrderRecord) -> bool:
        embed = discord.Embed(
            title=f"{Emojis.SUCCESS} Order Marked Complete",
            description=f"Order `{record.order_id}` was marked complete from the live chat.",
            color=Colors.SUCCESS,
        )
        embed.add_field(name="Product", value=record.product[:FIELD_LIMIT], inline=True)
        embed.add_field(name="Discord", value=record.chat_handle[:FIELD_LIMIT], inline=True)
        return await self._send_staff(embed)

    async def send_review(self, record: OrderRecord) -> bool:
        if record.review is None:
            return False

        stars = Emojis.STAR * record.review.rating
        embed = discord.Embed(
            title=f"{Emojis.STAR} New Review",
            description=record.review.text[:FIELD_LIMIT] or "*No comment left.*",
            color=Colors.WARNING,
        )
        embed.add_field(name="Rating", value=f"{stars} ({record.review.rating}/5)", inline=True)
        embed.add_field(name="Order ID", value=f"`{record.order_id}`", inline=True)
        embed.add_field(name="Product", value=record.product[:FIELD_LIMIT], inline=True)
        return await self._send_staff(embed)

    async def send_chat_started(self, record: OrderRecord) -> bool:
        embed = discord.Embed(
            title="💬 Live Chat Opened",
            description=f"The buyer of order `{record.order_id}` joined the receipt chat.",
            color=Colors.INFO,
        )
        embed.add_field(name="Product", value=record.product[:FIELD_LIMIT], inline=True)
        embed.add_field(name="Discord", value=record.chat_handle[:FIELD_LIMIT], inline=True)
        return await self._send_staff(embed)

    async def _send_staff(self, embed: discord.Embed) -> bool:
        channel = self._resolve_channel(self.settings.staff_channel_id)
        if channel is None:
            logger.warning("Staff channel is not configured. Set STAFF_CHANNEL_ID or ORDER_CHANNEL_ID.")
            return False

        await channel.send(embed=embed)
        return True

    def _resolve_channel(self, channel_id: Optional[int]) -> Optional[Any]:
        if not channel_id:
            return None

        channel = self.bot.get_channel(channel_id)
        if channel is not None and hasattr(channel, "send"):
            return channel

        for guild in self.bot.guilds:
            guild_channel = guild.get_channel(channel_id)
            if guild_channel is not None and hasattr(guild_channel, "send"):
                return guild_channel

        return None
