import re
from typing import Optional

import discord

from ..config import Settings
from ..utils import money
from ..utils.constants import Colors, Emojis
from ..utils.logger import logger
from .orders import OrderRecord, OrderStore


class DiscordFulfillment:
    """Buyer-facing Discord actions for a paid order: role grant and support ticket."""

    def __init__(self, bot: discord.Client, settings: Settings, store: OrderStore):
        self.bot = bot
        self.settings = settings
        self.store = store

    def _guild(self) -> Optional[discord.Guild]:
        if not self.settings.guild_id:
            return None
        return self.bot.get_guild(self.settings.guild_id)

    async def _member(self, guild: discord.Guild, user_id: int) -> Optional[discord.Member]:
        member = guild.get_member(user_id)
        if member is not None:
            return member
        try:
            return await guild.fetch_member(user_id)
        except discord.NotFound:
            return None

    async def grant_role(self, record: OrderRecord) -> bool:
        if record.role_granted:
            return True
        if not record.chat_user_id or not self.settings.buyer_role_id:
            return False

        guild = self._guild()
        if guild is None:
            logger.warning("Buyer role grant skipped: GUILD_ID is not configured or not visible to the bot.")
            return False

        role = guild.get_role(self.settings.buyer_role_id)
        if role is None:
            logger.warning(f"Buyer role {self.settings.buyer_role_id} not found in guild {guild.id}.")
            return False

        member = await self._member(guild, record.chat_user_id)
        if member is None:
            logger.info(f"Buyer {record.chat_user_id} of order {record.order_id} is not in the guild.")
            return False

        await member.add_roles(role, reason=f"Order {record.order_id}")
        record.role_granted = True
        return True

    async def open_ticket(self, record: OrderRecord) -> Optional[int]:
        """Create the order's private support channel, at most once per order.

        Returns the channel id, or ``None`` when the bot cannot create one.
        """
        async with self.store.lock(record.order_id):
            if record.ticket_channel_id:
                return record.ticket_channel_id

            guild = self._guild()
            if guild is None:
                logger.warning("Support ticket skipped: GUILD_ID is not configured or not visible to the bot.")
                return None

            overwrites = {
                guild.default_role: discord.PermissionOverwrite(read_messages=False),
                guild.me: discord.PermissionOverwrite(read_messages=True, send_messages=True, manage_channels=True),
            }
            if self.settings.staff_role_id:
                staff_role = guild.get_role(self.settings.staff_role_id)
                if staff_role:
                    overwrites[staff_role] = discord.PermissionOverwrite(read_messages=True, send_messages=True)

            member = await self._member(guild, record.chat_user_id) if record.chat_user_id else None
            if member is not None:
                overwrites[member] = discord.PermissionOverwrite(
                    read_messages=True, send_messages=True, attach_files=True
                )

            category = guild.get_channel(self.settings.ticket_category_id) if self.settings.ticket_category_id else None
            if category is not None and not isinstance(category, discord.CategoryChannel):
                category = None

            channel = await guild.create_text_channel(
                name=self._channel_name(record),
                category=category,
                overwrites=overwrites,
                topic=f"Order {record.order_id} | {record.product[:50]} | {record.chat_handle}",
            )
            record.ticket_channel_id = channel.id

        try:
            if member is not None:
                await channel.send(member.mention)
            await channel.send(embed=self._ticket_embed(record))
        except discord.HTTPException as e:
            logger.warning(f"Ticket {channel.id} for order {record.order_id} opened without its welcome message: {e}")
        logger.info(f"Support ticket {channel.id} opened for order {record.order_id}.")
        return channel.id

    @staticmethod
    def _channel_name(record: OrderRecord) -> str:
        slug = re.sub(r"[^a-z0-9-]+", "-", record.order_id.lower()).strip("-")
        return f"order-{slug or 'ticket'}"[:100]

    def _ticket_embed(self, record: OrderRecord) -> discord.Embed:
        embed = discord.Embed(
            title=f"{Emojis.TICKET} Order Support",
            description=(
                "Thanks for your purchase! A member of staff will be with you shortly.\n"
                "Please keep your order ID handy."
            ),
            color=Colors.INFO,
        )
        embed.add_field(name="Order ID", value=f"`{record.order_id}`", inline=True)
        embed.add_field(name="Product", value=record.product[:1024], inline=True)
        embed.add_field(name="Roblox Username", value=record.attribute[:1024], inline=True)
        embed.add_field(name="Total", value=money.display(record.total, record.currency), inline=True)
        embed.set_footer(text=f"{self.settings.shop_name} • Support")
        return embed
