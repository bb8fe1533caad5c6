import discord
from discord import app_commands
from discord.ext import commands

from ..services.notifier import mask_email
from ..utils import money
from ..utils.constants import Colors, Emojis


class Orders(commands.Cog):
    """Staff lookups against the in-memory order table."""

    def __init__(self, bot):
        self.bot = bot

    @app_commands.command(name="order", description="Look up a website order by ID")
    @app_commands.describe(order_id="The SellApp order ID")
    @app_commands.default_permissions(manage_guild=True)
    async def order(self, interaction: discord.Interaction, order_id: str):
        record = self.bot.orders.get(order_id.strip())
        if record is None:
            embed = discord.Embed(
                title="Not Found",
                description=f"{Emojis.ERROR} Order `{order_id}` has not been received since the bot started.",
                color=Colors.ERROR,
            )
            await interaction.response.send_message(embed=embed, ephemeral=True)
            return

        embed = discord.Embed(
            title=f"Order {record.order_id}",
            color=Colors.SUCCESS if record.completed else Colors.INFO,
        )
        items = "\n".join(f"- {line.name} x{line.quantity} ({line.attribute})" for line in record.lines)
        embed.add_field(name="Items", value=items[:1024] or "Unknown", inline=False)
        embed.add_field(name="Total", value=money.display(record.total, record.currency), inline=True)
        embed.add_field(name="Email", value=mask_email(record.email), inline=True)
        embed.add_field(name="Discord", value=record.chat_handle[:1024], inline=True)
        embed.add_field(name="Status", value="Completed" if record.completed else "Open", inline=True)
        if record.review is not None:
            embed.add_field(
                name="Review",
                value=f"{Emojis.STAR * record.review.rating} {record.review.text[:900]}",
                inline=False,
            )
        if record.ticket_channel_id:
            embed.add_field(name="Ticket", value=f"<#{record.ticket_channel_id}>", inline=True)
        embed.set_footer(text=f"Received {record.created_display}")
        await interaction.response.send_message(embed=embed, ephemeral=True)

    @app_commands.command(name="receipt-link", description="Get the receipt and chat link for an order")
    @app_commands.describe(order_id="The SellApp order ID")
    @app_commands.default_permissions(manage_guild=True)
    async def receipt_link(self, interaction: discord.Interaction, order_id: str):
        order_id = order_id.strip()
        url = self.bot.settings.receipt_url(order_id, self.bot.issuer.issue(order_id))
        note = "" if order_id in self.bot.orders else "\nThis order has not been received yet."
        await interaction.response.send_message(f"{Emojis.INFO} Receipt link: {url}{note}", ephemeral=True)


async def setup(bot):
    await bot.add_cog(Orders(bot))
