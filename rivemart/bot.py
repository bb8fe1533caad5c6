import os
import sys
import traceback
from typing import Optional

import discord
from discord import app_commands
from discord.ext import commands

from .config import Settings
from .services.chat import ChatRelay
from .services.fulfillment import DiscordFulfillment
from .services.intake import IntakePipeline
from .services.notifier import OrderNotifier
from .services.orders import OrderStore
from .services.receipt_server import ReceiptServer
from .services.tokens import OrderTokenIssuer
from .utils.constants import Emojis
from .utils.logger import logger


class RiveMartBot(commands.Bot):
    def __init__(self, settings: Settings):
        intents = discord.Intents.default()
        super().__init__(
            command_prefix=commands.when_mentioned,
            intents=intents,
            help_command=None,
            activity=discord.Activity(type=discord.ActivityType.watching, name="for new orders"),
        )
        self.settings = settings
        self.commands_synced = False

        self.orders = OrderStore()
        self.issuer = OrderTokenIssuer(settings.receipt_secret)
        self.notifier = OrderNotifier(self, settings)
        self.fulfillment = DiscordFulfillment(self, settings, self.orders)
        self.pipeline = IntakePipeline(settings, self.orders, self.issuer, self.notifier, self.fulfillment)
        self.chat = ChatRelay(
            self.orders,
            self.issuer,
            staff_key=settings.staff_chat_key,
            on_complete=self.notifier.send_completion,
            on_chat_started=self.notifier.send_chat_started,
        )
        self.receipt_server: Optional[ReceiptServer] = None

    async def setup_hook(self):
        """
        Start the receipt server and load the staff command extensions.
        """
        logger.info(f"{Emojis.STORE}  Initializing {self.settings.shop_name} order system...")

        # The webhook endpoint has to be up even if Discord is slow to become ready.
        try:
            self.receipt_server = ReceiptServer(
                self.settings,
                self.orders,
                self.issuer,
                self.pipeline,
                self.chat,
                notifier=self.notifier,
                fulfillment=self.fulfillment,
            )
            await self.receipt_server.start()
            logger.info(f"{Emojis.SUCCESS} Receipt server started.")
        except Exception as e:
            logger.critical(f"{Emojis.ERROR} Receipt server failed to start: {e}")
            sys.exit(1)

        self.tree.on_error = self.on_app_command_error
        await self.load_extensions()

    async def load_extensions(self):
        commands_dir = os.path.join(os.path.dirname(__file__), "commands")
        if not os.path.exists(commands_dir):
            return

        for filename in sorted(os.listdir(commands_dir)):
            if filename.endswith(".py") and not filename.startswith("_"):
                extension_name = f"rivemart.commands.{filename[:-3]}"
                try:
                    await self.load_extension(extension_name)
                    logger.info(f"Loaded extension: {extension_name}")
                except Exception as e:
                    logger.error(f"{Emojis.ERROR} Failed to load extension {extension_name}: {e}\n{traceback.format_exc()}")

    async def on_ready(self):
        logger.info(f"{Emojis.ROCKET}  {self.user} is online and ready!")
        logger.info(f"Guilds: {len(self.guilds)}")

        if not self.commands_synced:
            await self.sync_app_commands()
            self.commands_synced = True

    async def on_error(self, event_method: str, *args, **kwargs):
        logger.error(f"Error in event {event_method}: {sys.exc_info()}")
        traceback.print_exc()

    async def sync_app_commands(self):
        """
        Sync to the configured guild for immediate availability, then globally.
        """
        if self.settings.guild_id:
            guild = self.get_guild(self.settings.guild_id)
            if guild is None:
                logger.warning(f"{Emojis.WARNING} Configured guild {self.settings.guild_id} not found.")
            else:
                try:
                    self.tree.copy_global_to(guild=guild)
                    guild_synced = await self.tree.sync(guild=guild)
                    logger.info(f"{Emojis.INFO} Synced {len(guild_synced)} commands to guild {guild.id}.")
                except Exception as e:
                    logger.error(f"{Emojis.ERROR} Guild command sync failed for {guild.id}: {e}")

        try:
            global_synced = await self.tree.sync()
            logger.info(f"{Emojis.INFO} Synced {len(global_synced)} application commands globally.")
        except Exception as e:
            logger.error(f"{Emojis.ERROR} Global command sync failed: {e}")

    async def on_app_command_error(self, interaction: discord.Interaction, error: app_commands.AppCommandError):
        original = getattr(error, "original", error)
        logger.error(f"App command error: {original}")

        message = f"{Emojis.ERROR} Command failed: {original}"
        try:
            if interaction.response.is_done():
                await interaction.followup.send(message, ephemeral=True)
            else:
                await interaction.response.send_message(message, ephemeral=True)
        except discord.HTTPException as e:
            logger.warning(f"Could not report command error: {e}")

    async def close(self):
        if self.receipt_server is not None:
            await self.receipt_server.stop()
            self.receipt_server = None
        await super().close()
