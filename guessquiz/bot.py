import discord
from discord.ext import commands
import logging
import io
import os
from typing import List, Optional, Sequence

from .callbacks import decode_custom_id, encode_event
from .config_manager import ConfigManager
from .content_index import ContentIndex
from .models import GameMode, MediaItem, QuizEvent, ShowMenu, Start
from .quiz_controller import ButtonRows, QuizController
from .stats import JsonFileStatsStore, StatsAggregator

logger = logging.getLogger(__name__)

# Discord allows at most 10 attachments per message.
MAX_FILES_PER_MESSAGE = 10
MAX_BUTTON_LABEL = 80


def build_view(buttons: Optional[ButtonRows]) -> Optional[discord.ui.View]:
    """Turn button rows into a component view; None removes all components."""
    if not buttons:
        return None
    view = discord.ui.View(timeout=None)
    for row_index, row in enumerate(buttons):
        for button in row:
            view.add_item(discord.ui.Button(
                label=button.label[:MAX_BUTTON_LABEL],
                custom_id=encode_event(button.event),
                style=discord.ButtonStyle.secondary,
                row=row_index
            ))
    return view


class DiscordQuizChannel:
    """Sends quiz output to a Discord text channel or DM."""

    def __init__(self, target: discord.abc.Messageable):
        self.target = target

    async def send_text(self, text: str, buttons: Optional[ButtonRows] = None) -> discord.Message:
        view = build_view(buttons)
        if view is None:
            return await self.target.send(content=text)
        return await self.target.send(content=text, view=view)

    async def send_photo(self, image_bytes: bytes, filename: str, caption: str,
                         buttons: Optional[ButtonRows] = None) -> discord.Message:
        file = discord.File(io.BytesIO(image_bytes), filename=filename)
        view = build_view(buttons)
        if view is None:
            return await self.target.send(content=caption, file=file)
        return await self.target.send(content=caption, file=file, view=view)

    async def send_media_group(self, items: Sequence[MediaItem]) -> List[discord.Message]:
        messages = []
        for start in range(0, len(items), MAX_FILES_PER_MESSAGE):
            chunk = items[start:start + MAX_FILES_PER_MESSAGE]
            files = [discord.File(item.path) for item in chunk]
            messages.append(await self.target.send(files=files))
        return messages

    async def edit_markup(self, message_ref: discord.Message, buttons: Optional[ButtonRows] = None) -> None:
        await message_ref.edit(view=build_view(buttons))


class QuizBot(commands.Bot):
    """Discord bot for the avatar and artwork guessing games"""

    def __init__(self, config=None):
        intents = discord.Intents.none()
        intents.guilds = True  # Required for slash commands

        self.app_config = config or {}
        bot_config = self.app_config.get('bot', {})

        super().__init__(
            command_prefix=bot_config.get('command_prefix', '!'),
            intents=intents,
            help_command=None,
            # Longer waits surface as discord.RateLimited and are retried by the dispatcher
            max_ratelimit_timeout=bot_config.get('max_ratelimit_timeout', 30.0)
        )

        self.config_manager: Optional[ConfigManager] = None
        self.content_index: Optional[ContentIndex] = None
        self.quiz_controller: Optional[QuizController] = None

    async def setup_hook(self):
        """Called when the bot is starting up"""
        try:
            logger.info("Setting up bot components...")

            self.config_manager = ConfigManager().load_from_dict(self.app_config)
            health = self.config_manager.health_check()
            for warning in health['warnings']:
                logger.warning(warning)
            for error in health['errors']:
                logger.error(error)

            self.content_index = ContentIndex(
                avatars_directory=self.config_manager.get_path('avatars_directory'),
                arts_directory=self.config_manager.get_path('arts_directory')
            )
            self.content_index.load_captions(self.config_manager.get_path('captions_path'))

            stats = {
                mode: StatsAggregator(JsonFileStatsStore(self.config_manager.get_stats_path(mode)))
                for mode in GameMode
            }
            self.quiz_controller = QuizController(self.content_index, self.config_manager, stats)

            await self.setup_commands()
            logger.info("Bot setup completed successfully")

        except Exception as e:
            logger.error(f"Error during bot setup: {e}")
            raise

    async def setup_commands(self):
        """Register all slash commands"""
        @self.tree.command(name="start", description="Choose a game to play")
        async def start_command(interaction: discord.Interaction):
            await self.handle_game_command(interaction, ShowMenu(interaction.user.id), "🎮 Opening the game menu...")

        @self.tree.command(name="game", description="Guess the channel by its avatar")
        async def game_command(interaction: discord.Interaction):
            await self.handle_game_command(
                interaction, Start(interaction.user.id, GameMode.AVATAR), "🎮 Starting the avatar game..."
            )

        @self.tree.command(name="quiz", description="Guess the artist by their artworks")
        async def quiz_command(interaction: discord.Interaction):
            await self.handle_game_command(
                interaction, Start(interaction.user.id, GameMode.ART), "🎮 Starting the art quiz..."
            )

        @self.tree.command(name="total", description="Show how many rounds have been played")
        async def total_command(interaction: discord.Interaction):
            await self.handle_total(interaction)

        @self.tree.command(name="help", description="Display available commands and their descriptions")
        async def help_command(interaction: discord.Interaction):
            await self.handle_help(interaction)

        logger.info("Slash commands registered successfully")

    async def on_ready(self):
        """Called when the bot has successfully connected to Discord"""
        logger.info(f"Bot is ready! Logged in as {self.user}")
        logger.info(f"Bot is in {len(self.guilds)} guilds")
        print(f"🤖 {self.user} is Ready and Online!")

        try:
            synced = await self.tree.sync()
            logger.info(f"Synced {len(synced)} slash commands")
        except discord.HTTPException as e:
            logger.error(f"Failed to sync slash commands: {e}")

        await self.refresh_presence()

    async def on_error(self, event, *args, **kwargs):
        """Handle general bot errors"""
        logger.error(f"An error occurred in event {event}", exc_info=True)

    async def on_interaction(self, interaction: discord.Interaction):
        """Route quiz button presses to the controller."""
        if interaction.type is not discord.InteractionType.component:
            return
        custom_id = (interaction.data or {}).get('custom_id')
        event = decode_custom_id(custom_id, interaction.user.id)
        if event is None:
            return

        try:
            await interaction.response.defer()
        except discord.HTTPException as e:
            logger.warning(f"Could not acknowledge interaction {custom_id}: {e}")

        await self.route_event(event, interaction)

    async def route_event(self, event: QuizEvent, interaction: discord.Interaction):
        try:
            await self.quiz_controller.handle_event(event, DiscordQuizChannel(self.channel_for(interaction)))
        except Exception as e:
            logger.error(f"Error handling {type(event).__name__} for user {event.user_id}: {e}", exc_info=True)

    @staticmethod
    def channel_for(interaction: discord.Interaction) -> discord.abc.Messageable:
        """Channel the interaction came from, or the user's DM when there is none."""
        if isinstance(interaction.channel, discord.abc.Messageable):
            return interaction.channel
        return interaction.user

    async def handle_game_command(self, interaction: discord.Interaction, event: QuizEvent, notice: str):
        try:
            await interaction.response.send_message(notice, ephemeral=True)
        except discord.HTTPException as e:
            logger.warning(f"Could not acknowledge /{interaction.command.name if interaction.command else '?'}: {e}")
        await self.route_event(event, interaction)

    async def handle_total(self, interaction: discord.Interaction):
        """Handle /total command"""
        try:
            summary = await self.quiz_controller.stats_summary()
            embed = discord.Embed(title="📊 Rounds played", color=0x6699ff)
            for mode, figures in summary.items():
                title = "🖼️ Avatars" if mode is GameMode.AVATAR else "🎨 Arts"
                embed.add_field(
                    name=title,
                    value=(
                        f"Rounds: {int(figures['total_rounds'])}\n"
                        f"Average per {'channel' if mode is GameMode.AVATAR else 'artist'}: "
                        f"{figures['average_per_entity']:.1f}"
                    ),
                    inline=True
                )
            await interaction.response.send_message(embed=embed)
            await self.refresh_presence(summary)
        except Exception as e:
            logger.error(f"Error in total command: {e}", exc_info=True)
            await self.send_error_response(interaction, "Failed to read the statistics", "❌ Stats Error")

    async def refresh_presence(self, summary: Optional[dict] = None):
        """Show the number of rounds played in the bot's status."""
        try:
            if summary is None:
                summary = await self.quiz_controller.stats_summary()
            total = sum(int(figures['total_rounds']) for figures in summary.values())
            await self.change_presence(activity=discord.Game(name=f"{total} rounds guessed | /start"))
        except Exception as e:
            logger.warning(f"Could not refresh presence: {e}")

    async def handle_help(self, interaction: discord.Interaction):
        """Handle /help command"""
        help_embed = discord.Embed(
            title="🎯 Guess Quiz Commands",
            description="Guess channels by their avatars or artists by their artworks",
            color=0x00ff00
        )
        help_embed.add_field(
            name="🎮 Games",
            value=(
                "`/start` - Choose a game\n"
                "`/game` - Guess the channel: pick its avatar out of four\n"
                "`/quiz` - Guess the artist from one, two, three or all of their artworks"
            ),
            inline=False
        )
        help_embed.add_field(
            name="📊 Statistics",
            value="`/total` - Rounds played so far",
            inline=False
        )
        help_embed.add_field(
            name="⚙️ Current Settings",
            value=f"```\n{self.config_manager.get_settings_summary()}\n```",
            inline=False
        )
        help_embed.set_footer(text="Buttons only react to the player who started the game")
        try:
            await interaction.response.send_message(embed=help_embed, ephemeral=True)
        except discord.HTTPException as e:
            logger.error(f"Failed to send help: {e}")

    async def send_error_response(self, interaction: discord.Interaction, message: str, title: str = "❌ Error"):
        """Send formatted error response to user"""
        try:
            embed = discord.Embed(title=title, description=message, color=0xff0000)
            if interaction.response.is_done():
                await interaction.followup.send(embed=embed, ephemeral=True)
            else:
                await interaction.response.send_message(embed=embed, ephemeral=True)
        except discord.HTTPException:
            logger.error("Failed to send error response to user")

    async def close(self):
        if self.quiz_controller is not None:
            await self.quiz_controller.drain()
        await super().close()


async def run_bot(token=None, config=None):
    """Run the bot with proper error handling"""
    if not token:
        token = os.getenv('DISCORD_BOT_TOKEN')

    if not token:
        logger.error("No Discord bot token provided")
        return

    bot = QuizBot(config)

    try:
        logger.info("Starting Guess Quiz Bot...")
        await bot.start(token)
    except discord.LoginFailure:
        logger.error("Invalid bot token provided")
    except discord.HTTPException as e:
        logger.error(f"HTTP error occurred: {e}")
    finally:
        if not bot.is_closed():
            await bot.close()
