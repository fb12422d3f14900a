from __future__ import annotations

import asyncio
import logging
from typing import Optional

import discord
from discord.ext import commands

from application.services import get_leaderboard, get_user_standing
from bootstrap import Scoreboard
from domain.models import LeaderboardSnapshot
from interfaces.discord.formatting import format_leaderboard, format_standing, parse_limit

logger = logging.getLogger(__name__)


class ScoreboardBot(commands.Bot):
    """`commands.Bot` that stops the live feed and broadcaster when it closes."""

    def __init__(self, scoreboard: Scoreboard, **kwargs) -> None:
        super().__init__(**kwargs)
        self.scoreboard = scoreboard
        self.feed_task: Optional[asyncio.Task] = None

    async def close(self) -> None:
        if self.feed_task is not None:
            self.feed_task.cancel()
        await self.scoreboard.broadcaster.stop()
        await super().close()


def create_discord_bot(
    scoreboard: Scoreboard,
    feed_channel_id: Optional[int] = None,
) -> commands.Bot:
    """
    Configure and return a Discord bot that reports the leaderboard:
    !leaderboard and !rank on demand, plus coalesced live updates posted to
    `feed_channel_id` when one is configured.
    """

    settings = scoreboard.settings

    intents = discord.Intents.default()
    intents.message_content = True
    intents.guilds = True

    # Disable the default help command so we can provide our own `!help`.
    bot = ScoreboardBot(scoreboard, command_prefix="!", intents=intents, help_command=None)

    async def run_feed(channel: discord.abc.Messageable) -> None:
        subscription = await scoreboard.broadcaster.subscribe()
        async with subscription:
            # The first snapshot is the current board; only post changes.
            await subscription.get()
            async for message in subscription:
                if isinstance(message, LeaderboardSnapshot):
                    await channel.send(format_leaderboard(message, title="Leaderboard update"))

    @bot.event
    async def on_ready():
        logger.info("Discord bot logged in as %s (id=%s)", bot.user, bot.user.id)
        if feed_channel_id is None or bot.feed_task is not None:
            return

        channel = bot.get_channel(feed_channel_id)
        if channel is None:
            logger.warning("Feed channel %s not found; live updates disabled", feed_channel_id)
            return

        scoreboard.broadcaster.start()
        bot.feed_task = asyncio.create_task(run_feed(channel))

    @bot.command(name="start")
    async def start_cmd(ctx: commands.Context):
        await ctx.send(
            "Welcome to the scoreboard bot!\n"
            "Use !leaderboard to see the top players and !rank to look someone up.\n"
            "Type !help to see available commands."
        )

    @bot.command(name="help")
    async def help_cmd(ctx: commands.Context):
        await ctx.send(
            "!leaderboard [n]     - show the top n players (default "
            f"{settings.leaderboard_default_limit})\n"
            "!rank <user_id>      - show a player's score and rank\n"
        )

    @bot.command(name="leaderboard")
    async def leaderboard_cmd(ctx: commands.Context, size: Optional[str] = None):
        try:
            limit = parse_limit(size, settings.leaderboard_default_limit, settings.leaderboard_max_limit)
        except ValueError as exc:
            await ctx.send(str(exc))
            return

        snapshot = get_leaderboard(
            limit,
            scoreboard.leaderboard_repo,
            max_limit=settings.leaderboard_max_limit,
            clock=scoreboard.clock,
        )
        await ctx.send(format_leaderboard(snapshot))

    @bot.command(name="rank")
    async def rank_cmd(ctx: commands.Context, user_id: Optional[str] = None):
        if not user_id:
            await ctx.send("Usage: !rank <user_id>")
            return
        standing = get_user_standing(user_id, scoreboard.leaderboard_repo)
        await ctx.send(format_standing(standing))

    return bot
