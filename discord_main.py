from dotenv import load_dotenv

from bootstrap import build_scoreboard, configure_logging
from config import ScoreboardSettings
from interfaces.discord.handlers import create_discord_bot


load_dotenv()


def main() -> None:
    settings = ScoreboardSettings.from_env()
    configure_logging(settings.log_level)

    if not settings.discord_token:
        raise RuntimeError("DISCORD_TOKEN environment variable is not set.")
    if settings.storage_backend == "memory":
        raise RuntimeError(
            "The Discord bot reads the scores written by the API server; "
            "set STORAGE_BACKEND to sqlite or postgres."
        )

    # This process never publishes, so the feed watches the shared store.
    scoreboard = build_scoreboard(settings, poll_changes=True)

    bot = create_discord_bot(scoreboard, settings.discord_feed_channel_id)
    bot.run(settings.discord_token, log_handler=None)


if __name__ == "__main__":
    main()
