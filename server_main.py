import uvicorn
from dotenv import load_dotenv

from bootstrap import build_scoreboard, configure_logging
from config import ScoreboardSettings
from interfaces.http.app import create_app


load_dotenv()


def main() -> None:
    settings = ScoreboardSettings.from_env()
    configure_logging(settings.log_level)

    scoreboard = build_scoreboard(settings)
    app = create_app(scoreboard)
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
