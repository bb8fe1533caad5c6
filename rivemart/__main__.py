import sys

from .bot import RiveMartBot
from .config import Settings
from .utils.logger import logger


def main() -> None:
    settings = Settings.from_env()
    if not settings.discord_token:
        logger.critical("DISCORD_TOKEN is not set.")
        sys.exit(1)

    bot = RiveMartBot(settings)
    bot.run(settings.discord_token, log_handler=None)


if __name__ == "__main__":
    main()
