"""Application entry point."""

import logging
import os

import uvicorn

from musig_trade.config import Config
from musig_trade.app import create_app

# Configure logging
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)


def main():
    """Run the trade protocol server until interrupted."""
    config = Config.from_env()
    app = create_app(config)
    logging.getLogger(__name__).info(f"Listening on {config.host}:{config.port}")

    uvicorn.run(
        app,
        host=config.host,
        port=config.port,
        log_level=logging.getLevelName(logging.getLogger().level).lower(),
    )


if __name__ == "__main__":
    main()
