"""
Dual Gravity Main Application

Entry point that loads the environment, configures logging and serves
the FastAPI backend with uvicorn.
"""

import uvicorn
import structlog
from dotenv import load_dotenv

from .models.config_models import SystemConfig
from .utils.logging_config import setup_logging

logger = structlog.get_logger(__name__)


def main():
    """Main entry point for the application."""
    load_dotenv()
    config = SystemConfig.from_env()
    setup_logging(log_dir=config.log_dir, log_level=config.log_level)

    logger.info("Starting Dual Gravity API", host=config.host, port=config.port)
    try:
        uvicorn.run(
            "dual_gravity.api.backend:app",
            host=config.host,
            port=config.port,
            log_level=config.log_level.lower(),
        )
    except KeyboardInterrupt:
        logger.info("Application stopped by user")


if __name__ == "__main__":
    main()
