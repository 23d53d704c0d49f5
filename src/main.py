import logging

import uvicorn
from fastapi import FastAPI

from src.api import create_app
from src.config import load_config
from src.logging_config import configure_logging
from src.services.data_service import DataService
from src.storage.errors import ConfigurationError


logger = logging.getLogger(__name__)


def build_application() -> FastAPI:
    """Load configuration, set up logging and wire the data service into the API."""

    try:
        config = load_config()
    except ConfigurationError as exc:
        logger.critical("Configuration error: %s", exc)
        raise
    configure_logging(config.log_level, config.timezone)

    service = DataService.from_config(config)
    logger.info(
        "Data service initialized",
        extra={"spreadsheet_id": config.spreadsheet_id, "auth_mode": config.auth_mode.value},
    )
    app = create_app(config, data_service=service)
    app.state.config = config
    return app


def main() -> None:
    """Entry point for serving the API with uvicorn."""

    application = build_application()
    config = application.state.config
    logger.info("Starting API server", extra={"host": config.api_host, "port": config.api_port})
    uvicorn.run(application, host=config.api_host, port=config.api_port, log_config=None)


if __name__ == "__main__":
    main()
