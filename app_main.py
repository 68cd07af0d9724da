"""Application entry point for the Quiz Nexus server."""

from __future__ import annotations

from quiz_nexus.constants.about import APP_NAME, APP_VERSION
from quiz_nexus.core.config import settings
from quiz_nexus.core.services.quiz_backend import InMemoryQuizBackend
from quiz_nexus.server.api_server import create_api_app, run_api_server
from quiz_nexus.utils.logging_config import configure_logging


def main() -> None:
    """Initialize logging, build the API application, and serve it."""
    logger = configure_logging(settings.log_level.upper())
    logger.info("Starting %s %s (%s)", APP_NAME, APP_VERSION, settings.app_env)
    if settings.attempt_state_dir is not None:
        logger.info("Attempt state is kept under %s", settings.attempt_state_dir)

    app = create_api_app(InMemoryQuizBackend(), app_settings=settings)
    logger.info("Serving on http://%s:%s/", settings.api_host, settings.api_port)
    run_api_server(app, host=settings.api_host, port=settings.api_port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
