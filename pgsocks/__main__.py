"""Module entrypoint to run `python -m pgsocks`."""

from __future__ import annotations

import logging

import uvicorn

from .app import create_app
from .config import ConfigError, load_settings

LOG = logging.getLogger("pgsocks")


def main() -> None:
    """Load settings once and serve the HTTP surface."""

    try:
        settings = load_settings()
    except ConfigError as exc:
        logging.basicConfig(level=logging.INFO)
        LOG.error("FATAL: %s", exc)
        raise SystemExit(1) from exc
    logging.basicConfig(
        level=logging.DEBUG if settings.is_dev else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    missing = settings.missing_required()
    if missing:
        LOG.error("FATAL: The following required environment variables are missing: %s", ", ".join(missing))
    if settings.is_dev:
        LOG.info("--- Settings (ENV=dev) ---")
        for name, value in settings.redacted().items():
            LOG.info("%s: %s", name, value)
    if settings.DB_SSL and settings.DB_SSL_INSECURE:
        LOG.warning("DB_SSL_INSECURE is set: database certificates will not be validated")

    LOG.info("HTTP server listening on port %s", settings.PORT)
    LOG.info("Test endpoint: http://localhost:%s/query", settings.PORT)
    uvicorn.run(create_app(settings), host="0.0.0.0", port=settings.PORT, log_config=None)


if __name__ == "__main__":
    main()
