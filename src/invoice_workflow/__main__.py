"""Run the invoice workflow API with uvicorn."""

import logging

import uvicorn

from invoice_workflow.config import configure_logging, get_settings

logger = logging.getLogger("invoice_workflow")


def main() -> None:
    """Serve the API, logging through the workflow's own configuration."""
    settings = get_settings()
    configure_logging()
    logger.info(
        "Invoice workflow API on %s:%d (app url %s)",
        settings.host,
        settings.port,
        settings.app_url,
    )
    uvicorn.run(
        "invoice_workflow.api.app:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
        log_config=None,
    )


if __name__ == "__main__":
    main()
