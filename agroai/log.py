import logging

from agroai.config import LOG_LEVEL

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


def configure_logging(level: str = LOG_LEVEL) -> None:
    """Root logger setup shared by the app and the uvicorn entry point."""
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
    # httpx logs every request at INFO, including the Twilio URL.
    logging.getLogger("httpx").setLevel(logging.WARNING)
