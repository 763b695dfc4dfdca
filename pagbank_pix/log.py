from loguru import logger

from pagbank_pix.config import Settings


def configure_logging(settings: Settings) -> None:
    """Apply the debug-log toggle to everything logged from this package."""
    if settings.logs_enabled:
        logger.enable("pagbank_pix")
    else:
        logger.disable("pagbank_pix")
