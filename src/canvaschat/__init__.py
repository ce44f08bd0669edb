# Canvas chat reconciliation package init
import logging
import os


def _configure_logging() -> None:
    level_name = (os.getenv("CANVASCHAT_LOG_LEVEL") or "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    logger = logging.getLogger("canvaschat")
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("[CANVASCHAT][%(levelname)s] %(message)s"))
        logger.addHandler(handler)
    logger.setLevel(level)

    stream_level_name = (os.getenv("CANVASCHAT_STREAM_LOG_LEVEL") or level_name).upper()
    stream_level = getattr(logging, stream_level_name, level)
    logging.getLogger("canvaschat.stream").setLevel(stream_level)


_configure_logging()
