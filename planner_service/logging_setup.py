import logging

from .config import get_settings

LOG_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"


def setup_logging(level=None):
    root_logger = logging.getLogger()
    root_logger.setLevel(level or get_settings().LOG_LEVEL)
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root_logger.handlers = [stream_handler]
    root_logger.info("[BOOT] Logging system initialized at level %s", logging.getLevelName(root_logger.level))
