import logging
import os

from app.config import Settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_FILE_NAME = "gateway.log"


def setup_logging(settings: Settings):
    """Console + fichier UTF-8 (émojis OK) dans LOG_DIR"""
    root_logger = logging.getLogger()
    root_logger.setLevel(settings.LOG_LEVEL.upper())

    # Nettoyage des handlers (évite doublons si l'app est recréée)
    for handler in list(root_logger.handlers):
        if getattr(handler, "_gateway_handler", False):
            root_logger.removeHandler(handler)
            handler.close()

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    console_handler._gateway_handler = True
    root_logger.addHandler(console_handler)

    if settings.LOG_DIR:
        os.makedirs(settings.LOG_DIR, exist_ok=True)
        file_handler = logging.FileHandler(
            os.path.join(settings.LOG_DIR, LOG_FILE_NAME),
            encoding="utf-8"
        )
        file_handler.setFormatter(formatter)
        file_handler._gateway_handler = True
        root_logger.addHandler(file_handler)
