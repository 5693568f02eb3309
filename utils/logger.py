"""
Logging setup for the service and CLI entry points.
"""
import logging
import logging.handlers
import os
import sys


def setup_logging(app_name: str = "haejeok", level: str = "INFO", log_dir: str = "logs") -> None:
    """
    Set up the root logger with rotation and console output.

    Args:
        app_name: Log file base name
        level: Root log level name
        log_dir: Directory for the rotating log file (created if missing)
    """
    os.makedirs(log_dir, exist_ok=True)
    log_file = os.path.join(log_dir, f"{app_name}.log")

    root_logger = logging.getLogger()
    root_logger.setLevel(level.upper())

    # Remove existing handlers to avoid duplication on reload
    if root_logger.handlers:
        root_logger.handlers = []

    formatter = logging.Formatter(
        "[%(asctime)s] [%(levelname)s] [%(name)s]: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    # 5 MB max size, keep 5 backups
    file_handler = logging.handlers.RotatingFileHandler(
        log_file, maxBytes=5 * 1024 * 1024, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)

    root_logger.addHandler(file_handler)
    root_logger.addHandler(console_handler)

    # Quiet noisy HTTP client loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("openai").setLevel(logging.WARNING)

    root_logger.info(f"Logging initialized. Log file: {log_file}")
