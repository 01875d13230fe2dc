"""Logging configuration for purchase-order extraction."""
import logging
import logging.config
from pathlib import Path
from typing import Dict, Any


def get_logging_config(
    logs_folder: Path,
    log_filename: str = "po_pipeline.log",
    console_level: str = "INFO"
) -> Dict[str, Any]:
    """Get logging configuration dictionary."""
    logs_folder.mkdir(parents=True, exist_ok=True)
    log_file_path = logs_folder / log_filename

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "standard": {
                "format": "%(asctime)s - %(levelname)s - %(message)s"
            },
            "detailed": {
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s"
            }
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": console_level,
                "formatter": "standard",
                "stream": "ext://sys.stderr"
            },
            "file": {
                "class": "logging.FileHandler",
                "level": "DEBUG",
                "formatter": "detailed",
                "filename": str(log_file_path),
                "mode": "a",
                "encoding": "utf-8"
            }
        },
        "root": {
            "level": "INFO",
            "handlers": ["console", "file"]
        },
        "loggers": {
            "po_pipeline": {
                "level": "DEBUG",
                "handlers": ["console", "file"],
                "propagate": False
            },
            # google-genai and its httpx transport are chatty at INFO
            "google_genai": {"level": "WARNING"},
            "httpx": {"level": "WARNING"},
        }
    }


def setup_logging(
    logs_folder: Path,
    log_filename: str = "po_pipeline.log",
    console_level: str = "INFO"
) -> None:
    """Set up logging with the specified configuration."""
    config = get_logging_config(logs_folder, log_filename, console_level)

    # Clear any existing handlers to prevent duplicate logs
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    logging.config.dictConfig(config)
