"""
Logging utilities for the COC farm bot
Provides structured logging with file rotation and different log levels
"""

import logging
import logging.handlers
import os
import sys
from pathlib import Path

# Create logs directory if it doesn't exist
LOGS_DIR = Path(os.getenv('COCBOT_LOG_DIR', Path(__file__).parent.parent.parent / "logs"))
LOGS_DIR.mkdir(parents=True, exist_ok=True)

# Default log format
DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DETAILED_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(filename)s:%(lineno)d - %(message)s"

DEFAULT_LEVEL = os.getenv('COCBOT_LOG_LEVEL', 'INFO')

# Logger registry to avoid duplicate handlers
_loggers = {}


class SafeStreamHandler(logging.StreamHandler):
    """StreamHandler that safely handles Unicode encoding errors"""

    def emit(self, record):
        try:
            msg = self.format(record)
            self.stream.write(msg + self.terminator)
            self.flush()
        except UnicodeEncodeError:
            # Consoles without UTF-8 (Windows cp1252) choke on thousands separators / accents
            try:
                safe_msg = self.format(record).encode('ascii', errors='replace').decode('ascii')
                self.stream.write(safe_msg + self.terminator)
                self.flush()
            except Exception:
                self.handleError(record)
        except Exception:
            self.handleError(record)


def get_logger(name: str, level: str = None,
               log_file: str = "cocbot.log",
               console_output: bool = True,
               detailed: bool = False) -> logging.Logger:
    """
    Get a configured logger instance

    Args:
        name: Logger name (usually __name__)
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL); defaults to COCBOT_LOG_LEVEL
        log_file: Log file name in logs/ directory
        console_output: Whether to output to console
        detailed: Whether to use detailed format

    Returns:
        Configured logger instance
    """

    # Return existing logger if already configured
    if name in _loggers:
        return _loggers[name]

    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, (level or DEFAULT_LEVEL).upper(), logging.INFO))

    # Clear any existing handlers
    logger.handlers.clear()

    formatter = logging.Formatter(DETAILED_FORMAT if detailed else DEFAULT_FORMAT)

    # File handler with rotation
    if log_file:
        file_handler = logging.handlers.RotatingFileHandler(
            LOGS_DIR / log_file,
            maxBytes=10*1024*1024,  # 10MB
            backupCount=5,
            encoding='utf-8'
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    if console_output:
        console_handler = SafeStreamHandler(sys.stdout)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    # Prevent propagation to root logger
    logger.propagate = False

    _loggers[name] = logger
    return logger


def set_log_level(level: str) -> None:
    """Apply a new level to every logger created so far"""
    numeric = getattr(logging, level.upper(), None)
    if numeric is None:
        return
    for logger in _loggers.values():
        logger.setLevel(numeric)
