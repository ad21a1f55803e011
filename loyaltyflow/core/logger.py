# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
Logging setup for LoyaltyFlow.

Engine modules log through stdlib loggers named ``loyaltyflow.<component>``.
This module attaches console and rotating file handlers to the
``loyaltyflow`` parent logger so every component inherits them.
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional


class FlowLogger:
    """
    Handler setup for a named logger.

    Features:
    - Console and file logging
    - Automatic log rotation
    - Structured log format with timestamps
    """

    def __init__(
        self,
        name: str = "loyaltyflow",
        level: str = "INFO",
        log_dir: Optional[Path] = None,
        console_output: bool = True,
        file_output: bool = True
    ):
        self.name = name
        self.logger = logging.getLogger(name)
        self.log_file: Optional[Path] = None

        # Clear any existing handlers
        self.logger.handlers.clear()

        self.logger.setLevel(self._parse_level(level))

        console_formatter = logging.Formatter(
            fmt='[%(asctime)s] [%(name)s:%(levelname)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

        file_formatter = logging.Formatter(
            fmt='%(asctime)s | %(name)s | %(levelname)s | %(filename)s:%(lineno)d | %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

        if console_output:
            console_handler = logging.StreamHandler(sys.stderr)
            console_handler.setFormatter(console_formatter)
            console_handler.setLevel(self._parse_level(level))
            self.logger.addHandler(console_handler)

        if file_output:
            if log_dir is None:
                log_dir = Path.home() / ".loyaltyflow" / "logs"

            log_dir.mkdir(parents=True, exist_ok=True)

            self.log_file = log_dir / f"{name}.log"

            # Rotate after 10MB, keep 5 backup files
            file_handler = RotatingFileHandler(
                self.log_file,
                maxBytes=10 * 1024 * 1024,
                backupCount=5,
                encoding='utf-8'
            )
            file_handler.setFormatter(file_formatter)
            file_handler.setLevel(logging.DEBUG)  # File gets everything
            self.logger.addHandler(file_handler)

    def _parse_level(self, level: str) -> int:
        """Convert string level to logging constant"""
        levels = {
            "DEBUG": logging.DEBUG,
            "INFO": logging.INFO,
            "WARNING": logging.WARNING,
            "ERROR": logging.ERROR,
            "CRITICAL": logging.CRITICAL
        }
        return levels.get(level.upper(), logging.INFO)

    def set_level(self, level: str):
        """Change log level dynamically"""
        self.logger.setLevel(self._parse_level(level))


_root: Optional[FlowLogger] = None


def setup_logging(
    level: Optional[str] = None,
    log_dir: Optional[Path] = None,
    file_output: Optional[bool] = None,
    console_output: bool = True,
) -> FlowLogger:
    """
    Configure handlers for all ``loyaltyflow.*`` loggers.

    Args:
        level: Log level, defaults to LOYALTYFLOW_LOG_LEVEL or INFO
        log_dir: Directory for the rotating log file
        file_output: Write a log file; LOYALTYFLOW_NO_FILE_LOGS=true disables it
        console_output: Log to stderr
    """
    global _root

    log_level = level or os.getenv("LOYALTYFLOW_LOG_LEVEL", "INFO")

    if file_output is None:
        # CI/test mode
        file_output = os.getenv("LOYALTYFLOW_NO_FILE_LOGS", "false").lower() != "true"

    _root = FlowLogger(
        name="loyaltyflow",
        level=log_level,
        log_dir=log_dir,
        console_output=console_output,
        file_output=file_output,
    )
    return _root


def get_logger(component: str) -> logging.Logger:
    """Get the stdlib logger for an engine component"""
    if component == "loyaltyflow" or component.startswith("loyaltyflow."):
        return logging.getLogger(component)
    return logging.getLogger(f"loyaltyflow.{component}")
