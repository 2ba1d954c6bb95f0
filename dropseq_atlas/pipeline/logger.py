"""Structured logging for workflow execution."""

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional


class ColoredFormatter(logging.Formatter):
    """Formatter colouring the level name for console output."""

    def __init__(self, fmt: str, datefmt: str, colors: dict):
        super().__init__(fmt=fmt, datefmt=datefmt)
        self.colors = colors

    def format(self, record):
        original = record.levelname
        color = self.colors.get(original, self.colors["RESET"])
        record.levelname = f"{color}{original}{self.colors['RESET']}"
        try:
            return super().format(record)
        finally:
            record.levelname = original


class WorkflowLogger:
    """Console and file logging for a workflow run.

    Handlers are attached to the ``dropseq_atlas`` logger so messages from
    every analysis module end up in the same run log.

    Parameters
    ----------
    log_dir : str or Path
        Directory for log files
    log_level : str
        Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    log_name : str, optional
        Logger name. Default: "dropseq_atlas"
    console : bool
        Also log to stdout

    Attributes
    ----------
    log_file : Path
        Path to the run log file
    logger : logging.Logger
        Python logger instance

    Example
    -------
    >>> wlog = WorkflowLogger("output/logs", log_level="INFO")
    >>> wlog.setup()
    >>> wlog.log_stage_start("qc", "Quality control")
    >>> wlog.log_stage_complete("qc", 12.4, shape=(27499, 13166))
    """

    COLORS = {
        "DEBUG": "\033[0;36m",  # Cyan
        "INFO": "\033[0;34m",  # Blue
        "WARNING": "\033[1;33m",  # Yellow
        "ERROR": "\033[0;31m",  # Red
        "CRITICAL": "\033[1;31m",  # Bold Red
        "RESET": "\033[0m",
    }

    def __init__(
        self,
        log_dir,
        log_level: str = "INFO",
        log_name: str = "dropseq_atlas",
        console: bool = True,
    ):
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)

        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        self.log_file = self.log_dir / f"workflow_{timestamp}.log"

        self.log_level = getattr(logging, log_level.upper())
        self.console = console
        self.logger = logging.getLogger(log_name)
        self.logger.setLevel(self.log_level)

    def setup(self) -> None:
        """Attach the file handler and, if enabled, the coloured console handler."""
        self.close()

        file_handler = logging.FileHandler(self.log_file, mode="w", encoding="utf-8")
        file_handler.setLevel(self.log_level)
        file_handler.setFormatter(
            logging.Formatter(
                fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        self.logger.addHandler(file_handler)

        if self.console:
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setLevel(self.log_level)
            console_handler.setFormatter(
                ColoredFormatter(
                    fmt="%(asctime)s - %(levelname)s - %(message)s",
                    datefmt="%H:%M:%S",
                    colors=self.COLORS,
                )
            )
            self.logger.addHandler(console_handler)

    def close(self) -> None:
        """Detach and close all handlers."""
        for handler in list(self.logger.handlers):
            self.logger.removeHandler(handler)
            handler.close()

    def log_stage_start(self, stage_id: str, stage_name: str) -> None:
        separator = "=" * 72
        self.logger.info(separator)
        self.logger.info("Starting stage %s: %s", stage_id, stage_name)
        self.logger.info(separator)

    def log_stage_complete(
        self,
        stage_id: str,
        duration: float,
        shape: Optional[tuple] = None,
    ) -> None:
        """Log completion time and, when known, the cells x genes shape."""
        duration_str = self.format_duration(duration)
        if shape is None:
            self.logger.info("Stage %s completed in %s", stage_id, duration_str)
        else:
            self.logger.info(
                "Stage %s completed in %s: %d cells x %d genes",
                stage_id,
                duration_str,
                shape[0],
                shape[1],
            )

    def log_stage_error(self, stage_id: str, error: str) -> None:
        self.logger.error("Stage %s failed: %s", stage_id, error)

    def log_info(self, message: str, *args) -> None:
        self.logger.info(message, *args)

    @staticmethod
    def format_duration(seconds: float) -> str:
        """Format a duration, e.g. "45.2s", "1m 23s", "2h 15m"."""
        if seconds < 60:
            return f"{seconds:.1f}s"
        elif seconds < 3600:
            mins = int(seconds // 60)
            secs = int(seconds % 60)
            return f"{mins}m {secs}s"
        else:
            hours = int(seconds // 3600)
            mins = int((seconds % 3600) // 60)
            return f"{hours}h {mins}m"
