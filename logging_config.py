"""
Logging configuration for the funnel conversion engine
Coloured console output plus an optional detailed log file
"""

import logging
import sys
from pathlib import Path


class ColoredFormatter(logging.Formatter):
    """Custom formatter with colors for better readability"""

    # Color codes
    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
        "RESET": "\033[0m",  # Reset
    }

    def format(self, record):
        original = record.levelname
        level_color = self.COLORS.get(original, self.COLORS["RESET"])
        record.levelname = f"{level_color}{original}{self.COLORS['RESET']}"
        try:
            return super().format(record)
        finally:
            record.levelname = original


def setup_enhanced_logging(
    level: str = "INFO",
    enable_file_logging: bool = False,
    log_file_path: str = "funnel_engine.log",
    logger_name: str = "",
) -> logging.Logger:
    """
    Setup logging for the engine

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR)
        enable_file_logging: Whether to log to file
        log_file_path: Path to log file
        logger_name: Logger to configure; the root logger by default

    Returns:
        The configured logger, suitable for injecting into FunnelAnalyzer
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    logger = logging.getLogger(logger_name)
    logger.setLevel(numeric_level)
    logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(
        ColoredFormatter(
            "%(asctime)s | %(levelname)s | %(name)s:%(lineno)d | %(message)s",
            datefmt="%H:%M:%S",
        )
    )
    logger.addHandler(console_handler)

    if enable_file_logging:
        log_path = Path(log_file_path)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_path, mode="a", encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)  # Always log everything to file
        file_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s | %(levelname)-8s | %(name)-20s:%(lineno)-4d | %(funcName)-20s | %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        logger.addHandler(file_handler)
        logger.info(f"Log file: {log_path.absolute()}")

    return logger


def log_dataframe_info(df, name: str = "DataFrame", logger=None):
    """
    Log shape, columns and a sample row of a Polars or Pandas frame at DEBUG

    Args:
        df: DataFrame (Polars or Pandas)
        name: Name to identify the DataFrame
        logger: Logger instance (if None, uses this module's logger)
    """
    if logger is None:
        logger = logging.getLogger(__name__)
    if not logger.isEnabledFor(logging.DEBUG):
        return

    logger.debug(f"{name}: type={type(df).__name__} shape={df.shape} columns={list(df.columns)}")
    if len(df) > 0:
        if hasattr(df, "row"):
            sample = df.row(0, named=True)
        else:
            sample = df.head(1).to_dict("records")[0]
        logger.debug(f"{name} sample row: {sample}")
