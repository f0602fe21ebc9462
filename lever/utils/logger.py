"""
Logging system for the risk engine.
Provides structured, human-readable logs with file and console output.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Optional


# ANSI color codes for terminal output
class Colors:
    RESET = "\033[0m"
    RED = "\033[91m"
    GREEN = "\033[92m"
    YELLOW = "\033[93m"
    BLUE = "\033[94m"
    MAGENTA = "\033[95m"
    CYAN = "\033[96m"
    WHITE = "\033[97m"
    BOLD = "\033[1m"


class ColoredFormatter(logging.Formatter):
    """Custom formatter with colors for console output."""

    LEVEL_COLORS = {
        logging.DEBUG: Colors.CYAN,
        logging.INFO: Colors.GREEN,
        logging.WARNING: Colors.YELLOW,
        logging.ERROR: Colors.RED,
        logging.CRITICAL: Colors.BOLD + Colors.RED,
    }

    def format(self, record):
        # Format a copy so file handlers sharing the record stay uncolored
        record = logging.makeLogRecord(record.__dict__)
        color = self.LEVEL_COLORS.get(record.levelno, Colors.WHITE)
        record.levelname = f"{color}{record.levelname}{Colors.RESET}"
        record.msg = f"{color}{record.msg}{Colors.RESET}"
        return super().format(record)


class EngineLogger:
    """
    Central logging system for the risk engine.

    Features:
    - Console output with colors
    - Optional dated file output
    - Separate log files for position activity and errors
    - Structured helpers for risk, security and solvency events
    """

    _instance: Optional['EngineLogger'] = None
    _initialized: bool = False

    def __new__(cls, *args, **kwargs):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self, log_dir: str = "logs", log_level: str = "INFO", log_to_file: bool = True):
        if EngineLogger._initialized:
            return

        self.log_dir = Path(log_dir)
        self.log_to_file = log_to_file
        if log_to_file:
            self.log_dir.mkdir(parents=True, exist_ok=True)

        self.main_logger = self._create_logger("lever", log_level)
        self.position_logger = self._create_logger("lever.positions", log_level, "positions")
        self.error_logger = self._create_logger("lever.errors", "ERROR", "errors")

        EngineLogger._initialized = True

    def _create_logger(self, name: str, level: str, file_prefix: str | None = None) -> logging.Logger:
        """Create a configured logger instance."""
        logger = logging.getLogger(name)
        logger.setLevel(getattr(logging, level.upper()))
        logger.handlers.clear()
        logger.propagate = False

        console_handler = logging.StreamHandler()
        console_handler.setFormatter(ColoredFormatter(
            "%(asctime)s | %(levelname)s | %(message)s",
            datefmt="%H:%M:%S"
        ))
        logger.addHandler(console_handler)

        if self.log_to_file:
            if file_prefix:
                log_file = self.log_dir / f"{file_prefix}_{datetime.now().strftime('%Y%m%d')}.log"
            else:
                log_file = self.log_dir / f"engine_{datetime.now().strftime('%Y%m%d')}.log"

            file_handler = logging.FileHandler(log_file, encoding='utf-8')
            file_handler.setFormatter(logging.Formatter(
                "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S"
            ))
            logger.addHandler(file_handler)

        return logger

    def info(self, msg: str, *args, **kwargs):
        """Log info message."""
        self.main_logger.info(msg, *args, **kwargs)

    def debug(self, msg: str, *args, **kwargs):
        """Log debug message."""
        self.main_logger.debug(msg, *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs):
        """Log warning message."""
        self.main_logger.warning(msg, *args, **kwargs)

    def error(self, msg: str, *args, **kwargs):
        """Log error message."""
        self.main_logger.error(msg, *args, **kwargs)
        self.error_logger.error(msg, *args, **kwargs)

    def critical(self, msg: str, *args, **kwargs):
        """Log critical message."""
        self.main_logger.critical(msg, *args, **kwargs)
        self.error_logger.critical(msg, *args, **kwargs)

    def position(self, action: str, trader: str, market_id: int, size,
                 price=None, pnl=None, **kwargs):
        """
        Log a position lifecycle action with structured format.

        Args:
            action: OPENED, INCREASED, DECREASED, CLOSED, LIQUIDATED, DELEVERAGED
            trader: Trader identity
            market_id: Market identifier
            size: Signed size delta (positive = long)
            price: Execution or mark price (optional)
            pnl: Realized PnL (optional, for reductions)
            **kwargs: Additional fields
        """
        parts = [
            f"[{action}]",
            f"trader={trader}",
            f"market={market_id}",
            f"size={size}",
        ]

        if price is not None:
            parts.append(f"price={price}")
        if pnl is not None:
            color = Colors.GREEN if pnl >= 0 else Colors.RED
            parts.append(f"pnl={color}{pnl}{Colors.RESET}")

        for key, value in kwargs.items():
            parts.append(f"{key}={value}")

        msg = " | ".join(parts)
        self.position_logger.info(msg)

    def risk(self, action: str, reason: str, **kwargs):
        """
        Log risk management actions.

        Args:
            action: ALLOWED, BLOCKED, REJECTED, WARNING
            reason: Reason for the action
            **kwargs: Additional context
        """
        parts = [f"[RISK:{action}]", reason]
        for key, value in kwargs.items():
            parts.append(f"{key}={value}")

        msg = " | ".join(parts)

        if action in ("BLOCKED", "REJECTED", "WARNING"):
            self.main_logger.warning(msg)
        else:
            self.main_logger.info(msg)

    def security(self, event: str, caller: str, **kwargs):
        """
        Log a security-relevant event (grants, revocations, denials).

        Denials are also routed to the error log.
        """
        parts = [f"[SECURITY:{event}]", f"caller={caller}"]
        for key, value in kwargs.items():
            parts.append(f"{key}={value}")

        msg = " | ".join(parts)
        if event == "DENIED":
            self.main_logger.warning(msg)
            self.error_logger.error(msg)
        else:
            self.main_logger.info(msg)

    def solvency(self, stage: str, market_id: int, amount, **kwargs):
        """
        Log a bad-debt handling stage.

        Stages are logged distinctly so operators can see systemic stress
        (INSURANCE -> ADL -> SOCIALIZED) before terminal loss socialization.
        """
        parts = [f"[SOLVENCY:{stage}]", f"market={market_id}", f"amount={amount}"]
        for key, value in kwargs.items():
            parts.append(f"{key}={value}")

        msg = " | ".join(parts)
        if stage == "SOCIALIZED":
            self.critical(msg)
        elif stage == "ADL":
            self.main_logger.error(msg)
            self.error_logger.error(msg)
        else:
            self.main_logger.warning(msg)

    def panic(self, msg: str):
        """Log panic/emergency actions."""
        formatted = f"{Colors.BOLD}{Colors.RED}PANIC: {msg}{Colors.RESET}"
        self.main_logger.critical(formatted)
        self.error_logger.critical(f"PANIC: {msg}")


# Global logger instance
_logger: Optional[EngineLogger] = None


def get_logger(log_dir: str | None = None, log_level: str | None = None) -> EngineLogger:
    """
    Get or create the global logger instance.

    First call reads LOG_DIR / LOG_LEVEL / LOG_TO_FILE from the config
    unless explicit values are given.
    """
    global _logger
    if _logger is None:
        from ..config.config import get_config
        log_config = get_config().log
        _logger = EngineLogger(
            log_dir or log_config.log_dir,
            log_level or log_config.level,
            log_config.log_to_file,
        )
    return _logger


def setup_logger(log_dir: str = "logs", log_level: str = "INFO", log_to_file: bool = True) -> EngineLogger:
    """Initialize the logger with custom settings."""
    global _logger
    EngineLogger._initialized = False
    EngineLogger._instance = None
    _logger = EngineLogger(log_dir, log_level, log_to_file)
    return _logger
