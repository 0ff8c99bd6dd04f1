import logging
import os
import re
import sys
from typing import Optional


class SensitiveDataFilter(logging.Filter):
    """Mask password values that slip into log messages."""

    PATTERN = re.compile(r'(password["\']?\s*[:=]\s*["\']?)([^"\'}\s,]+)', re.IGNORECASE)

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = self.PATTERN.sub(r"\1***MASKED***", record.msg)
        if record.args and isinstance(record.args, tuple):
            record.args = tuple(
                self.PATTERN.sub(r"\1***MASKED***", a) if isinstance(a, str) else a for a in record.args
            )
        return True


def setup_logging(log_level: Optional[str] = None) -> logging.Logger:
    """Attach a stderr handler to the ``lusl`` logger.

    Args:
        log_level: DEBUG, INFO, WARNING or ERROR. Defaults to the
            LUSL_LOG_LEVEL environment variable, else WARNING.
    """
    if log_level is None:
        log_level = os.getenv("LUSL_LOG_LEVEL", "WARNING")
    level = getattr(logging, log_level.upper(), logging.WARNING)

    logger = logging.getLogger("lusl")
    logger.setLevel(level)
    if logger.handlers:
        for h in logger.handlers:
            h.setLevel(level)
        return logger

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(
        logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s", datefmt="%Y-%m-%d %H:%M:%S")
    )
    handler.addFilter(SensitiveDataFilter())
    logger.addHandler(handler)
    logger.propagate = False
    return logger
