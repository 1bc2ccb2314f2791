"""Logging configuration for juggler."""

import logging
import re
from pathlib import Path

_SECRET_PATTERNS = [
    re.compile(r"(Bearer\s+)[A-Za-z0-9._~+/=-]+", re.IGNORECASE),
    re.compile(
        r"(\b(?:access_token|refresh_token|code_verifier|client_secret|code)[\"']?\s*[=:]\s*[\"']?)"
        r"[^\s&\"',}]+",
        re.IGNORECASE,
    ),
]


def redact_secret(text: str) -> str:
    """Keep the first and last four characters of a secret.

    Args:
        text: Secret value.

    Returns:
        Redacted value.
    """
    if len(text) <= 8:
        return "****"
    return f"{text[:4]}...{text[-4:]}"


def redact_text(text: str) -> str:
    """Mask bearer tokens and OAuth secrets embedded in free text."""
    for pattern in _SECRET_PATTERNS:
        text = pattern.sub(lambda m: f"{m.group(1)}****", text)
    return text


class SecretRedactingFilter(logging.Filter):
    """Masks credentials in every record before a handler formats it."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = redact_text(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def setup_logging(log_level: int = logging.INFO, data_dir: Path | None = None) -> None:
    """Configure logging for the application.

    Args:
        log_level: Logging level (e.g., logging.INFO, logging.DEBUG).
        data_dir: Directory to store the log file. Defaults to ~/.juggler/
    """
    if data_dir is None:
        data_dir = Path.home() / ".juggler"

    data_dir.mkdir(parents=True, exist_ok=True)
    log_file = data_dir / "juggler.log"

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    redactor = SecretRedactingFilter()

    file_handler = logging.FileHandler(log_file)
    file_handler.setLevel(log_level)
    file_handler.setFormatter(
        logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    file_handler.addFilter(redactor)
    root_logger.addHandler(file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(logging.Formatter("%(name)s - %(levelname)s - %(message)s"))
    console_handler.addFilter(redactor)
    root_logger.addHandler(console_handler)

    # httpx logs full request lines at INFO; our audit transport covers that.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance.

    Args:
        name: Logger name (typically __name__).

    Returns:
        Logger instance.
    """
    return logging.getLogger(name)
