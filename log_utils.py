"""
Logging helpers shared by the API, record store and audit pipeline.
"""

import logging
import re
from pathlib import Path
from typing import Optional

from config_manager import LoggingConfig


def sanitize_for_logging(text: str, max_length: int = 500) -> str:
    """Sanitize user input for safe logging, preventing log injection

    Removes newlines, carriage returns, and other control characters
    that could be used to inject fake log entries.

    Args:
        text: User input text
        max_length: Maximum length kept

    Returns:
        Sanitized text safe for logging
    """
    if not text:
        return ''
    sanitized = re.sub(r'[\r\n\x00-\x1f\x7f-\x9f]', ' ', str(text))
    sanitized = re.sub(r'\s+', ' ', sanitized).strip()
    return sanitized[:max_length] if len(sanitized) > max_length else sanitized


def mask_license_number(drivers_license_number: Optional[str]) -> Optional[str]:
    """Keep only the last four characters of a license number visible.

    Returns None for values shorter than four characters.
    """
    if not drivers_license_number or len(drivers_license_number) < 4:
        return None
    return '*' * (len(drivers_license_number) - 4) + drivers_license_number[-4:]


def configure_logging(config: Optional[LoggingConfig] = None) -> None:
    """Configure the root logger from the logging config section

    Args:
        config: Logging configuration (defaults when None)
    """
    config = config or LoggingConfig()
    handlers = []

    if config.console:
        handlers.append(logging.StreamHandler())

    if config.file:
        log_path = Path(config.file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path, encoding='utf-8'))

    logging.basicConfig(
        level=getattr(logging, config.level.upper(), logging.INFO),
        format=config.format,
        handlers=handlers or None,
        force=True
    )
