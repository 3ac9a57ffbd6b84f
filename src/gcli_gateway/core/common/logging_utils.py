"""
Logging utilities for the gateway.

This module provides:
- Root logger configuration with console and optional file handlers
- structlog configuration routed through stdlib logging
- Redaction of OAuth tokens, client secrets and the gateway password in log records
"""

import contextlib
import logging
import re
from collections.abc import Iterable

import structlog

DEFAULT_LOG_FORMAT = "%(asctime)s [%(levelname)-8s] %(name)s:%(lineno)d %(message)s"

BEARER_TOKEN_PATTERN = re.compile(r"Bearer\s+([a-zA-Z0-9._~+/-]+=*)")
# Google OAuth access tokens
GOOGLE_ACCESS_TOKEN_PATTERN = re.compile(r"ya29\.[A-Za-z0-9._-]+")
# Google OAuth refresh tokens
GOOGLE_REFRESH_TOKEN_PATTERN = re.compile(r"1//[A-Za-z0-9._-]{20,}")


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structured logger.

    Args:
        name: Optional logger name

    Returns:
        A structured logger
    """
    return structlog.get_logger(name)  # type: ignore[no-any-return]


def redact(value: str, mask: str = "***") -> str:
    """Redact a sensitive value, keeping the first and last two characters."""
    if not value:
        return value

    if len(value) > 6:
        return f"{value[0:2]}{mask}{value[-2:]}"
    return mask


class SecretRedactionFilter(logging.Filter):
    """Logging filter that masks known secrets and token-shaped strings.

    Sanitizes ``record.msg`` and ``record.args``. Secrets registered after
    construction (for example tokens obtained by a refresh) can be added with
    :meth:`add_secrets`.
    """

    def __init__(
        self, secrets: Iterable[str] | None = None, mask: str = "***"
    ) -> None:
        super().__init__()
        self.mask = mask
        self._secrets: set[str] = set()
        self._secret_pattern: re.Pattern | None = None
        self.add_secrets(secrets or [])

    def add_secrets(self, secrets: Iterable[str]) -> None:
        new = {s for s in secrets if s and len(s) >= 4}
        if not new - self._secrets:
            return
        self._secrets |= new
        escaped = sorted((re.escape(s) for s in self._secrets), key=len, reverse=True)
        self._secret_pattern = re.compile("|".join(escaped))

    def _sanitize(self, obj: object) -> object:
        if isinstance(obj, str):
            s = obj
            if self._secret_pattern is not None:
                s = self._secret_pattern.sub(self.mask, s)
            s = BEARER_TOKEN_PATTERN.sub(f"Bearer {self.mask}", s)
            s = GOOGLE_ACCESS_TOKEN_PATTERN.sub(self.mask, s)
            s = GOOGLE_REFRESH_TOKEN_PATTERN.sub(self.mask, s)
            return s
        if isinstance(obj, dict):
            return {k: self._sanitize(v) for k, v in obj.items()}
        if isinstance(obj, list | tuple):
            return type(obj)(self._sanitize(v) for v in obj)
        return obj

    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        try:
            if isinstance(record.msg, str):
                record.msg = self._sanitize(record.msg)  # type: ignore[assignment]
            if record.args:
                if isinstance(record.args, dict):
                    record.args = self._sanitize(record.args)  # type: ignore[assignment]
                elif isinstance(record.args, tuple):
                    record.args = tuple(self._sanitize(a) for a in record.args)
        except Exception:
            # Never let logging filtering raise
            return True
        return True


_redaction_filter: SecretRedactionFilter | None = None


def install_secret_redaction_filter(secrets: Iterable[str] | None = None) -> SecretRedactionFilter:
    """Install (or extend) the redaction filter on the root logger and its handlers.

    Safe to call multiple times; later calls register additional secrets on
    the already-installed filter.
    """
    global _redaction_filter
    root = logging.getLogger()
    if _redaction_filter is None:
        _redaction_filter = SecretRedactionFilter(secrets)
        root.addFilter(_redaction_filter)
    else:
        _redaction_filter.add_secrets(secrets or [])

    for handler in list(root.handlers):
        if _redaction_filter not in handler.filters:
            with contextlib.suppress(Exception):
                handler.addFilter(_redaction_filter)
    return _redaction_filter


def register_secrets(secrets: Iterable[str]) -> None:
    """Add secrets to the installed redaction filter, if any."""
    if _redaction_filter is not None:
        _redaction_filter.add_secrets(secrets)


def configure_logging(
    level: int | str = logging.INFO,
    log_file: str | None = None,
    log_format: str = DEFAULT_LOG_FORMAT,
    secrets: Iterable[str] | None = None,
) -> None:
    """Configure stdlib logging and structlog for the process.

    Args:
        level: Logging level (name or number)
        log_file: Optional log file path
        log_format: Format string for stdlib handlers
        secrets: Values that must never appear in log output
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    formatter = logging.Formatter(fmt=log_format)
    handlers: list[logging.Handler] = []

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    handlers.append(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    logging.basicConfig(level=level, handlers=handlers, force=True)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.format_exc_info,
            structlog.processors.KeyValueRenderer(key_order=["event"]),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # httpx logs every request URL at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)

    install_secret_redaction_filter(secrets)
