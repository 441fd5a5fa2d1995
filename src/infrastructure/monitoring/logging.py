"""
Structured logging for the storefront backend.

Log lines are emitted as JSON (or masked plain text) and carry the request
correlation id, the acting user and the OpenTelemetry trace context. Every
line passes through a masker first: passwords, second-factor codes, session
cookies and link tokens must never land in a log sink.
"""

import json
import logging
import re
import sys
import uuid
from collections.abc import Generator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from enum import Enum
from typing import Any

from opentelemetry import trace

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
user_id_var: ContextVar[str | None] = ContextVar("user_id", default=None)
session_id_var: ContextVar[str | None] = ContextVar("session_id", default=None)


@dataclass
class SensitiveDataConfig:
    """What the masker hides and how."""

    # Regex fragments matched case-insensitively against keys
    credential_patterns: list[str] = field(
        default_factory=lambda: [
            "password",
            "passwd",
            "secret",
            "token",
            "code",
            "authorization",
            "cookie",
        ]
    )

    # Session ids and link tokens are 64+ hex characters
    opaque_value_pattern: str = r"\b[0-9a-fA-F]{64,}\b"

    mask_replacement: str = "***MASKED***"

    # Extra fields dropped outright instead of masked
    excluded_fields: set[str] = field(
        default_factory=lambda: {
            "password",
            "passwd",
            "password_hash",
            "secret",
            "token",
            "session_token",
            "code",
        }
    )


class AuthLogRecord(logging.LogRecord):
    """LogRecord stamped with the ambient request and trace context."""

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.correlation_id = correlation_id_var.get()
        # Prefixed so callers can still pass extra={"user_id": ...}
        self.context_user_id = user_id_var.get()
        self.context_session_id = session_id_var.get()

        self.trace_id: str | None = None
        self.span_id: str | None = None
        span = trace.get_current_span()
        if span.is_recording():
            ctx = span.get_span_context()
            if ctx.trace_id:
                self.trace_id = f"{ctx.trace_id:032x}"
            if ctx.span_id:
                self.span_id = f"{ctx.span_id:016x}"


class SensitiveDataMasker:
    """Scrubs credentials out of messages and structured extras."""

    def __init__(self, config: SensitiveDataConfig) -> None:
        self.config = config
        keys = "|".join(f"(?:{pattern})" for pattern in config.credential_patterns)
        self._key_pattern = re.compile(keys, re.IGNORECASE)
        # "key": "value" in JSON payloads, or key=value / key: value in text
        self._pair_pattern = re.compile(
            rf'"(?P<json_key>[^"]*?(?:{keys})[^"]*)"\s*:\s*"[^"]*"'
            rf"|(?P<key>{keys})(?P<sep>\s*[:=]\s*)\S+",
            re.IGNORECASE,
        )
        self._opaque_value = re.compile(config.opaque_value_pattern)

    def _mask_pair(self, match: re.Match[str]) -> str:
        mask = self.config.mask_replacement
        if match.group("json_key") is not None:
            return f'"{match.group("json_key")}": "{mask}"'
        return f"{match.group('key')}{match.group('sep')}{mask}"

    def mask_message(self, message: str) -> str:
        if not message:
            return message
        scrubbed = self._pair_pattern.sub(self._mask_pair, message)
        return self._opaque_value.sub(self.config.mask_replacement, scrubbed)

    def is_sensitive_key(self, key: str) -> bool:
        return self._key_pattern.search(key) is not None

    def mask_extra_fields(self, extra: dict[str, Any]) -> dict[str, Any]:
        """
        Return a scrubbed copy of ``extra``.

        Excluded keys are dropped, other credential-looking keys keep their
        name with a masked value, strings are scrubbed like messages and
        nested dicts are handled recursively.
        """
        cleaned: dict[str, Any] = {}
        for key, value in extra.items():
            if key.lower() in self.config.excluded_fields:
                continue
            if self.is_sensitive_key(key):
                cleaned[key] = self.config.mask_replacement
            elif isinstance(value, dict):
                cleaned[key] = self.mask_extra_fields(value)
            elif isinstance(value, str):
                cleaned[key] = self.mask_message(value)
            else:
                cleaned[key] = value
        return cleaned


def _json_default(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime | date):
        return value.isoformat()
    if isinstance(value, set | frozenset):
        return sorted(value, key=str)
    return str(value)


# Attribute names present on every record, plus the context AuthLogRecord adds
# and the security extras lifted to the top level of the entry.
_RECORD_ATTRIBUTES = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {
    "message",
    "asctime",
    "taskName",
    "correlation_id",
    "context_user_id",
    "context_session_id",
    "trace_id",
    "span_id",
    "user_id",
    "operation_type",
}


class AuthJSONFormatter(logging.Formatter):
    """One JSON object per line, credentials masked."""

    def __init__(
        self,
        sensitive_data_config: SensitiveDataConfig | None = None,
        include_extra: bool = True,
        sort_keys: bool = True,
    ):
        super().__init__()
        self.masker = SensitiveDataMasker(sensitive_data_config or SensitiveDataConfig())
        self.include_extra = include_extra
        self.sort_keys = sort_keys

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": self.masker.mask_message(record.getMessage()),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        entry.update(self._context(record))

        if record.exc_info:
            entry["exception"] = self._exception(record)

        if self.include_extra:
            extra = {
                key: value
                for key, value in vars(record).items()
                if key not in _RECORD_ATTRIBUTES and not key.startswith("_")
            }
            if extra:
                entry["extra"] = self.masker.mask_extra_fields(extra)

        return json.dumps(entry, sort_keys=self.sort_keys, default=_json_default)

    @staticmethod
    def _context(record: logging.LogRecord) -> dict[str, Any]:
        context: dict[str, Any] = {}
        if correlation_id := getattr(record, "correlation_id", None):
            context["correlation_id"] = correlation_id
        # Explicit extra wins over the ambient user
        if user_id := getattr(record, "user_id", None) or getattr(record, "context_user_id", None):
            context["user_id"] = user_id
        if operation_type := getattr(record, "operation_type", None):
            context["operation_type"] = operation_type
        if trace_id := getattr(record, "trace_id", None):
            context["trace_id"] = trace_id
            context["span_id"] = getattr(record, "span_id", None)
        return context

    def _exception(self, record: logging.LogRecord) -> dict[str, Any]:
        exc_type, exc_value, _ = record.exc_info  # type: ignore[misc]
        return {
            "type": exc_type.__name__ if exc_type else None,
            "message": self.masker.mask_message(str(exc_value)) if exc_value else None,
            "traceback": self.masker.mask_message(self.formatException(record.exc_info)),  # type: ignore[arg-type]
        }


class MaskingTextFormatter(logging.Formatter):
    """Human readable lines for local development, masked like the JSON output."""

    FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    def __init__(self, sensitive_data_config: SensitiveDataConfig | None = None) -> None:
        super().__init__(self.FORMAT)
        self.masker = SensitiveDataMasker(sensitive_data_config or SensitiveDataConfig())

    def format(self, record: logging.LogRecord) -> str:
        return self.masker.mask_message(super().format(record))


def generate_correlation_id() -> str:
    return str(uuid.uuid4())


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


@contextmanager
def correlation_context(correlation_id: str | None = None) -> Generator[str, None, None]:
    """Bind a correlation id for the duration of the block, generating one if needed."""
    bound = correlation_id or generate_correlation_id()
    reset_token = correlation_id_var.set(bound)
    try:
        yield bound
    finally:
        correlation_id_var.reset(reset_token)


@contextmanager
def user_context(user_id: str, session_id: str | None = None) -> Generator[None, None, None]:
    """Bind the acting user (and optionally their session) to log records."""
    user_reset = user_id_var.set(user_id)
    session_reset = session_id_var.set(session_id) if session_id else None
    try:
        yield
    finally:
        if session_reset is not None:
            session_id_var.reset(session_reset)
        user_id_var.reset(user_reset)


def mask_sensitive_data(
    data: str | dict[str, Any], config: SensitiveDataConfig | None = None
) -> str | dict[str, Any]:
    """Mask a one-off string or dict outside of the logging pipeline."""
    masker = SensitiveDataMasker(config or SensitiveDataConfig())
    if isinstance(data, dict):
        return masker.mask_extra_fields(data)
    return masker.mask_message(data)


def setup_structured_logging(
    level: str = "INFO",
    format_type: str = "json",
    sensitive_data_config: SensitiveDataConfig | None = None,
    log_file: str | None = None,
) -> None:
    """
    Route the root logger through the masking formatters.

    Args:
        level: Root log level name
        format_type: 'json' for AuthJSONFormatter, anything else for masked text
        sensitive_data_config: Masking rules, defaults to SensitiveDataConfig()
        log_file: Also write to this file when given
    """
    formatter: logging.Formatter = (
        AuthJSONFormatter(sensitive_data_config)
        if format_type == "json"
        else MaskingTextFormatter(sensitive_data_config)
    )

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)
    root.setLevel(level.upper())

    logging.setLogRecordFactory(AuthLogRecord)
    logging.getLogger(__name__).info(f"Logging configured: level={level.upper()} format={format_type}")
