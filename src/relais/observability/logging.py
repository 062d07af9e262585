"""Structured logging setup: JSON-lines output with redaction, fed by structlog."""

from __future__ import annotations

import json
import logging
import math
import re
import sys
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Final

import structlog

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]
LogRedactor = Callable[[JSONValue], JSONValue]

_REDACTED_VALUE: Final[str] = "***REDACTED***"
_DEFAULT_LOG_FILENAME: Final[str] = "relais.jsonl"
_DEFAULT_LOGGER_NAME: Final[str] = "relais"

_SENSITIVE_KEY_TERMS: Final[tuple[str, ...]] = (
    "secret",
    "token",
    "password",
    "passphrase",
    "api_key",
    "apikey",
    "authorization",
    "credential",
    "cookie",
    "private_key",
)

_SENSITIVE_ASSIGNMENT_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"(?i)\b(api[_-]?key|token|password|secret|client_secret|authorization)\b"
    r"\s*([:=])\s*([^\s,;]+)"
)
_BEARER_TOKEN_PATTERN: Final[re.Pattern[str]] = re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/-]+=*")
_ANTHROPIC_KEY_PATTERN: Final[re.Pattern[str]] = re.compile(r"\bsk-ant-[A-Za-z0-9_-]{12,}\b")
_OPENAI_KEY_PATTERN: Final[re.Pattern[str]] = re.compile(r"\bsk-[A-Za-z0-9]{12,}\b")

_STANDARD_LOG_RECORD_FIELDS: Final[frozenset[str]] = frozenset(
    {
        "args",
        "asctime",
        "created",
        "exc_info",
        "exc_text",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "message",
        "module",
        "msecs",
        "msg",
        "name",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "thread",
        "threadName",
        "taskName",
    }
)


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    """Configuration for one run's structured log sink."""

    run_id: str
    base_log_dir: Path | str = Path(".relais/logs")
    logger_name: str = _DEFAULT_LOGGER_NAME
    level: int | str = "INFO"
    log_filename: str = _DEFAULT_LOG_FILENAME
    log_to_stderr: bool = False
    redact: bool = True


@dataclass(frozen=True, slots=True)
class LoggingHandle:
    logger: logging.Logger
    run_id: str
    log_path: Path
    handlers: tuple[logging.Handler, ...]

    def close(self) -> None:
        structlog.contextvars.unbind_contextvars("run_id")
        for handler in self.handlers:
            handler.flush()
            self.logger.removeHandler(handler)
            handler.close()


class _JsonLineFormatter(logging.Formatter):
    """Formatter that emits canonical JSON objects per log line."""

    def __init__(self, *, redactor: LogRedactor, run_id: str) -> None:
        super().__init__()
        self._redactor = redactor
        self._run_id = run_id

    def format(self, record: logging.LogRecord) -> str:
        event: dict[str, JSONValue] = {
            "timestamp": _iso8601z_from_epoch(record.created),
            "level": record.levelname,
            "logger": record.name,
            "run_id": self._run_id,
            "message": str(self._redactor(record.getMessage())),
        }

        extras = _extract_extra_fields(record)
        if extras:
            event["fields"] = self._redactor(extras)

        if record.exc_info is not None:
            event["exception"] = str(self._redactor(self.formatException(record.exc_info)))

        return json.dumps(event, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def setup_logging(
    observability_config: Mapping[str, object] | None = None,
    *,
    run_id: str,
    log_dir: Path | str | None = None,
) -> LoggingHandle:
    """Configure logging for a tick from the ``[observability]`` config section."""

    cfg = dict(observability_config or {})
    raw_level = cfg.get("log_level", "INFO")
    raw_dir = log_dir if log_dir is not None else cfg.get("log_dir", ".relais/logs")
    return setup_structured_logging(
        LoggingConfig(
            run_id=run_id,
            base_log_dir=raw_dir if isinstance(raw_dir, (str, Path)) else ".relais/logs",
            level=raw_level if isinstance(raw_level, (int, str)) else "INFO",
            log_to_stderr=bool(cfg.get("log_to_stdout", False)),
            redact=bool(cfg.get("redact_secrets", True)),
        )
    )


def setup_structured_logging(config: LoggingConfig) -> LoggingHandle:
    """Attach a JSON-lines file sink (and optional stderr sink) and route structlog into it."""

    level = _parse_log_level(config.level)
    run_log_dir = Path(config.base_log_dir) / config.run_id
    run_log_dir.mkdir(parents=True, exist_ok=True)
    log_path = run_log_dir / config.log_filename

    redactor = default_log_redactor if config.redact else _identity_redactor
    formatter = _JsonLineFormatter(redactor=redactor, run_id=config.run_id)

    handlers: list[logging.Handler] = [logging.FileHandler(log_path, encoding="utf-8")]
    if config.log_to_stderr:
        handlers.append(logging.StreamHandler(sys.stderr))

    logger = logging.getLogger(config.logger_name)
    logger.setLevel(level)
    logger.propagate = False
    for existing in list(logger.handlers):
        logger.removeHandler(existing)
        existing.close()
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    configure_structlog()
    structlog.contextvars.bind_contextvars(run_id=config.run_id)

    return LoggingHandle(
        logger=logger, run_id=config.run_id, log_path=log_path, handlers=tuple(handlers)
    )


def configure_structlog() -> None:
    """Send structlog events through stdlib logging so the JSON formatter owns the output."""

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.processors.format_exc_info,
            structlog.stdlib.render_to_log_kwargs,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


def default_log_redactor(value: JSONValue) -> JSONValue:
    """Redact sensitive keys and token-shaped substrings."""
    return _redact_value(_normalize_json_value(value), key_context=None)


def redact_text(text: str) -> str:
    """Redact token-shaped substrings from free text such as agent transcripts."""
    return _redact_string(text)


def _identity_redactor(value: JSONValue) -> JSONValue:
    return _normalize_json_value(value)


def _parse_log_level(value: int | str) -> int:
    if isinstance(value, int):
        return value
    resolved = logging.getLevelName(value.strip().upper())
    if not isinstance(resolved, int):
        raise ValueError(f"unknown log level: {value!r}")
    return resolved


def _iso8601z_from_epoch(epoch_seconds: float) -> str:
    moment = datetime.fromtimestamp(epoch_seconds, tz=UTC)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _extract_extra_fields(record: logging.LogRecord) -> dict[str, JSONValue]:
    fields: dict[str, JSONValue] = {}
    for key, value in record.__dict__.items():
        if key in _STANDARD_LOG_RECORD_FIELDS or key.startswith("_") or key == "run_id":
            continue
        fields[key] = _normalize_json_value(value)
    return fields


def _normalize_json_value(value: object) -> JSONValue:
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else _REDACTED_VALUE
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, Mapping):
        return {str(key): _normalize_json_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_normalize_json_value(item) for item in value]
    return repr(value)


def _redact_value(value: JSONValue, *, key_context: str | None) -> JSONValue:
    if key_context is not None and _requires_redaction_for_key(key_context):
        return _REDACTED_VALUE
    if isinstance(value, str):
        return _redact_string(value)
    if isinstance(value, list):
        return [_redact_value(item, key_context=None) for item in value]
    if isinstance(value, dict):
        return {key: _redact_value(item, key_context=key) for key, item in value.items()}
    return value


def _requires_redaction_for_key(key: str) -> bool:
    key_lower = key.lower()
    return any(term in key_lower for term in _SENSITIVE_KEY_TERMS)


def _redact_string(text: str) -> str:
    redacted = _BEARER_TOKEN_PATTERN.sub(f"Bearer {_REDACTED_VALUE}", text)
    redacted = _SENSITIVE_ASSIGNMENT_PATTERN.sub(
        lambda match: f"{match.group(1)}{match.group(2)}{_REDACTED_VALUE}", redacted
    )
    redacted = _ANTHROPIC_KEY_PATTERN.sub(_REDACTED_VALUE, redacted)
    return _OPENAI_KEY_PATTERN.sub(_REDACTED_VALUE, redacted)


__all__ = [
    "JSONValue",
    "LoggingConfig",
    "LoggingHandle",
    "configure_structlog",
    "default_log_redactor",
    "redact_text",
    "setup_logging",
    "setup_structured_logging",
]
