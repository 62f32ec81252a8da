"""
Structured logging for the checkout and webhook services.

structlog renders every event as one JSON line. Request ids are bound
through contextvars by the HTTP middleware, and credentials are masked
before anything is rendered.
"""
import logging
import sys
from typing import Any

import structlog
from pythonjsonlogger import jsonlogger

from config import get_settings

REDACTED = "[REDACTED]"

SENSITIVE_KEYS = frozenset({"signature", "password", "api_key", "authorization", "x_api_key"})
SENSITIVE_SUFFIXES = ("_secret", "_password", "_signature", "_api_key")


def _is_sensitive(key: Any) -> bool:
    if not isinstance(key, str):
        return False
    name = key.lower().replace("-", "_")
    return name in SENSITIVE_KEYS or name.endswith(SENSITIVE_SUFFIXES)


def _mask(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            key: REDACTED if _is_sensitive(key) and item is not None else _mask(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [_mask(item) for item in value]
    return value


def mask_sensitive_fields(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """
    Replace secrets, passwords and full signatures with a placeholder.

    Nested dicts (payload fragments, order items) are masked too. A
    ``signature_prefix`` is not a signature and passes through.
    """
    return _mask(event_dict)


def add_app_context(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Stamp every event with the app name and environment."""
    settings = get_settings()
    event_dict["app_name"] = settings.app_name
    event_dict["app_env"] = settings.app_env
    return event_dict


def setup_logging() -> None:
    """
    Configure structlog and the stdlib root logger.

    Library loggers (uvicorn, SQLAlchemy, httpx, boto) go through the same
    JSON handler so one log stream carries everything.
    """
    settings = get_settings()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            add_app_context,
            mask_sensitive_fields,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level))
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    json_handler = logging.StreamHandler(sys.stdout)
    json_handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "@timestamp", "levelname": "level", "name": "logger"},
        )
    )
    root_logger.addHandler(json_handler)

    # SQL echo only when explicitly debugging
    sql_level = logging.INFO if settings.database_echo else logging.WARNING
    logging.getLogger("sqlalchemy.engine").setLevel(sql_level)
    for noisy in ("botocore", "boto3", "urllib3", "httpx", "httpcore"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    structlog.get_logger(__name__).info(
        "logging_configured",
        log_level=settings.log_level,
        app_env=settings.app_env,
        idempotency_backend=settings.idempotency_backend,
        gateway_mode="test" if settings.is_test_mode else "live",
    )
