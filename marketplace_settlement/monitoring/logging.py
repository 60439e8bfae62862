"""
Structured logging configuration.

structlog renders JSON events; the stdlib root logger (uvicorn, sqlalchemy,
stripe) goes through python-json-logger so every line on stdout is JSON.

Webhook signatures, API keys and buyer emails never reach the log output:
redact_sensitive_fields masks them whatever logger call they arrive in.
"""
import logging
import sys
from typing import Any, Callable, Optional

import structlog
from pythonjsonlogger import jsonlogger

from .. import __version__
from ..config import Settings, get_settings

EventDict = dict[str, Any]

SENSITIVE_FIELDS = frozenset(
    {
        "api_key",
        "stripe_secret_key",
        "stripe_webhook_secret",
        "stripe_signature",
        "signature",
        "customer_email",
        "buyer_email",
    }
)
REDACTED = "[redacted]"


def redact_sensitive_fields(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    for key in SENSITIVE_FIELDS.intersection(event_dict):
        if event_dict[key]:
            event_dict[key] = REDACTED
    return event_dict


def service_context_processor(settings: Settings) -> Callable[[Any, str, EventDict], EventDict]:
    """
    Build a processor that stamps service identity on every event.

    Args:
        settings: Application settings

    Returns:
        structlog processor adding app name, environment, version and
        whether Stripe runs in test mode
    """
    context = {
        "app_name": settings.app_name,
        "app_env": settings.app_env,
        "version": __version__,
        "stripe_test_mode": settings.is_test_mode,
    }

    def add_service_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
        for key, value in context.items():
            event_dict.setdefault(key, value)
        return event_dict

    return add_service_context


def setup_logging(settings: Optional[Settings] = None) -> None:
    """
    Configure structlog and the stdlib root logger for JSON output.

    Request ids bound through structlog.contextvars are merged into every
    event logged while handling that request.
    """
    settings = settings or get_settings()

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
            redact_sensitive_fields,
            service_context_processor(settings),
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

    # The Stripe SDK logs request bodies at DEBUG
    logging.getLogger("stripe").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.database_echo else logging.WARNING
    )

    structlog.get_logger(__name__).info(
        "logging_configured",
        log_level=settings.log_level,
        lock_backend=settings.lock_backend,
        payout_dispatch_mode=settings.payout_dispatch_mode,
    )
