"""
Structured logging configuration.

Service code logs through structlog, which writes straight to stdout.
Records from third-party loggers (uvicorn, sqlalchemy, httpx) go through the
stdlib root handler with python-json-logger, so a log shipper receives one
JSON document per line either way.

Personal data never reaches the log stream: contact details are masked and
credentials are dropped by ``redact_sensitive``.
"""
import logging
import re
import sys
from typing import Any, List, MutableMapping

import structlog
from pythonjsonlogger import jsonlogger

from proplinka.config import get_settings

# Values removed outright
SECRET_KEYS = frozenset(
    {"authorization", "token", "access_token", "password", "stripe_signature", "api_key", "secret"}
)
# Values partially masked
CONTACT_KEYS = frozenset({"email", "to", "phone", "recipient_email"})

_EMAIL_RE = re.compile(r"^([^@])[^@]*(@.+)$")

NOISY_LOGGERS = {
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "PIL": logging.WARNING,
    "stripe": logging.INFO,
    "uvicorn.access": logging.WARNING,
}


def mask_contact(value: Any) -> Any:
    """'buyer@example.com' -> 'b***@example.com', '+27821234567' -> '***4567'."""
    if isinstance(value, (list, tuple)):
        return [mask_contact(v) for v in value]
    if not isinstance(value, str) or not value:
        return value
    match = _EMAIL_RE.match(value)
    if match:
        return f"{match.group(1)}***{match.group(2)}"
    return f"***{value[-4:]}" if len(value) > 4 else "***"


def redact_sensitive(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    for key in list(event_dict):
        lowered = key.lower()
        if lowered in SECRET_KEYS:
            event_dict[key] = "[redacted]"
        elif lowered in CONTACT_KEYS:
            event_dict[key] = mask_contact(event_dict[key])
    return event_dict


def add_app_context(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    settings = get_settings()
    event_dict.setdefault("service", settings.app_name)
    event_dict.setdefault("env", settings.app_env)
    return event_dict


def build_processors(render_json: bool) -> List[Any]:
    """
    structlog processor chain.

    Args:
        render_json: JSON lines for shipping, otherwise coloured console
            output for local development
    """
    processors: List[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.format_exc_info,
        add_app_context,
        redact_sensitive,
    ]
    if render_json:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())
    return processors


def setup_logging() -> None:
    """
    Configure structlog and the stdlib root logger.

    Console rendering is used only when LOG_FORMAT=console; every other
    environment logs JSON.
    """
    settings = get_settings()
    render_json = settings.log_format != "console"
    level = logging.getLevelName(settings.log_level)

    structlog.configure(
        processors=build_processors(render_json),
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.WriteLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "timestamp", "levelname": "level", "name": "logger"},
        )
    )
    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(level)

    for name, noisy_level in NOISY_LOGGERS.items():
        logging.getLogger(name).setLevel(noisy_level)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.database_echo else logging.WARNING
    )

    structlog.get_logger(__name__).info(
        "logging_configured",
        log_level=settings.log_level,
        log_format="json" if render_json else "console",
    )
