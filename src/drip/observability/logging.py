"""Structured logging for DRIP faucet.

Features:
- JSON or text format output
- Request ID propagation
- Sensitive data redaction
- Configurable log level
"""

import logging
import sys
from contextvars import ContextVar
from typing import Any

import structlog

# Context variable for request ID
request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)

# Handler installed by configure_logging, replaced on reconfiguration
_handler: logging.Handler | None = None

# Fields that should be redacted (use specific names to avoid conflicts with
# legitimate fields such as "token" in chat payloads)
REDACTED_FIELDS = frozenset(
    {
        "private_key",
        "secret",
        "password",
        "api_key",
        "bot_token",
        "app_token",
        "auth_token",
        "bearer_token",
        "access_token",
        "signing_secret",
        "mnemonic",
        "wallet_mnemonic",
        "wallet_private_key",
    }
)


def _add_request_id(
    _logger: logging.Logger,
    _method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Add request ID to log event if available."""
    request_id = request_id_var.get()
    if request_id:
        event_dict["request_id"] = request_id
    return event_dict


def _redact_sensitive(
    _logger: logging.Logger,
    _method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Redact sensitive fields from log events."""
    for key in event_dict:
        if key.lower() in REDACTED_FIELDS:
            event_dict[key] = "[REDACTED]"
    return event_dict


def configure_logging(
    level: str = "INFO",
    log_format: str = "json",
) -> None:
    """Configure structured logging for the application.

    Both structlog loggers and stdlib loggers (including their ``extra``
    fields) are rendered through the same processor chain.

    Parameters
    ----------
    level : str
        Log level (DEBUG, INFO, WARNING, ERROR).
    log_format : str
        Output format (json or text).
    """
    global _handler

    # Validate and get log level
    try:
        log_level = getattr(logging, level.upper())
    except AttributeError:
        raise ValueError(
            f"Invalid log level: {level!r}. "
            "Valid levels are: DEBUG, INFO, WARNING, ERROR, CRITICAL."
        ) from None

    # Processors shared by structlog and stdlib records
    shared_processors: list[structlog.typing.Processor] = [
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_request_id,
    ]

    # Add format-specific renderer
    if log_format.lower() == "json":
        renderer: structlog.typing.Processor = structlog.processors.JSONRenderer()
        render_chain = [structlog.processors.format_exc_info, renderer]
    else:
        render_chain = [structlog.dev.ConsoleRenderer(colors=True)]

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=[*shared_processors, structlog.stdlib.ExtraAdder()],
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            _redact_sensitive,
            *render_chain,
        ],
    )

    # Replace only the handler installed by a previous call
    root = logging.getLogger()
    if _handler is not None:
        root.removeHandler(_handler)
    _handler = logging.StreamHandler(sys.stdout)
    _handler.setFormatter(formatter)
    root.addHandler(_handler)
    root.setLevel(log_level)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *shared_processors,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.UnicodeDecoder(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Quieten chatty HTTP client libraries
    for name in ("web3", "urllib3", "aiohttp.access", "slack_bolt", "slack_sdk"):
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance.

    Parameters
    ----------
    name : str | None
        Logger name. If None, uses the calling module's name.

    Returns
    -------
    structlog.stdlib.BoundLogger
        Configured logger instance.
    """
    return structlog.get_logger(name)


def set_request_id(request_id: str) -> None:
    """Set the request ID for the current context.

    Parameters
    ----------
    request_id : str
        The request ID to set.
    """
    request_id_var.set(request_id)


def clear_request_id() -> None:
    """Clear the request ID for the current context."""
    request_id_var.set(None)
