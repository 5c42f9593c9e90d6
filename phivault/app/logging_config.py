"""
Structured logging with PHI redaction.

All modules log through `structlog.get_logger(__name__)`. Before an event is
rendered, the redaction processor drops the values of sensitive fields and
masks PII patterns in everything else, so a careless log call cannot put
plaintext or key material into the log stream.
"""

import logging
import sys

import structlog

from phivault.app import settings
from phivault.app.services.redaction import REDACTED, mask_pii

SENSITIVE_LOG_FIELDS = frozenset(
    {
        "payload",
        "data",
        "plaintext",
        "payload_json",
        "ciphertext",
        "key",
        "key_material",
        "private_key",
        "symmetric_key",
        "wrapped_key",
        "secret",
        "access_token",
        "token",
        "password",
        "diagnosis",
    }
)

_configured = False


def redact_phi(logger, method_name, event_dict):
    """structlog processor: redact sensitive keys, mask PII in the rest."""
    for key in list(event_dict.keys()):
        if key.lower() in SENSITIVE_LOG_FIELDS:
            event_dict[key] = REDACTED
        elif key not in ("level", "logger", "timestamp", "exc_info"):
            event_dict[key] = mask_pii(event_dict[key])
    return event_dict


def configure_logging(level: str = None, log_format: str = None, force: bool = False):
    """
    Configure structlog and the stdlib root logger.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR); PHIVAULT_LOG_LEVEL by default
        log_format: 'json' or 'console'; PHIVAULT_LOG_FORMAT by default
        force: Reconfigure even if already configured
    """
    global _configured
    if _configured and not force:
        return

    level = (level or settings.LOG_LEVEL).upper()
    log_format = log_format or settings.LOG_FORMAT

    if log_format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            redact_phi,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, level),
        stream=sys.stdout,
    )
    _configured = True
