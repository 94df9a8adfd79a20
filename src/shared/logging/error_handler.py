"""Structured error logging for absorbed failures.

The governance engine absorbs two classes of failure instead of raising:
admission fails open on store errors, and the adaptation loop skips an
org whose store calls fail. Both paths log through log_structured_error
so every absorbed error carries error_code, stack_trace and context.

- JSON-ready dict attached as ``extra["structured_error"]``
- Sensitive context keys are redacted
"""

from __future__ import annotations

import logging
import traceback
from dataclasses import asdict, dataclass, field
from typing import Any


@dataclass(frozen=True)
class StructuredError:
    """Structured representation of an error for logging."""

    error_code: str
    message: str
    stack_trace: str
    component: str = ""
    org_id: str = ""
    outcome: str = ""
    context: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict suitable for JSON logging."""
        d = asdict(self)
        d["context"] = _redact_sensitive(d["context"])
        return d


_SENSITIVE_KEYS = frozenset(
    {
        "password",
        "token",
        "secret",
        "api_key",
        "authorization",
        "database_url",
        "jwt",
        "credential",
    }
)


def _redact_sensitive(data: dict[str, Any]) -> dict[str, Any]:
    """Redact values of sensitive keys, recursing into nested dicts."""
    result: dict[str, Any] = {}
    for key, value in data.items():
        if key.lower() in _SENSITIVE_KEYS:
            result[key] = "[REDACTED]"
        elif isinstance(value, dict):
            result[key] = _redact_sensitive(value)
        else:
            result[key] = value
    return result


def create_structured_error(
    exc: BaseException,
    *,
    error_code: str = "",
    component: str = "",
    org_id: object = "",
    outcome: str = "",
    context: dict[str, Any] | None = None,
) -> StructuredError:
    """Build a StructuredError from an exception.

    GovernanceError subclasses carry a ``.code`` which becomes the
    error_code unless one is passed explicitly.
    """
    code = error_code or getattr(exc, "code", type(exc).__name__)
    stack = traceback.format_exception(type(exc), exc, exc.__traceback__)
    return StructuredError(
        error_code=code,
        message=str(exc),
        stack_trace="".join(stack),
        component=component,
        org_id=str(org_id) if org_id else "",
        outcome=outcome,
        context=context or {},
    )


def log_structured_error(
    logger: logging.Logger,
    exc: BaseException,
    *,
    error_code: str = "",
    component: str = "",
    org_id: object = "",
    outcome: str = "",
    context: dict[str, Any] | None = None,
    level: int = logging.ERROR,
) -> StructuredError:
    """Log an absorbed exception as a structured error.

    ``outcome`` names what the caller did instead of raising
    (``fail_open``, ``skip_org``, ``dropped``).
    Returns the StructuredError for further processing (e.g. metrics).
    """
    structured = create_structured_error(
        exc,
        error_code=error_code,
        component=component,
        org_id=org_id,
        outcome=outcome,
        context=context,
    )
    logger.log(
        level,
        "%s failed (%s): %s",
        component or "governance",
        structured.error_code,
        structured.message,
        extra={"structured_error": structured.to_dict()},
    )
    return structured
