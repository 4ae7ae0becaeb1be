"""Keep Notion tokens and feed credentials out of log output.

``apply_global_log_redaction()`` is called once by the entry points after
``logging.basicConfig``; every record that reaches a root handler is
rendered and scrubbed before it is written.
"""
from __future__ import annotations

import logging
import re

REDACTED = "***REDACTED***"

# Whole-match replacements.
_TOKEN_PATTERNS: tuple[re.Pattern[str], ...] = (
    # Notion integration tokens, legacy "secret_" and current "ntn_" prefixes
    re.compile(r"\b(?:secret|ntn)_[A-Za-z0-9]{20,}\b"),
    re.compile(r"Authorization\s*[:=]\s*(?:Bearer\s+)?\S+|Bearer\s+\S+", re.IGNORECASE),
    # Google API keys (published sheet exports)
    re.compile(r"AIza[0-9A-Za-z\-_]{35}"),
)

# ``name=value`` pairs: the name stays readable, the value goes.
_KEY_VALUE = re.compile(
    r"(?P<name>api[_-]?key|token|secret|password|cookies?)(?P<sep>\s*[:=]\s*)[\"']?[^\s'\"&]+[\"']?",
    re.IGNORECASE,
)


def redact_secrets(msg: str, replacement: str = REDACTED) -> str:
    """Return *msg* with tokens, auth headers and secret-valued pairs masked."""
    if not msg:
        return msg
    for pattern in _TOKEN_PATTERNS:
        msg = pattern.sub(replacement, msg)
    return _KEY_VALUE.sub(lambda m: f"{m['name']}{m['sep']}{replacement}", msg)


class LogRedactionFilter(logging.Filter):
    """Render the record once, scrub it, and drop the args.

    Rendering first means a token split across ``msg`` and ``args`` is
    still caught.
    """

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
        try:
            rendered = record.getMessage()
        except (TypeError, ValueError):
            # Malformed format string: leave it for the handler to report.
            return True
        record.msg = redact_secrets(rendered)
        record.args = None
        return True


def apply_log_redaction(logger: logging.Logger) -> None:
    """Attach one shared :class:`LogRedactionFilter` to *logger*'s handlers."""
    filt = LogRedactionFilter()
    for handler in logger.handlers:
        if not any(isinstance(f, LogRedactionFilter) for f in handler.filters):
            handler.addFilter(filt)


def apply_global_log_redaction() -> None:
    apply_log_redaction(logging.getLogger())
