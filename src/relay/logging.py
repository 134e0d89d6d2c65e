"""Logging setup for workflow relay.

Every module logs through ``get_logger(__name__)``. Orchestration code binds
backend, workflow and run fields with ``logger.with_context(...)`` and the
formatters below render them. Output goes to stderr because stdout belongs
to the run URL and the verdict.
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import MutableMapping
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from relay.types import VerdictKind

if TYPE_CHECKING:
    from relay.models import OrchestrationResult

CONTEXT_FIELDS = ("backend", "workflow", "ref", "run_id", "phase")
# Only carried by the final summary record
RESULT_FIELDS = ("verdict", "reference_url")


def _component(record: logging.LogRecord) -> str:
    """Last segment of the logger name: ``relay.poll_loop`` -> ``poll_loop``."""
    return record.name.rpartition(".")[2]


def _fields(record: logging.LogRecord, names: tuple[str, ...]) -> dict[str, Any]:
    return {name: getattr(record, name) for name in names if hasattr(record, name)}


def parse_diagnostic_tags(tags_csv: str) -> frozenset[str]:
    return frozenset(tag.strip() for tag in tags_csv.split(",") if tag.strip())


class DiagnosticFilter(logging.Filter):
    """Drop tagged DEBUG records unless their tag is enabled.

    Chatty debug output is marked with ``extra={"diagnostic_tag": "polling"}``
    and only emitted when ``RELAY_DIAGNOSTIC_TAGS`` names that tag, or is
    ``*``. Untagged records and anything above DEBUG always pass.
    """

    def __init__(self, enabled_tags: frozenset[str] | None = None) -> None:
        super().__init__()
        self.enabled_tags: frozenset[str] = enabled_tags or frozenset()

    @classmethod
    def from_config_string(cls, tags_csv: str) -> DiagnosticFilter:
        return cls(parse_diagnostic_tags(tags_csv))

    def filter(self, record: logging.LogRecord) -> bool:
        tag: str | None = getattr(record, "diagnostic_tag", None)
        if record.levelno != logging.DEBUG or tag is None:
            return True
        return "*" in self.enabled_tags or tag in self.enabled_tags


class StructuredFormatter(logging.Formatter):
    """Human-readable single-line records.

    ``2026-03-01 12:00:00.123 [INFO    ] [poll_loop   ] [backend=github run_id=7] Run completed``
    """

    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None) -> str:  # noqa: N802
        moment = datetime.fromtimestamp(record.created, tz=UTC)
        return f"{moment:%Y-%m-%d %H:%M:%S}.{moment.microsecond // 1000:03d}"

    def format(self, record: logging.LogRecord) -> str:
        line = f"{self.formatTime(record)} [{record.levelname:8}] [{_component(record):12}]"
        context = _fields(record, CONTEXT_FIELDS)
        if context:
            line += " [" + " ".join(f"{key}={value}" for key, value in context.items()) + "]"
        line += " " + record.getMessage()
        if record.exc_info:
            line += " " + self.formatException(record.exc_info)
        return line


class JSONFormatter(logging.Formatter):
    """One JSON object per record, for log shippers."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "component": _component(record),
            "message": record.getMessage(),
        }
        payload.update(_fields(record, CONTEXT_FIELDS + RESULT_FIELDS))
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class ContextAdapter(logging.LoggerAdapter[logging.Logger]):
    """Stamps bound context fields onto every record.

    Per-call ``extra`` is kept; bound fields win on a key clash.
    """

    def process(
        self, msg: str, kwargs: MutableMapping[str, Any]
    ) -> tuple[str, MutableMapping[str, Any]]:
        kwargs["extra"] = {**kwargs.get("extra", {}), **(self.extra or {})}
        return msg, kwargs

    def with_context(self, **context: Any) -> ContextAdapter:
        """Return a child adapter; this adapter's fields are left as they are."""
        return ContextAdapter(self.logger, {**(self.extra or {}), **context})


class RelayLogger(logging.Logger):
    def with_context(self, **context: Any) -> ContextAdapter:
        """Bind context fields such as ``backend`` or ``run_id`` to this logger."""
        return ContextAdapter(self, context)


logging.setLoggerClass(RelayLogger)


def get_logger(name: str) -> RelayLogger:
    return logging.getLogger(name)  # type: ignore[return-value]


def setup_logging(
    level: str = "INFO",
    json_format: bool = False,
    diagnostic_tags: str = "",
    replace_handlers: bool = True,
) -> None:
    """Send logs to stderr with the relay formatters.

    Args:
        level: Level name such as ``DEBUG`` or ``WARNING``. Unknown names
            fall back to INFO.
        json_format: Emit JSON records instead of structured text.
        diagnostic_tags: Comma-separated tags whose DEBUG records are
            emitted, or ``*`` for all of them.
        replace_handlers: Remove handlers already on the root logger.
    """
    numeric_level = logging.getLevelNamesMapping().get(level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(numeric_level)
    handler.setFormatter(JSONFormatter() if json_format else StructuredFormatter())
    handler.addFilter(DiagnosticFilter.from_config_string(diagnostic_tags))

    root = logging.getLogger()
    if replace_handlers:
        for existing in list(root.handlers):
            root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(numeric_level)

    logging.getLogger("relay").setLevel(numeric_level)
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(max(numeric_level, logging.WARNING))


_SUMMARY_LEVELS = {
    VerdictKind.FAILED: logging.ERROR,
    VerdictKind.TIMED_OUT: logging.WARNING,
    VerdictKind.ABORTED: logging.WARNING,
}


def log_verdict_summary(
    logger: logging.Logger | logging.LoggerAdapter[logging.Logger],
    workflow: str,
    result: OrchestrationResult,
    elapsed_seconds: float,
) -> None:
    """Log the outcome of one orchestration at a level matching its verdict."""
    verdict = result.verdict
    reason = f" ({verdict.reason})" if verdict.reason else ""
    logger.log(
        _SUMMARY_LEVELS.get(verdict.kind, logging.INFO),
        "Workflow %s finished: %s%s after %.1fs",
        workflow,
        verdict.kind.value.upper(),
        reason,
        elapsed_seconds,
        extra={"verdict": verdict.kind.value, "reference_url": result.reference_url},
    )
