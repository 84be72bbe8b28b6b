"""
Structured Logging for the DVM.

Supports two output formats:
- Key-value pairs (default): message key1=value1 key2="value with spaces"
- JSON (for cloud/production): {"message": "...", "key1": "value1", ...}

Context fields can be bound once and repeated on every line, which is how
the job executor tags all of a job's log lines with its request id.

Usage:
    from core.logger import Logger

    logger = Logger("dvm")
    logger.info("listening_started", relays=2, kinds="5050,5100")

    job_logger = logger.bind(job_id="ab12cd34")
    job_logger.info("invoice_created", amount_sats=25)
    # invoice_created job_id=ab12cd34 amount_sats=25
"""

import json
import logging
from typing import Any, Optional


class Logger:
    """
    Logger wrapper that accepts keyword arguments as structured fields.

    Values with spaces, equals signs, or quotes are quoted and escaped in
    key=value mode. Bound context fields come first, call fields override
    them on collision.
    """

    def __init__(
        self,
        name: str,
        json_output: bool = False,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        """
        Initialize logger.

        Args:
            name: Logger name (typically service/module name)
            json_output: If True, output JSON instead of key=value format
            context: Fields prepended to every message
        """
        self._logger = logging.getLogger(name)
        self._json_output = json_output
        self._context: dict[str, Any] = dict(context or {})

    @property
    def name(self) -> str:
        return self._logger.name

    def bind(self, **fields: Any) -> "Logger":
        """Return a logger that repeats ``fields`` on every message."""
        return Logger(
            self._logger.name,
            json_output=self._json_output,
            context={**self._context, **fields},
        )

    def _format_value(self, value: Any) -> str:
        s = str(value)
        if not s or " " in s or "=" in s or '"' in s or "'" in s:
            escaped = s.replace("\\", "\\\\").replace('"', '\\"')
            return f'"{escaped}"'
        return s

    def _format_message(self, msg: str, kwargs: dict[str, Any]) -> str:
        fields = {**self._context, **kwargs}
        if self._json_output:
            return json.dumps({"message": msg, **fields}, default=str)

        if not fields:
            return msg

        pairs = " ".join(f"{k}={self._format_value(v)}" for k, v in fields.items())
        return f"{msg} {pairs}"

    def debug(self, msg: str, **kwargs: Any) -> None:
        self._logger.debug(self._format_message(msg, kwargs))

    def info(self, msg: str, **kwargs: Any) -> None:
        self._logger.info(self._format_message(msg, kwargs))

    def warning(self, msg: str, **kwargs: Any) -> None:
        self._logger.warning(self._format_message(msg, kwargs))

    def error(self, msg: str, **kwargs: Any) -> None:
        self._logger.error(self._format_message(msg, kwargs))

    def critical(self, msg: str, **kwargs: Any) -> None:
        self._logger.critical(self._format_message(msg, kwargs))

    def exception(self, msg: str, **kwargs: Any) -> None:
        self._logger.exception(self._format_message(msg, kwargs))
