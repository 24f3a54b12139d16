"""
Structured logging on top of the standard ``logging`` module.

Log calls read ``logger.warning("dead_letter", item_id=..., attempts=3)``:
the message is a short ``snake_case`` event name and everything else is a
field. [Logger][pushbrotr.core.logger.Logger] stores the fields on the record
under ``structured_kv``; two consumers read them back:

* [StructuredFormatter][pushbrotr.core.logger.StructuredFormatter], installed
  on the root handler by the CLI, renders ``level name message key=value ...``.
* [LogBuffer][pushbrotr.services.common.telemetry.LogBuffer] keeps the fields
  as the ``data`` of each entry served by ``/logs``.

Plain ``logging.getLogger()`` records carry no fields and render as
``level name message``.

Examples:
    ```python
    logger = Logger("notifier")
    logger.info("relay_polled", relay="wss://relay.example.com", events=12)
    # info notifier relay_polled relay=wss://relay.example.com events=12
    ```
"""

import datetime
import json
import logging
from functools import partialmethod
from typing import Any


FIELDS_ATTR = "structured_kv"
DEFAULT_MAX_VALUE_LENGTH = 1000

_NEEDS_QUOTES = frozenset(" =\"'")


def _truncate(value: str, max_length: int | None) -> str:
    if not max_length or len(value) <= max_length:
        return value
    return f"{value[:max_length]}...<truncated {len(value) - max_length} chars>"


def _quote(value: str) -> str:
    if value and _NEEDS_QUOTES.isdisjoint(value):
        return value
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def format_kv_pairs(
    kwargs: dict[str, Any],
    max_value_length: int | None = DEFAULT_MAX_VALUE_LENGTH,
    prefix: str = " ",
) -> str:
    """Render ``kwargs`` as ``key=value`` pairs joined by spaces.

    Values that are empty or contain a space, ``=`` or a quote are wrapped
    in double quotes with ``\\`` and ``"`` escaped, so one line always splits
    back into the same pairs. ``prefix`` is only added when there is at
    least one pair.
    """
    if not kwargs:
        return ""
    return prefix + " ".join(
        f"{key}={_quote(_truncate(str(value), max_value_length))}" for key, value in kwargs.items()
    )


class StructuredFormatter(logging.Formatter):
    """``level name message key=value ...``, then the traceback if any."""

    def format(self, record: logging.LogRecord) -> str:
        line = f"{record.levelname.lower()} {record.name} {record.getMessage()}"
        line += format_kv_pairs(getattr(record, FIELDS_ATTR, None) or {})
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


class Logger:
    """A named ``logging.Logger`` whose methods take fields as keyword arguments.

    String values longer than ``max_value_length`` (default 1000 characters)
    are cut before they reach any handler. With ``json_output=True`` each
    record's message is a single JSON object holding the timestamp, level,
    logger name, message and fields.
    """

    def __init__(
        self,
        name: str,
        *,
        json_output: bool = False,
        max_value_length: int | None = None,
    ) -> None:
        self._logger = logging.getLogger(name)
        self._json_output = json_output
        self._max_value_length = (
            DEFAULT_MAX_VALUE_LENGTH if max_value_length is None else max_value_length
        )

    @property
    def name(self) -> str:
        return self._logger.name

    def _fields(self, kwargs: dict[str, Any]) -> dict[str, Any]:
        limit = self._max_value_length
        return {
            key: _truncate(str(value), limit) if limit and len(str(value)) > limit else value
            for key, value in kwargs.items()
        }

    def _log(self, level: int, msg: str, *, exc_info: bool = False, **kwargs: Any) -> None:
        if not self._logger.isEnabledFor(level):
            return
        fields = self._fields(kwargs)
        if self._json_output:
            document = {
                "timestamp": datetime.datetime.now(datetime.UTC).isoformat(),
                "level": logging.getLevelName(level).lower(),
                "service": self._logger.name,
                "message": msg,
                **fields,
            }
            self._logger.log(level, json.dumps(document, default=str), exc_info=exc_info)
        else:
            extra = {FIELDS_ATTR: fields} if fields else None
            self._logger.log(level, msg, extra=extra, exc_info=exc_info)

    debug = partialmethod(_log, logging.DEBUG)
    info = partialmethod(_log, logging.INFO)
    warning = partialmethod(_log, logging.WARNING)
    error = partialmethod(_log, logging.ERROR)
    critical = partialmethod(_log, logging.CRITICAL)
    exception = partialmethod(_log, logging.ERROR, exc_info=True)
