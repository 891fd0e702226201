from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _json_default(o: Any) -> Any:
    if isinstance(o, (bytes, bytearray)):
        return bytes(o).hex()
    # Decimal prices and anything else unknown print as text
    return str(o)


def format_field(value: Any) -> str:
    """Render one ``key=value`` field: ids as hex, containers as compact JSON."""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).hex()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, ensure_ascii=False, separators=(",", ":"), default=_json_default)
    return str(value)


@dataclass
class JsonLogger:
    """Structured logger writing ``event key=value ...`` lines.

    ``bind`` returns a child that prefixes every line with fixed context
    (``component=lifecycle``), sharing the same stdlib logger.
    """

    name: str = "perpdex"
    level: int = logging.INFO
    context: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self._logger = logging.getLogger(self.name)
        self._logger.setLevel(self.level)
        if not self._logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(logging.Formatter(LOG_FORMAT))
            self._logger.addHandler(handler)
        self._logger.propagate = False

    def bind(self, **fields: Any) -> "JsonLogger":
        return JsonLogger(name=self.name, level=self._logger.level, context={**self.context, **fields})

    def log(self, level: int, event: str, **fields: Any) -> None:
        if not self._logger.isEnabledFor(level):
            return
        merged = {**self.context, **fields}
        parts = [event] + [f"{k}={format_field(v)}" for k, v in merged.items()]
        self._logger.log(level, " ".join(parts))

    def debug(self, event: str, **fields: Any) -> None:
        self.log(logging.DEBUG, event, **fields)

    def info(self, event: str, **fields: Any) -> None:
        self.log(logging.INFO, event, **fields)

    def warn(self, event: str, **fields: Any) -> None:
        self.log(logging.WARNING, event, **fields)

    def error(self, event: str, **fields: Any) -> None:
        self.log(logging.ERROR, event, **fields)
