"""Flat string-to-string variable bag carried by every run."""

from __future__ import annotations

import json
import logging
import re
from collections.abc import MutableMapping
from typing import Any, Iterator, Mapping

from .errors import ContextFormatError

logger = logging.getLogger(__name__)

TASK_KEY = "task"
DRY_RUN_KEY = "dry_run"
RUN_ID_KEY = "run_id"

# Written once when a run is created, never by step output.
RESERVED_KEYS = (TASK_KEY, DRY_RUN_KEY)

_OUTPUT_LINE_RE = re.compile(r"^([A-Z][A-Z0-9_]*):\s*(.*?)\s*$")


def coerce_value(value: Any) -> str:
    """Return the canonical string form of a context value."""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    if isinstance(value, (int, float)):
        return str(value)
    return json.dumps(value, separators=(",", ":"), sort_keys=True, default=str)


class RunContext(MutableMapping):
    """Ordered mapping that only ever holds string keys and string values.

    Values of any other type are converted on insert with
    :func:`coerce_value`, so booleans become ``"true"``/``"false"`` and
    numbers their ``str`` form.
    """

    def __init__(self, data: Mapping[Any, Any] | None = None) -> None:
        self._data: dict[str, str] = {}
        if data:
            self.update(data)

    def __getitem__(self, key: str) -> str:
        return self._data[key]

    def __setitem__(self, key: Any, value: Any) -> None:
        self._data[str(key)] = coerce_value(value)

    def __delitem__(self, key: str) -> None:
        del self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"RunContext({self._data!r})"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, RunContext):
            return self._data == other._data
        if isinstance(other, Mapping):
            return self._data == dict(other)
        return NotImplemented

    @classmethod
    def seed(
        cls, static: Mapping[Any, Any] | None, task: str, dry_run: bool = False
    ) -> "RunContext":
        """Build the initial context of a new run."""
        context = cls(static or {})
        context[TASK_KEY] = task
        context[DRY_RUN_KEY] = bool(dry_run)
        return context

    def merge(
        self, updates: Mapping[Any, Any], protect_reserved: bool = True
    ) -> list[str]:
        """Apply ``updates`` and return the keys actually written.

        ``run_id`` is injected per claim and is never stored, whatever
        ``protect_reserved`` says.
        """
        written: list[str] = []
        for key, value in updates.items():
            key = str(key)
            if key == RUN_ID_KEY:
                logger.debug(f"Ignoring update to transient context key '{key}'")
                continue
            if protect_reserved and key in RESERVED_KEYS and key in self._data:
                logger.debug(f"Ignoring update to reserved context key '{key}'")
                continue
            self[key] = value
            written.append(key)
        return written

    def with_run_id(self, run_id: str) -> dict[str, str]:
        """Return a plain dict copy with the transient ``run_id`` key set."""
        data = dict(self._data)
        data[RUN_ID_KEY] = run_id
        return data

    def to_dict(self) -> dict[str, str]:
        return dict(self._data)

    def to_json(self) -> str:
        return json.dumps(self._data)

    @classmethod
    def from_json(cls, text: str | None) -> "RunContext":
        if not text:
            return cls()
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ContextFormatError(f"Run context is not valid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise ContextFormatError(
                f"Run context must be a JSON object, got {type(data).__name__}"
            )
        return cls(data)


def parse_output_values(output: str | None) -> dict[str, str]:
    """Collect ``KEY: value`` lines from step output.

    Keys must be upper case (``REPO``, ``BRANCH_NAME``) and are returned lower
    cased so they can be referenced as ``{{repo}}`` in later steps. The last
    occurrence of a key wins.
    """
    values: dict[str, str] = {}
    if not output:
        return values
    for line in output.splitlines():
        match = _OUTPUT_LINE_RE.match(line.strip())
        if match:
            values[match.group(1).lower()] = match.group(2)
    return values
