"""Working state shared by the steps of one Run."""

from __future__ import annotations

import copy
from typing import Any, Iterator, Mapping, Optional

from pydantic_core import to_jsonable_python

from .errors import UndeclaredAttributeError


class WorkingState:
    """Mutable, explicitly declared key/value context for step bodies.

    Attributes are declared up front (``providing=`` on the job, or the
    stored ``job_args`` on resume). Reading or writing anything else raises
    ``UndeclaredAttributeError``; use :meth:`declare` and :meth:`discard`
    to change the attribute set on purpose.
    """

    def __init__(self, declared: Optional[Mapping[str, Any]] = None) -> None:
        object.__setattr__(self, "_values", dict(declared or {}))

    def _check(self, name: str) -> None:
        if name not in self._values:
            raise UndeclaredAttributeError(name, sorted(self._values))

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            raise AttributeError(name)
        self._check(name)
        return self._values[name]

    def __setattr__(self, name: str, value: Any) -> None:
        self._check(name)
        self._values[name] = value

    def __getitem__(self, name: str) -> Any:
        self._check(name)
        return self._values[name]

    def __setitem__(self, name: str, value: Any) -> None:
        self._check(name)
        self._values[name] = value

    def __contains__(self, name: object) -> bool:
        return name in self._values

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, WorkingState):
            return self._values == other._values
        if isinstance(other, Mapping):
            return self._values == dict(other)
        return NotImplemented

    def __repr__(self) -> str:
        return f"WorkingState({self._values!r})"

    def declare(self, name: str, default: Any = None) -> None:
        """Add ``name`` to the attribute set, keeping any existing value."""
        self._values.setdefault(name, default)

    def discard(self, name: str) -> None:
        """Remove ``name`` from the attribute set."""
        self._values.pop(name, None)

    def keys(self) -> list[str]:
        return list(self._values)

    def snapshot(self) -> dict[str, Any]:
        """Full JSON-compatible copy of every attribute, unset values included."""
        return to_jsonable_python(copy.deepcopy(self._values))

    def restore(self, snapshot: Mapping[str, Any]) -> None:
        """Overwrite values from a stored snapshot.

        Attributes the snapshot lacks keep their current value, so defaults
        declared after the snapshot was taken stay readable.
        """
        self._values.update(copy.deepcopy(dict(snapshot)))

    @classmethod
    def from_snapshot(cls, snapshot: Mapping[str, Any]) -> "WorkingState":
        return cls(copy.deepcopy(dict(snapshot)))
