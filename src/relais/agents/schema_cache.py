"""Explicit cache of pydantic ``TypeAdapter`` instances keyed by schema identity."""

from __future__ import annotations

from typing import Any, TypeVar

from pydantic import TypeAdapter, ValidationError

T = TypeVar("T")


class SchemaCache:
    """Build each adapter once per process and hand the same instance back.

    Entries are never invalidated; schemas are static types. One cache is created
    by the CLI and passed into every agent invoker.
    """

    __slots__ = ("_adapters", "_builds")

    def __init__(self) -> None:
        self._adapters: dict[Any, TypeAdapter[Any]] = {}
        self._builds = 0

    def adapter(self, schema: type[T]) -> TypeAdapter[T]:
        cached = self._adapters.get(schema)
        if cached is None:
            cached = TypeAdapter(schema)
            self._adapters[schema] = cached
            self._builds += 1
        return cached

    def validate(self, schema: type[T], payload: object) -> T:
        return self.adapter(schema).validate_python(payload)

    @property
    def builds(self) -> int:
        return self._builds

    def __len__(self) -> int:
        return len(self._adapters)

    def __contains__(self, schema: object) -> bool:
        return schema in self._adapters


def format_validation_errors(exc: ValidationError, *, limit: int = 20) -> list[str]:
    """Flatten pydantic errors into ``loc: message`` strings for diagnostics."""

    messages: list[str] = []
    for error in exc.errors()[:limit]:
        location = ".".join(str(part) for part in error.get("loc", ())) or "<root>"
        messages.append(f"{location}: {error.get('msg', 'invalid value')}")
    return messages


__all__ = ["SchemaCache", "format_validation_errors"]
