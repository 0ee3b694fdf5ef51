"""Typed operation descriptors."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from pydantic import TypeAdapter, ValidationError

from .exceptions import ErrorKindCodes, PermanentError
from .models import NO_FALLBACK


@dataclass
class OperationDescriptor:
    """Describes one remote operation.

    ``result_type`` is any type pydantic can validate (``dict[str, Any]``,
    a ``BaseModel`` subclass, ``list[Model]`` ...). ``None`` skips validation.
    """

    name: str
    result_type: Any = None
    fallback: Any = NO_FALLBACK
    cache_ttl_ms: int | None = None
    _adapter: TypeAdapter[Any] | None = field(default=None, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if self.result_type is not None:
            self._adapter = TypeAdapter(self.result_type)

    def validate(self, value: Any) -> Any:
        if self._adapter is None or value is None:
            return value
        try:
            return self._adapter.validate_python(value)
        except ValidationError as e:
            raise PermanentError(
                ErrorKindCodes.INVALID_RESULT,
                f"{self.name}: result failed validation ({e.error_count()} errors)",
                cause=e,
            ) from e


class OperationRegistry:
    """Name to :class:`OperationDescriptor` lookup."""

    def __init__(self, descriptors: list[OperationDescriptor] | None = None) -> None:
        self._descriptors: dict[str, OperationDescriptor] = {}
        for descriptor in descriptors or []:
            self.add(descriptor)

    def add(self, descriptor: OperationDescriptor) -> OperationDescriptor:
        self._descriptors[descriptor.name] = descriptor
        return descriptor

    def register(
        self,
        name: str,
        result_type: Any = None,
        *,
        fallback: Any = NO_FALLBACK,
        cache_ttl_ms: int | None = None,
    ) -> OperationDescriptor:
        return self.add(OperationDescriptor(name, result_type, fallback, cache_ttl_ms))

    def get(self, name: str) -> OperationDescriptor | None:
        return self._descriptors.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._descriptors

    def fallback_for(self, name: str) -> Any:
        descriptor = self._descriptors.get(name)
        return descriptor.fallback if descriptor is not None else NO_FALLBACK

    def validate(self, name: str, value: Any) -> Any:
        descriptor = self._descriptors.get(name)
        if descriptor is None:
            return value
        return descriptor.validate(value)
