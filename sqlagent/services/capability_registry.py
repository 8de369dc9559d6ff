"""Capability Registry — explicit mapping from capability name to typed executor.

Invariants:
    - Every name -> capability mapping is visible; no getattr magic, no auto-discovery
    - The set is fixed at construction; register() rejects duplicate names
    - invoke() validates input against the capability's pydantic model before executing
    - Unknown names raise UnknownCapabilityError; bad input raises InputValidationError
    - No policy decisions here: confirmation belongs to the ConfirmationGate

Design Decisions:
    - Input contracts are pydantic models: one definition yields both validation and the
      JSON schema sent to the model in the tool declaration
    - sql_field marks SQL-bearing capabilities so the gate can classify the statement and
      the stream can preview it, without either knowing capability internals
"""

import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ValidationError

from sqlagent.core.errors import (
    DuplicateCapabilityError, ErrorContext, InputValidationError, UnknownCapabilityError,
)

logger = logging.getLogger(__name__)

Executor = Callable[[Any], Awaitable[dict]]


@dataclass(frozen=True)
class Capability:
    """A named, schema-typed operation the model may request."""
    name: str
    description: str
    input_model: type[BaseModel]
    execute: Executor
    sql_field: str | None = None

    def declaration(self) -> dict:
        """Anthropic tool declaration."""
        schema = self.input_model.model_json_schema()
        schema.pop("title", None)
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": schema,
        }


class CapabilityRegistry:
    """Fixed set of capabilities, looked up by name."""

    def __init__(self, capabilities: Iterable[Capability] = ()):
        self._capabilities: dict[str, Capability] = {}
        for capability in capabilities:
            self.register(capability)

    def register(self, capability: Capability) -> None:
        if capability.name in self._capabilities:
            raise DuplicateCapabilityError(capability.name)
        self._capabilities[capability.name] = capability

    def __contains__(self, name: object) -> bool:
        return name in self._capabilities

    def __len__(self) -> int:
        return len(self._capabilities)

    @property
    def names(self) -> list[str]:
        return list(self._capabilities)

    def get(self, name: str, context: ErrorContext | None = None) -> Capability:
        capability = self._capabilities.get(name)
        if capability is None:
            raise UnknownCapabilityError(name, context)
        return capability

    def declarations(self) -> list[dict]:
        return [c.declaration() for c in self._capabilities.values()]

    def validate(
        self, name: str, input_data: dict, context: ErrorContext | None = None,
    ) -> BaseModel:
        """Parse input against the capability's contract."""
        capability = self.get(name, context)
        try:
            return capability.input_model.model_validate(input_data)
        except ValidationError as e:
            raise InputValidationError(
                name, e.errors(include_url=False, include_input=False), context,
            )

    def sql_of(self, name: str, input_data: dict) -> str | None:
        """Literal SQL of an SQL-bearing call, or None."""
        capability = self._capabilities.get(name)
        if capability is None or capability.sql_field is None:
            return None
        value = (input_data or {}).get(capability.sql_field)
        return value if isinstance(value, str) else None

    async def invoke(
        self, name: str, input_data: dict, context: ErrorContext | None = None,
    ) -> dict:
        """Validate then execute. Executor exceptions propagate to the caller."""
        parsed = self.validate(name, input_data, context)
        return await self.get(name, context).execute(parsed)
