"""Tool abstraction.

A tool is a named, schema-described capability the model may ask to have
invoked. Handlers are async callables owned by the domain services; the
runtime never calls them directly, only through ``ToolRegistry.execute``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from pydantic import BaseModel, ConfigDict, Field, field_validator

from opsagent.domain.context import AgentDomain

if TYPE_CHECKING:
    from opsagent.domain.context import ExecutionContext


class ApprovalCategory(str, Enum):
    AUTO_APPROVE = "AUTO_APPROVE"
    REQUEST_APPROVAL = "REQUEST_APPROVAL"
    ALWAYS_ASK = "ALWAYS_ASK"


class ToolDefinition(BaseModel):
    """Schema sent to the model. Immutable once registered."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    description: str
    input_schema: dict[str, Any] = Field(default_factory=lambda: {'type': 'object', 'properties': {}})

    @field_validator('input_schema')
    @classmethod
    def _object_schema(cls, value: dict[str, Any]) -> dict[str, Any]:
        if value.get('type') != 'object':
            raise ValueError("input_schema must be a JSON schema of type 'object'")
        return {**value, 'properties': value.get('properties', {})}

    def to_model_schema(self) -> dict[str, Any]:
        return {
            'name': self.name,
            'description': self.description,
            'input_schema': self.input_schema,
        }


@dataclass
class ToolResult:
    success: bool
    data: Any = None
    error: str | None = None
    requires_approval: bool = False
    approval_details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, data: Any = None) -> 'ToolResult':
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str) -> 'ToolResult':
        return cls(success=False, error=error)


ToolHandler = Callable[[dict[str, Any], 'ExecutionContext'], Awaitable[ToolResult]]


@dataclass(frozen=True)
class RegisteredTool:
    definition: ToolDefinition
    domain: AgentDomain
    handler: ToolHandler
    approval_category: ApprovalCategory = ApprovalCategory.AUTO_APPROVE

    @property
    def name(self) -> str:
        return self.definition.name


def create_tool(
    name: str,
    description: str,
    properties: dict[str, Any],
    required: list[str] | None = None,
    *,
    domain: AgentDomain,
    handler: ToolHandler,
    approval_category: ApprovalCategory = ApprovalCategory.AUTO_APPROVE,
) -> RegisteredTool:
    """Helper to build a ``RegisteredTool`` from plain schema pieces."""
    return RegisteredTool(
        definition=ToolDefinition(
            name=name,
            description=description,
            input_schema={'type': 'object', 'properties': properties, 'required': list(required or [])},
        ),
        domain=domain,
        handler=handler,
        approval_category=approval_category,
    )
