"""Action base class and result/context types.

An action is a named, schema-described side effect the model can request.
Each subclass declares its JSON schema statically (so schemas are known
without instantiating anything) and a pydantic ``Params`` model used to
validate incoming arguments before ``perform`` runs.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, ClassVar

from pydantic import BaseModel, ValidationError

from palaver.conversation.schemas import ToolSchema


class ActionResult(BaseModel):
    """Outcome returned to the model as the tool-result payload."""

    success: bool
    message: str = ""
    data: dict[str, Any] | None = None
    error: str | None = None

    @classmethod
    def ok(cls, message: str, data: dict[str, Any] | None = None) -> ActionResult:
        return cls(success=True, message=message, data=data)

    @classmethod
    def fail(cls, error: str) -> ActionResult:
        return cls(success=False, error=error)

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


@dataclass
class ToolContext:
    """Per-call context handed to actions."""

    chat_id: str | None = None


def _format_validation_error(e: ValidationError) -> str:
    problems = []
    for err in e.errors():
        location = ".".join(str(part) for part in err["loc"]) or "params"
        problems.append(f"{location}: {err['msg']}")
    return "; ".join(problems)


class Action(ABC):
    name: ClassVar[str]
    description: ClassVar[str]
    parameters: ClassVar[dict[str, Any]]
    Params: ClassVar[type[BaseModel]]

    @classmethod
    def schema(cls) -> ToolSchema:
        return ToolSchema(name=cls.name, description=cls.description, parameters=cls.parameters)

    async def execute(self, params: dict[str, Any], context: ToolContext) -> ActionResult:
        """Validate ``params`` then run the action.

        Invalid parameters produce a failed result; exceptions from
        ``perform`` propagate to the registry.
        """
        try:
            parsed = self.Params.model_validate(params)
        except ValidationError as e:
            return ActionResult.fail(f"Invalid parameters for {self.name}: {_format_validation_error(e)}")
        return await self.perform(parsed, context)

    @abstractmethod
    async def perform(self, params: Any, context: ToolContext) -> ActionResult:
        ...
