"""ActionRegistry: registers actions and dispatches tool calls from the model.

Dispatch never raises: unknown tools, invalid arguments and exceptions
inside actions all come back as a failed ActionResult, which the
coordinator feeds to the model as an ordinary tool result.
"""

from __future__ import annotations

import logging
import re
from typing import Any

from palaver.actions.base import Action, ActionResult, ToolContext
from palaver.conversation.schemas import ToolSchema
from palaver.errors import ConfigurationError

logger = logging.getLogger(__name__)

_SNAKE_CASE = re.compile(r"^[a-z][a-z0-9]*(_[a-z0-9]+)*$")


class ActionRegistry:
    def __init__(self) -> None:
        self._actions: dict[str, Action] = {}

    def register(self, action: Action) -> None:
        """Register an action instance under its schema name.

        Raises:
            ConfigurationError: name is not snake_case or already registered.
        """
        name = action.schema().name
        if not _SNAKE_CASE.match(name):
            raise ConfigurationError(f"Tool name must be snake_case: {name!r}")
        if name in self._actions:
            raise ConfigurationError(f"Duplicate tool name: {name}")
        self._actions[name] = action
        logger.debug("Registered tool %s", name)

    def get_schemas(self, names: list[str] | None = None) -> list[ToolSchema]:
        """Schemas in registration order, optionally filtered to ``names``."""
        if names is None:
            return [action.schema() for action in self._actions.values()]
        wanted = set(names)
        for unknown in wanted - self._actions.keys():
            logger.warning("Personality references unknown tool: %s", unknown)
        return [action.schema() for name, action in self._actions.items() if name in wanted]

    async def execute(self, name: str, params: dict[str, Any], context: ToolContext) -> ActionResult:
        action = self._actions.get(name)
        if action is None:
            return ActionResult.fail(f"Unknown tool: {name}")
        try:
            return await action.execute(params, context)
        except Exception as e:
            logger.exception("Tool execution error for %s", name)
            return ActionResult.fail(f"Tool error: {e}")

    def __contains__(self, name: str) -> bool:
        return name in self._actions

    def __len__(self) -> int:
        return len(self._actions)
