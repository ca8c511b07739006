from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, List

from threadline.errors import StepBudgetExceededError

logger = logging.getLogger(__name__)

MAX_AGENT_STEPS = 5

ToolExecutor = Callable[..., Awaitable[Any]]


class ToolPipeline:
    """Bounded orchestrator over a declared registry of named tools.

    Each tool call consumes one step; a run that needs more than
    ``max_steps`` calls fails with StepBudgetExceededError. Instances are
    per-request and must not be shared between calls.
    """

    def __init__(self, max_steps: int = MAX_AGENT_STEPS) -> None:
        self.max_steps = max_steps
        self.tools: Dict[str, ToolExecutor] = {}
        self.steps: List[str] = []

    def register(self, name: str, executor: ToolExecutor) -> None:
        self.tools[name] = executor

    async def call_tool(self, name: str, **kwargs: Any) -> Any:
        if name not in self.tools:
            raise KeyError(f"Unknown tool: {name}")
        if len(self.steps) >= self.max_steps:
            raise StepBudgetExceededError(
                f"Step budget of {self.max_steps} exhausted before calling {name}"
            )
        self.steps.append(name)
        logger.debug(f"{type(self).__name__} step {len(self.steps)}: {name}")
        return await self.tools[name](**kwargs)
