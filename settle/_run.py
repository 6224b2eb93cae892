"""
Graph runner — sugar over nodnod.

Builds an agent for the target node (dependencies are auto-discovered),
injects the given values by their runtime type and returns the target.

    node = await compose(ReplayResultNode, call)
"""

from __future__ import annotations

from collections.abc import Callable, Coroutine
from typing import Any, cast

from nodnod import EventLoopAgent, Node, Scope, Value


async def compose[T](target: type[T], *inputs: object) -> T:
    agent = EventLoopAgent.build({cast(type[Node[Any, Any]], target)})

    async with Scope(detail="compose") as scope:
        for value in inputs:
            scope.push(Value(cast(type[Any], type(value)), value))

        run_method = cast(
            Callable[[Scope, dict[type[Any], Scope]], Coroutine[Any, Any, None]],
            getattr(agent, "run"),
        )
        await run_method(scope, {})

        result = scope.get(target)
        if result is None:
            raise KeyError(f"{target.__name__} not found in scope")
        return cast(T, result.value)


__all__ = ("compose",)
