"""Static registry mapping optimization task types to handlers."""

from __future__ import annotations

import asyncio
import inspect
import logging
from types import MappingProxyType
from typing import Any, Dict, Iterable, Mapping, Optional

from engines.base import OptimizationHandler, OptimizationResult
from engines.optimizers import FALLBACK_OPTIMIZATIONS, FALLBACK_RECOMMENDATIONS, builtin_handlers

logger = logging.getLogger(__name__)

DEFAULT_HANDLER_TIMEOUT = 10.0


def generic_fallback(task_type: str, error: Optional[str] = None) -> OptimizationResult:
    return OptimizationResult(
        task_type=task_type,
        recommendations=list(FALLBACK_RECOMMENDATIONS.get(task_type, ["Generic optimization recommendation"])),
        optimizations=list(FALLBACK_OPTIMIZATIONS.get(task_type, [])),
        fallback=True,
        error=error,
    )


class OptimizationActionRegistry:
    """Binds each task type to exactly one handler at construction time."""

    def __init__(
        self,
        handlers: Optional[Iterable[OptimizationHandler]] = None,
        *,
        timeout: float = DEFAULT_HANDLER_TIMEOUT,
    ) -> None:
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        self.timeout = timeout
        registry: Dict[str, OptimizationHandler] = {}
        for handler in handlers if handlers is not None else builtin_handlers():
            task_type = getattr(handler, "task_type", "")
            if not task_type:
                raise ValueError(f"Handler {handler!r} does not declare a task_type")
            if task_type in registry:
                raise ValueError(f"Duplicate handler for task type: {task_type}")
            registry[task_type] = handler
        self._handlers = MappingProxyType(registry)

    @property
    def task_types(self) -> tuple:
        return tuple(self._handlers)

    def handler_for(self, task_type: str) -> Optional[OptimizationHandler]:
        return self._handlers.get(task_type)

    def _fallback(self, task_type: str, context: Mapping[str, Any], error: str) -> OptimizationResult:
        handler = self._handlers.get(task_type)
        if handler is None:
            return generic_fallback(task_type, error)
        try:
            return handler.fallback(context, error)
        except Exception:
            logger.exception("Fallback for %s failed; using generic fallback", task_type)
            return generic_fallback(task_type, error)

    async def activate(self, task_type: str, context: Mapping[str, Any]) -> OptimizationResult:
        """Run the handler for ``task_type``; failures and timeouts yield the fallback."""

        handler = self._handlers.get(task_type)
        if handler is None:
            logger.warning("No handler registered for task type %s", task_type)
            return self._fallback(task_type, context, "unknown task type")

        try:
            if inspect.iscoroutinefunction(handler.handle):
                pending = handler.handle(context)
            else:
                pending = asyncio.to_thread(handler.handle, context)
            result = await asyncio.wait_for(pending, timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning("Handler for %s exceeded %.1fs timeout", task_type, self.timeout)
            return self._fallback(task_type, context, "timeout")
        except Exception as exc:
            logger.error("Handler for %s failed: %s", task_type, exc, exc_info=True)
            return self._fallback(task_type, context, str(exc) or type(exc).__name__)

        if not isinstance(result, OptimizationResult):
            logger.error("Handler for %s returned %s instead of OptimizationResult", task_type, type(result).__name__)
            return self._fallback(task_type, context, "invalid result")
        return result
