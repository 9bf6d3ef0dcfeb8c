"""HTTP client for the external workflow-automation service.

Optimization tasks can be forwarded to a webhook that runs the actual
automation.  Requests are sent with ``requests`` in a worker thread and
retried with exponential backoff on transport errors and 5xx responses.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Mapping, Optional

import requests

from engines.base import OptimizationHandler, OptimizationResult
from engines.optimizers import TASK_TYPES, builtin_handlers

logger = logging.getLogger(__name__)


class AutomationError(RuntimeError):
    """Raised when the automation webhook cannot produce a usable result."""


def _plain(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {str(k): _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_plain(v) for v in value]
    return value


def _string_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(item) for item in value if item is not None]


def parse_result(task_type: str, payload: Any) -> OptimizationResult:
    """Convert a webhook response body into an :class:`OptimizationResult`."""

    if not isinstance(payload, Mapping):
        raise AutomationError("Automation response must be a JSON object")
    impact = payload.get("measured_impact") or {}
    if not isinstance(impact, Mapping):
        raise AutomationError("measured_impact must be an object")
    return OptimizationResult(
        task_type=task_type,
        recommendations=_string_list(payload.get("recommendations")),
        optimizations=_string_list(payload.get("optimizations")),
        measured_impact=dict(impact),
        resolves_issue=bool(payload.get("resolves_issue", False)),
    )


class WebhookOptimizationHandler(OptimizationHandler):
    """Forward one task type to the automation webhook."""

    def __init__(
        self,
        task_type: str,
        url: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        timeout: float = 5.0,
        max_attempts: int = 3,
        base_delay: float = 0.5,
        local: Optional[OptimizationHandler] = None,
    ) -> None:
        if not url.startswith(("http://", "https://")):
            raise ValueError(f"Invalid automation webhook URL: {url}")
        self.task_type = task_type
        self.url = url
        self.headers = dict(headers or {})
        self.timeout = timeout
        self.max_attempts = max(1, max_attempts)
        self.base_delay = base_delay
        self.local = local

    async def handle(self, context: Mapping[str, Any]) -> OptimizationResult:
        body = {"task_type": self.task_type, "context": _plain(context)}
        delay = self.base_delay
        last_error = "no attempt made"
        for attempt in range(1, self.max_attempts + 1):
            try:
                response = await asyncio.to_thread(
                    requests.post,
                    self.url,
                    json=body,
                    headers=self.headers,
                    timeout=self.timeout,
                )
                if response.status_code < 500:
                    response.raise_for_status()
                    return parse_result(self.task_type, response.json())
                last_error = f"status {response.status_code}"
                logger.warning(
                    "Automation webhook responded with status %s on attempt %s", response.status_code, attempt
                )
            except requests.HTTPError as exc:
                raise AutomationError(f"Automation webhook rejected task: {exc}") from exc
            except (requests.RequestException, ValueError) as exc:
                last_error = str(exc)
                logger.warning("Automation webhook call failed (attempt %s): %s", attempt, exc)
            if attempt == self.max_attempts:
                break
            await asyncio.sleep(delay)
            delay *= 2
        raise AutomationError(f"Automation webhook failed after {self.max_attempts} attempts: {last_error}")

    def fallback(self, context: Mapping[str, Any], error: Optional[str] = None) -> OptimizationResult:
        if self.local is not None:
            return self.local.fallback(context, error)
        return super().fallback(context, error)


def webhook_handlers(url: str, **kwargs: Any) -> List[OptimizationHandler]:
    """Webhook handlers for every built-in task type, keeping built-in fallbacks."""

    local = {handler.task_type: handler for handler in builtin_handlers()}
    return [
        WebhookOptimizationHandler(task_type, url, local=local.get(task_type), **kwargs)
        for task_type in TASK_TYPES
    ]
