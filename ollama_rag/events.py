"""Lifecycle hooks for generation requests.

Observers register handlers for named lifecycle points; the orchestrator
calls every handler synchronously. A failing handler is logged and
skipped, it never changes the outcome of the request.
"""
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional
import structlog

logger = structlog.get_logger()

BEFORE_GENERATION = "before_generation"
AFTER_GENERATION = "after_generation"
GENERATION_ERROR = "generation_error"

EVENTS = (BEFORE_GENERATION, AFTER_GENERATION, GENERATION_ERROR)


@dataclass
class GenerationEvent:
    """Payload delivered to lifecycle handlers."""

    name: str
    prompt: str
    options: Dict[str, Any]
    response: Optional[Any] = None
    error: Optional[BaseException] = None
    context: Dict[str, Any] = field(default_factory=dict)


Handler = Callable[[GenerationEvent], None]


class LifecycleHooks:
    """Registry of lifecycle handlers."""

    def __init__(self):
        self._handlers: Dict[str, List[Handler]] = {name: [] for name in EVENTS}

    def on(self, event: str, handler: Handler) -> Handler:
        """Register a handler for an event.

        Returns:
            The handler, unchanged

        Raises:
            ValueError: If the event name is unknown
        """
        if event not in self._handlers:
            raise ValueError(f"Unknown lifecycle event '{event}'")
        self._handlers[event].append(handler)
        logger.debug("lifecycle_handler_registered", lifecycle_event=event)
        return handler

    def off(self, event: str, handler: Handler) -> None:
        """Remove a previously registered handler (no-op if absent)."""
        handlers = self._handlers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    def handlers(self, event: str) -> List[Handler]:
        return list(self._handlers.get(event, []))

    def emit(self, event: GenerationEvent) -> None:
        """Invoke all handlers registered for ``event.name`` in order."""
        for handler in self.handlers(event.name):
            try:
                handler(event)
            except Exception as e:
                logger.exception(
                    "lifecycle_handler_failed",
                    lifecycle_event=event.name,
                    handler=getattr(handler, "__name__", repr(handler)),
                    error=str(e),
                )
