"""
Event System for CoreBot

Lightweight synchronous event emitter for in-component observers (CLI verbose
display, tests). This is separate from the message bus: events are fired
inline, never queued, and a failing handler never affects the emitter.

Events:
    Agent:
        - message_start, llm_call_end, tool_start, tool_end, agent_response
    Scheduler:
        - task_start, task_end
    Subagents:
        - subagent_start, subagent_end

Usage:
    agent.on("tool_start", lambda e: print(f"Running {e['name']}..."))

    @agent.on("tool_end")
    def show(e):
        ...
"""

import logging
from typing import Any, Callable

logger = logging.getLogger(__name__)

Handler = Callable[[dict[str, Any]], None]


class EventEmitter:
    """
    Mixin class that provides event emission and subscription.

    Supports multiple subscribers per event and "*" wildcard subscriptions.
    Storage is created lazily, so subclasses need not call a constructor.
    """

    def __init_events__(self):
        if not hasattr(self, "_event_handlers"):
            self._event_handlers: dict[str, list[Handler]] = {}

    def on(self, event: str, handler: Handler = None) -> Callable:
        """
        Subscribe to an event ("*" for all). Usable as a decorator when
        ``handler`` is omitted.
        """
        self.__init_events__()
        handlers = self._event_handlers.setdefault(event, [])

        if handler is None:
            def decorator(fn: Handler) -> Handler:
                handlers.append(fn)
                return fn
            return decorator

        handlers.append(handler)
        return handler

    def off(self, event: str, handler: Handler = None):
        """Remove one handler, or every handler when ``handler`` is None."""
        self.__init_events__()
        if event not in self._event_handlers:
            return
        if handler is None:
            self._event_handlers[event] = []
        else:
            self._event_handlers[event] = [h for h in self._event_handlers[event] if h != handler]

    def emit(self, event: str, data: dict[str, Any] = None):
        """Call every handler for ``event`` and every wildcard handler."""
        self.__init_events__()
        data = data or {}
        data["_event"] = event

        for handler in self._event_handlers.get(event, []) + self._event_handlers.get("*", []):
            try:
                handler(data)
            except Exception as e:
                logger.debug("Event handler for %s failed: %s", event, e)

    def once(self, event: str, handler: Handler) -> Handler:
        """Subscribe for a single emission only."""
        def wrapper(data):
            self.off(event, wrapper)
            handler(data)

        return self.on(event, wrapper)
