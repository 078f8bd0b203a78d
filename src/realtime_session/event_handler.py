"""
Event handling system for realtime communication.
Implements a basic pub/sub mechanism with async support.
"""

import asyncio
import inspect
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

from utils.ml_logging import get_logger

logger = get_logger(__name__)

EventCallback = Union[Callable[[Any], Any], Callable[[Any], Awaitable[Any]]]


class RealtimeEventHandler:
    """
    Event bus that components embed to publish and subscribe to named events.

    Handlers run synchronously in registration order. A handler that returns
    an awaitable has it scheduled as a detached task on the running loop.
    """

    def __init__(self) -> None:
        self.event_handlers: Dict[str, List[EventCallback]] = defaultdict(list)
        self._pending_tasks: Set[asyncio.Task] = set()

    def on(self, event_name: str, handler: EventCallback) -> None:
        """
        Register a handler function for a specific event.

        Args:
            event_name (str): Name of the event to listen for.
            handler (Callable): Function or coroutine to be called when the event fires.
        """
        if not callable(handler):
            logger.error(f"Tried to register non-callable handler for event '{event_name}'.")
            raise TypeError("Handler must be callable.")
        self.event_handlers[event_name].append(handler)
        logger.debug(f"Handler registered for event '{event_name}'.")

    def once(self, event_name: str, handler: EventCallback) -> EventCallback:
        """
        Register a handler that is removed before its first delivery.

        Returns:
            The wrapper actually registered, usable with ``off``.
        """
        if not callable(handler):
            raise TypeError("Handler must be callable.")

        def _once(event: Any) -> Any:
            self.off(event_name, _once)
            return handler(event)

        self.on(event_name, _once)
        return _once

    def off(self, event_name: str, handler: Optional[EventCallback] = None) -> None:
        """
        Remove one handler, or every handler for the event when none is given.

        Raises:
            ValueError: If the given handler is not registered for the event.
        """
        if handler is None:
            self.event_handlers.pop(event_name, None)
            return

        handlers = self.event_handlers.get(event_name, [])
        if handler not in handlers:
            raise ValueError(
                f"Could not turn off specified event listener for '{event_name}': not found as a listener"
            )
        handlers.remove(handler)
        if not handlers:
            del self.event_handlers[event_name]

    def dispatch(self, event_name: str, event: Any) -> None:
        """
        Trigger all handlers associated with a specific event.

        Args:
            event_name (str): Name of the event to dispatch.
            event (Any): Data associated with the event.
        """
        if event_name not in self.event_handlers:
            return

        # Snapshot: once-handlers remove themselves while we iterate
        for handler in list(self.event_handlers[event_name]):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    self._spawn(result, event_name)
            except Exception as e:
                logger.error(f"Error dispatching event '{event_name}' to handler: {e}", exc_info=True)

    def _spawn(self, awaitable: Awaitable[Any], event_name: str) -> None:
        task = asyncio.ensure_future(awaitable)
        self._pending_tasks.add(task)

        def _done(finished: asyncio.Task) -> None:
            self._pending_tasks.discard(finished)
            if not finished.cancelled() and finished.exception() is not None:
                logger.error(
                    f"Async handler for '{event_name}' failed: {finished.exception()}",
                    exc_info=finished.exception(),
                )

        task.add_done_callback(_done)

    def clear_event_handlers(self) -> None:
        """
        Remove all registered event handlers.
        """
        self.event_handlers.clear()
        logger.debug("All event handlers cleared.")

    async def wait_for_next(self, event_name: str, timeout: Optional[float] = None) -> Any:
        """
        Wait for the next occurrence of a specific event asynchronously.

        Args:
            event_name (str): Event to wait for.
            timeout (Optional[float]): Seconds to wait before giving up.

        Returns:
            Any: Data of the received event, or None if the timeout elapsed.
        """
        future = asyncio.get_running_loop().create_future()

        def _handler(event: Any) -> None:
            if not future.done():
                future.set_result(event)

        registered = self.once(event_name, _handler)
        logger.debug(f"Waiting for next event '{event_name}'.")
        try:
            return await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError:
            logger.debug(f"Timed out waiting for '{event_name}' after {timeout}s.")
            return None
        finally:
            if registered in self.event_handlers.get(event_name, []):
                self.off(event_name, registered)

    async def drain(self) -> None:
        """Wait for detached handler tasks scheduled so far to settle."""
        while self._pending_tasks:
            await asyncio.gather(*list(self._pending_tasks), return_exceptions=True)
