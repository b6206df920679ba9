"""
Subscription-based routing of server notifications.

The SDK hands every incoming message to a single ``message_handler`` and
awaits it inside its receive loop. A handler that issues a request of its
own (re-listing resources, reading one resource) would therefore wait for
a response the blocked loop can never deliver. The router avoids that by
running each subscribed handler as its own task in a task group owned by
the session. Handlers interleave with in-flight calls and with each other;
nothing serializes them.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Type

import anyio.abc
from mcp import types

logger = logging.getLogger(__name__)

NotificationHandler = Callable[[Any], Awaitable[None]]


class NotificationRouter:
    """
    Routes server notifications to subscribers by notification type.

    Notifications without a subscriber go to the fallback handler. A
    handler that raises is logged and dropped; it never reaches the SDK's
    receive loop or the caller.
    """

    def __init__(self):
        self._handlers: Dict[Type[Any], NotificationHandler] = {}
        self._fallback: Optional[NotificationHandler] = None
        self._task_group: Optional[anyio.abc.TaskGroup] = None
        self._closed = False

    def subscribe(self, notification_type: Type[Any], handler: NotificationHandler) -> None:
        """
        Subscribe a handler to one notification type.

        Args:
            notification_type: An ``mcp.types`` notification class
            handler: Async function receiving the notification model
        """
        self._handlers[notification_type] = handler

    def unsubscribe(self, notification_type: Type[Any]) -> None:
        self._handlers.pop(notification_type, None)

    def set_fallback(self, handler: Optional[NotificationHandler]) -> None:
        """Set the handler for notifications nobody subscribed to."""
        self._fallback = handler

    def bind(self, task_group: anyio.abc.TaskGroup) -> None:
        """Run handlers as tasks of ``task_group`` from now on."""
        self._task_group = task_group

    def close(self) -> None:
        """Drop every notification received from now on."""
        self._closed = True
        self._task_group = None
        self._handlers.clear()
        self._fallback = None

    async def __call__(self, message: Any) -> None:
        """Entry point given to ``mcp.ClientSession`` as its message handler."""
        if self._closed:
            return

        if isinstance(message, Exception):
            logger.warning("Error reported by transport: %s", message)
            return

        # Server requests are answered by ClientSession callbacks
        if not isinstance(message, types.ServerNotification):
            return

        notification = message.root
        handler = self._handlers.get(type(notification), self._fallback)
        if handler is None:
            return

        if self._task_group is None:
            await self._run(handler, notification)
        else:
            self._task_group.start_soon(self._run, handler, notification)

    async def _run(self, handler: NotificationHandler, notification: Any) -> None:
        try:
            await handler(notification)
        except Exception:
            logger.exception("Handler for %s failed", getattr(notification, "method", notification))
