"""Local interception of inbound language server messages.

The router is consulted before the owner's generic handlers. It claims a
fixed set of notification and request methods; everything else falls through.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from typing import Any

from lsrelay.languageserver import messages
from lsrelay.languageserver.jsonrpc import Reply
from lsrelay.logging import redact
from lsrelay.protocol import RPCNotification, RPCRequest
from lsrelay.publisher import Publisher
from lsrelay.status import StatusStore

logger = logging.getLogger(__name__)

ServerRequest = tuple[RPCRequest, Reply]
NotificationRoute = tuple[
    Callable[[str], bool], Callable[[RPCNotification], None]
]

# Server requests answered by an observer of the server request publisher.
OBSERVER_ANSWERED_REQUESTS = frozenset(
    {
        messages.INVOKE_CLIENT_TOOL,
        messages.INVOKE_CLIENT_TOOL_CONFIRMATION,
        messages.CONVERSATION_CONTEXT,
        messages.WATCHED_FILES,
        messages.SHOW_MESSAGE_REQUEST,
    }
)

LOGGED_NOTIFICATIONS = frozenset({messages.WINDOW_LOG_MESSAGE, messages.LOG_MESSAGE})
PUBLISHED_NOTIFICATIONS = frozenset(
    {messages.PROGRESS, messages.FEATURE_FLAGS, messages.MCP_TOOLS}
)
IGNORED_NOTIFICATIONS = frozenset(
    {messages.CONVERSATION_PRECONDITIONS, messages.STATUS_NOTIFICATION}
)


def describe_params(params: Any) -> str:
    """Render params for logging."""
    try:
        return redact(json.dumps(params, indent=2, sort_keys=True))
    except (TypeError, ValueError):
        return "N/A"


class MessageRouter:
    """Ordered chain of method classifiers.

    ``handle_notification`` and ``handle_request`` return True when the
    message was claimed locally and must not be forwarded.
    """

    def __init__(
        self,
        status: StatusStore,
        *,
        notification_publisher: Publisher[RPCNotification] | None = None,
        server_request_publisher: Publisher[ServerRequest] | None = None,
    ) -> None:
        self._status = status
        self.notification_publisher = notification_publisher or Publisher(
            "notifications"
        )
        self.server_request_publisher = server_request_publisher or Publisher(
            "server_requests"
        )
        self._tasks: set[asyncio.Task[Any]] = set()
        self._notification_routes: list[NotificationRoute] = [
            (LOGGED_NOTIFICATIONS.__contains__, self._log),
            (PUBLISHED_NOTIFICATIONS.__contains__, self._publish),
            (messages.DID_CHANGE_STATUS.__eq__, self._update_status),
            (IGNORED_NOTIFICATIONS.__contains__, self._ignore),
        ]

    async def handle_notification(self, notification: RPCNotification) -> bool:
        for matches, handle in self._notification_routes:
            if matches(notification.method):
                handle(notification)
                return True
        return False

    async def handle_request(self, request: RPCRequest, reply: Reply) -> bool:
        self.server_request_publisher.send((request, reply))
        if request.method == messages.SHOW_MESSAGE_REQUEST:
            logger.info("%s: %s", request.method, describe_params(request.params))
        return request.method in OBSERVER_ANSWERED_REQUESTS

    async def wait_idle(self) -> None:
        """Wait for scheduled status updates to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _log(self, notification: RPCNotification) -> None:
        logger.info("%s: %s", notification.method, describe_params(notification.params))

    def _publish(self, notification: RPCNotification) -> None:
        self.notification_publisher.send(notification)

    def _update_status(self, notification: RPCNotification) -> None:
        logger.info("%s: %s", notification.method, describe_params(notification.params))
        payload = messages.StatusNotificationParams.decode(notification.params)
        if payload is None:
            return
        task = asyncio.create_task(
            self._status.update_language_server_status(
                payload.kind, payload.busy, payload.message or ""
            )
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _ignore(self, notification: RPCNotification) -> None:
        pass
