"""
Live update message handlers.

Client messages: ``subscribe``, ``unsubscribe``, ``pong`` and ``ping``.
Any inbound frame counts as an answer to the liveness probe.
A rejected or malformed message produces an ``error`` message; it never
closes the connection.
"""

import json
from typing import Any, Dict, Optional

from shared.logging import get_logger

from ..auth.access import AccessDecisionEngine, AuthContext
from ..auth.credentials import CredentialValidator
from ..data.service import DataRetrievalService
from ..models import CredentialType
from .connection_manager import LiveUpdateBroadcaster, now_ms

ACCESS_DENIED = "Access denied. Provide valid API key or subscription credentials."


def error_message(error: str) -> Dict[str, Any]:
    return {"type": "error", "error": error}


class LiveMessageHandler:
    """Routes client messages on a live connection."""

    def __init__(self, broadcaster: LiveUpdateBroadcaster, validator: CredentialValidator,
                 access: AccessDecisionEngine, data_service: DataRetrievalService):
        self.broadcaster = broadcaster
        self.validator = validator
        self.access = access
        self.data_service = data_service
        self.logger = get_logger("marketplace.ws.handler")

        self._handlers = {
            "subscribe": self._handle_subscribe,
            "unsubscribe": self._handle_unsubscribe,
            "pong": self._handle_pong,
            "ping": self._handle_ping,
        }

    async def handle_message(self, connection_id: str, message_text: str) -> Optional[Dict[str, Any]]:
        """Handle one inbound message; returns the reply to send, if any."""
        self.broadcaster.mark_alive(connection_id)
        try:
            message = json.loads(message_text)
        except json.JSONDecodeError:
            return error_message("Message must be valid JSON")

        if not isinstance(message, dict):
            return error_message("Message must be a JSON object")

        message_type = message.get("type")
        handler = self._handlers.get(message_type)
        if handler is None:
            return error_message(f"Unknown message type: {message_type}")

        try:
            return await handler(connection_id, message)
        except Exception as e:
            self.logger.error("Error handling live message", connection_id=connection_id,
                              type=message_type, error=str(e), exc_info=True)
            return error_message("Internal server error")

    async def _handle_subscribe(self, connection_id: str, message: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        feed_id = message.get("feedId")
        if not feed_id:
            return error_message("feedId is required")

        context = AuthContext(
            subscription_id=message.get("subscriptionId"),
            consumer_address=message.get("consumer"),
        )
        api_key = message.get("apiKey")
        if api_key:
            result = await self.validator.validate(api_key)
            if result.valid and result.credential.type == CredentialType.SUBSCRIBER:
                context.credential = result.credential
            else:
                self.logger.info("Live subscribe with unusable API key", connection_id=connection_id,
                                 reason=result.reason or "wrong_type")

        if not context.has_read_credentials:
            return error_message(ACCESS_DENIED)

        decision = await self.access.authorize(feed_id, context)
        if not decision.granted:
            return error_message(ACCESS_DENIED)

        if not await self.broadcaster.bind(connection_id, feed_id, decision.bound_subscription_id,
                                           decision.bound_credential_id):
            return None

        connection = self.broadcaster.get_connection(connection_id)
        await self.broadcaster.send(connection, {"type": "subscribed", "feedId": feed_id})

        try:
            payload = await self.data_service.snapshot(feed_id, message.get("decryptionKey"))
        except Exception as e:
            self.logger.warning("Initial snapshot failed", connection_id=connection_id,
                                feed_id=feed_id, error=str(e))
            return error_message("Failed to load initial data")

        return {"type": "data", "feedId": feed_id, "data": payload, "timestamp": now_ms()}

    async def _handle_unsubscribe(self, connection_id: str, message: Dict[str, Any]) -> Dict[str, Any]:
        await self.broadcaster.unbind(connection_id)
        return {"type": "unsubscribed"}

    async def _handle_pong(self, connection_id: str, message: Dict[str, Any]) -> None:
        return None

    async def _handle_ping(self, connection_id: str, message: Dict[str, Any]) -> Dict[str, Any]:
        return {"type": "pong", "timestamp": now_ms()}
