"""Pre-flight check of the OAuth connection an action depends on."""

import json
from typing import Any, Dict

import structlog

from core.exceptions import ActionConnectionError
from engine.models import Action, Agent, Record
from engine.stores import RecordStore, TokenRefresher

logger = structlog.get_logger(__name__)


class ConnectionGuard:
    """Validates and refreshes the token bundle stored on a record.

    Returns the data fields that changed (the refreshed bundle) so the
    record runner can overlay them on its working copy.
    """

    def __init__(self, token_refresher: TokenRefresher, record_store: RecordStore):
        self.token_refresher = token_refresher
        self.record_store = record_store

    async def ensure(self, action: Action, record: Record, agent: Agent) -> Dict[str, Any]:
        """
        Raises:
            ActionConnectionError: if the connection is missing, malformed, or cannot be refreshed
        """
        if not action.requires_connection:
            return {}

        connection = agent.find_connection(action.requires_connection)
        if connection is None:
            logger.warning(
                "Required connection not found on agent",
                connection_id=action.requires_connection,
                action_id=action.id,
            )
            return {}

        value = (record.data or {}).get(connection.field_name)
        if value is None or value == "" or value == "null":
            raise ActionConnectionError(
                f'Connection "{connection.title}" is not established. '
                f"Please connect {connection.provider} first in the Connections section.",
                connection_id=connection.id,
                provider=connection.provider,
            )

        bundle_json = value if isinstance(value, str) else json.dumps(value)
        try:
            reason = self._validation_problem(bundle_json, connection.title)
            if reason is None:
                result = await self.token_refresher.ensure_fresh_token(bundle_json, connection.provider)
                if not result.success:
                    reason = f"Failed to ensure fresh token: {result.error}"
        except Exception as e:
            reason = str(e) or type(e).__name__

        if reason is not None:
            raise ActionConnectionError(
                f'Connection "{connection.title}" validation failed: {reason}. '
                f"Please reconnect {connection.provider}.",
                connection_id=connection.id,
                provider=connection.provider,
            )

        if not (result.refreshed and result.new_token_data):
            logger.debug("Token still valid, no refresh needed", connection_id=connection.id)
            return {}

        refreshed = {connection.field_name: json.dumps(result.new_token_data)}
        await self.record_store.update(record.id, {**(record.data or {}), **refreshed})
        logger.info(
            "Connection token refreshed",
            connection_id=connection.id,
            provider=connection.provider,
            record_id=record.id,
        )
        return refreshed

    @staticmethod
    def _validation_problem(bundle_json: str, title: str):
        try:
            bundle = json.loads(bundle_json)
        except ValueError as e:
            return f"invalid token data ({e})"
        if not isinstance(bundle, dict) or not bundle.get("accessToken"):
            return f'Connection "{title}" has no access token'
        return None
