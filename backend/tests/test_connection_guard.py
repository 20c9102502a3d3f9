"""Tests for the pre-flight connection check of connection-backed actions."""

import json

import pytest

from core.exceptions import ActionConnectionError
from engine.connection_guard import ConnectionGuard
from engine.models import Action
from engine.stores import TokenRefreshResult

from tests.fakes import LEAD_MODEL_ID, FakeTokenRefresher, InMemoryRecordStore, make_action, make_agent

CONNECTION = {"id": "conn-google", "provider": "google", "fieldName": "google_token", "title": "Google Sheets"}
TOKEN = {"accessToken": "access-1", "refreshToken": "refresh-1", "expiresAt": 1}


def _setup(token_value, refresher=None):
    action_dict = make_action([], requiresConnection="conn-google")
    agent = make_agent(actions=[action_dict], connections=[CONNECTION])
    store = InMemoryRecordStore()
    record = store.add(LEAD_MODEL_ID, {"name": "Ada", "google_token": token_value})
    refresher = refresher or FakeTokenRefresher()
    return ConnectionGuard(refresher, store), Action.from_dict(action_dict), record, agent, store, refresher


@pytest.mark.unit
class TestConnectionGuard:

    async def test_action_without_connection_passes(self, record_store, token_refresher):
        agent = make_agent()
        record = record_store.add(LEAD_MODEL_ID, {})
        guard = ConnectionGuard(token_refresher, record_store)
        assert await guard.ensure(Action.from_dict(make_action([])), record, agent) == {}
        assert token_refresher.calls == []

    async def test_unknown_connection_is_skipped(self):
        guard, action, record, _, _, refresher = _setup(json.dumps(TOKEN))
        agent = make_agent(actions=[make_action([], requiresConnection="conn-google")])
        assert await guard.ensure(action, record, agent) == {}
        assert refresher.calls == []

    @pytest.mark.parametrize("value", [None, "", "null"])
    async def test_missing_token(self, value):
        guard, action, record, agent, _, _ = _setup(value)
        with pytest.raises(ActionConnectionError) as exc:
            await guard.ensure(action, record, agent)
        assert exc.value.message == (
            'Connection "Google Sheets" is not established. '
            "Please connect google first in the Connections section."
        )
        assert exc.value.details["provider"] == "google"

    async def test_invalid_json(self):
        guard, action, record, agent, _, _ = _setup("{broken")
        with pytest.raises(ActionConnectionError, match='validation failed: invalid token data') as exc:
            await guard.ensure(action, record, agent)
        assert exc.value.message.endswith("Please reconnect google.")

    async def test_missing_access_token(self):
        guard, action, record, agent, _, _ = _setup(json.dumps({"refreshToken": "r"}))
        with pytest.raises(ActionConnectionError, match="has no access token"):
            await guard.ensure(action, record, agent)

    async def test_refresh_failure(self):
        refresher = FakeTokenRefresher(TokenRefreshResult(success=False, error="invalid_grant"))
        guard, action, record, agent, _, _ = _setup(json.dumps(TOKEN), refresher)
        with pytest.raises(ActionConnectionError) as exc:
            await guard.ensure(action, record, agent)
        assert exc.value.message == (
            'Connection "Google Sheets" validation failed: Failed to ensure fresh token: invalid_grant. '
            "Please reconnect google."
        )

    async def test_refresher_exception(self):
        refresher = FakeTokenRefresher(error=RuntimeError("token endpoint down"))
        guard, action, record, agent, _, _ = _setup(json.dumps(TOKEN), refresher)
        with pytest.raises(ActionConnectionError, match="validation failed: token endpoint down"):
            await guard.ensure(action, record, agent)

    async def test_valid_token_not_rewritten(self):
        refresher = FakeTokenRefresher(TokenRefreshResult(success=True, new_token_data=TOKEN))
        guard, action, record, agent, store, _ = _setup(json.dumps(TOKEN), refresher)
        assert await guard.ensure(action, record, agent) == {}
        assert store.updates == []
        assert refresher.calls == [(json.dumps(TOKEN), "google")]

    async def test_refreshed_token_is_persisted(self):
        new_token = {"accessToken": "access-2", "refreshToken": "refresh-1", "expiresAt": 99}
        refresher = FakeTokenRefresher(TokenRefreshResult(success=True, refreshed=True, new_token_data=new_token))
        guard, action, record, agent, store, _ = _setup(json.dumps(TOKEN), refresher)

        changed = await guard.ensure(action, record, agent)

        assert json.loads(changed["google_token"]) == new_token
        record_id, data = store.updates[0]
        assert record_id == record.id
        assert data["name"] == "Ada"
        assert json.loads(data["google_token"]) == new_token

    async def test_dict_token_value_is_accepted(self):
        guard, action, record, agent, _, refresher = _setup(dict(TOKEN))
        await guard.ensure(action, record, agent)
        assert json.loads(refresher.calls[0][0]) == TOKEN
