"""Tests for sessions and the session manager."""

import pytest

from gantz.errors import SessionStateError
from gantz.relay.session import Session, SessionManager, SessionState
from gantz.tools.registry import ToolRegistry

from conftest import TOOLS_YAML


@pytest.fixture
def registry():
    return ToolRegistry.load(TOOLS_YAML)


@pytest.fixture
def manager(clock):
    return SessionManager(grace_period=120, clock=clock)


class TestSession:
    """Tests for the Session dataclass."""

    def test_open_session_accepts_anything(self):
        session = Session(endpoint_id="e1")

        assert session.requires_auth is False
        assert session.authenticate(None) is True
        assert session.authenticate("whatever") is True

    def test_token_check(self):
        session = Session(endpoint_id="e1", token="s3cret")

        assert session.requires_auth is True
        assert session.authenticate("s3cret") is True
        assert session.authenticate("s3cre") is False
        assert session.authenticate(None) is False
        assert session.authenticate(12345) is False

    def test_transitions(self):
        session = Session(endpoint_id="e1")

        session.transition(SessionState.ACTIVE, now=10)
        assert session.last_seen == 10
        session.transition(SessionState.DISCONNECTED, now=20)
        assert session.disconnected_at == 20
        session.transition(SessionState.ACTIVE, now=30)
        assert session.disconnected_at is None
        session.transition(SessionState.EVICTED, now=40)

        with pytest.raises(SessionStateError):
            session.transition(SessionState.ACTIVE, now=50)

    def test_to_dict_omits_token(self):
        data = Session(endpoint_id="e1", token="s3cret").to_dict()

        assert data["endpoint_id"] == "e1"
        assert data["requires_auth"] is True
        assert data["state"] == "connecting"
        assert "s3cret" not in str(data)


class TestSessionManager:
    """Tests for SessionManager."""

    def test_create_open_session(self, manager, registry):
        endpoint_id, token = manager.create_session(registry)

        assert token is None
        assert len(endpoint_id) == 16
        assert manager.registry_for(endpoint_id) is registry
        assert manager.authenticate(endpoint_id, None) is True

    def test_create_generates_token(self, manager, registry):
        endpoint_id, token = manager.create_session(registry, auth=True)

        assert token and len(token) >= 32
        assert manager.authenticate(endpoint_id, token) is True
        assert manager.authenticate(endpoint_id, "wrong") is False

    def test_explicit_token(self, manager, registry):
        endpoint_id, token = manager.create_session(registry, token="mine")
        assert token == "mine"
        assert manager.get(endpoint_id).requires_auth

    def test_endpoint_ids_are_unique(self, manager, registry):
        ids = {manager.create_session(registry)[0] for _ in range(50)}
        assert len(ids) == 50

    def test_unknown_endpoint(self, manager):
        assert manager.authenticate("nope", None) is False
        with pytest.raises(SessionStateError):
            manager.get("nope")

    def test_rebind_within_grace(self, manager, registry, clock):
        endpoint_id, _ = manager.create_session(registry)
        manager.mark_active(endpoint_id, public_url="https://relay/e")
        manager.mark_disconnected(endpoint_id)

        clock.advance(119)
        assert manager.can_rebind(endpoint_id) is True
        manager.mark_active(endpoint_id)
        assert manager.get(endpoint_id).public_url == "https://relay/e"

    def test_grace_expiry(self, manager, registry, clock):
        endpoint_id, _ = manager.create_session(registry)
        manager.mark_active(endpoint_id)
        manager.mark_disconnected(endpoint_id)

        clock.advance(121)
        assert manager.can_rebind(endpoint_id) is False
        assert manager.expire() == [endpoint_id]
        assert manager.sessions() == []
        assert manager.authenticate(endpoint_id, None) is False

    def test_active_sessions_never_expire(self, manager, registry, clock):
        endpoint_id, _ = manager.create_session(registry)
        manager.mark_active(endpoint_id)

        clock.advance(10_000)
        assert manager.expire() == []
        assert manager.can_rebind(endpoint_id)

    def test_renew_keeps_token_and_registry(self, manager, registry):
        endpoint_id, token = manager.create_session(registry, auth=True)
        old = manager.get(endpoint_id)

        new = manager.renew(old)

        assert new.endpoint_id != endpoint_id
        assert new.token == token
        assert new.registry is registry
        assert new.state is SessionState.CONNECTING
        assert old.state is SessionState.EVICTED
        with pytest.raises(SessionStateError):
            manager.get(endpoint_id)

    def test_bind_registry(self, manager, registry):
        endpoint_id, _ = manager.create_session(registry)
        replacement = ToolRegistry.load({"tools": [{"name": "x", "command": ["true"]}]})

        manager.bind_registry(endpoint_id, replacement)

        assert manager.registry_for(endpoint_id).names() == ["x"]

    def test_idle_tracking(self, manager, registry, clock):
        endpoint_id, _ = manager.create_session(registry)
        manager.mark_active(endpoint_id)

        clock.advance(30)
        assert manager.idle_for(endpoint_id) == 30
        manager.touch(endpoint_id)
        assert manager.idle_for(endpoint_id) == 0
