from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from conftest import bearer, register_user
from midnight_brew.core.config import get_settings
from midnight_brew.core.passwords import hash_password
from midnight_brew.core.sessions import (
    AuthFailure,
    SessionJanitor,
    StorageUnavailable,
    authenticate_token,
    cleanup_expired_sessions,
    deactivate_all_sessions,
    issue_session_token,
    revoke_all_user_sessions,
    revoke_session,
    run_startup_session_tasks,
    utcnow,
)
from midnight_brew.core.tokens import create_access_token
from midnight_brew.models.auth_session import AuthSession, as_utc
from midnight_brew.models.user import User


def make_user(db, email="session@test.com"):
    user = User(email=email, hashed_password=hash_password("Str0ng!Pass"), first_name="Sam", last_name="Vimes")
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def _boom(*args, **kwargs):
    raise OperationalError("select", {}, Exception("database is down"))


def test_issue_then_authenticate_round_trip(db_session):
    user = make_user(db_session)
    issued = issue_session_token(db_session, user, user_agent="pytest", ip="10.0.0.1")

    result = authenticate_token(db_session, issued.token)
    assert result.authenticated
    assert result.identity.user_id == user.id
    assert result.identity.email == user.email
    assert result.identity.first_name == "Sam"
    assert result.identity.session_id == issued.session.id

    row = db_session.get(AuthSession, issued.session.id)
    assert row.is_active is True
    assert row.user_agent == "pytest"
    assert row.ip == "10.0.0.1"
    assert abs(as_utc(row.last_activity_at) - utcnow()) < timedelta(seconds=5)


def test_each_issue_creates_a_distinct_session(db_session):
    user = make_user(db_session)
    a = issue_session_token(db_session, user)
    b = issue_session_token(db_session, user)
    assert a.session.id != b.session.id
    assert a.token != b.token


def test_missing_and_malformed_tokens(db_session):
    assert authenticate_token(db_session, None).failure == AuthFailure.missing_credential
    assert authenticate_token(db_session, "").failure == AuthFailure.missing_credential
    assert authenticate_token(db_session, "abc.def.ghi").failure == AuthFailure.invalid_credential


def test_token_for_unknown_session_is_rejected(db_session):
    user = make_user(db_session)
    forged = create_access_token(user_id=user.id, session_id="no-such-session", email=user.email, now=utcnow())
    assert authenticate_token(db_session, forged).failure == AuthFailure.session_not_found


def test_token_with_expired_exp_is_rejected(db_session):
    user = make_user(db_session)
    issued = issue_session_token(db_session, user)
    stale = create_access_token(
        user_id=user.id,
        session_id=issued.session.id,
        email=user.email,
        now=utcnow() - timedelta(hours=48),
    )
    assert authenticate_token(db_session, stale).failure == AuthFailure.invalid_credential


def test_activity_slides_expiry(db_session):
    """Touching the session before it expires keeps it alive past the original deadline."""
    ttl = timedelta(hours=get_settings().session_timeout_hours)
    user = make_user(db_session)
    issued = issue_session_token(db_session, user)
    t0 = as_utc(issued.session.created_at)

    almost = t0 + ttl - timedelta(hours=1)
    assert authenticate_token(db_session, issued.token, now=almost).authenticated
    row = db_session.get(AuthSession, issued.session.id)
    assert as_utc(row.expires_at) == almost + ttl
    assert as_utc(row.last_activity_at) == almost

    # Past the first deadline, but within TTL of the last activity
    later = t0 + ttl + timedelta(hours=1)
    assert authenticate_token(db_session, issued.token, now=later).authenticated


def test_idle_session_expires_and_is_deactivated(db_session):
    ttl = timedelta(hours=get_settings().session_timeout_hours)
    user = make_user(db_session)
    issued = issue_session_token(db_session, user)
    t0 = as_utc(issued.session.created_at)

    result = authenticate_token(db_session, issued.token, now=t0 + ttl + timedelta(minutes=1))
    assert result.failure == AuthFailure.session_expired
    assert db_session.get(AuthSession, issued.session.id).is_active is False

    # Terminal: going back in time does not revive it
    assert authenticate_token(db_session, issued.token, now=t0).failure == AuthFailure.session_not_found


def test_revocation_is_terminal_and_idempotent(db_session):
    user = make_user(db_session)
    issued = issue_session_token(db_session, user)

    assert revoke_session(db_session, issued.session.id) is True
    assert revoke_session(db_session, issued.session.id) is True
    assert revoke_session(db_session, "never-existed") is True

    assert authenticate_token(db_session, issued.token).failure == AuthFailure.session_not_found


def test_revoke_all_only_touches_one_user(db_session):
    alice = make_user(db_session, "alice@test.com")
    bob = make_user(db_session, "bob@test.com")
    a1 = issue_session_token(db_session, alice)
    a2 = issue_session_token(db_session, alice)
    b1 = issue_session_token(db_session, bob)

    outcome = revoke_all_user_sessions(db_session, alice.id)
    assert outcome.ok is True
    assert outcome.revoked == 2

    assert not authenticate_token(db_session, a1.token).authenticated
    assert not authenticate_token(db_session, a2.token).authenticated
    assert authenticate_token(db_session, b1.token).authenticated

    # Nothing left to revoke
    assert revoke_all_user_sessions(db_session, alice.id).revoked == 0


def test_deactivate_all_sessions(db_session):
    alice = make_user(db_session, "alice@test.com")
    bob = make_user(db_session, "bob@test.com")
    tokens = [issue_session_token(db_session, u).token for u in (alice, bob, bob)]

    assert deactivate_all_sessions(db_session) == 3
    db_session.expire_all()
    for token in tokens:
        assert not authenticate_token(db_session, token).authenticated


def test_cleanup_removes_only_dead_sessions(db_session):
    ttl = timedelta(hours=get_settings().session_timeout_hours)
    user = make_user(db_session)
    live = issue_session_token(db_session, user)
    revoked = issue_session_token(db_session, user)
    expired = issue_session_token(db_session, user, now=utcnow() - ttl - timedelta(hours=1))
    revoke_session(db_session, revoked.session.id)
    live_id, revoked_id, expired_id = live.session.id, revoked.session.id, expired.session.id

    assert cleanup_expired_sessions(db_session) == 2
    db_session.expire_all()
    remaining = {s.id for s in db_session.query(AuthSession).all()}
    assert remaining == {live_id}
    assert revoked_id not in remaining
    assert expired_id not in remaining
    assert authenticate_token(db_session, live.token).authenticated


def test_janitor_run_once_uses_its_own_session(db_session, session_factory):
    ttl = timedelta(hours=get_settings().session_timeout_hours)
    user = make_user(db_session)
    issue_session_token(db_session, user, now=utcnow() - ttl - timedelta(hours=1))

    janitor = SessionJanitor(session_factory, interval_seconds=3600)
    assert janitor.run_once() == 1
    assert janitor.run_once() == 0


def test_janitor_start_stop(session_factory):
    disabled = SessionJanitor(session_factory, interval_seconds=0)
    disabled.start()
    assert disabled.running is False

    janitor = SessionJanitor(session_factory, interval_seconds=3600)
    janitor.start()
    try:
        assert janitor.running is True
    finally:
        janitor.stop()
    assert janitor.running is False


def test_startup_tasks_revoke_everything_by_default(db_session, session_factory):
    user = make_user(db_session)
    issued = issue_session_token(db_session, user)

    summary = run_startup_session_tasks(session_factory)
    assert summary == {"deactivated": 1, "deleted": 1}
    db_session.expire_all()
    assert authenticate_token(db_session, issued.token).failure == AuthFailure.session_not_found


def test_startup_tasks_can_keep_sessions(db_session, session_factory, monkeypatch):
    monkeypatch.setattr(get_settings(), "session_revoke_on_startup", False)
    user = make_user(db_session)
    issued = issue_session_token(db_session, user)

    summary = run_startup_session_tasks(session_factory)
    assert summary == {"deactivated": 0, "deleted": 0}
    assert authenticate_token(db_session, issued.token).authenticated


def test_storage_failure_raises_instead_of_rejecting(db_session, monkeypatch):
    user = make_user(db_session)
    issued = issue_session_token(db_session, user)

    monkeypatch.setattr(db_session, "query", _boom)
    with pytest.raises(StorageUnavailable):
        authenticate_token(db_session, issued.token)


def test_storage_failure_on_issue_produces_no_token(db_session, monkeypatch):
    user = make_user(db_session)
    monkeypatch.setattr(db_session, "commit", _boom)
    with pytest.raises(StorageUnavailable):
        issue_session_token(db_session, user)


def test_revoke_all_reports_soft_failure(db_session, monkeypatch):
    user = make_user(db_session)
    issue_session_token(db_session, user)
    monkeypatch.setattr(db_session, "query", _boom)
    outcome = revoke_all_user_sessions(db_session, user.id)
    assert outcome.ok is False
    assert outcome.revoked == 0


def test_storage_failure_fails_closed_over_http(client, db_session, monkeypatch):
    """Hard-gated and optional endpoints answer 503, never 200 or anonymous."""
    token = register_user(client, email="down@test.com")["token"]
    client.cookies.clear()

    monkeypatch.setattr(db_session, "query", _boom)
    resp = client.get("/auth/profile", headers=bearer(token))
    assert resp.status_code == 503
    assert resp.json() == {"detail": "Service temporarily unavailable"}

    resp = client.get("/auth/status", headers=bearer(token))
    assert resp.status_code == 503


def test_logout_clears_cookie_even_when_storage_is_down(client, db_session, monkeypatch):
    register_user(client, email="down-out@test.com")
    monkeypatch.setattr(db_session, "query", _boom)

    resp = client.post("/auth/logout")
    assert resp.status_code == 200
    assert resp.json()["revoked"] is False
    assert "token=" in (resp.headers.get("set-cookie") or "")
