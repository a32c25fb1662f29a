from datetime import timedelta

from fastapi import status

from conftest import bearer, login, register_user
from midnight_brew.core.config import get_settings
from midnight_brew.core.sessions import issue_session_token, utcnow
from midnight_brew.manage import make_admin
from midnight_brew.models.user import User


def _admin_token(client, db_session, email="admin@test.com"):
    token = register_user(client, email=email)["token"]
    assert make_admin(db_session, email)
    client.cookies.clear()
    return token


def test_admin_routes_reject_regular_users(client):
    token = register_user(client, email="plain@test.com")["token"]
    client.cookies.clear()

    resp = client.get("/admin/users", headers=bearer(token))
    assert resp.status_code == status.HTTP_403_FORBIDDEN

    resp = client.get("/admin/users")
    assert resp.status_code == status.HTTP_401_UNAUTHORIZED


def test_admin_lists_users_with_session_counts(client, db_session):
    register_user(client, email="member@test.com")
    login(client, "member@test.com")
    token = _admin_token(client, db_session)

    resp = client.get("/admin/users", headers=bearer(token))
    assert resp.status_code == status.HTTP_200_OK
    by_email = {u["email"]: u for u in resp.json()}
    assert by_email["member@test.com"]["active_sessions"] == 2
    assert by_email["admin@test.com"]["role"] == "admin"


def test_admin_changes_role(client, db_session):
    register_user(client, email="promote@test.com")
    target = db_session.query(User).filter(User.email == "promote@test.com").one()
    token = _admin_token(client, db_session)

    resp = client.patch(f"/admin/users/{target.id}/role", headers=bearer(token), json={"role": "admin"})
    assert resp.status_code == status.HTTP_200_OK
    assert resp.json()["role"] == "admin"

    resp = client.patch("/admin/users/9999/role", headers=bearer(token), json={"role": "admin"})
    assert resp.status_code == status.HTTP_404_NOT_FOUND


def test_admin_cannot_demote_self(client, db_session):
    token = _admin_token(client, db_session)
    me = db_session.query(User).filter(User.email == "admin@test.com").one()
    resp = client.patch(f"/admin/users/{me.id}/role", headers=bearer(token), json={"role": "user"})
    assert resp.status_code == status.HTTP_400_BAD_REQUEST


def test_admin_force_logout(client, db_session):
    victim_token = register_user(client, email="victim@test.com")["token"]
    victim = db_session.query(User).filter(User.email == "victim@test.com").one()
    token = _admin_token(client, db_session)

    resp = client.post(f"/admin/users/{victim.id}/sessions/revoke", headers=bearer(token))
    assert resp.status_code == status.HTTP_200_OK
    assert resp.json() == {"ok": True, "revoked": 1}

    assert client.get("/auth/profile", headers=bearer(victim_token)).status_code == status.HTTP_401_UNAUTHORIZED
    assert client.get("/auth/profile", headers=bearer(token)).status_code == status.HTTP_200_OK


def test_admin_cleanup_now(client, db_session):
    register_user(client, email="stale@test.com")
    stale = db_session.query(User).filter(User.email == "stale@test.com").one()
    ttl = timedelta(hours=get_settings().session_timeout_hours)
    issue_session_token(db_session, stale, now=utcnow() - ttl - timedelta(hours=1))
    token = _admin_token(client, db_session)

    resp = client.post("/admin/sessions/cleanup", headers=bearer(token))
    assert resp.status_code == status.HTTP_200_OK
    assert resp.json() == {"deleted": 1}
