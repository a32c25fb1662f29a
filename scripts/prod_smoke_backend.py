#!/usr/bin/env python3
"""
Production smoke test (backend-only) for the session lifecycle.

Flow:
- health
- register (cookie issued)
- profile with cookie
- logout -> old token rejected (bearer)
- login -> new session, profile ok
- logout-all

Usage:
  SMOKE_BACKEND_URL="https://api.example.com" python3 scripts/prod_smoke_backend.py
"""

from __future__ import annotations

import json
import os
import time
from dataclasses import dataclass
from http.cookiejar import CookieJar
from typing import Dict
from urllib.error import HTTPError, URLError
from urllib.parse import urljoin
from urllib.request import HTTPCookieProcessor, Request, build_opener


def _now_iso() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


@dataclass
class HttpResp:
    status: int
    text: str

    @property
    def json(self):
        try:
            return json.loads(self.text)
        except ValueError:
            return None


class Client:
    def __init__(self, base: str):
        self.base = base.rstrip("/") + "/"
        self.cookies = CookieJar()
        self.opener = build_opener(HTTPCookieProcessor(self.cookies))

    def _request(self, method: str, path: str, body: bytes | None = None, headers: Dict[str, str] | None = None) -> HttpResp:
        url = urljoin(self.base, path.lstrip("/"))
        h = {"Accept": "application/json", **(headers or {})}
        req = Request(url, data=body, headers=h, method=method)
        try:
            with self.opener.open(req, timeout=30) as r:
                txt = r.read().decode("utf-8", errors="ignore")
                return HttpResp(status=getattr(r, "status", 200), text=txt)
        except HTTPError as e:
            txt = e.read().decode("utf-8", errors="ignore") if hasattr(e, "read") else str(e)
            return HttpResp(status=getattr(e, "code", 0) or 0, text=txt)
        except URLError as e:
            return HttpResp(status=0, text=str(e))

    def get(self, path: str, headers: Dict[str, str] | None = None) -> HttpResp:
        return self._request("GET", path, headers=headers)

    def post_json(self, path: str, payload: dict | None = None) -> HttpResp:
        body = json.dumps(payload or {}).encode("utf-8")
        return self._request("POST", path, body=body, headers={"Content-Type": "application/json"})


def main() -> int:
    base = os.getenv("SMOKE_BACKEND_URL", "http://localhost:8000")
    c = Client(base)

    run_id = str(int(time.time()))
    email = f"smoke-{run_id}@example.com"
    password = f"SmokePass-{run_id}!"

    print(f"[{_now_iso()}] smoke start")
    print(f"base: {base}")
    print(f"user: {email}")

    h = c.get("/health")
    if h.status != 200:
        print(f"FAIL health: {h.status} {h.text[:300]}")
        return 2
    print("OK health")

    reg = c.post_json(
        "/auth/register",
        {"email": email, "password": password, "first_name": "Smoke", "last_name": "Test"},
    )
    if reg.status != 200 or not isinstance(reg.json, dict):
        print(f"FAIL register: {reg.status} {reg.text[:500]}")
        return 3
    first_token = reg.json.get("token")
    print("OK register")

    prof = c.get("/auth/profile")
    if prof.status != 200:
        print(f"FAIL profile: {prof.status} {prof.text[:500]}")
        return 4
    print("OK profile (cookie)")

    out = c.post_json("/auth/logout")
    if out.status != 200:
        print(f"FAIL logout: {out.status} {out.text[:500]}")
        return 5
    stale = c.get("/auth/profile", headers={"Authorization": f"Bearer {first_token}"})
    if stale.status != 401:
        print(f"FAIL revoked token still accepted: {stale.status}")
        return 6
    print("OK logout revokes token")

    login = c.post_json("/auth/login", {"email": email, "password": password})
    if login.status != 200 or not isinstance(login.json, dict):
        print(f"FAIL login: {login.status} {login.text[:500]}")
        return 7
    if login.json.get("token") == first_token:
        print("FAIL login reused old token")
        return 8
    prof = c.get("/auth/profile")
    if prof.status != 200:
        print(f"FAIL profile after login: {prof.status} {prof.text[:500]}")
        return 9
    print("OK login (new session)")

    everywhere = c.post_json("/auth/logout-all")
    if everywhere.status != 200:
        print(f"FAIL logout-all: {everywhere.status} {everywhere.text[:500]}")
        return 10
    print("OK logout-all")

    print(f"[{_now_iso()}] smoke PASS")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
