"""Smoke check against a running OpsInbox server.

Verifies that the health endpoint answers, that /auth/status reports the
expected keys, and that /triage either returns a page of results or a 401
error envelope when no Google account is connected.

Usage:
    python smoke.py                                  # http://localhost:3000
    SMOKE_BASE_URL=http://host:port python smoke.py
    SMOKE_EXPECT_UNAUTH=true python smoke.py         # require the 401 path
"""
import os
import sys

import httpx

AUTH_STATUS_KEYS = (
    "authenticated",
    "hasRefreshToken",
    "tokenFilePresent",
    "userId",
    "workspaceId",
    "inboxAccountId",
    "user",
)


class SmokeFailure(Exception):
    pass


def check(condition: bool, message: str) -> None:
    if not condition:
        raise SmokeFailure(message)
    print(f"PASS: {message}")


def run_smoke(client: httpx.Client, expect_unauthenticated: bool = False) -> None:
    health = client.get("/health")
    check(health.status_code == 200, "/health returned 200")

    status = client.get("/auth/status")
    check(status.status_code == 200, "/auth/status returned 200")
    try:
        payload = status.json()
    except ValueError:
        raise SmokeFailure("/auth/status did not return valid JSON")
    check(
        isinstance(payload, dict) and all(key in payload for key in AUTH_STATUS_KEYS),
        "/auth/status returned expected keys",
    )

    triage = client.get("/triage", params={"limit": 1})
    if expect_unauthenticated or not payload.get("authenticated"):
        body = triage.json()
        check(
            triage.status_code == 401 and body.get("error", {}).get("code") == "UNAUTHORIZED",
            "/triage without OAuth credentials returns a 401 error envelope",
        )
        return
    check(triage.status_code == 200, "/triage?limit=1 returned 200")
    items = triage.json().get("items", [])
    check(isinstance(items, list) and len(items) <= 1, "/triage honoured limit=1")
    for item in items:
        confidence = item["triage"]["confidence"]
        check(0.6 <= confidence <= 0.98, f"triage confidence {confidence} within bounds")


def main():
    base_url = os.getenv("SMOKE_BASE_URL", "http://localhost:3000")
    expect_unauthenticated = os.getenv("SMOKE_EXPECT_UNAUTH", "false").lower() == "true"
    print(f"Smoke base URL: {base_url}")
    print(f"Smoke mode: {'unauthenticated' if expect_unauthenticated else 'auto'}")
    try:
        with httpx.Client(base_url=base_url, timeout=30) as client:
            run_smoke(client, expect_unauthenticated)
    except (SmokeFailure, httpx.HTTPError) as e:
        print(f"SMOKE FAILED: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
