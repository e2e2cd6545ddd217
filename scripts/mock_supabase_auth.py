#!/usr/bin/env python3
"""Local stand-in for Supabase ``/auth/v1/user`` with fixed dispatcher and admin tokens."""

from __future__ import annotations

import argparse
import json
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

DEFAULT_TENANT_ID = "aaaaaaaa-0000-0000-0000-000000000001"
OTHER_TENANT_ID = "bbbbbbbb-0000-0000-0000-000000000002"


def build_users(tenant_id: str) -> dict[str, dict[str, object]]:
    return {
        "admin-token": {
            "id": "11111111-1111-1111-1111-111111111111",
            "app_metadata": {"role": "admin"},
        },
        "dispatcher-token": {
            "id": "22222222-2222-2222-2222-222222222222",
            "app_metadata": {"role": "dispatcher", "tenant_id": tenant_id},
        },
        "other-dispatcher-token": {
            "id": "33333333-3333-3333-3333-333333333333",
            "app_metadata": {"role": "dispatcher", "tenant_id": OTHER_TENANT_ID},
        },
        "no-tenant-token": {
            "id": "44444444-4444-4444-4444-444444444444",
            "app_metadata": {"role": "dispatcher"},
        },
        "user-token": {
            "id": "55555555-5555-5555-5555-555555555555",
            "app_metadata": {"role": "user"},
        },
    }


class MockSupabaseHandler(BaseHTTPRequestHandler):
    server_version = "MockSupabase/1.0"
    users: dict[str, dict[str, object]] = build_users(DEFAULT_TENANT_ID)

    def do_GET(self) -> None:  # noqa: N802 - stdlib handler signature
        if self.path == "/healthz":
            self._write_json(HTTPStatus.OK, {"status": "ok"})
            return

        if self.path != "/auth/v1/user":
            self._write_json(HTTPStatus.NOT_FOUND, {"detail": "not found"})
            return

        authorization = self.headers.get("Authorization", "")
        if not authorization.lower().startswith("bearer "):
            self._write_json(HTTPStatus.UNAUTHORIZED, {"detail": "missing bearer token"})
            return

        token = authorization.split(" ", maxsplit=1)[1].strip()
        user = self.users.get(token)
        if user is None:
            self._write_json(HTTPStatus.UNAUTHORIZED, {"detail": "invalid token"})
            return

        self._write_json(HTTPStatus.OK, {**user, "user_metadata": {}})

    def log_message(self, _: str, *args: object) -> None:
        if args:
            print("mock-supabase:", *args)

    def _write_json(self, status: HTTPStatus, payload: dict[str, object]) -> None:
        raw = json.dumps(payload).encode("utf-8")
        self.send_response(status.value)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(raw)))
        self.end_headers()
        self.wfile.write(raw)


def main() -> None:
    parser = argparse.ArgumentParser(description="Mock Supabase auth /auth/v1/user endpoint.")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=54321)
    parser.add_argument("--tenant-id", default=DEFAULT_TENANT_ID, help="Tenant for dispatcher-token")
    args = parser.parse_args()

    MockSupabaseHandler.users = build_users(args.tenant_id)
    server = ThreadingHTTPServer((args.host, args.port), MockSupabaseHandler)
    print(f"mock-supabase listening on http://{args.host}:{args.port} tenant={args.tenant_id}", flush=True)
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        pass
    finally:
        server.server_close()


if __name__ == "__main__":
    main()
