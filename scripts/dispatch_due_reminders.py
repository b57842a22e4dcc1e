#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import os
import sys
import urllib.error
import urllib.request
from pathlib import Path
from typing import Any


def _load_dotenv(path: Path) -> None:
    if not path.is_file():
        return
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not key or key in os.environ:
            continue
        parsed = value.strip()
        if parsed and (parsed[0] == parsed[-1]) and parsed[0] in {'"', "'"}:
            parsed = parsed[1:-1]
        os.environ[key] = parsed


def _resolve_api_base_url(explicit_value: str | None) -> str:
    if explicit_value:
        candidate = explicit_value.strip()
    else:
        candidate = os.getenv("DISPATCH_API_BASE_URL", "").strip() or "http://localhost:8000"
    prefix = os.getenv("DISPATCH_API_PREFIX", "/api/v1").strip().rstrip("/")
    if candidate.rstrip("/").endswith(prefix):
        return candidate.rstrip("/")
    return f"{candidate.rstrip('/')}{prefix}"


def _post_json(base_url: str, path: str, *, token: str, timeout: float) -> dict[str, Any]:
    request = urllib.request.Request(
        f"{base_url}/{path.lstrip('/')}",
        data=b"",
        headers={"Accept": "application/json", "Authorization": f"Bearer {token}"},
        method="POST",
    )
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            return json.loads(response.read().decode("utf-8"))
    except urllib.error.HTTPError as exc:
        detail = exc.read().decode("utf-8", errors="replace")
        raise RuntimeError(f"POST {path} failed with {exc.code}: {detail}") from exc


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Trigger one reminder dispatch cycle for the tenant bound to the session token."
    )
    parser.add_argument(
        "--api-base-url",
        default=None,
        help="Backend base URL (host root or full API prefix). Defaults to DISPATCH_API_BASE_URL.",
    )
    parser.add_argument(
        "--token",
        default=None,
        help="Admin session token. Defaults to DISPATCH_SESSION_TOKEN from environment/.env.",
    )
    parser.add_argument("--limit", type=int, default=None, help="Batch size; the server clamps it to [1, 200].")
    parser.add_argument(
        "--reap-only",
        action="store_true",
        help="Only release stale claims instead of dispatching.",
    )
    parser.add_argument("--timeout", type=float, default=60.0, help="HTTP timeout in seconds.")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    root_dir = Path(__file__).resolve().parents[1]
    _load_dotenv(root_dir / ".env")
    args = parse_args(argv)

    token = (args.token or os.getenv("DISPATCH_SESSION_TOKEN", "")).strip()
    if not token:
        raise SystemExit("DISPATCH_SESSION_TOKEN is required (set .env or pass --token)")

    api_base_url = _resolve_api_base_url(args.api_base_url)
    if args.reap_only:
        path = "jobs/reap-stale"
    elif args.limit is not None:
        path = f"jobs/dispatch?limit={args.limit}"
    else:
        path = "jobs/dispatch"

    result = _post_json(api_base_url, path, token=token, timeout=args.timeout)
    print(json.dumps(result, indent=2, sort_keys=True))
    if result.get("installed") is False:
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
