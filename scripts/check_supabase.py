"""Supabase connectivity check.

Checks that the backend's env vars are present, resolves DNS for the project
host, and calls the Auth health endpoint over plain HTTPS (no SDK involved).

Usage:
    python scripts/check_supabase.py
"""

import os
import socket
from urllib.parse import urlparse

import requests
from dotenv import load_dotenv

REQUIRED_VARS = ("SUPABASE_URL", "SUPABASE_SERVICE_KEY")
OPTIONAL_VARS = ("SUPABASE_JWT_SECRET", "GEMINI_API_KEY", "ANTHROPIC_API_KEY", "TOGETHER_API_KEY",
                 "WAYFORPAY_MERCHANT_ACCOUNT", "WAYFORPAY_SECRET_KEY")


def check_env() -> bool:
    print("🔧 Environment:")
    ok = True
    for name in REQUIRED_VARS:
        value = os.getenv(name)
        print(f"  {'✅' if value else '❌'} {name}")
        ok = ok and bool(value)
    for name in OPTIONAL_VARS:
        print(f"  {'✅' if os.getenv(name) else '⚪'} {name}")
    return ok


def check_dns(host: str) -> bool:
    print(f"\n🔍 DNS lookup for {host}:")
    try:
        infos = socket.getaddrinfo(host, 443, proto=socket.IPPROTO_TCP)
    except socket.gaierror as e:
        print(f"  ❌ DNS resolution failed: {e}")
        return False
    print(f"  ✅ Resolved IPs: {', '.join(sorted({info[4][0] for info in infos}))}")
    return True


def check_health(url: str, key: str) -> bool:
    parsed = urlparse(url)
    health_url = f"{parsed.scheme}://{parsed.hostname}/auth/v1/health"
    print(f"\n🌐 GET {health_url}")
    try:
        resp = requests.get(health_url, timeout=10, headers={"apikey": key})
    except requests.exceptions.RequestException as e:
        print(f"  ❌ HTTP request failed: {e}")
        return False
    print(f"  Status: {resp.status_code}")
    if resp.status_code != 200:
        print(f"  Body: {resp.text[:200]}")
        return False
    print("  ✅ Supabase Auth is reachable")
    return True


def main() -> int:
    load_dotenv()
    load_dotenv('../.env')
    if not check_env():
        print("\nMissing SUPABASE_URL or SUPABASE_SERVICE_KEY")
        return 1

    url = os.getenv("SUPABASE_URL")
    host = urlparse(url).hostname
    if not host:
        print(f"\n❌ SUPABASE_URL is not a URL: {url}")
        return 1
    if not check_dns(host):
        return 1
    return 0 if check_health(url, os.getenv("SUPABASE_SERVICE_KEY")) else 1


if __name__ == "__main__":
    raise SystemExit(main())
