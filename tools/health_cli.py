#!/usr/bin/env python3
"""
Kubez Health CLI Helper
-----------------------

Lightweight CLI for the controller's health server. Designed for use in:
 - CI/CD pipelines (wait until the controller is ready after a rollout)
 - Kubernetes exec probes
 - Local dev diagnostics

Example usage:
  python3 tools/health_cli.py readiness
  python3 tools/health_cli.py --base http://kubez:9010 liveness
  python3 tools/health_cli.py wait --timeout 60

Exit codes:
  0 = healthy / ready
  1 = reachable but not ready
  2 = unreachable or invalid response
"""

import argparse
import asyncio
import json
import sys
import time

import aiohttp

DEFAULT_BASE_URL = "http://localhost:9010"

class ProbeError(RuntimeError):
    pass

async def fetch_json(url: str, timeout: float = 10.0):
    """
    Perform an HTTP GET and return (status, JSON body). 503 is a valid
    readiness answer, so only transport or decoding problems raise.
    """
    try:
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=timeout)) as session:
            async with session.get(url) as resp:
                try:
                    return resp.status, await resp.json(content_type=None)
                except (json.JSONDecodeError, aiohttp.ContentTypeError):
                    txt = await resp.text()
                    raise ProbeError(f"Invalid JSON response: {txt[:120]}")
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        raise ProbeError(f"{url} unreachable: {e}") from e

def summarize(endpoint: str, status: int, data: dict) -> int:
    """Print a short summary of a probe answer and return the exit code."""
    if endpoint == "liveness":
        print(json.dumps(data, indent=2))
        return 0 if status == 200 and data.get("status") == "alive" else 1
    details = data.get("details") or {}
    print(f"Status: {data.get('status')} (HTTP {status})")
    if "workers_alive" in details:
        print(f"  workers: {details.get('workers_alive')}/{details.get('workers')} alive, queue depth {details.get('queue_depth')}")
    for name, w in (details.get("watchers") or {}).items():
        state = "failed" if w.get("failed") else ("ready" if w.get("ready") else "syncing")
        print(f"  - watcher {name}: {state}")
    if details.get("leader") is False:
        print(f"  standby (lease holder: {details.get('holder')})")
    return 0 if status == 200 else 1

async def call_health(endpoint: str, base_url: str) -> int:
    path = "/healthz" if endpoint == "liveness" else "/readyz"
    url = f"{base_url}{path}"
    try:
        status, data = await fetch_json(url)
    except ProbeError as e:
        print(f"[ERROR] {e}", file=sys.stderr)
        return 2
    return summarize(endpoint, status, data)

async def wait_for_ready(base_url: str, timeout: int = 60, interval: int = 5) -> int:
    """
    Poll /readyz until it answers 200 or timeout.
    """
    deadline = time.time() + timeout
    while time.time() < deadline:
        try:
            status, data = await fetch_json(f"{base_url}/readyz")
            if status == 200:
                print("[OK] Controller ready.")
                return 0
            print(f"[WAIT] Status: {data.get('status')}, retrying in {interval}s...")
        except ProbeError as e:
            print(f"[WAIT] {e}")
        await asyncio.sleep(interval)
    print("[ERROR] Timeout waiting for readiness.")
    return 2

async def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Kubez Health CLI")
    parser.add_argument("--base", help=f"Base URL of the health server (default {DEFAULT_BASE_URL})", default=DEFAULT_BASE_URL)
    sub = parser.add_subparsers(dest="cmd", required=False)
    sub.add_parser("readiness", help="Run readiness probe")
    sub.add_parser("liveness", help="Run liveness probe")
    parser_wait = sub.add_parser("wait", help="Wait for readiness (loop)")
    parser_wait.add_argument("--timeout", type=int, default=60)
    parser_wait.add_argument("--interval", type=int, default=5)

    args = parser.parse_args(argv)
    base = args.base.rstrip("/")

    if args.cmd == "liveness":
        return await call_health("liveness", base)
    if args.cmd == "wait":
        return await wait_for_ready(base, timeout=args.timeout, interval=args.interval)
    return await call_health("readiness", base)

if __name__ == "__main__":
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        print("\nCancelled by user.")
