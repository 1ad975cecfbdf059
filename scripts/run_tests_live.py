#!/usr/bin/env python3
"""
Run tests/test_live_api.py against a freshly started deskroute API.

The server runs under uvicorn on the in-memory store (no Redis needed) and is stopped
afterwards; its log is printed if it never becomes healthy.
Usage: python scripts/run_tests_live.py [--port 8765] [pytest args...]
"""

import argparse
import os
import subprocess
import sys
import tempfile
import time

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, ROOT)
from tests.http_client import LiveClient  # noqa: E402


def wait_healthy(client: LiveClient, proc: subprocess.Popen, timeout: float = 15.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if proc.poll() is not None:
            return False
        try:
            if client.get("/health").status_code == 200:
                return True
        except OSError:
            pass
        time.sleep(0.5)
    return False


def main() -> int:
    parser = argparse.ArgumentParser(description=__doc__.strip().splitlines()[0])
    parser.add_argument("--port", type=int, default=int(os.environ.get("LIVE_PORT", "8765")))
    args, pytest_args = parser.parse_known_args()
    base_url = f"http://127.0.0.1:{args.port}"

    server_env = dict(os.environ, STORE_BACKEND="memory")
    with tempfile.TemporaryFile(mode="w+") as log:
        proc = subprocess.Popen(
            [sys.executable, "-m", "uvicorn", "deskroute.main:app", "--host", "127.0.0.1", "--port", str(args.port)],
            cwd=ROOT,
            env=server_env,
            stdout=log,
            stderr=subprocess.STDOUT,
        )
        try:
            if not wait_healthy(LiveClient(base_url), proc):
                log.seek(0)
                print(f"deskroute API did not become healthy at {base_url}:\n{log.read()}", file=sys.stderr)
                return 1
            result = subprocess.run(
                [sys.executable, "-m", "pytest", "tests/test_live_api.py", "-v", *pytest_args],
                cwd=ROOT,
                env=dict(os.environ, BASE_URL=base_url),
            )
            return result.returncode
        finally:
            proc.terminate()
            proc.wait(timeout=5)


if __name__ == "__main__":
    sys.exit(main())
