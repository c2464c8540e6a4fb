#!/usr/bin/env python3
"""
Container entrypoint: migrate + seed, then exec gunicorn.

Gunicorn runs threaded workers (gthread). Each request is handled on its own
thread with its own DB session; the package number allocator serializes claims
per mailroom, so any number of threads and workers can register concurrently.

Usage:
    python scripts/start.py

Env:
    PORT              bind port (default 8080)
    WEB_WORKERS       gunicorn worker processes (default 2)
    WEB_THREADS       threads per worker (default 8)
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _int_env(name: str, default: int, *, lo: int, hi: int) -> int:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        print(f"ERROR: {name}={raw!r} is not an integer.", flush=True)
        sys.exit(1)
    if value < lo or value > hi:
        print(f"ERROR: {name}={value} out of range {lo}-{hi}.", flush=True)
        sys.exit(1)
    return value


def main() -> None:
    port = _int_env("PORT", 8080, lo=1, hi=65535)
    workers = _int_env("WEB_WORKERS", 2, lo=1, hi=64)
    threads = _int_env("WEB_THREADS", 8, lo=1, hi=256)

    print("=== Running release phase ===", flush=True)
    from scripts.release import run_release

    try:
        run_release()
    except Exception as e:
        print(f"Release failed: {e}", flush=True)
        sys.exit(1)

    print(f"=== Starting gunicorn on 0.0.0.0:{port} ({workers}x{threads}) ===", flush=True)
    os.execvp(
        "gunicorn",
        [
            "gunicorn",
            "app.wsgi:app",
            "--bind", f"0.0.0.0:{port}",
            "--worker-class", "gthread",
            "--workers", str(workers),
            "--threads", str(threads),
            "--timeout", "60",
            "--access-logfile", "-",
            "--error-logfile", "-",
        ],
    )


if __name__ == "__main__":
    main()
