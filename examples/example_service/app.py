"""Minimal backend that follows the rainbowd process contract.

    python app.py PORT [PIDFILE]

The port arrives as the first positional argument. When a pidfile path is
given the process writes its own pid there before it starts listening.
"""

from __future__ import annotations

import os
import random
import sys
import time

from fastapi import FastAPI

VERSION = os.getenv("VERSION", "dev")
FAIL_RATE = float(os.getenv("FAIL_RATE", "0"))  # 0..1
STARTED_AT = time.time()

app = FastAPI(title=f"Example Service {VERSION}")


@app.get("/health")
def health() -> dict[str, str]:
    # Optional fault injection to demo health-check cutovers.
    if FAIL_RATE > 0 and random.random() < FAIL_RATE:
        time.sleep(3)
    return {"status": "healthy"}


@app.get("/")
def root() -> dict[str, object]:
    return {"version": VERSION, "pid": os.getpid(), "uptime_s": round(time.time() - STARTED_AT, 1)}


def write_pidfile(path: str) -> None:
    with open(path, "w", encoding="utf-8") as f:
        f.write(f"{os.getpid()}\n")


def main(argv: list[str]) -> int:
    if not argv:
        print("usage: app.py PORT [PIDFILE]", file=sys.stderr)
        return 2
    port = int(argv[0])
    if len(argv) > 1:
        write_pidfile(argv[1])

    import uvicorn

    uvicorn.run(app, host="127.0.0.1", port=port, log_level="warning")
    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
