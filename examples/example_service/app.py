from __future__ import annotations

import os
import random
import time

from fastapi import FastAPI, HTTPException


VERSION = os.getenv("VERSION", "dev")
FAIL_RATE = float(os.getenv("FAIL_RATE", "0"))  # 0..1
BROKEN = os.getenv("BROKEN", "").lower() in {"1", "true", "yes"}

app = FastAPI(title=f"Example Service {VERSION}")


@app.get("/")
def root() -> dict[str, str]:
    return {"message": f"Hello from example service {VERSION}"}


@app.get("/health")
def health() -> dict[str, str]:
    # Fault injection to demo self-healing and rollbacks.
    if BROKEN:
        raise HTTPException(status_code=503, detail="broken build")
    if FAIL_RATE > 0 and random.random() < FAIL_RATE:
        time.sleep(3)
    return {"status": "healthy"}


@app.get("/version")
def version() -> dict[str, str]:
    return {"version": VERSION}
