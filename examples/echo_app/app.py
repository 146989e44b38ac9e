"""Example application managed by bisket.

Run command for bisket.yaml::

    run:
      - pip install fastapi uvicorn
      - python app.py
"""
from __future__ import annotations

import os

import uvicorn
from fastapi import FastAPI, Request

PORT = int(os.getenv("BISKET_PORT", "8000"))
VERSION = os.getenv("BISKET_VERSION", "dev")

app = FastAPI(title=f"Echo App {VERSION}")


@app.get("/version")
def version() -> dict[str, str]:
    return {"version": VERSION}


@app.api_route("/echo/{path:path}", methods=["GET", "POST", "PUT"])
async def echo(request: Request, path: str) -> dict[str, object]:
    body = await request.body()
    return {
        "version": VERSION,
        "method": request.method,
        "path": path,
        "query": dict(request.query_params),
        "body": body.decode("utf-8", errors="replace"),
    }


if __name__ == "__main__":
    uvicorn.run(app, host="127.0.0.1", port=PORT)
