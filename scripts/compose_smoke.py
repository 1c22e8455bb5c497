#!/usr/bin/env python3
from __future__ import annotations

import os
import sys
import time

import httpx


def main() -> int:
    base_url = os.getenv("OCTODOC_API_URL", "http://localhost:8000").rstrip("/")
    try:
        with httpx.Client(base_url=base_url, timeout=5.0) as client:
            health = client.get("/health")
            health.raise_for_status()
            print("/health:", health.text)
            # Give the service a moment to finish boot
            time.sleep(0.5)
            created = client.post("/sessions", json={"loanType": "504", "applicantName": "Smoke Test"})
            created.raise_for_status()
            session_id = created.json()["sessionId"]
            print("/sessions:", created.text)
            documents = client.get(f"/sessions/{session_id}/documents")
            documents.raise_for_status()
            print("/documents:", documents.text)
            client.delete(f"/sessions/{session_id}").raise_for_status()
    except httpx.HTTPError as exc:
        print(f"Compose smoke failed: {exc}", file=sys.stderr)
        return 1
    print("Compose smoke passed.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
