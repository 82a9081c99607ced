#!/usr/bin/env python3
"""Smoke test a running deployment: heartbeat, count, request, accept, complete."""

import json
import os
import sys
import uuid
from urllib.parse import urljoin

import requests

BASE_URL = os.environ.get("CELLMATCH_BASE_URL", "http://localhost:8000")
API = "/api"

# Zocalo, Mexico City
LAT, LNG = 19.4326, -99.1332


def call(method, path, description, **kwargs):
    """Call an endpoint, print the outcome and return the parsed body (or None)."""
    url = urljoin(BASE_URL, path)
    print(f"\n{'='*60}")
    print(f"{description}")
    print(f"{method} {url}")
    print(f"{'='*60}")

    try:
        response = requests.request(method, url, timeout=10, **kwargs)
    except requests.exceptions.Timeout:
        print("❌ TIMEOUT: Request took longer than 10 seconds")
        return None
    except requests.exceptions.ConnectionError as e:
        print(f"❌ CONNECTION ERROR: {e}")
        return None

    marker = "✅" if response.ok else "❌"
    print(f"{marker} Status Code: {response.status_code}")
    try:
        data = response.json()
    except ValueError:
        print(response.text[:500])
        return None
    print(json.dumps(data, indent=2))
    return data if response.ok else None


def main():
    print("🔍 Cell matching smoke test")
    print(f"Target URL: {BASE_URL}")

    suffix = uuid.uuid4().hex[:8]
    driver_id = f"smoke-driver-{suffix}"
    client_id = f"smoke-client-{suffix}"
    results = {}

    results["health"] = call("GET", f"{API}/health", "Health") is not None
    results["cell"] = call("GET", f"{API}/cells", "Cell lookup", params={"lat": LAT, "lng": LNG}) is not None
    results["heartbeat"] = call(
        "POST",
        f"{API}/presence/heartbeat",
        "Driver heartbeat",
        json={"driver_id": driver_id, "lat": LAT + 0.001, "lng": LNG},
    ) is not None

    count = call("GET", f"{API}/presence/count", "Nearby driver count", params={"lat": LAT, "lng": LNG})
    results["count"] = bool(count and count["count"] >= 1)

    created = call(
        "POST",
        f"{API}/requests",
        "Submit ride request",
        json={"client_id": client_id, "pickup": {"lat": LAT, "lng": LNG}},
    )
    results["submit"] = created is not None

    if created:
        request_id = created["request_id"]
        visible = call("GET", f"{API}/requests/open", "Open requests near driver", params={"lat": LAT, "lng": LNG})
        results["open"] = bool(visible and any(item["request_id"] == request_id for item in visible["requests"]))
        results["accept"] = call(
            "POST", f"{API}/requests/{request_id}/accept", "Accept request", json={"driver_id": driver_id}
        ) is not None
        results["complete"] = call("POST", f"{API}/requests/{request_id}/complete", "Complete request") is not None

    call("POST", f"{API}/presence/offline", "Driver offline", json={"driver_id": driver_id})

    print(f"\n{'='*60}")
    print("SUMMARY")
    print(f"{'='*60}")
    for name, ok in results.items():
        print(f"{name:<12} {'✅' if ok else '❌'}")

    if all(results.values()):
        print("\n✅ Backend is matching requests end to end!")
        return 0
    print("\n⚠️  Some steps failed - see output above")
    return 1


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\n\n⚠️  Test interrupted by user")
        sys.exit(1)
