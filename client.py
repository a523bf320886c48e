import requests
from typing import Optional


class TrackerClient:
    """Simple REST client for the tracker API."""

    def __init__(self, base_url: str = "http://localhost:8000", timeout: float = 10.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def _get(self, path: str, params: Optional[dict] = None):
        resp = requests.get(f"{self.base_url}{path}", params=params, timeout=self.timeout)
        resp.raise_for_status()
        return resp.json()

    def status(self) -> dict:
        return self._get("/api/status")

    def complete(self) -> bool:
        resp = requests.post(f"{self.base_url}/api/complete", timeout=self.timeout)
        resp.raise_for_status()
        return resp.json()["success"]

    def calendar(self, start_date: Optional[str] = None, end_date: Optional[str] = None) -> list:
        params = {k: v for k, v in {"start_date": start_date, "end_date": end_date}.items() if v}
        return self._get("/api/calendar", params or None)

    def workouts(self) -> dict:
        return self._get("/api/workouts")

    def stats(self) -> dict:
        return self._get("/api/stats")
