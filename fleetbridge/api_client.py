"""
Fleet backend REST API client.
"""

import requests as http_requests
from fastapi import HTTPException

from fleetbridge.config import CONFIG, log
from fleetbridge.cache import Cache


class FleetAPI:
    """Wrapper around the fleet backend (robots, projects, users, sinks)."""

    def __init__(self, cache: Cache = None, base: str = None,
                 token: str = None, timeout: float = None):
        self._cache = cache or Cache()
        self.base = (base or CONFIG["api_base"]).rstrip("/")
        self._token = token if token is not None else CONFIG.get("api_token")
        self._timeout = timeout or CONFIG["api_timeout"]

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    def _check(self, r):
        if r.status_code < 200 or r.status_code >= 300:
            raise HTTPException(status_code=r.status_code, detail=r.text[:300])
        if not r.content:
            return {}
        try:
            return r.json()
        except ValueError:
            # PHP endpoints sometimes answer with a bare text body
            return {"raw": r.text[:300]}

    def _get(self, path: str):
        r = http_requests.get(self.base + path, headers=self._headers(), timeout=self._timeout)
        return self._check(r)

    def _post(self, path: str, body: dict):
        r = http_requests.post(self.base + path, headers=self._headers(), json=body,
                               timeout=self._timeout)
        return self._check(r)

    def _put(self, path: str, body: dict):
        r = http_requests.put(self.base + path, headers=self._headers(), json=body,
                              timeout=self._timeout)
        return self._check(r)

    @staticmethod
    def _as_list(data) -> list:
        return data if isinstance(data, list) else []

    # ── Robots ──

    def get_robots(self) -> list:
        return self._as_list(self._get("/robots.php"))

    def get_robot(self, robot_id) -> dict:
        data = self._get(f"/robots/{robot_id}")
        if not isinstance(data, dict) or not data:
            raise HTTPException(status_code=404, detail=f"Robot {robot_id} not found")
        return data

    def update_robot(self, robot_id, record: dict) -> dict:
        """Whole-record update. Returns the stored record (or *record* if the
        backend answers without one)."""
        data = self._put(f"/robots.php/{robot_id}", record)
        if isinstance(data, dict) and data.get("Sections"):
            return data
        return record

    # ── Projects & users ──

    def get_projects(self, fresh: bool = False) -> list:
        if fresh:
            self._cache.invalidate("projects")
        return self._cache.get_or_load(
            "projects", CONFIG["cache_ttl_projects"],
            lambda: self._as_list(self._get("/projects.php")))

    def get_users(self, fresh: bool = False) -> list:
        if fresh:
            self._cache.invalidate("users")
        return self._cache.get_or_load(
            "users", CONFIG["cache_ttl_users"],
            lambda: self._as_list(self._get("/users.php")))

    # ── Sinks ──

    def post_notification(self, record: dict) -> dict:
        data = self._post("/notifications.php", record)
        return data if isinstance(data, dict) else {}

    def post_log(self, record: dict) -> dict:
        data = self._post("/logs.php", record)
        return data if isinstance(data, dict) else {}

    def send_email(self, email: str, message: str, subject: str) -> dict:
        log.info("Sending email to %s: %s", email, subject)
        data = self._post("/sendEmail.php", {"email": email, "message": message, "subject": subject})
        return data if isinstance(data, dict) else {}
