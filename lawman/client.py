"""
Lawman API Client
=================

Thin httpx client for staff tooling and dashboards.

- Bearer access token held in memory; the refresh token lives in the
  http-only cookie the server sets, so `refresh()` just replays the cookie.
- A `token_expired` 401 triggers one refresh and one retry.
- Customer notification fetches go through a `NotificationCooldownGuard`:
  while an endpoint is cooling down the call returns a `CooldownActive`
  marker instead of hitting the server.
- `CasePoller` keeps a case list fresh; a result from a superseded fetch is
  never applied.
"""

import logging
from typing import Any, Dict, List, Optional, Union

import httpx

from .config import Settings
from .cooldown import CooldownActive, NotificationCooldownGuard, is_not_found_failure
from .errors import LawmanError
from .scheduler import RequestGate

logger = logging.getLogger(__name__)


class ApiError(LawmanError):
    """Error envelope returned by the server."""

    def __init__(self, status_code: int, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.status_code = status_code
        self.code = code


def _raise_for_envelope(response: httpx.Response) -> None:
    if response.status_code < 400:
        return
    try:
        error = response.json().get("error") or {}
    except ValueError:
        error = {}
    raise ApiError(
        response.status_code,
        error.get("code", "http_error"),
        error.get("message", response.text[:200]),
        error.get("details"),
    )


class LawmanClient:
    def __init__(
        self,
        base_url: str,
        cooldown: Optional[NotificationCooldownGuard] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
        settings: Optional[Settings] = None,
    ):
        self.http = httpx.Client(base_url=base_url.rstrip("/"), timeout=timeout, transport=transport)
        self.cooldown = cooldown or NotificationCooldownGuard.persistent(settings)
        self.access_token: Optional[str] = None

    def close(self) -> None:
        self.http.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    # -------------------------------------------------------------------------
    # Session
    # -------------------------------------------------------------------------

    def login(self, username: str, password: str) -> dict:
        response = self.http.post("/api/login", json={"username": username, "password": password})
        _raise_for_envelope(response)
        data = response.json()
        self.access_token = data["access_token"]
        return data

    def refresh(self) -> str:
        response = self.http.post("/api/refresh")
        _raise_for_envelope(response)
        self.access_token = response.json()["access_token"]
        return self.access_token

    def logout(self) -> None:
        response = self.http.post("/api/logout", headers=self._auth_headers())
        _raise_for_envelope(response)
        self.access_token = None

    def _auth_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.access_token}"} if self.access_token else {}

    def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        return self.http.request(method, path, headers=self._auth_headers(), **kwargs)

    def _send_authenticated(self, method: str, path: str, **kwargs) -> httpx.Response:
        """Send once; on `token_expired`, refresh and send again."""
        response = self._send(method, path, **kwargs)
        if response.status_code == 401 and self._error_code(response) == "token_expired":
            logger.info("Access token expired, refreshing")
            self.refresh()
            response = self._send(method, path, **kwargs)
        return response

    def request(self, method: str, path: str, **kwargs) -> Any:
        response = self._send_authenticated(method, path, **kwargs)
        _raise_for_envelope(response)
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    @staticmethod
    def _error_code(response: httpx.Response) -> Optional[str]:
        try:
            return (response.json().get("error") or {}).get("code")
        except ValueError:
            return None

    # -------------------------------------------------------------------------
    # Cases
    # -------------------------------------------------------------------------

    def list_cases(self, **filters) -> List[dict]:
        params = {k: v for k, v in filters.items() if v is not None}
        return self.request("GET", "/api/cases", params=params)

    def get_case(self, case_id: str) -> dict:
        return self.request("GET", f"/api/cases/{case_id}")

    def transition(self, case_id: str, target: str) -> dict:
        return self.request("POST", f"/api/cases/{case_id}/transitions", json={"target": target})

    def history(self, case_id: str) -> List[dict]:
        return self.request("GET", f"/api/cases/{case_id}/history")

    def kpis(self) -> dict:
        return self.request("GET", "/api/kpis")

    # -------------------------------------------------------------------------
    # Notifications
    # -------------------------------------------------------------------------

    def customer_notifications(self, customer_id: str) -> Union[List[dict], CooldownActive]:
        """
        Notifications for one customer, or a `CooldownActive` marker.

        An empty list means the server has nothing; the marker means the
        server was not asked.
        """
        key = f"customer-notifications:{customer_id}"
        active = self.cooldown.active_cooldown(key)
        if active is not None:
            logger.debug(f"Skipping {key}: cooling down until {active.until.isoformat()}")
            return active

        try:
            response = self._send_authenticated("GET", f"/api/customers/{customer_id}/notifications")
        except httpx.HTTPError as e:
            return self._cool_down(key, e)

        if response.status_code in (401, 403):
            # Our session, not the endpoint, is at fault
            _raise_for_envelope(response)
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            return self._cool_down(key, e)

        self.cooldown.record_success(key)
        return response.json()

    def _cool_down(self, key: str, error: httpx.HTTPError) -> CooldownActive:
        permanent = is_not_found_failure(error)
        until = self.cooldown.record_failure(key, permanent)
        # A persisted not-found entry may outlast the failure just recorded
        return self.cooldown.active_cooldown(key) or CooldownActive(key, until, permanent)


class CasePoller:
    """Holds the latest case list; stale responses are discarded."""

    def __init__(self, client: LawmanClient, **filters):
        self.client = client
        self.filters = filters
        self.cases: List[dict] = []
        self.gate = RequestGate()

    def set_filters(self, **filters) -> None:
        self.filters = filters
        # Anything already in flight was asked with the old filters
        self.gate.begin()

    def refresh(self) -> bool:
        """Fetch and apply. Returns False if a newer fetch superseded this one."""
        token = self.gate.begin()
        cases = self.client.list_cases(**self.filters)
        applied = self.gate.apply_if_current(token, lambda: setattr(self, "cases", cases))
        if not applied:
            logger.debug("Dropped superseded case list response")
        return applied
