# Overview: HTTP transport from the terminal to the server's POS endpoints.

"""
Sync Transport

Every failure to get a usable answer (connection refused, DNS, timeout,
non-2xx, unparseable body) surfaces as TransientNetworkError. The caller
treats the whole batch as not sent: nothing in the change log is touched and
the next tick tries again.
"""

from __future__ import annotations

import logging

import httpx

logger = logging.getLogger(__name__)

POS_TOKEN_HEADER = "X-POS-Token"


class TransientNetworkError(Exception):
    """Server unreachable or answered with an error; retry later without data loss."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class SyncTransport:
    def __init__(
        self,
        base_url: str,
        sync_token: str,
        *,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.client = httpx.Client(
            base_url=base_url.rstrip("/"),
            headers={POS_TOKEN_HEADER: sync_token},
            timeout=timeout,
            transport=transport,
        )

    def close(self) -> None:
        self.client.close()

    def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            resp = self.client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            logger.info("Server unreachable (%s %s): %s", method, path, exc)
            raise TransientNetworkError(f"Server unreachable: {exc}") from exc

        if resp.status_code >= 400:
            try:
                message = resp.json().get("error") or resp.reason_phrase
            except ValueError:
                message = resp.reason_phrase
            logger.warning("%s %s answered %s: %s", method, path, resp.status_code, message)
            raise TransientNetworkError(message or "Request failed", status_code=resp.status_code)

        try:
            data = resp.json()
        except ValueError as exc:
            raise TransientNetworkError("Server returned invalid JSON", status_code=resp.status_code) from exc
        if not isinstance(data, dict):
            raise TransientNetworkError("Server returned an unexpected body", status_code=resp.status_code)
        return data

    def push(self, *, since: str | None, changes: list[dict], device_id: str | None = None) -> dict:
        """POST the batch; returns {ok, server_time, applied, snapshot}."""
        data = self._request(
            "POST",
            "/api/pos/sync",
            json={"since": since, "changes": changes, "device_id": device_id},
        )
        if not data.get("ok") or "server_time" not in data:
            raise TransientNetworkError("Sync response missing server_time")
        return data

    def staff_directory(self) -> list[dict]:
        return self._request("GET", "/api/pos/staff-directory").get("staff") or []

    def login(self, username: str, password: str) -> dict:
        """Online staff login; returns {ok, token, staff}."""
        return self._request("POST", "/api/staff/login", json={"username": username, "password": password})
