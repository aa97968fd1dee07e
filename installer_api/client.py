"""Operator-side HTTP client for the installer API.

``RetryingSession`` wraps ``requests.Session`` with the API-key header and a
retry loop for timeouts and connection errors. ``InstallerClient`` maps each
endpoint to one method and raises :class:`InstallerClientError` for non-2xx
responses, carrying the server's ``code`` and ``hint``.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests
from requests import exceptions as req_exc


@dataclass
class HttpConfig:
    """Timeout and retry configuration.

    Attributes:
        request_timeout_s: Timeout in seconds for JSON API calls.
        upload_timeout_s: Timeout in seconds for package uploads, which apply synchronously.
        retries: Number of retry attempts after the initial request.
    """

    request_timeout_s: int = 10
    upload_timeout_s: int = 600
    retries: int = 2


class InstallerClientError(RuntimeError):
    """Non-2xx response or transport failure talking to the installer API."""

    def __init__(
        self,
        message: str,
        *,
        status: Optional[int] = None,
        code: Optional[str] = None,
        hint: Optional[str] = None,
        payload: Any = None,
        context: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.code = code
        self.hint = hint
        self.payload = payload
        self.context = context


class RetryingSession:
    """requests wrapper with API-key headers and retry loops."""

    def __init__(self, api_key: Optional[str], cfg: HttpConfig, session: Optional[requests.Session] = None) -> None:
        self.session = session or requests.Session()
        self.api_key = api_key
        self.cfg = cfg

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["X-API-Key"] = self.api_key
        return headers

    def request(
        self,
        method: str,
        url: str,
        *,
        timeout: Optional[int] = None,
        **kwargs: Any,
    ) -> requests.Response:
        """Send one request, retrying on timeouts and connection errors."""
        context = f"{method} {url}"
        last_err: InstallerClientError | None = None
        files = kwargs.get("files") or {}
        for _ in range(self.cfg.retries + 1):
            # Rewind upload handles so every attempt sends the whole file.
            for value in files.values():
                handle = value[1] if isinstance(value, tuple) and len(value) >= 2 else value
                if hasattr(handle, "seek"):
                    handle.seek(0)
            try:
                return self.session.request(
                    method,
                    url,
                    headers=self._headers(),
                    timeout=timeout or self.cfg.request_timeout_s,
                    **kwargs,
                )
            except (req_exc.Timeout, req_exc.ConnectionError):
                last_err = InstallerClientError(f"Timeout contacting {url}", context=context)
        raise last_err


class InstallerClient:
    """Typed access to the ``/updates`` and ``/install`` endpoints."""

    def __init__(
        self,
        base_url: str,
        *,
        api_key: Optional[str] = None,
        cfg: Optional[HttpConfig] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        if not base_url:
            raise ValueError("InstallerClient requires a base URL")
        self.base_url = base_url.rstrip("/")
        self.cfg = cfg or HttpConfig()
        self.http = RetryingSession(api_key, self.cfg, session=session)

    def upload_package(self, zip_path: str | Path) -> Dict[str, Any]:
        """Upload one update package and return the apply result."""
        path = Path(zip_path)
        with path.open("rb") as handle:
            files = {"update_file": (path.name, handle, "application/zip")}
            resp = self.http.request("POST", self._url("/updates"), files=files, timeout=self.cfg.upload_timeout_s)
        return self._ensure_ok(resp, "upload_package")

    def current_version(self) -> Dict[str, Any]:
        resp = self.http.request("GET", self._url("/updates/version"))
        return self._ensure_ok(resp, "current_version")

    def history(self, limit: int = 50) -> List[Dict[str, Any]]:
        resp = self.http.request("GET", self._url("/updates/history"), params={"limit": int(limit)})
        payload = self._ensure_ok(resp, "history")
        entries = payload.get("updates")
        if not isinstance(entries, list):
            raise InstallerClientError("Invalid history payload: 'updates' missing", payload=payload, context="history")
        return entries

    def install_status(self) -> Dict[str, Any]:
        resp = self.http.request("GET", self._url("/install"))
        return self._ensure_ok(resp, "install_status")

    def configure_database(
        self,
        *,
        database: str,
        driver: Optional[str] = None,
        host: Optional[str] = None,
        port: Optional[int] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {"database": database}
        optional = {"driver": driver, "host": host, "port": port, "username": username, "password": password}
        body.update({key: value for key, value in optional.items() if value is not None})
        resp = self.http.request("POST", self._url("/install/database"), json=body)
        return self._ensure_ok(resp, "configure_database")

    def install(
        self,
        *,
        first_name: str,
        last_name: str,
        email: str,
        password: str,
        password_confirmation: Optional[str] = None,
    ) -> Dict[str, Any]:
        body = {
            "first_name": first_name,
            "last_name": last_name,
            "email": email,
            "password": password,
            "password_confirmation": password if password_confirmation is None else password_confirmation,
        }
        resp = self.http.request("POST", self._url("/install"), json=body, timeout=self.cfg.upload_timeout_s)
        return self._ensure_ok(resp, "install")

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    @staticmethod
    def _ensure_ok(resp: requests.Response, ctx: str) -> Dict[str, Any]:
        """Return the JSON object body or raise for non-2xx responses."""
        try:
            payload = resp.json()
        except ValueError:
            payload = (getattr(resp, "text", "") or "")[:400] or None
        if 200 <= resp.status_code < 300:
            if not isinstance(payload, dict):
                raise InstallerClientError(f"{ctx}: invalid JSON response", status=resp.status_code, payload=payload, context=ctx)
            return payload

        code = hint = None
        detail = payload if isinstance(payload, str) else None
        if isinstance(payload, dict):
            code = payload.get("code") if isinstance(payload.get("code"), str) else None
            hint = payload.get("hint") if isinstance(payload.get("hint"), str) else None
            for key in ("message", "detail"):
                if isinstance(payload.get(key), str) and payload[key].strip():
                    detail = payload[key].strip()
                    break
        message = f"{ctx}: {detail} (HTTP {resp.status_code})" if detail else f"{ctx}: HTTP {resp.status_code}"
        raise InstallerClientError(
            message,
            status=resp.status_code,
            code=code,
            hint=hint or None,
            payload=payload,
            context=ctx,
        )


__all__ = [
    "HttpConfig",
    "InstallerClient",
    "InstallerClientError",
    "RetryingSession",
]
