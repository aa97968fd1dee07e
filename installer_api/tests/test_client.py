from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List

import pytest
from requests import exceptions as req_exc

from installer_api.client import HttpConfig, InstallerClient, InstallerClientError


class _FakeResponse:
    def __init__(self, status_code: int, payload: Any) -> None:
        self.status_code = status_code
        self._payload = payload
        self.text = payload if isinstance(payload, str) else json.dumps(payload)

    def json(self) -> Any:
        if isinstance(self._payload, str):
            raise ValueError("not json")
        return self._payload


class _FakeSession:
    def __init__(self, responses: List[Any]) -> None:
        self.responses = list(responses)
        self.calls: List[Dict[str, Any]] = []

    def request(self, method: str, url: str, **kwargs: Any):
        files = kwargs.get("files") or {}
        uploaded = {name: value[1].read() for name, value in files.items()}
        self.calls.append({"method": method, "url": url, "uploaded": uploaded, **kwargs})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def _client(responses: List[Any], **kwargs: Any) -> tuple[InstallerClient, _FakeSession]:
    session = _FakeSession(responses)
    client = InstallerClient("http://installer.local/", api_key="secret", session=session, **kwargs)
    return client, session


def test_upload_package_posts_multipart_with_api_key(tmp_path: Path) -> None:
    package = tmp_path / "update.zip"
    package.write_bytes(b"PK\x03\x04")
    client, session = _client([_FakeResponse(200, {"error": False, "message": "ok"})])

    result = client.upload_package(package)

    assert result == {"error": False, "message": "ok"}
    call = session.calls[0]
    assert call["method"] == "POST"
    assert call["url"] == "http://installer.local/updates"
    assert call["headers"]["X-API-Key"] == "secret"
    assert call["uploaded"] == {"update_file": b"PK\x03\x04"}
    assert call["timeout"] == HttpConfig().upload_timeout_s


def test_upload_retry_resends_whole_file(tmp_path: Path) -> None:
    package = tmp_path / "update.zip"
    package.write_bytes(b"full-content")
    client, session = _client([req_exc.ConnectionError("reset"), _FakeResponse(200, {"error": False})])

    client.upload_package(package)

    assert [call["uploaded"]["update_file"] for call in session.calls] == [b"full-content", b"full-content"]


def test_transport_failures_exhaust_retries() -> None:
    client, session = _client([req_exc.Timeout(), req_exc.Timeout()], cfg=HttpConfig(retries=1))

    with pytest.raises(InstallerClientError) as exc_info:
        client.current_version()

    assert len(session.calls) == 2
    assert "Timeout contacting" in str(exc_info.value)


def test_error_payload_maps_to_client_error() -> None:
    payload = {"error": True, "code": "updates.sequence_error", "message": "Version 1.4.0 does not follow", "hint": "x"}
    client, _ = _client([_FakeResponse(409, payload)])

    with pytest.raises(InstallerClientError) as exc_info:
        client.current_version()

    assert exc_info.value.status == 409
    assert exc_info.value.code == "updates.sequence_error"
    assert exc_info.value.hint == "x"
    assert "does not follow" in str(exc_info.value)


def test_history_passes_limit_and_returns_entries() -> None:
    entries = [{"version": "1.2.0", "applied_at": "2026-01-01T00:00:00"}]
    client, session = _client([_FakeResponse(200, {"updates": entries})])

    assert client.history(limit=5) == entries
    assert session.calls[0]["params"] == {"limit": 5}


def test_configure_database_and_install_send_json() -> None:
    client, session = _client(
        [
            _FakeResponse(200, {"error": False, "state": "db_configured"}),
            _FakeResponse(200, {"error": False, "state": "complete"}),
        ]
    )

    client.configure_database(database="app", host="db", port=3306, username="root")
    client.install(first_name="Ada", last_name="Lovelace", email="ada@example.com", password="s3cret!")

    assert session.calls[0]["json"] == {"database": "app", "host": "db", "port": 3306, "username": "root"}
    assert session.calls[1]["json"]["password_confirmation"] == "s3cret!"


def test_non_json_success_is_rejected() -> None:
    client, _ = _client([_FakeResponse(200, "<html>")])

    with pytest.raises(InstallerClientError):
        client.install_status()
