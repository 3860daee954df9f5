"""Argo Server REST client.

Thin wrapper over the Argo Server HTTP API (`/api/v1/workflows/...`). It keeps
HTTP details out of the service layer and makes tests easy: inject a
`requests.Session` double.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

import requests

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class ArgoError(Exception):
    """Raised for any non-2xx answer (or transport failure) from Argo Server."""

    message: str
    status_code: int | None = None

    def __str__(self) -> str:
        if self.status_code is None:
            return f"Argo request failed: {self.message}"
        return f"Argo request failed ({self.status_code}): {self.message}"


@dataclass(frozen=True, slots=True)
class ArgoLogEntry:
    pod_name: str
    content: str


class ArgoClient:
    """Small wrapper around the Argo Server API for the operations we need."""

    def __init__(
        self,
        *,
        base_url: str,
        namespace: str,
        token: str = "",
        verify_tls: bool = True,
        timeout: float = 30.0,
        session: requests.Session | None = None,
    ) -> None:
        if not base_url:
            raise ValueError("ARGO_SERVER_URL is required")
        if not namespace:
            raise ValueError("Argo namespace is required")

        self._base_url = base_url.rstrip("/")
        self._namespace = namespace
        self._timeout = timeout
        self._session = session or requests.Session()
        self._session.verify = verify_tls
        self._session.headers.update(
            {
                "Accept": "application/json",
                "User-Agent": "tas-workflow-builder",
            }
        )
        if token:
            # Argo accepts either a raw "Bearer ..." value or a bare token.
            value = token if token.lower().startswith("bearer ") else f"Bearer {token}"
            self._session.headers["Authorization"] = value

    @property
    def namespace(self) -> str:
        return self._namespace

    def _url(self, suffix: str = "") -> str:
        if suffix and not suffix.startswith("/"):
            suffix = "/" + suffix
        return f"{self._base_url}/api/v1/workflows/{self._namespace}{suffix}"

    def _request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        try:
            resp = self._session.request(method, url, timeout=self._timeout, **kwargs)
        except requests.RequestException as e:
            raise ArgoError(str(e)) from e
        if resp.status_code >= 400:
            raise ArgoError(_error_message(resp), status_code=resp.status_code)
        return resp

    def submit(self, manifest: dict[str, Any]) -> dict[str, Any]:
        resp = self._request("POST", self._url(), json={"workflow": manifest})
        created: dict[str, Any] = resp.json()
        logger.info(
            "Submitted Argo workflow",
            extra={"argo_workflow": created.get("metadata", {}).get("name")},
        )
        return created

    def lint(self, manifest: dict[str, Any]) -> dict[str, Any]:
        resp = self._request("POST", self._url("lint"), json={"workflow": manifest})
        linted: dict[str, Any] = resp.json()
        return linted

    def get(self, name: str) -> dict[str, Any]:
        resp = self._request("GET", self._url(name))
        workflow: dict[str, Any] = resp.json()
        return workflow

    def list(self, *, label_selector: str | None = None) -> list[dict[str, Any]]:
        params = {"listOptions.labelSelector": label_selector} if label_selector else None
        resp = self._request("GET", self._url(), params=params)
        data: dict[str, Any] = resp.json()
        items = data.get("items")
        return items if isinstance(items, list) else []

    def terminate(self, name: str) -> dict[str, Any]:
        resp = self._request("PUT", self._url(f"{name}/terminate"), json={})
        workflow: dict[str, Any] = resp.json()
        return workflow

    def delete(self, name: str) -> None:
        self._request("DELETE", self._url(name))

    def logs(self, name: str, *, container: str = "main") -> list[ArgoLogEntry]:
        """Fetch pod logs for a workflow.

        Argo streams newline-delimited JSON objects shaped like
        `{"result": {"content": "...", "podName": "..."}}`.
        """

        resp = self._request(
            "GET",
            self._url(f"{name}/log"),
            params={"logOptions.container": container},
        )
        entries: list[ArgoLogEntry] = []
        for line in resp.text.splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                obj = json.loads(line)
            except json.JSONDecodeError:
                logger.debug("Skipping non-JSON Argo log line", extra={"line": line[:200]})
                continue
            result = obj.get("result") if isinstance(obj, dict) else None
            if not isinstance(result, dict):
                continue
            entries.append(
                ArgoLogEntry(
                    pod_name=str(result.get("podName") or ""),
                    content=str(result.get("content") or ""),
                )
            )
        return entries

    def close(self) -> None:
        self._session.close()


def _error_message(resp: requests.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return resp.text[:500] or resp.reason
    if isinstance(data, dict) and data.get("message"):
        return str(data["message"])
    return resp.text[:500]
