"""Mailchimp Marketing API client: paginated reads, plain writes, health probe."""

from __future__ import annotations

import logging
from typing import Any, Iterator, Optional

import requests

from scripts.membersync.errors import (
    MalformedApiKeyError,
    RemoteTransportError,
    RemoteValidationError,
)

logger = logging.getLogger("membersync.mailchimp")

DEFAULT_TIMEOUT = 20.0
DEFAULT_QUERY_COUNT = 1000


def data_center(api_key: str) -> str:
    """The ``us21`` in ``<key>-us21``."""
    key, sep, dc = api_key.strip().rpartition("-")
    if not sep or not key or not dc:
        raise MalformedApiKeyError("Mailchimp API key has no data-center suffix")
    return dc


class Client:
    """One requests.Session per client. Methods raise RemoteError subclasses."""

    def __init__(
        self,
        api_key: str,
        timeout: float = DEFAULT_TIMEOUT,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = f"https://{data_center(api_key)}.api.mailchimp.com"
        self.timeout = timeout
        self._session = session or requests.Session()
        self._session.headers.update({
            "Authorization": f"Bearer {api_key.strip()}",
            "Accept": "application/json",
        })

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        url = f"{self.base_url}{path}"
        try:
            resp = self._session.request(method, url, timeout=self.timeout, **kwargs)
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise RemoteTransportError(f"{method} {path}: {exc}") from exc

        if resp.status_code >= 400:
            try:
                detail = resp.json()
            except ValueError:
                detail = {"detail": resp.text[:500]}
            message = f"{method} {path} -> {resp.status_code}: {detail.get('detail') or detail.get('title') or ''}"
            if resp.status_code >= 500 or resp.status_code == 429:
                raise RemoteTransportError(message, status=resp.status_code, detail=detail)
            raise RemoteValidationError(message, status=resp.status_code, detail=detail)

        if resp.status_code == 204 or not resp.content:
            return None
        return resp.json()

    def fetch(self, path: str, params: Optional[dict[str, Any]] = None) -> Any:
        return self._request("GET", path, params=params)

    def fetch_stream(
        self,
        path: str,
        items_key: str,
        params: Optional[dict[str, Any]] = None,
        count: int = DEFAULT_QUERY_COUNT,
    ) -> Iterator[dict[str, Any]]:
        """Yield every item of an offset-paginated collection.

        Each call starts again at offset 0. Stops on the first empty page.
        """
        query = dict(params or {})
        offset = 0
        while True:
            page = self.fetch(path, {**query, "count": count, "offset": offset}) or {}
            items = page.get(items_key) or []
            if not items:
                return
            yield from items
            offset += len(items)

    def post(self, path: str, body: Any = None) -> Any:
        return self._request("POST", path, json=body)

    def patch(self, path: str, body: Any = None) -> Any:
        return self._request("PATCH", path, json=body)

    def put(self, path: str, body: Any = None) -> Any:
        return self._request("PUT", path, json=body)

    def delete(self, path: str) -> Any:
        return self._request("DELETE", path)

    def ping(self) -> str:
        """Health probe. Returns the health_status text."""
        return (self.fetch("/3.0/ping") or {}).get("health_status", "")


def lists(client: Client) -> Iterator[dict[str, Any]]:
    """Audiences visible to the API key as {id, name} dicts."""
    for item in client.fetch_stream("/3.0/lists", "lists", {"fields": "lists.id,lists.name"}):
        yield {"id": item.get("id"), "name": item.get("name")}
