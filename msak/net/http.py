"""Short-lived control-plane HTTP requests."""

from __future__ import annotations

import logging
from typing import Dict, Optional

import requests

LOGGER = logging.getLogger(__name__)


class HttpClient:
    """Thin wrapper around a shared :class:`requests.Session`.

    Applies the configured user agent and a ``(connect, read)`` timeout to every
    request. Transport failures surface as ``requests`` exceptions; HTTP status
    codes are left to the caller.
    """

    def __init__(
        self,
        user_agent: Optional[str] = None,
        connect_timeout: float = 10.0,
        request_timeout: float = 15.0,
        session: Optional[requests.Session] = None,
    ):
        self.user_agent = user_agent
        self.timeout = (connect_timeout, request_timeout)
        self.session = session or requests.Session()

    def get(self, url: str, headers: Optional[Dict[str, str]] = None) -> requests.Response:
        merged: Dict[str, str] = {}
        if self.user_agent:
            merged["User-Agent"] = self.user_agent
        merged.update(headers or {})
        LOGGER.debug("GET %s", url)
        return self.session.get(url, headers=merged, timeout=self.timeout)

    def close(self) -> None:
        self.session.close()
