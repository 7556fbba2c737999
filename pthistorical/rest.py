"""Thin REST transport for the Historical PowerTrack API."""
import logging
from typing import Optional, Tuple

import requests

from .constants import REQUEST_HEADERS, REQUEST_TIMEOUTS
from .exceptions import TransportError


def is_success(status_code: int) -> bool:
    """Any 2xx code counts as success."""
    return 200 <= status_code < 300


class RestClient:
    """
    Sends authenticated requests and returns `(status_code, body)` pairs.

    Non-2xx responses are returned, not raised; callers decide what a failure
    means at their step. Network-level failures raise `TransportError`.
    """

    def __init__(self, user_name: str, password: str, timeout: Tuple[float, float] = REQUEST_TIMEOUTS,
                 session: Optional[requests.Session] = None):
        """
        Initializes the RestClient.

        Args:
            user_name: Account user for HTTP basic auth.
            password: Decoded account password.
            timeout: (connect_timeout, read_timeout) in seconds.
            session: Optional pre-built session, mainly for tests.
        """
        self.timeout = timeout
        self.logger = logging.getLogger(__name__)
        self.session = session or requests.Session()
        self.session.auth = (user_name, password)
        self.session.headers.update(REQUEST_HEADERS)

    def _request(self, method: str, url: str, body: Optional[str] = None) -> Tuple[int, str]:
        self.logger.debug(f"{method} {url}")
        try:
            response = self.session.request(
                method, url,
                data=body.encode('utf-8') if body is not None else None,
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            raise TransportError(f"{method} {url} failed: {e}") from e
        self.logger.debug(f"{method} {url} -> HTTP {response.status_code}")
        return response.status_code, response.text

    def get(self, url: str, body: Optional[str] = None) -> Tuple[int, str]:
        return self._request('GET', url, body)

    def post(self, url: str, body: Optional[str] = None) -> Tuple[int, str]:
        return self._request('POST', url, body)

    def put(self, url: str, body: Optional[str] = None) -> Tuple[int, str]:
        return self._request('PUT', url, body)

    def delete(self, url: str, body: Optional[str] = None) -> Tuple[int, str]:
        return self._request('DELETE', url, body)

    def close(self):
        self.session.close()
