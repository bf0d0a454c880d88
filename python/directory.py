"""
Organization and user directory clients.

Both directories are plain JSON over HTTP with a bearer token. Replies are
reduced to small dicts so callers never depend on the directory wire format.
"""

import logging
from typing import Any, Dict, List, Optional

import requests
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_fixed,
)

from config_manager import DirectoryConfig, get_config
from errors import InternalError, redact

logger = logging.getLogger(__name__)

ALL_USERS_PAGE_SIZE = 6000


class DirectoryUnavailable(InternalError):
    """The directory answered 502/503; the call may be retried"""


def _is_unavailable(exc: BaseException) -> bool:
    return isinstance(exc, (DirectoryUnavailable, requests.ConnectionError, requests.Timeout))


class _DirectoryClient:
    """Shared GET plumbing: auth header, timeout, error translation"""

    def __init__(
        self,
        url: str,
        token: str = "",
        timeout: int = 30,
        session: Optional[requests.Session] = None,
    ):
        self.url = url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        if token:
            self.session.headers.update({"Authorization": f"Bearer {token}"})

    @retry(
        stop=stop_after_attempt(5),
        wait=wait_fixed(3),
        retry=retry_if_exception(_is_unavailable),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    def _get(self, path: str, params: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """GET ``path`` and decode the JSON reply; 404 yields None."""
        url = f"{self.url}{path}"
        try:
            response = self.session.get(url, params=params, timeout=self.timeout)
        except (requests.ConnectionError, requests.Timeout):
            raise
        except requests.RequestException as e:
            raise InternalError(redact(f"GET {url}: {e}")) from e
        if response.status_code == 404:
            return None
        if response.status_code in (502, 503):
            raise DirectoryUnavailable(f"GET {url}: [{response.status_code}]")
        if not 200 <= response.status_code < 300:
            raise InternalError(redact(f"GET {url}: [{response.status_code}] {response.text[:200]}"))
        try:
            return response.json()
        except ValueError as e:
            raise InternalError(f"GET {url}: invalid JSON reply") from e

    def get(self, path: str, params: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        try:
            return self._get(path, params)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise InternalError(redact(f"GET {self.url}{path}: {e}")) from e


# ============================================
# ORGANIZATIONS
# ============================================

class OrganizationDirectory(_DirectoryClient):
    """Organization directory: exact lookup and name search"""

    @classmethod
    def from_config(cls, config: Optional[DirectoryConfig] = None) -> 'OrganizationDirectory':
        config = config or get_config().directory
        return cls(config.org_url, config.token, config.timeout)

    def lookup_organization(self, name: str) -> Optional[Dict[str, Any]]:
        """Exact name match.

        Returns:
            {id, name, link} or None when the directory does not know the name
        """
        data = self.get("/lookup", {"name": name})
        if not data or not data.get("ID") or not data.get("Name"):
            return None
        return {"id": data["ID"], "name": data["Name"], "link": data.get("Link", "")}

    def search_organization(self, q: str, rows: int, offset: int) -> List[Dict[str, Any]]:
        data = self.get("/search", {"name": q, "pageSize": rows, "offset": offset}) or {}
        return [{"id": org.get("ID", ""), "name": org.get("Name", "")} for org in data.get("Data") or []]


# ============================================
# USERS
# ============================================

def _user(data: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": data.get("ID", ""),
        "name": data.get("Name", ""),
        "email": data.get("Email", ""),
        "username": data.get("Username", ""),
    }


class UserDirectory(_DirectoryClient):
    """User directory listing"""

    @classmethod
    def from_config(cls, config: Optional[DirectoryConfig] = None) -> 'UserDirectory':
        config = config or get_config().directory
        return cls(config.user_url, config.token, config.timeout)

    def _list(self, q: str, rows: int, offset: int) -> Dict[str, Any]:
        return self.get("/users", {"name": q, "pageSize": rows, "offset": offset}) or {}

    def list_users(self, q: str, rows: int, offset: int) -> List[Dict[str, Any]]:
        return [_user(u) for u in self._list(q, rows, offset).get("Data") or []]

    def list_all_users(self) -> List[Dict[str, Any]]:
        """Every user, fetched ALL_USERS_PAGE_SIZE at a time until TotalSize is reached."""
        users: List[Dict[str, Any]] = []
        offset = 0
        total = -1
        while True:
            data = self._list("", ALL_USERS_PAGE_SIZE, offset)
            page = data.get("Data") or []
            users.extend(_user(u) for u in page)
            if total < 0:
                total = int((data.get("Metadata") or {}).get("TotalSize", 0))
            offset += ALL_USERS_PAGE_SIZE
            if offset >= total or not page:
                break
            logger.info(f"list_all_users: got {len(users)} users so far, offset: {offset}")
        return users
