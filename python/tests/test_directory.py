"""
Tests for the organization and user directory clients.
"""

from unittest.mock import MagicMock

import pytest
import requests

from directory import (
    ALL_USERS_PAGE_SIZE,
    DirectoryUnavailable,
    OrganizationDirectory,
    UserDirectory,
)
from errors import InternalError


def reply(status_code=200, payload=None, text=""):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = payload if payload is not None else {}
    response.text = text
    return response


@pytest.fixture
def http():
    session = MagicMock(spec=requests.Session)
    session.headers = {}
    return session


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    monkeypatch.setattr("time.sleep", lambda seconds: None)


# ============================================
# ORGANIZATIONS
# ============================================

class TestOrganizationDirectory:

    @pytest.fixture
    def orgs(self, http):
        return OrganizationDirectory("http://orgs.local/", token="tkn", timeout=3, session=http)

    def test_bearer_token(self, orgs, http):
        assert http.headers["Authorization"] == "Bearer tkn"

    def test_lookup(self, orgs, http):
        http.get.return_value = reply(payload={"ID": "o1", "Name": "Acme", "Link": "https://acme.com"})
        assert orgs.lookup_organization("Acme") == {"id": "o1", "name": "Acme", "link": "https://acme.com"}
        args, kwargs = http.get.call_args
        assert args[0] == "http://orgs.local/lookup"
        assert kwargs["params"] == {"name": "Acme"}

    def test_lookup_not_found(self, orgs, http):
        http.get.return_value = reply(status_code=404)
        assert orgs.lookup_organization("Nobody") is None

    def test_search(self, orgs, http):
        http.get.return_value = reply(payload={"Data": [{"ID": "o1", "Name": "Acme"}, {"ID": "o2", "Name": "Acme Labs"}]})
        assert orgs.search_organization("Acme", 10, 0) == [
            {"id": "o1", "name": "Acme"},
            {"id": "o2", "name": "Acme Labs"},
        ]
        assert http.get.call_args[1]["params"] == {"name": "Acme", "pageSize": 10, "offset": 0}

    def test_unavailable_is_retried(self, orgs, http):
        http.get.side_effect = [reply(status_code=503), reply(status_code=502), reply(payload={"Data": []})]
        assert orgs.search_organization("Acme", 10, 0) == []
        assert http.get.call_count == 3

    def test_unavailable_gives_up(self, orgs, http):
        http.get.return_value = reply(status_code=503)
        with pytest.raises(DirectoryUnavailable):
            orgs.search_organization("Acme", 10, 0)
        assert http.get.call_count == 5

    def test_other_errors_are_not_retried(self, orgs, http):
        http.get.return_value = reply(status_code=500, text="boom")
        with pytest.raises(InternalError):
            orgs.search_organization("Acme", 10, 0)
        assert http.get.call_count == 1

    def test_connection_error(self, orgs, http):
        http.get.side_effect = requests.ConnectionError("refused")
        with pytest.raises(InternalError) as exc:
            orgs.lookup_organization("Acme")
        assert "refused" in str(exc.value)


# ============================================
# USERS
# ============================================

class TestUserDirectory:

    @pytest.fixture
    def users(self, http):
        return UserDirectory("http://users.local", session=http)

    def test_list_users(self, users, http):
        http.get.return_value = reply(payload={"Data": [
            {"ID": "1", "Name": "Alice", "Email": "alice@acme.com", "Username": "alice"},
        ]})
        assert users.list_users("ali", 5, 0) == [
            {"id": "1", "name": "Alice", "email": "alice@acme.com", "username": "alice"},
        ]
        assert "Authorization" not in http.headers

    def test_list_all_users_pages(self, users, http):
        total = ALL_USERS_PAGE_SIZE + 1
        http.get.side_effect = [
            reply(payload={"Data": [{"ID": str(i)} for i in range(ALL_USERS_PAGE_SIZE)],
                           "Metadata": {"TotalSize": total}}),
            reply(payload={"Data": [{"ID": "last"}], "Metadata": {"TotalSize": total}}),
        ]
        result = users.list_all_users()
        assert len(result) == total
        assert result[-1]["id"] == "last"
        offsets = [c[1]["params"]["offset"] for c in http.get.call_args_list]
        assert offsets == [0, ALL_USERS_PAGE_SIZE]

    def test_list_all_users_stops_on_empty_page(self, users, http):
        http.get.return_value = reply(payload={"Data": [], "Metadata": {"TotalSize": 50000}})
        assert users.list_all_users() == []
        assert http.get.call_count == 1
