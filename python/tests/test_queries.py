"""
Tests for the read-side queries: nested listings, enrichment and the full dump.
"""

from datetime import datetime, timezone

import pytest

from database.identity_service import IdentityGraphService
from database.queries import (
    check_unaffiliated,
    enrich_contributors,
    get_all_affiliations,
    normalize_paging,
    page_count,
    profile_enrollments,
    query_domains,
    query_matching_blacklist,
    query_organizations_nested,
    query_unique_identities_nested,
)
from database.repositories import MatchingBlacklistRepository


def millis(*args):
    return int(datetime(*args, tzinfo=timezone.utc).timestamp() * 1000)


@pytest.fixture
def graph(session):
    """Three people, two organizations and one bot."""
    engine = IdentityGraphService(session)
    acme = engine.organizations.add("Acme").id
    initech = engine.organizations.add("Initech").id
    engine.domains.add(acme, "acme.com", True)
    engine.domains.add(initech, "initech.com")

    engine.add_nested_unique_identity("u1")
    engine.profiles.edit("u1", {"name": "Alice", "email": "alice@acme.com"})
    engine.identities.add("git", "alice@acme.com", "Alice", "alice", uuid="u1")
    engine.identities.add("github", None, None, "alice", uuid="u1")
    engine.enrollments.add("u1", acme, datetime(2010, 1, 1), datetime(2015, 1, 1))
    engine.enrollments.add("u1", initech, datetime(2015, 1, 1), datetime(2020, 1, 1))

    engine.add_nested_unique_identity("u2")
    engine.profiles.edit("u2", {"name": "Bob", "email": "bob@example.com"})
    engine.identities.add("git", "bob@example.com", "Bob", None, uuid="u2")

    engine.add_nested_unique_identity("u3")
    engine.profiles.edit("u3", {"name": "ci-bot", "is_bot": 1})

    return {"acme": acme, "initech": initech}


# ============================================
# PAGING
# ============================================

class TestPaging:

    @pytest.mark.parametrize("rows, page, expected", [
        (None, None, (10, 1)),
        (0, 0, (0xffff, 1)),
        (-1, -5, (0xffff, 1)),
        (25, 3, (25, 3)),
    ])
    def test_normalize_paging(self, rows, page, expected):
        assert normalize_paging(rows, page) == expected

    def test_page_count(self):
        assert page_count(0, 10) == 0
        assert page_count(21, 10) == 3


# ============================================
# NESTED LISTINGS
# ============================================

class TestNestedProfiles:

    def test_all(self, session, graph):
        items, n = query_unique_identities_nested(session, None, 10, 1, False)
        assert n == 3
        assert [i["uuid"] for i in items] == ["u1", "u2", "u3"]
        alice = items[0]
        assert [i["source"] for i in alice["identities"]] == ["git", "github"]
        assert [e["organization_name"] for e in alice["enrollments"]] == ["Acme", "Initech"]
        assert alice["enrollments"][0]["start"] == "2010-01-01T00:00:00.000Z"
        assert alice["last_modified"].endswith("Z")

    def test_search_substring(self, session, graph):
        items, n = query_unique_identities_nested(session, "example.com", 10, 1, False)
        assert (n, [i["uuid"] for i in items]) == (1, ["u2"])

    def test_search_exact_uuid(self, session, graph):
        items, n = query_unique_identities_nested(session, "uuid=u3", 10, 1, False)
        assert (n, [i["uuid"] for i in items]) == (1, ["u3"])

    def test_identity_required(self, session, graph):
        _, n = query_unique_identities_nested(session, None, 10, 1, True)
        assert n == 2

    def test_paging(self, session, graph):
        items, n = query_unique_identities_nested(session, None, 2, 2, False)
        assert n == 3
        assert [i["uuid"] for i in items] == ["u3"]


class TestOrganizationsAndDomains:

    def test_organizations_with_domains(self, session, graph):
        items, n = query_organizations_nested(session, None, 10, 1)
        assert n == 2
        assert [o["name"] for o in items] == ["Acme", "Initech"]
        assert items[0]["domains"][0]["domain"] == "acme.com"
        assert items[0]["domains"][0]["is_top_domain"] is True
        assert items[0]["domains"][0]["organization_name"] == "Acme"

    def test_organizations_search(self, session, graph):
        items, n = query_organizations_nested(session, "tech", 10, 1)
        assert (n, [o["name"] for o in items]) == (1, ["Initech"])

    def test_domains_of_organization(self, session, graph):
        items, n = query_domains(session, graph["initech"], None, 10, 1)
        assert (n, [d["domain"] for d in items]) == (1, ["initech.com"])

    def test_profile_enrollments(self, session, graph):
        enrollments = profile_enrollments(session, "u1")
        assert [e["organization_name"] for e in enrollments] == ["Acme", "Initech"]


class TestMatchingBlacklist:

    def test_search(self, session):
        repo = MatchingBlacklistRepository(session)
        for email in ("root@localhost", "noreply@github.com", "bot@example.com"):
            repo.add(email)
        items, n = query_matching_blacklist(session, "@", 2, 1)
        assert n == 3
        assert items == ["bot@example.com", "noreply@github.com"]


# ============================================
# ENRICHMENT
# ============================================

class TestEnrichment:

    def test_check_unaffiliated(self, session, graph):
        result = check_unaffiliated(session, [("u1", 50), ("u2", 7), ("u3", 100), ("ghost", 3), ("", 9), ("u2", 1)])
        assert result == [{"uuid": "u2", "name": "Bob", "contributions": 8}]

    def test_check_unaffiliated_empty(self, session):
        assert check_unaffiliated(session, []) == []

    def test_enrich_at_instant(self, session, graph):
        contributors = [{"uuid": "u1"}, {"uuid": "u2"}, {"uuid": "ghost"}]
        enrich_contributors(session, contributors, millis(2012, 6, 1))
        assert contributors[0] == {
            "uuid": "u1", "name": "Alice", "email": "alice@acme.com", "organization": "Acme",
        }
        assert contributors[1] == {"uuid": "u2", "name": "Bob", "email": "bob@example.com"}
        assert contributors[2] == {"uuid": "ghost"}

    def test_enrich_later_instant(self, session, graph):
        contributors = [{"uuid": "u1"}]
        enrich_contributors(session, contributors, millis(2018, 1, 1))
        assert contributors[0]["organization"] == "Initech"


# ============================================
# FULL DUMP
# ============================================

class TestAllAffiliations:

    def test_dump(self, session, graph):
        profiles = get_all_affiliations(session)
        assert [p["uuid"] for p in profiles] == ["u1"]
        alice = profiles[0]
        assert alice["email"] == "alice!acme.com"
        assert [i["source"] for i in alice["identities"]] == ["git", "github"]
        assert alice["identities"][0]["email"] == "alice!acme.com"
        assert alice["identities"][1]["email"] is None
        assert [e["organization"] for e in alice["enrollments"]] == ["Acme", "Initech"]

    def test_sorted_by_name(self, session, graph):
        engine = IdentityGraphService(session)
        engine.enrollments.add("u2", graph["acme"])
        names = [p["name"] for p in get_all_affiliations(session)]
        assert names == ["Alice", "Bob"]
