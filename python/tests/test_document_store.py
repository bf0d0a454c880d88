"""
Tests for the document store adapter: index patterns, aggregation bodies
and reply parsing against a mocked HTTP session.
"""

from unittest.mock import MagicMock

import pytest
import requests

from document_store import (
    CONTRIBUTOR_METRICS,
    UNBOUNDED_BUCKETS,
    DocumentStoreClient,
    parse_top_contributor,
    project_slug_to_index_pattern,
    project_slugs_to_index_pattern,
    split_project_slugs,
    top_contributors_body,
    unaffiliated_body,
)
from errors import InternalError, register_secret


def reply(status_code=200, payload=None, text=""):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = payload if payload is not None else {}
    response.text = text
    return response


@pytest.fixture
def http():
    return MagicMock(spec=requests.Session)


@pytest.fixture
def client(http):
    http.headers = {}
    return DocumentStoreClient("http://es.local:9200/", "elastic", "s3cr3t", timeout=5, session=http)


# ============================================
# INDEX PATTERNS
# ============================================

class TestIndexPatterns:

    def test_single_slug(self):
        assert project_slug_to_index_pattern("/projects/lfn/onap") == "sds-lfn-onap-*,-*-raw,-*-for-merge"

    def test_slug_without_prefix(self):
        assert project_slug_to_index_pattern("cncf") == "sds-cncf-*,-*-raw,-*-for-merge"

    def test_many_slugs(self):
        pattern = project_slugs_to_index_pattern(["/projects/lfn/onap", "/projects/cncf"])
        assert pattern == "sds-lfn-onap-*,sds-cncf-*,-*-raw,-*-for-merge"

    def test_split(self):
        assert split_project_slugs(" /projects/a, ,/projects/b ") == ["/projects/a", "/projects/b"]


# ============================================
# AGGREGATION BODIES
# ============================================

class TestBodies:

    def test_unaffiliated_size(self):
        terms = unaffiliated_body(30)["aggs"]["unaffiliated"]["aggs"]["unaffiliated"]["terms"]
        assert terms == {"field": "author_uuid", "missing": "", "size": 30}

    def test_unaffiliated_unbounded(self):
        terms = unaffiliated_body(0)["aggs"]["unaffiliated"]["aggs"]["unaffiliated"]["terms"]
        assert terms["size"] == UNBOUNDED_BUCKETS

    def test_top_contributors_covers_page(self):
        body = top_contributors_body(1000, 2000, 10, 2)
        assert body["aggs"]["contributions"]["terms"]["size"] == 30
        date_range = body["query"]["bool"]["must"][0]["range"]["grimoire_creation_date"]
        assert (date_range["gte"], date_range["lte"]) == (1000, 2000)
        assert set(CONTRIBUTOR_METRICS) <= set(body["aggs"]["contributions"]["aggs"])

    def test_parse_bucket(self):
        row = parse_top_contributor({
            "key": "u1",
            "doc_count": 12,
            "git_lines_added": {"value": 100.0},
            "git_commits": {"value": 3},
            "gerrit_merged_changesets": {"doc_count": 2, "gerrit_merged_changesets": {"value": 2.0}},
        })
        assert row["uuid"] == "u1"
        assert row["doc_count"] == 12
        assert row["git_lines_added"] == 100
        assert row["git_commits"] == 3
        assert row["gerrit_merged_changesets"] == 2
        assert row["gerrit_approvals"] == 0


# ============================================
# CLIENT
# ============================================

class TestDocumentStoreClient:

    def test_unaffiliated(self, client, http):
        http.post.return_value = reply(payload={
            "aggregations": {"unaffiliated": {"unaffiliated": {"buckets": [
                {"key": "u1", "doc_count": 9},
                {"key": "u2", "doc_count": 4},
            ]}}}
        })
        assert client.unaffiliated("sds-a-*", 10) == [("u1", 9), ("u2", 4)]
        url = http.post.call_args[0][0]
        assert url == "http://es.local:9200/sds-a-*/_search"
        assert http.post.call_args[1]["timeout"] == 5

    def test_top_contributors_slices_page(self, client, http):
        buckets = [{"key": f"u{i}", "doc_count": 100 - i} for i in range(6)]
        http.post.return_value = reply(payload={"aggregations": {"contributions": {"buckets": buckets}}})
        rows = client.top_contributors("sds-a-*", 0, 1, limit=2, offset=1)
        assert [r["uuid"] for r in rows] == ["u2", "u3"]

    def test_empty_reply(self, client, http):
        http.post.return_value = reply(payload={})
        assert client.unaffiliated("sds-a-*", 10) == []

    def test_error_reply(self, client, http):
        http.post.return_value = reply(
            status_code=400,
            payload={"error": {"type": "search_phase_execution_exception", "reason": "bad query"}},
        )
        with pytest.raises(InternalError) as exc:
            client.unaffiliated("sds-a-*", 10)
        assert "[400]" in str(exc.value)
        assert "bad query" in str(exc.value)

    def test_transport_error_is_redacted(self, client, http, monkeypatch):
        monkeypatch.setattr("time.sleep", lambda seconds: None)
        register_secret("s3cr3t")
        http.post.side_effect = requests.ConnectionError("cannot reach elastic:s3cr3t@es.local")
        with pytest.raises(InternalError) as exc:
            client.unaffiliated("sds-a-*", 10)
        assert "s3cr3t" not in str(exc.value)
        assert http.post.call_count == 3

    def test_basic_auth(self, client, http):
        assert http.auth.username == "elastic"
