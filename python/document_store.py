"""
Document Store Query Adapter

Runs the two contributor aggregations against the search backend:
- unaffiliated: authors whose documents carry no known organization
- top contributors: per-author git and gerrit metrics in a time range

Index patterns are derived from project slugs; every request is a
``POST <pattern>/_search`` with a JSON aggregation body.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

import requests
from requests.auth import HTTPBasicAuth
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from config_manager import DocumentStoreConfig, get_config
from database.monitoring import query_timer
from errors import InternalError, redact
from structured_logging import sanitize_for_logging

logger = logging.getLogger(__name__)

PROJECTS_PREFIX = "/projects/"
INDEX_EXCLUDES = ",-*-raw,-*-for-merge"
UNBOUNDED_BUCKETS = 2147483647
UNKNOWN_ORG_NAMES = ["Unknown", "NotFound", "", "-", "?"]

# Metric columns of a top contributor, in output order
CONTRIBUTOR_METRICS = [
    "git_lines_added",
    "git_lines_changed",
    "git_lines_removed",
    "git_commits",
    "gerrit_approvals",
    "gerrit_merged_changesets",
]


# ============================================
# INDEX PATTERNS
# ============================================

def _slug_root(project_slug: str) -> str:
    slug = project_slug.strip()
    if slug.startswith(PROJECTS_PREFIX):
        slug = slug[len(PROJECTS_PREFIX):]
    return "sds-" + slug.replace("/", "-") + "-*"


def project_slug_to_index_pattern(project_slug: str) -> str:
    """Index pattern covering every data source of one project.

    >>> project_slug_to_index_pattern("/projects/lfn/onap")
    'sds-lfn-onap-*,-*-raw,-*-for-merge'
    """
    return _slug_root(project_slug) + INDEX_EXCLUDES


def project_slugs_to_index_pattern(project_slugs: Sequence[str]) -> str:
    """Index pattern covering several projects, excludes appended once."""
    return ",".join(_slug_root(slug) for slug in project_slugs) + INDEX_EXCLUDES


def split_project_slugs(value: str) -> List[str]:
    """Split a comma separated list of slugs, dropping blanks"""
    return [slug.strip() for slug in value.split(",") if slug.strip()]


# ============================================
# AGGREGATION BODIES
# ============================================

def unaffiliated_body(top_n: int) -> Dict[str, Any]:
    size = top_n if top_n > 0 else UNBOUNDED_BUCKETS
    return {
        "size": 0,
        "aggs": {
            "unaffiliated": {
                "filter": {"terms": {"author_org_name": UNKNOWN_ORG_NAMES}},
                "aggs": {
                    "unaffiliated": {
                        "terms": {"field": "author_uuid", "missing": "", "size": size}
                    }
                },
            }
        },
    }


def top_contributors_body(from_ms: int, to_ms: int, limit: int, offset: int) -> Dict[str, Any]:
    """Aggregation asking for enough author buckets to cover page ``offset``."""
    return {
        "size": 0,
        "query": {
            "bool": {
                "must": [
                    {
                        "range": {
                            "grimoire_creation_date": {
                                "gte": from_ms,
                                "lte": to_ms,
                                "format": "epoch_millis",
                            }
                        }
                    }
                ]
            }
        },
        "aggs": {
            "contributions": {
                "terms": {
                    "field": "author_uuid",
                    "missing": "",
                    "size": (offset + 1) * limit,
                },
                "aggs": {
                    "git_lines_added": {"sum": {"field": "lines_added"}},
                    "git_lines_changed": {"sum": {"field": "lines_changed"}},
                    "git_lines_removed": {"sum": {"field": "lines_removed"}},
                    "git_commits": {"cardinality": {"field": "hash"}},
                    "gerrit_approvals": {"sum": {"field": "is_gerrit_approval"}},
                    "gerrit_merged_changesets": {
                        "filter": {"term": {"status": "MERGED"}},
                        "aggs": {
                            "gerrit_merged_changesets": {
                                "sum": {"field": "is_gerrit_changeset"}
                            }
                        },
                    },
                },
            }
        },
    }


def _metric(bucket: Dict[str, Any], name: str) -> int:
    value = bucket.get(name) or {}
    if name == "gerrit_merged_changesets":
        value = value.get(name) or {}
    return int(value.get("value") or 0)


def parse_top_contributor(bucket: Dict[str, Any]) -> Dict[str, Any]:
    """Flatten one author bucket into a contributor row"""
    row: Dict[str, Any] = {"uuid": bucket.get("key", ""), "doc_count": int(bucket.get("doc_count", 0))}
    for name in CONTRIBUTOR_METRICS:
        row[name] = _metric(bucket, name)
    return row


# ============================================
# CLIENT
# ============================================

class DocumentStoreClient:
    """Search backend client.

    Transient connection failures are retried; any other transport error or
    non-2xx reply becomes an InternalError with secrets redacted.
    """

    def __init__(
        self,
        url: str,
        username: str = "",
        password: str = "",
        timeout: int = 60,
        session: Optional[requests.Session] = None,
    ):
        self.url = url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        if username:
            self.session.auth = HTTPBasicAuth(username, password)
        self.session.headers.update({"Content-Type": "application/json"})

    @classmethod
    def from_config(cls, config: Optional[DocumentStoreConfig] = None) -> 'DocumentStoreClient':
        config = config or get_config().document_store
        return cls(config.url, config.username, config.password, config.timeout)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type((requests.ConnectionError, requests.Timeout)),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    def _post(self, url: str, body: Dict[str, Any]) -> requests.Response:
        return self.session.post(url, json=body, timeout=self.timeout)

    def search(self, index_pattern: str, body: Dict[str, Any]) -> Dict[str, Any]:
        """POST a search body to ``<index_pattern>/_search``.

        Raises:
            InternalError: On transport failure or a non-2xx reply
        """
        url = f"{self.url}/{index_pattern}/_search"
        try:
            response = self._post(url, body)
        except requests.RequestException as e:
            raise InternalError(redact(f"search {index_pattern}: {e}")) from e
        if not 200 <= response.status_code < 300:
            reason = sanitize_for_logging(response.text)
            try:
                error = response.json().get("error") or {}
                if isinstance(error, dict):
                    reason = f"{error.get('type')}: {error.get('reason')}"
            except ValueError:
                pass
            raise InternalError(redact(f"search {index_pattern}: [{response.status_code}] {reason}"))
        try:
            return response.json()
        except ValueError as e:
            raise InternalError(f"search {index_pattern}: invalid JSON reply") from e

    def unaffiliated(self, index_pattern: str, top_n: int) -> List[Tuple[str, int]]:
        """Authors without a known organization.

        Args:
            index_pattern: Pattern from ``project_slug(s)_to_index_pattern``
            top_n: Number of buckets to request, ``<= 0`` means unbounded

        Returns:
            (uuid, doc_count) pairs in backend order
        """
        logger.info(f"unaffiliated: index:{index_pattern} top_n:{top_n}")
        with query_timer("es_unaffiliated"):
            result = self.search(index_pattern, unaffiliated_body(top_n))
        buckets = (
            result.get("aggregations", {})
            .get("unaffiliated", {})
            .get("unaffiliated", {})
            .get("buckets", [])
        )
        pairs = [(b.get("key", ""), int(b.get("doc_count", 0))) for b in buckets]
        logger.info(f"unaffiliated(exit): index:{index_pattern} top_n:{top_n} n:{len(pairs)}")
        return pairs

    def top_contributors(
        self,
        index_pattern: str,
        from_ms: int,
        to_ms: int,
        limit: int = 10,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        """
        Contributors ranked by document count in ``[from_ms, to_ms]``.

        The aggregation returns the first ``(offset+1)*limit`` authors and the
        page ``[offset*limit, (offset+1)*limit)`` is sliced out of them.

        Returns:
            Contributor rows: uuid, doc_count and the CONTRIBUTOR_METRICS
        """
        logger.info(
            f"top_contributors: index:{index_pattern} from:{from_ms} to:{to_ms} "
            f"limit:{limit} offset:{offset}"
        )
        with query_timer("es_top_contributors"):
            result = self.search(index_pattern, top_contributors_body(from_ms, to_ms, limit, offset))
        buckets = result.get("aggregations", {}).get("contributions", {}).get("buckets", [])
        page = buckets[offset * limit:(offset + 1) * limit]
        rows = [parse_top_contributor(b) for b in page]
        logger.info(f"top_contributors(exit): index:{index_pattern} n:{len(rows)}")
        return rows
