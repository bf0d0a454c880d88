"""
Read/Write Facade of the Affiliation API

One method per inbound operation. Every method opens exactly one
transaction (session_scope), logs its entry and exit at info level and
returns plain dicts/lists for the wire models in api.models.
"""

import csv
import io
import logging
import time
from datetime import datetime
from functools import wraps
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from database.connection import DatabaseSessionProvider
from database.identity_service import IdentityGraphService
from database.models import MAX_PERIOD_DATE, MIN_PERIOD_DATE, format_date, parse_date, utc_now
from database.monitoring import get_db_metrics, get_slow_query_report, query_timer
from database.queries import (
    MAX_BLACKLIST_ROWS,
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
    identity_dict,
)
from database.repositories import (
    CountryRepository,
    EnrollmentRepository,
    IdentityRepository,
    MatchingBlacklistRepository,
    OrganizationRepository,
    ProfileRepository,
)
from directory import OrganizationDirectory, UserDirectory
from document_store import (
    CONTRIBUTOR_METRICS,
    DocumentStoreClient,
    project_slugs_to_index_pattern,
    split_project_slugs,
)
from errors import BadRequestError, InternalError, NotFoundError, ValidationError
from structured_logging import sanitize_for_logging

logger = logging.getLogger(__name__)

DEFAULT_TOP_CONTRIBUTORS = 10
DEFAULT_TOP_CONTRIBUTORS_CSV = 10000
MAX_TOP_CONTRIBUTORS = 10000
DEFAULT_RANGE_MS = 90 * 24 * 3600 * 1000

CSV_HEADER = ["Name", "Organization", "Email"] + CONTRIBUTOR_METRICS


def logged(func: Callable) -> Callable:
    """Log entry and exit of a facade operation and time it."""
    @wraps(func)
    def wrapper(self, *args, **kwargs):
        name = func.__name__
        shown = sanitize_for_logging(f"args:{args} kwargs:{kwargs}", 300)
        logger.info(f"{name}: {shown}")
        try:
            with query_timer(name):
                result = func(self, *args, **kwargs)
        except Exception as e:
            logger.info(f"{name}(exit): {shown} err:{sanitize_for_logging(e)}")
            raise
        logger.info(f"{name}(exit): {shown}")
        return result
    return wrapper


def _date(field: str, value: Optional[str]) -> Optional[datetime]:
    if value is None or value == "":
        return None
    try:
        return parse_date(value)
    except ValueError:
        raise ValidationError(field, f"cannot parse date '{value}'")


def _paged(items: List[Any], key: str, n_records: int, rows: int, page: int, q: Optional[str]) -> Dict[str, Any]:
    return {
        key: items,
        "n_records": n_records,
        "rows": rows,
        "page": page,
        "n_pages": page_count(n_records, rows),
        "search": f"q={q}" if q else "",
    }


def now_millis() -> int:
    return int(time.time() * 1000)


class AffiliationService:
    """
    Facade over the identity graph, the document store and the directories.

    Usage:
        service = AffiliationService(provider, DocumentStoreClient.from_config())
        service.get_profile_nested("16fe424acecf8d614d102fc0ece919a22200481d")
    """

    def __init__(
        self,
        provider: DatabaseSessionProvider,
        document_store: Optional[DocumentStoreClient] = None,
        org_directory: Optional[OrganizationDirectory] = None,
        user_directory: Optional[UserDirectory] = None,
    ):
        self.provider = provider
        self.document_store = document_store
        self.org_directory = org_directory
        self.user_directory = user_directory

    def _nested(self, session, uuid: str) -> Dict[str, Any]:
        items, _ = query_unique_identities_nested(session, f"uuid={uuid}", 1, 1, False)
        if not items:
            raise NotFoundError(f"profile '{uuid}' not found")
        return items[0]

    def _require(self, client: Any, name: str) -> Any:
        if client is None:
            raise InternalError(f"{name} is not configured")
        return client

    # ============================================
    # HEALTH
    # ============================================

    def health(self) -> Dict[str, Any]:
        status = self.provider.health_check()
        return {
            "status": "healthy" if status.healthy else "unhealthy",
            "database": status.to_dict(),
            "operations": get_db_metrics().get("operations", {}),
            "slow_operations": [s["operation"] for s in get_slow_query_report()],
            "time": format_date(utc_now()),
        }

    # ============================================
    # PROFILES
    # ============================================

    @logged
    def get_profiles_nested(self, q: Optional[str], rows: Optional[int], page: Optional[int]) -> Dict[str, Any]:
        rows, page = normalize_paging(rows, page)
        with self.provider.session_scope() as session:
            items, n_records = query_unique_identities_nested(session, q, rows, page, False)
        return _paged(items, "uidentities", n_records, rows, page, q)

    @logged
    def get_profile_nested(self, uuid: str) -> Dict[str, Any]:
        with self.provider.session_scope() as session:
            return self._nested(session, uuid)

    @logged
    def add_unique_identity(self, uuid: str) -> Dict[str, Any]:
        with self.provider.session_scope() as session:
            IdentityGraphService(session).add_nested_unique_identity(uuid)
            return self._nested(session, uuid)

    @logged
    def edit_profile(self, uuid: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        with self.provider.session_scope() as session:
            ProfileRepository(session).edit(uuid, changes)
            return self._nested(session, uuid)

    @logged
    def delete_profile(self, uuid: str, archive: bool = True) -> Dict[str, str]:
        with self.provider.session_scope() as session:
            IdentityGraphService(session).delete_profile_nested(uuid, archive)
        return {"text": f"Deleted profile '{uuid}'"}

    @logged
    def unarchive_profile(self, uuid: str) -> Dict[str, Any]:
        with self.provider.session_scope() as session:
            IdentityGraphService(session).unarchive_profile_nested(uuid)
            return self._nested(session, uuid)

    @logged
    def get_profile_enrollments(self, uuid: str) -> Dict[str, Any]:
        with self.provider.session_scope() as session:
            ProfileRepository(session).get(uuid)
            return {"uuid": uuid, "enrollments": profile_enrollments(session, uuid)}

    # ============================================
    # IDENTITIES
    # ============================================

    @logged
    def add_identity(
        self,
        source: str,
        email: Optional[str] = None,
        name: Optional[str] = None,
        username: Optional[str] = None,
        uuid: Optional[str] = None,
    ) -> Dict[str, Any]:
        with self.provider.session_scope() as session:
            identity = IdentityGraphService(session).add_nested_identity(source, email, name, username, uuid)
            return self._nested(session, identity.uuid)

    @logged
    def edit_identity(self, identity_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        with self.provider.session_scope() as session:
            identity = IdentityRepository(session).edit(identity_id, changes, refresh=True)
            return identity_dict({c: getattr(identity, c) for c in (
                "id", "uuid", "source", "name", "email", "username", "last_modified"
            )})

    @logged
    def delete_identity(self, identity_id: str, archive: bool = False) -> Dict[str, str]:
        with self.provider.session_scope() as session:
            IdentityRepository(session).delete(identity_id, archive=archive)
        return {"text": f"Deleted identity '{identity_id}'"}

    @logged
    def move_identity(self, from_id: str, to_uuid: str, archive: bool = True) -> Dict[str, Any]:
        with self.provider.session_scope() as session:
            IdentityGraphService(session).move_identity(from_id, to_uuid, archive)
            return self._nested(session, to_uuid)

    @logged
    def merge_unique_identities(self, from_uuid: str, to_uuid: str, archive: bool = True) -> Dict[str, Any]:
        with self.provider.session_scope() as session:
            IdentityGraphService(session).merge_unique_identities(from_uuid, to_uuid, archive)
            return self._nested(session, to_uuid)

    # ============================================
    # ORGANIZATIONS AND DOMAINS
    # ============================================

    @logged
    def get_organizations(self, q: Optional[str], rows: Optional[int], page: Optional[int]) -> Dict[str, Any]:
        rows, page = normalize_paging(rows, page)
        with self.provider.session_scope() as session:
            items, n_records = query_organizations_nested(session, q, rows, page)
        return _paged(items, "organizations", n_records, rows, page, q)

    @logged
    def get_organization(self, organization_id: int) -> Dict[str, Any]:
        with self.provider.session_scope() as session:
            org = OrganizationRepository(session).get(organization_id)
            return self._organization(session, org.id, org.name)

    @logged
    def find_organization_by_name(self, name: str) -> Dict[str, Any]:
        with self.provider.session_scope() as session:
            org = OrganizationRepository(session).get_by_name(name)
            return self._organization(session, org.id, org.name)

    def _organization(self, session, organization_id: int, name: str) -> Dict[str, Any]:
        domains, _ = query_domains(session, organization_id, None, MAX_BLACKLIST_ROWS, 1)
        return {"id": organization_id, "name": name, "domains": domains}

    @logged
    def add_organization(self, name: str) -> Dict[str, Any]:
        with self.provider.session_scope() as session:
            org = OrganizationRepository(session).add(name)
            return {"id": org.id, "name": org.name, "domains": []}

    @logged
    def edit_organization(self, organization_id: int, name: str) -> Dict[str, Any]:
        with self.provider.session_scope() as session:
            org = OrganizationRepository(session).edit(organization_id, name)
            return self._organization(session, org.id, org.name)

    @logged
    def delete_organization(self, organization_id: int) -> Dict[str, str]:
        with self.provider.session_scope() as session:
            OrganizationRepository(session).delete(organization_id)
        return {"text": f"Deleted organization id {organization_id}"}

    @logged
    def get_domains(
        self,
        organization_id: Optional[int],
        q: Optional[str],
        rows: Optional[int],
        page: Optional[int],
    ) -> Dict[str, Any]:
        rows, page = normalize_paging(rows, page)
        with self.provider.session_scope() as session:
            items, n_records = query_domains(session, organization_id, q, rows, page)
        return _paged(items, "domains", n_records, rows, page, q)

    @logged
    def put_org_domain(
        self,
        organization: str,
        domain: str,
        overwrite: bool = False,
        is_top_domain: bool = False,
        skip_enrollments: bool = False,
    ) -> Dict[str, Any]:
        with self.provider.session_scope() as session:
            return IdentityGraphService(session).put_org_domain(
                organization, domain, overwrite, is_top_domain, skip_enrollments
            )

    @logged
    def delete_org_domain(self, organization: str, domain: str) -> Dict[str, str]:
        with self.provider.session_scope() as session:
            text = IdentityGraphService(session).delete_org_domain(organization, domain)
        return {"text": text}

    # ============================================
    # ENROLLMENTS
    # ============================================

    @logged
    def add_enrollment(
        self,
        uuid: str,
        organization: str,
        start: Optional[str] = None,
        end: Optional[str] = None,
        merge: bool = False,
    ) -> Dict[str, Any]:
        with self.provider.session_scope() as session:
            engine = IdentityGraphService(session)
            engine.uidentities.get(uuid)
            org = engine.organizations.get_by_name(organization)
            engine.enrollments.add(uuid, org.id, _date("start", start), _date("end", end))
            if merge:
                engine.merge_enrollments(uuid, org.id)
            return self._nested(session, uuid)

    @logged
    def edit_enrollment(
        self,
        enrollment_id: int,
        uuid: str,
        organization: str,
        start: Optional[str] = None,
        end: Optional[str] = None,
        merge: bool = False,
    ) -> Dict[str, Any]:
        with self.provider.session_scope() as session:
            engine = IdentityGraphService(session)
            current = engine.enrollments.get(enrollment_id)
            org = engine.organizations.get_by_name(organization)
            new_start = _date("start", start) or current.start
            new_end = _date("end", end) or current.end
            engine.enrollments.edit(enrollment_id, uuid, org.id, new_start, new_end)
            if merge:
                engine.merge_enrollments(uuid, org.id)
            return self._nested(session, uuid)

    @logged
    def delete_enrollment(self, enrollment_id: int) -> Dict[str, str]:
        with self.provider.session_scope() as session:
            EnrollmentRepository(session).delete(enrollment_id)
        return {"text": f"Deleted enrollment id {enrollment_id}"}

    @logged
    def withdraw_enrollment(
        self,
        uuid: str,
        organization: str,
        start: Optional[str] = None,
        end: Optional[str] = None,
    ) -> Dict[str, Any]:
        with self.provider.session_scope() as session:
            engine = IdentityGraphService(session)
            org = engine.organizations.get_by_name(organization)
            engine.enrollments.withdraw(
                uuid,
                org.id,
                _date("start", start) or MIN_PERIOD_DATE,
                _date("end", end) or MAX_PERIOD_DATE,
            )
            return self._nested(session, uuid)

    @logged
    def merge_enrollments(self, uuid: str, organization_id: int) -> Dict[str, Any]:
        with self.provider.session_scope() as session:
            IdentityGraphService(session).merge_enrollments(uuid, organization_id)
            return self._nested(session, uuid)

    # ============================================
    # MATCHING BLACKLIST AND COUNTRIES
    # ============================================

    @logged
    def get_matching_blacklist(self, q: Optional[str], rows: Optional[int], page: Optional[int]) -> Dict[str, Any]:
        rows, page = normalize_paging(rows, page, unlimited=MAX_BLACKLIST_ROWS)
        with self.provider.session_scope() as session:
            items, n_records = query_matching_blacklist(session, q, rows, page)
        return _paged(items, "emails", n_records, rows, page, q)

    @logged
    def add_matching_blacklist(self, email: str) -> Dict[str, str]:
        with self.provider.session_scope() as session:
            row = MatchingBlacklistRepository(session).add(email)
            return {"email": row.excluded}

    @logged
    def delete_matching_blacklist(self, email: str) -> Dict[str, str]:
        with self.provider.session_scope() as session:
            MatchingBlacklistRepository(session).delete(email)
        return {"text": f"Deleted blacklist email '{email}'"}

    @logged
    def get_countries(self) -> List[Dict[str, str]]:
        with self.provider.session_scope() as session:
            return [
                {"code": c.code, "name": c.name, "alpha3": c.alpha3}
                for c in CountryRepository(session).list()
            ]

    @logged
    def get_country(self, code: str) -> Dict[str, str]:
        with self.provider.session_scope() as session:
            c = CountryRepository(session).get(code.upper())
            return {"code": c.code, "name": c.name, "alpha3": c.alpha3}

    # ============================================
    # DOCUMENT STORE BACKED READS
    # ============================================

    @logged
    def get_unaffiliated(self, project_slugs: str, rows: Optional[int], page: Optional[int]) -> Dict[str, Any]:
        """
        Unaffiliated contributors of the projects, most active first.

        The document store cannot tell which authors have enrollments, so
        the bucket count is widened until enough of them survive the check
        against the identity graph or widening stops finding new ones.
        """
        rows, page = normalize_paging(rows, page)
        store = self._require(self.document_store, "document store")
        pattern = project_slugs_to_index_pattern(split_project_slugs(project_slugs))
        last = page * rows
        more = (last + 5) * 3
        prev_n = -1
        while True:
            buckets = store.unaffiliated(pattern, more)
            with self.provider.session_scope() as session:
                unaffiliated = check_unaffiliated(session, buckets)
            n = len(unaffiliated)
            if n == prev_n or n >= last:
                break
            prev_n = n
            more *= 2
        start = min((page - 1) * rows, len(unaffiliated))
        end = min(start + rows, len(unaffiliated))
        return {"unaffiliated": unaffiliated[start:end], "rows": rows, "page": page}

    def top_contributors_params(
        self,
        from_ms: Optional[int],
        to_ms: Optional[int],
        limit: Optional[int],
        offset: Optional[int],
        csv_output: bool = False,
    ) -> Tuple[int, int, int, int]:
        """Defaults: last 90 days, limit 10 (10000 for CSV) clamped to [1, 10000], offset 0."""
        now = now_millis()
        to_ms = now if to_ms is None else to_ms
        from_ms = now - DEFAULT_RANGE_MS if from_ms is None else from_ms
        if to_ms < from_ms:
            raise BadRequestError(f"to parameter ({to_ms}) must be higher or equal from ({from_ms})")
        if limit is None:
            limit = DEFAULT_TOP_CONTRIBUTORS_CSV if csv_output else DEFAULT_TOP_CONTRIBUTORS
        limit = max(1, min(limit, MAX_TOP_CONTRIBUTORS))
        offset = max(0, offset or 0)
        return from_ms, to_ms, limit, offset

    @logged
    def get_top_contributors(
        self,
        project_slugs: str,
        from_ms: Optional[int] = None,
        to_ms: Optional[int] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        csv_output: bool = False,
    ) -> Dict[str, Any]:
        from_ms, to_ms, limit, offset = self.top_contributors_params(from_ms, to_ms, limit, offset, csv_output)
        store = self._require(self.document_store, "document store")
        pattern = project_slugs_to_index_pattern(split_project_slugs(project_slugs))
        contributors = store.top_contributors(pattern, from_ms, to_ms, limit, offset)
        if contributors:
            with self.provider.session_scope() as session:
                enrich_contributors(session, contributors, to_ms)
        return {
            "contributors": contributors,
            "from": from_ms,
            "to": to_ms,
            "limit": limit,
            "offset": offset,
        }

    def top_contributors_csv(self, project_slugs: str, **params) -> Iterator[str]:
        """Top contributors rendered as CSV text, one chunk per row."""
        result = self.get_top_contributors(project_slugs, csv_output=True, **params)
        buffer = io.StringIO()
        writer = csv.writer(buffer)

        def flush_row(row: List[Any]) -> str:
            writer.writerow(row)
            text = buffer.getvalue()
            buffer.seek(0)
            buffer.truncate(0)
            return text

        yield flush_row(CSV_HEADER)
        for c in result["contributors"]:
            yield flush_row(
                [c.get("name") or "", c.get("organization") or "", c.get("email") or ""]
                + [c.get(metric, 0) for metric in CONTRIBUTOR_METRICS]
            )

    @logged
    def get_all_affiliations(self) -> Dict[str, Any]:
        with self.provider.session_scope() as session:
            profiles = get_all_affiliations(session)
        return {"profiles": profiles}

    # ============================================
    # DIRECTORIES
    # ============================================

    @logged
    def get_list_organizations_directory(self, q: str, rows: Optional[int], page: Optional[int]) -> Dict[str, Any]:
        """Exact lookup first, then the name search page appended."""
        rows, page = normalize_paging(rows, page)
        directory = self._require(self.org_directory, "organization directory")
        organizations = []
        exact = directory.lookup_organization(q) if q else None
        if exact is not None:
            organizations.append({"id": exact["id"], "name": exact["name"], "domains": []})
        for org in directory.search_organization(q, rows, page - 1):
            organizations.append({"id": org["id"], "name": org["name"], "domains": []})
        return {
            "organizations": organizations,
            "rows": len(organizations),
            "page": page,
            "search": f"q={q}" if q else "",
        }

    @logged
    def get_list_users(self, q: str, rows: Optional[int], page: Optional[int]) -> Dict[str, Any]:
        rows, page = normalize_paging(rows, page)
        directory = self._require(self.user_directory, "user directory")
        return {"users": directory.list_users(q, rows, page - 1)}

    @logged
    def get_list_all_users(self) -> Dict[str, Any]:
        directory = self._require(self.user_directory, "user directory")
        return {"users": directory.list_all_users()}
