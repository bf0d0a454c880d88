"""
Read-side queries over the identity graph.

Nested listings select one page of root keys first, hydrate the children
with a second query and group them in memory; counts come from a separate
COUNT over the same filter. Results are plain dicts ready for the wire
models in api.models.
"""

import logging
import math
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import select, func, or_, and_, exists
from sqlalchemy.orm import Session

from database.connection import query
from database.models import (
    Profile,
    UniqueIdentity,
    Identity,
    Organization,
    Domain,
    Enrollment,
    MatchingBlacklist,
    format_date,
    normalize_optional,
    anonymize_email,
)

logger = logging.getLogger(__name__)

DEFAULT_ROWS = 10
MAX_ROWS = 0xffff
MAX_BLACKLIST_ROWS = 0xfff

# Keeps IN (...) lists below SQLite's bound parameter limit
_IN_CHUNK = 500


# ============================================
# PAGING
# ============================================

def normalize_paging(
    rows: Optional[int],
    page: Optional[int],
    unlimited: int = MAX_ROWS,
) -> Tuple[int, int]:
    """
    Apply the list paging convention.

    rows defaults to 10 and rows <= 0 means "everything" (capped at
    ``unlimited``); page defaults to 1 and anything below 1 becomes 1.
    """
    if rows is None:
        rows = DEFAULT_ROWS
    elif rows <= 0:
        rows = unlimited
    if page is None or page < 1:
        page = 1
    return rows, page


def page_count(n_records: int, rows: int) -> int:
    return int(math.ceil(n_records / rows)) if rows > 0 else 0


def _chunks(items: Sequence[Any], size: int = _IN_CHUNK) -> Iterable[Sequence[Any]]:
    for i in range(0, len(items), size):
        yield items[i:i + size]


def _like(q: str) -> str:
    return f"%{q}%"


# ============================================
# ROW SERIALIZATION
# ============================================

def profile_dict(row: Any) -> Dict[str, Any]:
    return {
        "uuid": row["uuid"],
        "name": row["name"],
        "email": row["email"],
        "gender": row["gender"],
        "gender_acc": row["gender_acc"],
        "is_bot": row["is_bot"],
        "country_code": row["country_code"],
    }


def identity_dict(row: Any) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "uuid": row["uuid"],
        "source": row["source"],
        "name": row["name"],
        "email": row["email"],
        "username": row["username"],
        "last_modified": format_date(row["last_modified"]),
    }


def enrollment_dict(row: Any) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "uuid": row["uuid"],
        "organization_id": row["organization_id"],
        "organization_name": row["organization_name"],
        "start": format_date(row["start"]),
        "end": format_date(row["end"]),
    }


def _identity_key(identity: Dict[str, Any]) -> Tuple[str, ...]:
    return tuple(identity.get(f) or "" for f in ("source", "name", "email", "username", "id"))


def _enrollment_key(enrollment: Dict[str, Any]) -> Tuple[str, ...]:
    return (enrollment["start"] or "", enrollment["end"] or "", enrollment.get("organization_name") or "")


# ============================================
# NESTED UNIQUE IDENTITIES
# ============================================

def _uidentity_filter(q: Optional[str]):
    q = normalize_optional(q)
    if not q:
        return None
    if q.startswith("uuid="):
        return Profile.uuid == q[len("uuid="):]
    pattern = _like(q)
    return or_(
        Profile.name.like(pattern),
        Profile.email.like(pattern),
        Identity.name.like(pattern),
        Identity.email.like(pattern),
        Identity.username.like(pattern),
        Identity.source.like(pattern),
    )


def hydrate_unique_identities(session: Session, uuids: Sequence[str]) -> List[Dict[str, Any]]:
    """Load profile, identities and enrollments for the given uuids, sorted by uuid."""
    by_uuid: Dict[str, Dict[str, Any]] = {}
    identities: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
    enrollments: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
    for chunk in _chunks(list(uuids)):
        for row in query(
            session,
            select(
                Profile.uuid, Profile.name, Profile.email, Profile.gender, Profile.gender_acc,
                Profile.is_bot, Profile.country_code, UniqueIdentity.last_modified,
            )
            .join(UniqueIdentity, UniqueIdentity.uuid == Profile.uuid)
            .where(Profile.uuid.in_(chunk)),
        ):
            item = profile_dict(row)
            item["last_modified"] = format_date(row["last_modified"])
            by_uuid[row["uuid"]] = item
        for row in query(session, select(Identity.__table__).where(Identity.uuid.in_(chunk))):
            identities[row["uuid"]].append(identity_dict(row))
        for row in query(
            session,
            select(
                Enrollment.id, Enrollment.uuid, Enrollment.organization_id, Enrollment.start,
                Enrollment.end, Organization.name.label("organization_name"),
            )
            .join(Organization, Organization.id == Enrollment.organization_id)
            .where(Enrollment.uuid.in_(chunk)),
        ):
            enrollments[row["uuid"]].append(enrollment_dict(row))

    result = []
    for uuid in sorted(by_uuid):
        item = by_uuid[uuid]
        item["identities"] = sorted(identities[uuid], key=_identity_key)
        item["enrollments"] = sorted(enrollments[uuid], key=_enrollment_key)
        result.append(item)
    return result


def query_unique_identities_nested(
    session: Session,
    q: Optional[str],
    rows: int,
    page: int,
    identity_required: bool,
) -> Tuple[List[Dict[str, Any]], int]:
    """
    One page of profiles with their identities and enrollments.

    Args:
        q: 'uuid=<uuid>' for an exact match, otherwise a substring searched in
           profile name/email and identity name/email/username/source
        rows, page: Page size and 1-based page number
        identity_required: Inner join identities (profiles without identities
           are skipped) instead of a left join

    Returns:
        (unique identities, total number of matching profiles)
    """
    criteria = _uidentity_filter(q)
    base = select(Profile.uuid)
    if identity_required:
        base = base.join(Identity, Identity.uuid == Profile.uuid)
    else:
        base = base.outerjoin(Identity, Identity.uuid == Profile.uuid)
    if criteria is not None:
        base = base.where(criteria)

    keys_stmt = (
        base.distinct()
        .order_by(Profile.uuid)
        .limit(rows)
        .offset((page - 1) * rows)
    )
    uuids = [row["uuid"] for row in query(session, keys_stmt)]
    count_stmt = select(func.count().label("n")).select_from(base.distinct().subquery())
    n_records = query(session, count_stmt)[0]["n"]
    if not uuids:
        return [], n_records
    return hydrate_unique_identities(session, uuids), n_records


# ============================================
# ORGANIZATIONS AND DOMAINS
# ============================================

def query_organizations_nested(
    session: Session,
    q: Optional[str],
    rows: int,
    page: int,
) -> Tuple[List[Dict[str, Any]], int]:
    """One page of organizations (name LIKE q) with their domains."""
    base = select(Organization.id, Organization.name)
    q = normalize_optional(q)
    if q:
        base = base.where(Organization.name.like(_like(q)))
    orgs = query(
        session,
        base.order_by(Organization.name, Organization.id).limit(rows).offset((page - 1) * rows),
    )
    n_records = query(session, select(func.count().label("n")).select_from(base.subquery()))[0]["n"]

    domains: Dict[int, List[Dict[str, Any]]] = defaultdict(list)
    ids = [row["id"] for row in orgs]
    for chunk in _chunks(ids):
        for row in query(
            session,
            select(Domain.__table__).where(Domain.organization_id.in_(chunk)).order_by(Domain.domain),
        ):
            domains[row["organization_id"]].append({
                "id": row["id"],
                "organization_id": row["organization_id"],
                "organization_name": None,
                "domain": row["domain"],
                "is_top_domain": bool(row["is_top_domain"]),
            })

    result = []
    for row in orgs:
        children = domains[row["id"]]
        for child in children:
            child["organization_name"] = row["name"]
        result.append({"id": row["id"], "name": row["name"], "domains": children})
    return result, n_records


def query_domains(
    session: Session,
    organization_id: Optional[int],
    q: Optional[str],
    rows: int,
    page: int,
) -> Tuple[List[Dict[str, Any]], int]:
    """One page of domains (optionally of one organization), sorted by (organization name, domain)."""
    base = (
        select(
            Domain.id, Domain.organization_id, Domain.domain, Domain.is_top_domain,
            Organization.name.label("organization_name"),
        )
        .join(Organization, Organization.id == Domain.organization_id)
    )
    if organization_id:
        base = base.where(Domain.organization_id == organization_id)
    q = normalize_optional(q)
    if q:
        base = base.where(or_(Domain.domain.like(_like(q)), Organization.name.like(_like(q))))
    items = query(
        session,
        base.order_by(Organization.name, Domain.domain).limit(rows).offset((page - 1) * rows),
    )
    n_records = query(session, select(func.count().label("n")).select_from(base.subquery()))[0]["n"]
    return [
        {
            "id": row["id"],
            "organization_id": row["organization_id"],
            "organization_name": row["organization_name"],
            "domain": row["domain"],
            "is_top_domain": bool(row["is_top_domain"]),
        }
        for row in items
    ], n_records


def query_matching_blacklist(
    session: Session,
    q: Optional[str],
    rows: int,
    page: int,
) -> Tuple[List[str], int]:
    base = select(MatchingBlacklist.excluded)
    q = normalize_optional(q)
    if q:
        base = base.where(MatchingBlacklist.excluded.like(_like(q)))
    items = query(
        session,
        base.order_by(MatchingBlacklist.excluded).limit(rows).offset((page - 1) * rows),
    )
    n_records = query(session, select(func.count().label("n")).select_from(base.subquery()))[0]["n"]
    return [row["excluded"] for row in items], n_records


def profile_enrollments(session: Session, uuid: str) -> List[Dict[str, Any]]:
    """All enrollments of one profile with organization names."""
    rows = query(
        session,
        select(
            Enrollment.id, Enrollment.uuid, Enrollment.organization_id, Enrollment.start,
            Enrollment.end, Organization.name.label("organization_name"),
        )
        .join(Organization, Organization.id == Enrollment.organization_id)
        .where(Enrollment.uuid == uuid),
    )
    return sorted((enrollment_dict(row) for row in rows), key=_enrollment_key)


# ============================================
# ENRICHMENT
# ============================================

def check_unaffiliated(
    session: Session,
    contributors: Sequence[Tuple[str, int]],
) -> List[Dict[str, Any]]:
    """
    Keep only contributors that are human profiles without any enrollment.

    Args:
        contributors: (uuid, contributions) pairs from the document store

    Returns:
        [{uuid, name, contributions}] sorted by contributions descending
    """
    counts: Dict[str, int] = {}
    for uuid, contributions in contributors:
        if uuid:
            counts[uuid] = counts.get(uuid, 0) + contributions
    if not counts:
        return []

    no_enrollment = ~exists().where(Enrollment.uuid == Profile.uuid)
    human = or_(Profile.is_bot.is_(None), Profile.is_bot != 1)
    found: List[Dict[str, Any]] = []
    for chunk in _chunks(sorted(counts)):
        for row in query(
            session,
            select(Profile.uuid, Profile.name).where(Profile.uuid.in_(chunk), human, no_enrollment),
        ):
            found.append({"uuid": row["uuid"], "name": row["name"], "contributions": counts[row["uuid"]]})
    found.sort(key=lambda item: (-item["contributions"], item["uuid"]))
    return found


def millis_to_datetime(millis: int) -> datetime:
    return datetime.fromtimestamp(millis / 1000.0, tz=timezone.utc).replace(tzinfo=None)


def enrich_contributors(
    session: Session,
    contributors: List[Dict[str, Any]],
    millis: int,
) -> List[Dict[str, Any]]:
    """
    Attach name, email and the organization enrolled at the given instant.

    Contributors without a profile or without a matching enrollment keep
    whatever they had; the list is modified in place and returned.
    """
    at = millis_to_datetime(millis)
    uuids = sorted({c["uuid"] for c in contributors if c.get("uuid")})
    info: Dict[str, Dict[str, Any]] = {}
    for chunk in _chunks(uuids):
        stmt = (
            select(
                Profile.uuid, Profile.name, Profile.email,
                Organization.name.label("organization"),
            )
            .outerjoin(
                Enrollment,
                and_(Enrollment.uuid == Profile.uuid, Enrollment.start <= at, Enrollment.end >= at),
            )
            .outerjoin(Organization, Organization.id == Enrollment.organization_id)
            .where(Profile.uuid.in_(chunk))
            .order_by(Profile.uuid, Organization.name)
        )
        for row in query(session, stmt):
            current = info.get(row["uuid"])
            if current is None or (current["organization"] is None and row["organization"] is not None):
                info[row["uuid"]] = dict(row)
    for contributor in contributors:
        row = info.get(contributor.get("uuid"))
        if row is None:
            continue
        contributor["name"] = row["name"]
        contributor["email"] = row["email"]
        if row["organization"] is not None:
            contributor["organization"] = row["organization"]
    return contributors


# ============================================
# FULL DUMP
# ============================================

def _sort_key(*parts: Optional[str]) -> str:
    return ":".join(p or "" for p in parts)


def get_all_affiliations(session: Session) -> List[Dict[str, Any]]:
    """
    Every profile having at least one identity and one enrollment.

    Strings are trimmed (blank becomes None) and '@' in emails becomes '!'.
    Identities are sorted by source:name:email:username, enrollments by
    start:end:organization and profiles by lowercased name:email:uuid.
    """
    has_identity = exists().where(Identity.uuid == Profile.uuid)
    has_enrollment = exists().where(Enrollment.uuid == Profile.uuid)
    profiles = query(
        session,
        select(Profile.uuid, Profile.name, Profile.email).where(has_identity, has_enrollment),
    )
    uuids = [row["uuid"] for row in profiles]

    identities: Dict[str, Dict[Tuple, Dict[str, Any]]] = defaultdict(dict)
    enrollments: Dict[str, Dict[Tuple, Dict[str, Any]]] = defaultdict(dict)
    for chunk in _chunks(uuids):
        for row in query(
            session,
            select(Identity.uuid, Identity.source, Identity.name, Identity.email, Identity.username)
            .where(Identity.uuid.in_(chunk)),
        ):
            item = {
                "source": normalize_optional(row["source"]),
                "name": normalize_optional(row["name"]),
                "email": anonymize_email(row["email"]),
                "username": normalize_optional(row["username"]),
            }
            identities[row["uuid"]][tuple(item.values())] = item
        for row in query(
            session,
            select(Enrollment.uuid, Enrollment.start, Enrollment.end, Organization.name.label("organization"))
            .join(Organization, Organization.id == Enrollment.organization_id)
            .where(Enrollment.uuid.in_(chunk)),
        ):
            item = {
                "start": format_date(row["start"]),
                "end": format_date(row["end"]),
                "organization": normalize_optional(row["organization"]),
            }
            enrollments[row["uuid"]][tuple(item.values())] = item

    result = []
    for row in profiles:
        uuid = row["uuid"]
        result.append({
            "uuid": uuid,
            "name": normalize_optional(row["name"]),
            "email": anonymize_email(row["email"]),
            "identities": sorted(
                identities[uuid].values(),
                key=lambda i: _sort_key(i["source"], i["name"], i["email"], i["username"]),
            ),
            "enrollments": sorted(
                enrollments[uuid].values(),
                key=lambda e: _sort_key(e["start"], e["end"], e["organization"]),
            ),
        })
    result.sort(key=lambda p: _sort_key(p["name"], p["email"], p["uuid"]).lower())
    return result
