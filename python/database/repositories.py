"""
Repository Pattern for the Affiliation Identity Graph

Typed CRUD for every entity of the identity graph plus the archive twin
table discipline. All repositories work inside the session (transaction)
they are given; they never commit.

Every mutation of a Profile, Identity or Enrollment whose uuid is known also
bumps the owning unique identity's last_modified (see BaseRepository.touch).
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Type

from sqlalchemy import select, insert, update, delete, literal, and_
from sqlalchemy.orm import Session

from database.connection import execute, flush, query
from database.models import (
    Base,
    Timestamp,
    UniqueIdentity,
    UniqueIdentityArchive,
    Profile,
    ProfileArchive,
    Identity,
    IdentityArchive,
    Organization,
    Domain,
    Enrollment,
    EnrollmentArchive,
    MatchingBlacklist,
    Country,
    Gender,
    MIN_PERIOD_DATE,
    MAX_PERIOD_DATE,
    utc_now,
    parse_date,
    identity_hash,
    normalize_optional,
)
from errors import (
    BadRequestError,
    ConflictError,
    InternalError,
    NotFoundError,
    ValidationError,
)

logger = logging.getLogger(__name__)


# ============================================
# BASE REPOSITORY
# ============================================

class BaseRepository:
    """Shared helpers: touch, find, and the archive twin-table primitives."""

    def __init__(self, session: Session):
        self.session = session

    def touch(self, uuid: Optional[str]) -> None:
        """
        Set last_modified = now() on the unique identity.

        Raises:
            NotFoundError: If no unique identity row was touched
            InternalError: If more than one row was touched
        """
        if not uuid:
            return
        affected, _ = execute(
            self.session,
            update(UniqueIdentity).where(UniqueIdentity.uuid == uuid).values(last_modified=utc_now()),
        )
        if affected == 0:
            raise NotFoundError(f"touch: unique identity '{uuid}' not found")
        if affected > 1:
            raise InternalError(f"touch: unique identity '{uuid}' updated {affected} rows")

    def _select_one(self, model: Type[Base], *criteria) -> Optional[Any]:
        stmt = select(model).where(*criteria).execution_options(populate_existing=True)
        return self.session.execute(stmt).scalars().first()

    def find(
        self,
        model: Type[Base],
        columns: Sequence[str],
        values: Sequence[Any],
        is_date: Optional[Sequence[bool]] = None,
        missing_fatal: bool = False,
    ) -> List[Any]:
        """
        Equality-AND filter over a table.

        Args:
            model: Mapped class to search
            columns: Column names
            values: Values, one per column; None matches SQL NULL
            is_date: Per-column flag; string values of flagged columns are parsed as dates
            missing_fatal: Raise NotFoundError when nothing matches

        Returns:
            Matching rows
        """
        if len(columns) != len(values):
            raise BadRequestError("find: columns and values must have the same length")
        is_date = is_date or [False] * len(columns)
        criteria = []
        for column, value, date in zip(columns, values, is_date):
            attr = getattr(model, column, None)
            if attr is None:
                raise BadRequestError(f"find: unknown column '{column}'")
            if value is None:
                criteria.append(attr.is_(None))
                continue
            if date and not isinstance(value, datetime):
                try:
                    value = parse_date(value)
                except ValueError:
                    raise ValidationError(column, f"cannot parse date '{value}'")
            criteria.append(attr == value)
        stmt = select(model).where(and_(*criteria)).execution_options(populate_existing=True)
        rows = list(self.session.execute(stmt).scalars().all())
        if missing_fatal and not rows:
            pairs = ", ".join(f"{c}={v}" for c, v in zip(columns, values))
            raise NotFoundError(f"find {model.__tablename__}: no rows for {pairs}")
        return rows

    # ----------------------------------------
    # archive twin tables
    # ----------------------------------------

    def _archive_row(self, live: Type[Base], archive: Type[Base], key: str, value: Any, at: datetime) -> None:
        live_t, archive_t = live.__table__, archive.__table__
        columns = [c.name for c in live_t.columns]
        source = select(
            *[live_t.c[c] for c in columns],
            literal(at, Timestamp).label("archived_at"),
        ).where(live_t.c[key] == value)
        stmt = insert(archive_t).from_select(columns + ["archived_at"], source)
        affected, _ = execute(self.session, stmt)
        if affected == 0:
            raise NotFoundError(f"archive {live_t.name}: {key}='{value}' not found")
        if affected > 1:
            raise InternalError(f"archive {live_t.name}: {key}='{value}' archived {affected} rows")

    def _unarchive_row(
        self,
        live: Type[Base],
        archive: Type[Base],
        key: str,
        value: Any,
        replace: bool,
        at: Optional[datetime],
    ) -> None:
        live_t, archive_t = live.__table__, archive.__table__
        stmt = select(archive_t.c.archive_id).where(archive_t.c[key] == value)
        if at is not None:
            stmt = stmt.where(archive_t.c.archived_at == at)
        stmt = stmt.order_by(archive_t.c.archived_at.desc(), archive_t.c.archive_id.desc()).limit(1)
        rows = query(self.session, stmt)
        if not rows:
            raise NotFoundError(f"unarchive {live_t.name}: no archived {key}='{value}' at {at}")
        archive_id = rows[0]["archive_id"]

        if replace:
            execute(self.session, delete(live_t).where(live_t.c[key] == value))

        columns = [c.name for c in live_t.columns]
        source = select(*[archive_t.c[c] for c in columns]).where(archive_t.c.archive_id == archive_id)
        affected, _ = execute(self.session, insert(live_t).from_select(columns, source))
        if affected != 1:
            raise InternalError(f"unarchive {live_t.name}: {key}='{value}' restored {affected} rows")
        execute(self.session, delete(archive_t).where(archive_t.c.archive_id == archive_id))

    def _delete_archive_rows(
        self,
        archive: Type[Base],
        key: str,
        value: Any,
        missing_fatal: bool,
        only_last: bool,
        at: Optional[datetime],
    ) -> int:
        archive_t = archive.__table__
        stmt = delete(archive_t).where(archive_t.c[key] == value)
        if at is not None:
            stmt = stmt.where(archive_t.c.archived_at == at)
        elif only_last:
            newest = query(
                self.session,
                select(archive_t.c.archive_id)
                .where(archive_t.c[key] == value)
                .order_by(archive_t.c.archived_at.desc(), archive_t.c.archive_id.desc())
                .limit(1),
            )
            if not newest:
                if missing_fatal:
                    raise NotFoundError(f"delete {archive_t.name}: {key}='{value}' not found")
                return 0
            stmt = delete(archive_t).where(archive_t.c.archive_id == newest[0]["archive_id"])
        affected, _ = execute(self.session, stmt)
        if missing_fatal and affected == 0:
            raise NotFoundError(f"delete {archive_t.name}: {key}='{value}' not found")
        return affected


# ============================================
# VALIDATION
# ============================================

def _in_period(field: str, value: datetime) -> None:
    if value < MIN_PERIOD_DATE or value > MAX_PERIOD_DATE:
        raise ValidationError(
            field,
            f"{value.isoformat()} is outside [{MIN_PERIOD_DATE.date()}, {MAX_PERIOD_DATE.date()}]",
        )


def validate_enrollment(
    uuid: Optional[str],
    organization_id: Optional[int],
    start: datetime,
    end: datetime,
    enrollment_id: Optional[int] = None,
    for_update: bool = False,
) -> None:
    """Enrollment rules: owner and organization set, [start, end] inside the period bounds."""
    if for_update and (enrollment_id is None or enrollment_id < 1):
        raise ValidationError("id", "enrollment id must be positive")
    if not uuid:
        raise ValidationError("uuid", "enrollment must have uuid")
    if organization_id is None or organization_id < 1:
        raise ValidationError("organization_id", "enrollment organization id must be positive")
    _in_period("start", start)
    _in_period("end", end)
    if start > end:
        raise ValidationError("start", f"start date {start.isoformat()} is after end date {end.isoformat()}")


# ============================================
# UNIQUE IDENTITY REPOSITORY
# ============================================

class UniqueIdentityRepository(BaseRepository):
    """Root nodes of the identity graph."""

    def get(self, uuid: str, missing_fatal: bool = True) -> Optional[UniqueIdentity]:
        uu = self._select_one(UniqueIdentity, UniqueIdentity.uuid == uuid)
        if uu is None and missing_fatal:
            raise NotFoundError(f"unique identity '{uuid}' not found")
        return uu

    def add(self, uuid: str, refresh: bool = False) -> UniqueIdentity:
        if not uuid:
            raise ValidationError("uuid", "unique identity uuid cannot be empty")
        uu = UniqueIdentity(uuid=uuid, last_modified=utc_now())
        self.session.add(uu)
        flush(self.session, f"add unique identity '{uuid}'")
        logger.debug(f"Added unique identity {uuid}")
        return self.get(uuid) if refresh else uu

    def delete(
        self,
        uuid: str,
        archive: bool = False,
        missing_fatal: bool = True,
        at: Optional[datetime] = None,
    ) -> bool:
        """Delete the root row; profile, identities and enrollments cascade."""
        if archive:
            self.archive(uuid, at)
        affected, _ = execute(self.session, delete(UniqueIdentity).where(UniqueIdentity.uuid == uuid))
        if affected == 0 and missing_fatal:
            raise NotFoundError(f"delete unique identity: '{uuid}' not found")
        return affected > 0

    def archive(self, uuid: str, at: Optional[datetime] = None) -> None:
        self._archive_row(UniqueIdentity, UniqueIdentityArchive, "uuid", uuid, at or utc_now())

    def unarchive(self, uuid: str, replace: bool = True, at: Optional[datetime] = None) -> None:
        self._unarchive_row(UniqueIdentity, UniqueIdentityArchive, "uuid", uuid, replace, at)

    def delete_archive(
        self,
        uuid: str,
        missing_fatal: bool = False,
        only_last: bool = True,
        at: Optional[datetime] = None,
    ) -> int:
        return self._delete_archive_rows(UniqueIdentityArchive, "uuid", uuid, missing_fatal, only_last, at)

    def newest_archive_time(self, uuid: str) -> Optional[datetime]:
        """Most recent archived_at of this uuid, None if it was never archived."""
        rows = query(
            self.session,
            select(UniqueIdentityArchive.archived_at)
            .where(UniqueIdentityArchive.uuid == uuid)
            .order_by(UniqueIdentityArchive.archived_at.desc())
            .limit(1),
        )
        return rows[0]["archived_at"] if rows else None

    def archived_uuids_at(self, at: datetime) -> List[str]:
        """Distinct uuids archived at exactly this checkpoint."""
        rows = query(
            self.session,
            select(UniqueIdentityArchive.uuid)
            .where(UniqueIdentityArchive.archived_at == at)
            .distinct()
            .order_by(UniqueIdentityArchive.uuid),
        )
        return [row["uuid"] for row in rows]


# ============================================
# PROFILE REPOSITORY
# ============================================

PROFILE_FIELDS = ("name", "email", "gender", "gender_acc", "is_bot", "country_code")


class ProfileRepository(BaseRepository):
    """One profile per unique identity."""

    def get(self, uuid: str, missing_fatal: bool = True) -> Optional[Profile]:
        profile = self._select_one(Profile, Profile.uuid == uuid)
        if profile is None and missing_fatal:
            raise NotFoundError(f"profile '{uuid}' not found")
        return profile

    def validate(self, uuid: str, values: Dict[str, Any]) -> None:
        """
        Profile rules, checked against the full set of values to be stored.

        Raises:
            ValidationError: Naming the offending field
        """
        if not uuid:
            raise ValidationError("uuid", "profile uuid cannot be empty")
        is_bot = values.get("is_bot")
        if is_bot is not None and is_bot not in (0, 1):
            raise ValidationError("is_bot", f"is_bot must be 0 or 1, got {is_bot}")
        gender = values.get("gender")
        if gender is not None and gender not in {g.value for g in Gender}:
            raise ValidationError("gender", f"gender must be male or female, got '{gender}'")
        gender_acc = values.get("gender_acc")
        if gender_acc is not None:
            if gender is None:
                raise ValidationError("gender_acc", "gender_acc can only be set when gender is given")
            if gender_acc < 1 or gender_acc > 100:
                raise ValidationError("gender_acc", f"gender_acc must be within [1, 100], got {gender_acc}")
        country_code = values.get("country_code")
        if country_code is not None:
            if self._select_one(Country, Country.code == country_code) is None:
                raise ValidationError("country_code", f"unknown country code '{country_code}'")

    def add(
        self,
        uuid: str,
        name: Optional[str] = None,
        email: Optional[str] = None,
        gender: Optional[str] = None,
        gender_acc: Optional[int] = None,
        is_bot: Optional[int] = 0,
        country_code: Optional[str] = None,
        refresh: bool = False,
    ) -> Profile:
        values = {
            "name": normalize_optional(name),
            "email": normalize_optional(email),
            "gender": normalize_optional(gender),
            "gender_acc": gender_acc,
            "is_bot": is_bot,
            "country_code": normalize_optional(country_code),
        }
        self.validate(uuid, values)
        profile = Profile(uuid=uuid, **values)
        self.session.add(profile)
        flush(self.session, f"add profile '{uuid}'")
        self.touch(uuid)
        return self.get(uuid) if refresh else profile

    def edit(self, uuid: str, changes: Dict[str, Any], refresh: bool = False) -> Profile:
        """
        Overwrite only the fields given with a non-empty value.

        Args:
            uuid: Profile uuid
            changes: Subset of name, email, gender, gender_acc, is_bot, country_code
            refresh: Re-read the row after writing
        """
        current = self.get(uuid)
        values = {f: getattr(current, f) for f in PROFILE_FIELDS}
        for field in PROFILE_FIELDS:
            value = changes.get(field)
            if isinstance(value, str):
                value = normalize_optional(value)
            if value is not None:
                values[field] = value
        return self.replace(uuid, values, refresh=refresh)

    def replace(self, uuid: str, values: Dict[str, Any], refresh: bool = False) -> Profile:
        """Store exactly the given field values (None clears a field)."""
        self.validate(uuid, values)
        affected, _ = execute(
            self.session,
            update(Profile).where(Profile.uuid == uuid).values(**{f: values.get(f) for f in PROFILE_FIELDS}),
        )
        if affected != 1:
            raise NotFoundError(f"edit profile: '{uuid}' not found")
        self.touch(uuid)
        return self.get(uuid) if refresh else Profile(uuid=uuid, **{f: values.get(f) for f in PROFILE_FIELDS})

    def delete(
        self,
        uuid: str,
        archive: bool = False,
        missing_fatal: bool = True,
        at: Optional[datetime] = None,
    ) -> bool:
        if archive:
            self.archive(uuid, at)
        affected, _ = execute(self.session, delete(Profile).where(Profile.uuid == uuid))
        if affected == 0:
            if missing_fatal:
                raise NotFoundError(f"delete profile: '{uuid}' not found")
            return False
        self.touch(uuid)
        return True

    def archive(self, uuid: str, at: Optional[datetime] = None) -> None:
        self._archive_row(Profile, ProfileArchive, "uuid", uuid, at or utc_now())

    def unarchive(self, uuid: str, replace: bool = True, at: Optional[datetime] = None) -> None:
        self._unarchive_row(Profile, ProfileArchive, "uuid", uuid, replace, at)

    def delete_archive(
        self,
        uuid: str,
        missing_fatal: bool = False,
        only_last: bool = True,
        at: Optional[datetime] = None,
    ) -> int:
        return self._delete_archive_rows(ProfileArchive, "uuid", uuid, missing_fatal, only_last, at)


# ============================================
# IDENTITY REPOSITORY
# ============================================

class IdentityRepository(BaseRepository):
    """Source-specific identities."""

    def get(self, identity_id: str, missing_fatal: bool = True) -> Optional[Identity]:
        identity = self._select_one(Identity, Identity.id == identity_id)
        if identity is None and missing_fatal:
            raise NotFoundError(f"identity '{identity_id}' not found")
        return identity

    def list_by_uuid(self, uuid: str) -> List[Identity]:
        stmt = (
            select(Identity)
            .where(Identity.uuid == uuid)
            .order_by(Identity.source, Identity.id)
            .execution_options(populate_existing=True)
        )
        return list(self.session.execute(stmt).scalars().all())

    def find_identicals(
        self,
        source: str,
        email: Optional[str],
        name: Optional[str],
        username: Optional[str],
        identity_id: Optional[str] = None,
    ) -> List[Identity]:
        """Identities with the same id or the same (source, email, name, username)."""
        same_fields = and_(
            Identity.source == source,
            Identity.email.is_not_distinct_from(email),
            Identity.name.is_not_distinct_from(name),
            Identity.username.is_not_distinct_from(username),
        )
        criteria = same_fields if identity_id is None else (same_fields | (Identity.id == identity_id))
        stmt = select(Identity).where(criteria).execution_options(populate_existing=True)
        return list(self.session.execute(stmt).scalars().all())

    def add(
        self,
        source: str,
        email: Optional[str] = None,
        name: Optional[str] = None,
        username: Optional[str] = None,
        uuid: Optional[str] = None,
        refresh: bool = False,
    ) -> Identity:
        """
        Insert a new identity whose id is derived from its fields.

        Raises:
            ValidationError: If source is empty or name, email and username are all empty
            ConflictError: If an identical identity already exists
        """
        source = normalize_optional(source)
        email, name, username = (normalize_optional(v) for v in (email, name, username))
        if not source:
            raise ValidationError("source", "identity source cannot be empty")
        if email is None and name is None and username is None:
            raise ValidationError("name", "identity needs at least one of name, email or username")

        identity_id = identity_hash(source, email, name, username)
        if self.find_identicals(source, email, name, username, identity_id):
            raise ConflictError(
                f"identity (source={source}, email={email}, name={name}, username={username}) already exists"
            )

        identity = Identity(
            id=identity_id,
            uuid=uuid,
            source=source,
            name=name,
            email=email,
            username=username,
            last_modified=utc_now(),
        )
        self.session.add(identity)
        flush(self.session, f"add identity '{identity_id}'")
        self.touch(uuid)
        logger.debug(f"Added identity {identity_id} (source={source}, uuid={uuid})")
        return self.get(identity_id) if refresh else identity

    def edit(self, identity_id: str, changes: Dict[str, Any], refresh: bool = False) -> Identity:
        """
        Update source/name/email/username/uuid of an identity; the id is kept.

        Raises:
            ValidationError: If id or source is empty
            NotFoundError: If uuid is changed to an unknown unique identity
        """
        if not identity_id:
            raise ValidationError("id", "identity id cannot be empty")
        current = self.get(identity_id)
        values = {
            "source": current.source,
            "name": current.name,
            "email": current.email,
            "username": current.username,
            "uuid": current.uuid,
        }
        for field in values:
            if field in changes:
                values[field] = normalize_optional(changes[field])
        if not values["source"]:
            raise ValidationError("source", "identity source cannot be empty")
        if values["uuid"] and values["uuid"] != current.uuid:
            if self._select_one(UniqueIdentity, UniqueIdentity.uuid == values["uuid"]) is None:
                raise NotFoundError(f"unique identity '{values['uuid']}' not found")
        values["last_modified"] = utc_now()
        execute(self.session, update(Identity).where(Identity.id == identity_id).values(**values))
        self.touch(values["uuid"])
        if current.uuid != values["uuid"]:
            self.touch(current.uuid)
        return self.get(identity_id) if refresh else Identity(id=identity_id, **values)

    def move(self, identity_id: str, uuid: str) -> None:
        """Re-parent an identity (no touch; callers touch both sides)."""
        affected, _ = execute(
            self.session,
            update(Identity).where(Identity.id == identity_id).values(uuid=uuid, last_modified=utc_now()),
        )
        if affected != 1:
            raise NotFoundError(f"move identity: '{identity_id}' not found")

    def delete(
        self,
        identity_id: str,
        archive: bool = False,
        missing_fatal: bool = True,
        at: Optional[datetime] = None,
    ) -> bool:
        identity = self.get(identity_id, missing_fatal=missing_fatal)
        if identity is None:
            return False
        if archive:
            self.archive(identity_id, at)
        execute(self.session, delete(Identity).where(Identity.id == identity_id))
        self.touch(identity.uuid)
        return True

    def archive(self, identity_id: str, at: Optional[datetime] = None) -> None:
        self._archive_row(Identity, IdentityArchive, "id", identity_id, at or utc_now())

    def unarchive(self, identity_id: str, replace: bool = True, at: Optional[datetime] = None) -> None:
        self._unarchive_row(Identity, IdentityArchive, "id", identity_id, replace, at)

    def delete_archive(
        self,
        identity_id: str,
        missing_fatal: bool = False,
        only_last: bool = True,
        at: Optional[datetime] = None,
    ) -> int:
        return self._delete_archive_rows(IdentityArchive, "id", identity_id, missing_fatal, only_last, at)

    def newest_archive_time(self, identity_id: str) -> Optional[datetime]:
        rows = query(
            self.session,
            select(IdentityArchive.archived_at)
            .where(IdentityArchive.id == identity_id)
            .order_by(IdentityArchive.archived_at.desc())
            .limit(1),
        )
        return rows[0]["archived_at"] if rows else None

    def archived_ids(self, uuid: str, at: datetime) -> List[str]:
        rows = query(
            self.session,
            select(IdentityArchive.id)
            .where(IdentityArchive.uuid == uuid, IdentityArchive.archived_at == at)
            .distinct(),
        )
        return [row["id"] for row in rows]


# ============================================
# ORGANIZATION AND DOMAIN REPOSITORIES
# ============================================

class OrganizationRepository(BaseRepository):
    """Employers."""

    def get(self, organization_id: int, missing_fatal: bool = True) -> Optional[Organization]:
        org = self._select_one(Organization, Organization.id == organization_id)
        if org is None and missing_fatal:
            raise NotFoundError(f"organization id {organization_id} not found")
        return org

    def get_by_name(self, name: str, missing_fatal: bool = True) -> Optional[Organization]:
        org = self._select_one(Organization, Organization.name == name)
        if org is None and missing_fatal:
            raise NotFoundError(f"organization '{name}' not found")
        return org

    def add(self, name: str, refresh: bool = False) -> Organization:
        name = normalize_optional(name)
        if not name:
            raise ValidationError("name", "organization name cannot be empty")
        if self.get_by_name(name, missing_fatal=False) is not None:
            raise ConflictError(f"organization '{name}' already exists")
        org = Organization(name=name)
        self.session.add(org)
        flush(self.session, f"add organization '{name}'")
        return self.get(org.id) if refresh else org

    def edit(self, organization_id: int, name: str, refresh: bool = False) -> Organization:
        if organization_id is None or organization_id < 1:
            raise ValidationError("id", "organization id must be positive")
        name = normalize_optional(name)
        if not name:
            raise ValidationError("name", "organization name cannot be empty")
        affected, _ = execute(
            self.session,
            update(Organization).where(Organization.id == organization_id).values(name=name),
        )
        if affected != 1:
            raise NotFoundError(f"edit organization: id {organization_id} not found")
        return self.get(organization_id) if refresh else Organization(id=organization_id, name=name)

    def delete(self, organization_id: int) -> None:
        """Delete an organization; its domains and enrollments cascade."""
        uuids = query(
            self.session,
            select(Enrollment.uuid).where(Enrollment.organization_id == organization_id).distinct(),
        )
        affected, _ = execute(self.session, delete(Organization).where(Organization.id == organization_id))
        if affected != 1:
            raise NotFoundError(f"delete organization: id {organization_id} not found")
        for row in uuids:
            self.touch(row["uuid"])


class DomainRepository(BaseRepository):
    """Email domains bound to organizations."""

    def get(self, organization_id: int, domain: str) -> Optional[Domain]:
        return self._select_one(Domain, Domain.organization_id == organization_id, Domain.domain == domain)

    def add(self, organization_id: int, domain: str, is_top_domain: bool = False) -> Domain:
        domain = normalize_optional(domain)
        if not domain:
            raise ValidationError("domain", "domain cannot be empty")
        row = Domain(organization_id=organization_id, domain=domain, is_top_domain=is_top_domain)
        self.session.add(row)
        flush(self.session, f"add domain '{domain}'")
        return row

    def delete(self, organization_id: int, domain: str) -> None:
        affected, _ = execute(
            self.session,
            delete(Domain).where(Domain.organization_id == organization_id, Domain.domain == domain),
        )
        if affected == 0:
            raise NotFoundError(f"delete domain: '{domain}' not bound to organization id {organization_id}")


# ============================================
# ENROLLMENT REPOSITORY
# ============================================

class EnrollmentRepository(BaseRepository):
    """Time-bounded memberships of unique identities in organizations."""

    def get(self, enrollment_id: int, missing_fatal: bool = True) -> Optional[Enrollment]:
        enrollment = self._select_one(Enrollment, Enrollment.id == enrollment_id)
        if enrollment is None and missing_fatal:
            raise NotFoundError(f"enrollment id {enrollment_id} not found")
        return enrollment

    def list_by_uuid(self, uuid: str, organization_id: Optional[int] = None) -> List[Enrollment]:
        stmt = select(Enrollment).where(Enrollment.uuid == uuid)
        if organization_id is not None:
            stmt = stmt.where(Enrollment.organization_id == organization_id)
        stmt = stmt.order_by(Enrollment.start, Enrollment.end, Enrollment.id).execution_options(
            populate_existing=True
        )
        return list(self.session.execute(stmt).scalars().all())

    def organizations_of(self, uuid: str) -> List[int]:
        rows = query(
            self.session,
            select(Enrollment.organization_id)
            .where(Enrollment.uuid == uuid)
            .distinct()
            .order_by(Enrollment.organization_id),
        )
        return [row["organization_id"] for row in rows]

    def exists(self, uuid: str, organization_id: int, start: datetime, end: datetime) -> bool:
        return self._select_one(
            Enrollment,
            Enrollment.uuid == uuid,
            Enrollment.organization_id == organization_id,
            Enrollment.start == start,
            Enrollment.end == end,
        ) is not None

    def add(
        self,
        uuid: str,
        organization_id: int,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        refresh: bool = False,
    ) -> Enrollment:
        """
        Insert an enrollment; missing endpoints default to the period bounds.

        Raises:
            ValidationError: On empty uuid, bad organization id or dates
            ConflictError: If the same (uuid, organization, start, end) exists
        """
        start = MIN_PERIOD_DATE if start is None else start
        end = MAX_PERIOD_DATE if end is None else end
        validate_enrollment(uuid, organization_id, start, end)
        if self.exists(uuid, organization_id, start, end):
            raise ConflictError(
                f"enrollment ({uuid}, {organization_id}, {start.isoformat()}, {end.isoformat()}) already exists"
            )
        enrollment = Enrollment(uuid=uuid, organization_id=organization_id, start=start, end=end)
        self.session.add(enrollment)
        flush(self.session, f"add enrollment for '{uuid}'")
        self.touch(uuid)
        return self.get(enrollment.id) if refresh else enrollment

    def edit(
        self,
        enrollment_id: int,
        uuid: str,
        organization_id: int,
        start: datetime,
        end: datetime,
        refresh: bool = False,
    ) -> Enrollment:
        validate_enrollment(uuid, organization_id, start, end, enrollment_id, for_update=True)
        current = self.get(enrollment_id)
        affected, _ = execute(
            self.session,
            update(Enrollment)
            .where(Enrollment.id == enrollment_id)
            .values(uuid=uuid, organization_id=organization_id, start=start, end=end),
        )
        if affected != 1:
            raise NotFoundError(f"edit enrollment: id {enrollment_id} not found")
        self.touch(uuid)
        if current.uuid != uuid:
            self.touch(current.uuid)
        if refresh:
            return self.get(enrollment_id)
        return Enrollment(id=enrollment_id, uuid=uuid, organization_id=organization_id, start=start, end=end)

    def move(self, enrollment_id: int, uuid: str) -> None:
        """Re-parent an enrollment (no touch; callers touch both sides)."""
        affected, _ = execute(
            self.session,
            update(Enrollment).where(Enrollment.id == enrollment_id).values(uuid=uuid),
        )
        if affected != 1:
            raise NotFoundError(f"move enrollment: id {enrollment_id} not found")

    def delete(
        self,
        enrollment_id: int,
        archive: bool = False,
        missing_fatal: bool = True,
        at: Optional[datetime] = None,
    ) -> bool:
        enrollment = self.get(enrollment_id, missing_fatal=missing_fatal)
        if enrollment is None:
            return False
        if archive:
            self.archive(enrollment_id, at)
        execute(self.session, delete(Enrollment).where(Enrollment.id == enrollment_id))
        self.touch(enrollment.uuid)
        return True

    def withdraw(self, uuid: str, organization_id: int, start: datetime, end: datetime) -> int:
        """Delete every enrollment of uuid at the organization lying within [start, end]."""
        validate_enrollment(uuid, organization_id, start, end)
        affected, _ = execute(
            self.session,
            delete(Enrollment).where(
                Enrollment.uuid == uuid,
                Enrollment.organization_id == organization_id,
                Enrollment.start >= start,
                Enrollment.end <= end,
            ),
        )
        if affected == 0:
            raise NotFoundError(
                f"withdraw: no enrollments of '{uuid}' at organization {organization_id} "
                f"within [{start.isoformat()}, {end.isoformat()}]"
            )
        self.touch(uuid)
        return affected

    def archive(self, enrollment_id: int, at: Optional[datetime] = None) -> None:
        self._archive_row(Enrollment, EnrollmentArchive, "id", enrollment_id, at or utc_now())

    def unarchive(self, enrollment_id: int, replace: bool = True, at: Optional[datetime] = None) -> None:
        self._unarchive_row(Enrollment, EnrollmentArchive, "id", enrollment_id, replace, at)

    def delete_archive(
        self,
        enrollment_id: int,
        missing_fatal: bool = False,
        only_last: bool = True,
        at: Optional[datetime] = None,
    ) -> int:
        return self._delete_archive_rows(EnrollmentArchive, "id", enrollment_id, missing_fatal, only_last, at)

    def archived_ids(self, uuid: str, at: datetime) -> List[int]:
        rows = query(
            self.session,
            select(EnrollmentArchive.id)
            .where(EnrollmentArchive.uuid == uuid, EnrollmentArchive.archived_at == at)
            .distinct(),
        )
        return [row["id"] for row in rows]


# ============================================
# REFERENCE TABLES
# ============================================

class MatchingBlacklistRepository(BaseRepository):
    """Emails excluded from matching (stored only)."""

    def get(self, email: str, missing_fatal: bool = True) -> Optional[MatchingBlacklist]:
        row = self._select_one(MatchingBlacklist, MatchingBlacklist.excluded == email)
        if row is None and missing_fatal:
            raise NotFoundError(f"matching blacklist entry '{email}' not found")
        return row

    def add(self, email: str) -> MatchingBlacklist:
        email = normalize_optional(email)
        if not email:
            raise ValidationError("email", "matching blacklist email cannot be empty")
        if self.get(email, missing_fatal=False) is not None:
            raise ConflictError(f"matching blacklist entry '{email}' already exists")
        row = MatchingBlacklist(excluded=email)
        self.session.add(row)
        flush(self.session, f"add matching blacklist '{email}'")
        return row

    def delete(self, email: str) -> None:
        affected, _ = execute(self.session, delete(MatchingBlacklist).where(MatchingBlacklist.excluded == email))
        if affected == 0:
            raise NotFoundError(f"matching blacklist entry '{email}' not found")


class CountryRepository(BaseRepository):
    """ISO-3166 countries (read-only)."""

    def get(self, code: str, missing_fatal: bool = True) -> Optional[Country]:
        country = self._select_one(Country, Country.code == code)
        if country is None and missing_fatal:
            raise NotFoundError(f"country '{code}' not found")
        return country

    def list(self) -> List[Country]:
        return list(self.session.execute(select(Country).order_by(Country.code)).scalars().all())
