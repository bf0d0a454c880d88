"""
Merge/Move Engine for the Affiliation Identity Graph

Composite operations built on the repositories:
- Merging overlapping enrollments of one person at one organization
- Moving identities and enrollments between unique identities
- Merging two unique identities (profiles, identities, enrollments)
- Archive checkpoints over a whole uuid subgraph and their rollback
- Attaching a domain to an organization with retroactive enrollments

Every method runs inside the session it is given; the caller owns the
transaction, so a failure anywhere rolls back the whole operation.

Usage:
    with db_provider.session_scope() as session:
        engine = IdentityGraphService(session)
        engine.merge_unique_identities("u1", "u2", archive=True)
"""

import logging
from datetime import datetime
from functools import wraps
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import select, delete, insert, update, union
from sqlalchemy.orm import Session

from database.connection import execute, query
from database.date_ranges import merge_date_ranges
from database.models import (
    Enrollment,
    Identity,
    Profile,
    UniqueIdentity,
    MIN_PERIOD_DATE,
    MAX_PERIOD_DATE,
    utc_now,
)
from database.repositories import (
    DomainRepository,
    EnrollmentRepository,
    IdentityRepository,
    OrganizationRepository,
    ProfileRepository,
    UniqueIdentityRepository,
    PROFILE_FIELDS,
)
from errors import AffiliationError, ConflictError, NotFoundError, ValidationError, wrap

logger = logging.getLogger(__name__)


def with_context(name: str) -> Callable:
    """Prefix service errors raised by the wrapped operation with its name, keeping the code."""
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except AffiliationError as e:
                raise wrap(e, name) from e
        return wrapper
    return decorator


class IdentityGraphService:
    """
    Multi-step mutations of the identity graph.

    This service keeps the graph invariants across operations that touch
    several tables at once:
    - identities and enrollments always point at an existing unique identity
    - per (uuid, organization) enrollments stay non-overlapping after merges
    - all rows archived by one operation share one archived_at checkpoint
    """

    def __init__(self, session: Session):
        self.session = session
        self.uidentities = UniqueIdentityRepository(session)
        self.profiles = ProfileRepository(session)
        self.identities = IdentityRepository(session)
        self.organizations = OrganizationRepository(session)
        self.domains = DomainRepository(session)
        self.enrollments = EnrollmentRepository(session)

    # ============================================
    # ENROLLMENTS
    # ============================================

    @with_context("merge_enrollments")
    def merge_enrollments(self, uuid: str, organization_id: int) -> Dict[str, int]:
        """
        Collapse overlapping enrollments of uuid at one organization.

        Enrollments whose interval already equals a merged interval are kept;
        the merged intervals that are missing are inserted; every other input
        enrollment is deleted.

        Returns:
            {"kept": n, "added": n, "deleted": n}

        Raises:
            NotFoundError: If uuid has no enrollment at the organization
        """
        current = self.enrollments.list_by_uuid(uuid, organization_id)
        if not current:
            raise NotFoundError(f"no enrollments of '{uuid}' at organization id {organization_id}")

        merged = merge_date_ranges([[e.start, e.end] for e in current])
        retained = set()
        missing = []
        for start, end in merged:
            match = next(
                (e for e in current if e.start == start and e.end == end and e.id not in retained),
                None,
            )
            if match is None:
                missing.append((start, end))
            else:
                retained.add(match.id)

        deleted = 0
        for enrollment in current:
            if enrollment.id not in retained:
                execute(self.session, delete(Enrollment).where(Enrollment.id == enrollment.id))
                # the id may be handed out again by the inserts below
                self.session.expunge(enrollment)
                deleted += 1
        for start, end in missing:
            self.enrollments.add(uuid, organization_id, start, end)
        if deleted:
            self.uidentities.touch(uuid)

        logger.info(
            f"merge_enrollments uuid={uuid} organization_id={organization_id}: "
            f"kept={len(retained)} added={len(missing)} deleted={deleted}"
        )
        return {"kept": len(retained), "added": len(missing), "deleted": deleted}

    def move_enrollment_to_unique_identity(self, enrollment: Enrollment, uuid: str) -> bool:
        """Re-parent one enrollment; returns False when it already belongs to uuid."""
        if enrollment.uuid == uuid:
            return False
        self.uidentities.touch(enrollment.uuid)
        self.uidentities.touch(uuid)
        self.enrollments.move(enrollment.id, uuid)
        return True

    # ============================================
    # IDENTITIES
    # ============================================

    def move_identity_to_unique_identity(self, identity: Identity, uuid: str) -> bool:
        """Re-parent one identity; returns False when it already belongs to uuid."""
        if identity.uuid == uuid:
            return False
        self.uidentities.touch(identity.uuid)
        self.uidentities.touch(uuid)
        self.identities.move(identity.id, uuid)
        return True

    @with_context("merge_unique_identities")
    def merge_unique_identities(self, from_uuid: str, to_uuid: str, archive: bool = True) -> bool:
        """
        Merge unique identity from_uuid into to_uuid.

        The target profile takes every field it lacks from the source profile
        (gender together with gender_acc) and becomes a bot if the source is
        one. Identities and non-duplicate enrollments move to the target, the
        source unique identity is deleted, and the target's enrollments are
        merged per organization.

        Args:
            from_uuid: Unique identity to merge (deleted afterwards)
            to_uuid: Unique identity that survives
            archive: Archive both subgraphs first at one common checkpoint

        Returns:
            False when from_uuid == to_uuid (nothing to do), True otherwise
        """
        if from_uuid == to_uuid:
            return False
        self.uidentities.get(from_uuid)
        self.uidentities.get(to_uuid)
        from_profile = self.profiles.get(from_uuid)
        to_profile = self.profiles.get(to_uuid)

        if archive:
            at = utc_now()
            self.archive_uuid(from_uuid, at)
            self.archive_uuid(to_uuid, at)

        values = {f: getattr(to_profile, f) for f in PROFILE_FIELDS}
        for field in ("name", "email", "country_code"):
            if not values[field] and getattr(from_profile, field):
                values[field] = getattr(from_profile, field)
        if not values["gender"] and from_profile.gender:
            values["gender"] = from_profile.gender
            values["gender_acc"] = from_profile.gender_acc
        if from_profile.is_bot == 1:
            values["is_bot"] = 1
        self.profiles.replace(to_uuid, values)

        for identity in self.identities.list_by_uuid(from_uuid):
            self.move_identity_to_unique_identity(identity, to_uuid)

        for enrollment in self.enrollments.list_by_uuid(from_uuid):
            if self.enrollments.exists(to_uuid, enrollment.organization_id, enrollment.start, enrollment.end):
                continue
            self.move_enrollment_to_unique_identity(enrollment, to_uuid)

        self.uidentities.delete(from_uuid)

        for organization_id in self.enrollments.organizations_of(to_uuid):
            self.merge_enrollments(to_uuid, organization_id)

        logger.info(f"Merged unique identity {from_uuid} into {to_uuid} (archive={archive})")
        return True

    @with_context("move_identity")
    def move_identity(self, from_id: str, to_uuid: str, archive: bool = True) -> str:
        """
        Move identity from_id to unique identity to_uuid.

        With archive set, a move that exactly reverses an earlier merge or
        move checkpoint restores that checkpoint instead (see unarchive);
        otherwise both unique identities are archived at a new checkpoint
        before the move. When to_uuid does not exist and equals from_id, a
        new unique identity with an empty profile is created for it.

        Returns:
            'unarchived', 'moved' or 'unchanged'
        """
        if archive and self.unarchive(from_id, to_uuid):
            return "unarchived"

        identity = self.identities.get(from_id)
        target = self.uidentities.get(to_uuid, missing_fatal=False)
        if target is None and from_id != to_uuid:
            raise NotFoundError(f"unique identity '{to_uuid}' not found")
        if identity.uuid == to_uuid:
            return "unchanged"

        if archive:
            at = utc_now()
            if identity.uuid:
                self.archive_uuid(identity.uuid, at)
            if target is not None:
                self.archive_uuid(to_uuid, at)

        if target is None:
            self.uidentities.add(to_uuid)
            self.profiles.add(to_uuid)
        self.move_identity_to_unique_identity(identity, to_uuid)
        logger.info(f"Moved identity {from_id} from {identity.uuid} to {to_uuid}")
        return "moved"

    # ============================================
    # ARCHIVE CHECKPOINTS
    # ============================================

    def archive_uuid(self, uuid: str, at: Optional[datetime] = None) -> datetime:
        """
        Archive the unique identity, its profile, identities and enrollments.

        Returns:
            The archived_at checkpoint used for every row
        """
        at = at or utc_now()
        self.uidentities.archive(uuid, at)
        self.profiles.archive(uuid, at)
        for identity in self.identities.list_by_uuid(uuid):
            self.identities.archive(identity.id, at)
        for enrollment in self.enrollments.list_by_uuid(uuid):
            self.enrollments.archive(enrollment.id, at)
        logger.debug(f"Archived subgraph of {uuid} at {at.isoformat()}")
        return at

    def unarchive_uuid(self, uuid: str, at: datetime) -> None:
        """
        Restore the subgraph of uuid archived at checkpoint ``at``.

        Live rows are replaced; replacing the unique identity first removes
        every live row of its subgraph, so the result is exactly the archived
        row set.
        """
        identity_ids = self.identities.archived_ids(uuid, at)
        enrollment_ids = self.enrollments.archived_ids(uuid, at)
        self.uidentities.unarchive(uuid, replace=True, at=at)
        self.profiles.unarchive(uuid, replace=True, at=at)
        for identity_id in identity_ids:
            self.identities.unarchive(identity_id, replace=True, at=at)
        for enrollment_id in enrollment_ids:
            self.enrollments.unarchive(enrollment_id, replace=True, at=at)
        logger.debug(f"Unarchived subgraph of {uuid} at {at.isoformat()}")

    def unarchive(self, identity_id: str, uuid: str) -> bool:
        """
        Undo the merge/move checkpoint shared by identity_id and uuid.

        Returns:
            True when a checkpoint with exactly two unique identities was
            restored, False when there is nothing to undo
        """
        identity_at = self.identities.newest_archive_time(identity_id)
        if identity_at is None:
            return False
        uuid_at = self.uidentities.newest_archive_time(uuid)
        if uuid_at is None or uuid_at != identity_at:
            return False
        uuids = self.uidentities.archived_uuids_at(uuid_at)
        if len(uuids) != 2:
            logger.debug(f"unarchive: checkpoint {uuid_at.isoformat()} holds {len(uuids)} unique identities")
            return False
        for archived_uuid in uuids:
            self.unarchive_uuid(archived_uuid, uuid_at)
        logger.info(f"Restored checkpoint {uuid_at.isoformat()} for {uuids}")
        return True

    # ============================================
    # PROFILES
    # ============================================

    @with_context("add_unique_identity")
    def add_nested_unique_identity(self, uuid: str) -> None:
        """Create a unique identity with an empty profile."""
        if self.uidentities.get(uuid, missing_fatal=False) is not None:
            raise ConflictError(f"unique identity '{uuid}' already exists")
        self.uidentities.add(uuid)
        self.profiles.add(uuid)

    @with_context("add_identity")
    def add_nested_identity(
        self,
        source: str,
        email: Optional[str] = None,
        name: Optional[str] = None,
        username: Optional[str] = None,
        uuid: Optional[str] = None,
    ) -> Identity:
        """
        Add an identity; without uuid a new unique identity keyed by the
        identity id is created with a profile copied from the identity.
        """
        if uuid:
            self.uidentities.get(uuid)
            return self.identities.add(source, email, name, username, uuid)
        identity = self.identities.add(source, email, name, username)
        self.uidentities.add(identity.id)
        self.profiles.add(identity.id, name=identity.name, email=identity.email)
        self.identities.edit(identity.id, {"uuid": identity.id})
        return self.identities.get(identity.id)

    @with_context("delete_profile")
    def delete_profile_nested(self, uuid: str, archive: bool = True) -> Optional[datetime]:
        """
        Delete a person: the unique identity and, by cascade, its profile,
        identities and enrollments.

        Returns:
            The archive checkpoint, or None when archive is False
        """
        self.uidentities.get(uuid)
        at = self.archive_uuid(uuid) if archive else None
        self.uidentities.delete(uuid)
        return at

    @with_context("unarchive_profile")
    def unarchive_profile_nested(self, uuid: str) -> datetime:
        """Restore the newest archive checkpoint of uuid."""
        at = self.uidentities.newest_archive_time(uuid)
        if at is None:
            raise NotFoundError(f"no archived profile '{uuid}'")
        self.unarchive_uuid(uuid, at)
        return at

    # ============================================
    # DOMAINS
    # ============================================

    def _uuids_with_email_domain(self, domain: str) -> List[str]:
        # '%' and '_' in the domain match literally
        stmt = union(
            select(Profile.uuid).where(Profile.email.endswith(domain, autoescape=True)),
            select(Identity.uuid).where(
                Identity.email.endswith(domain, autoescape=True), Identity.uuid.is_not(None)
            ),
        )
        return sorted({row["uuid"] for row in query(self.session, stmt)})

    def _enroll(self, uuids: List[str], organization_id: int) -> int:
        if not uuids:
            return 0
        execute(
            self.session,
            insert(Enrollment.__table__),
            [
                {"uuid": uuid, "organization_id": organization_id, "start": MIN_PERIOD_DATE, "end": MAX_PERIOD_DATE}
                for uuid in uuids
            ],
        )
        return len(uuids)

    @with_context("put_org_domain")
    def put_org_domain(
        self,
        organization: str,
        domain: str,
        overwrite: bool = False,
        is_top_domain: bool = False,
        skip_enrollments: bool = False,
    ) -> Dict[str, Any]:
        """
        Bind a domain to an organization and optionally enroll its people.

        Every profile or identity whose email ends with the domain is
        enrolled at the organization for [MIN, MAX]. Without overwrite,
        people that already have any enrollment are skipped; with overwrite,
        all their enrollments are deleted first.

        Returns:
            Summary with organization, domain, is_top_domain, deleted, added and info
        """
        domain = (domain or "").strip()
        if not domain:
            raise ValidationError("domain", "domain cannot be empty")
        org = self.organizations.get_by_name(organization)
        if self.domains.get(org.id, domain) is not None:
            raise ConflictError(f"domain '{domain}' is already bound to organization '{organization}'")

        self.domains.add(org.id, domain, is_top_domain)

        deleted = added = 0
        if not skip_enrollments:
            uuids = self._uuids_with_email_domain(domain)
            if overwrite and uuids:
                deleted, _ = execute(self.session, delete(Enrollment).where(Enrollment.uuid.in_(uuids)))
                targets = uuids
            else:
                enrolled = {
                    row["uuid"]
                    for row in query(
                        self.session,
                        select(Enrollment.uuid).where(Enrollment.uuid.in_(uuids)).distinct(),
                    )
                } if uuids else set()
                targets = [u for u in uuids if u not in enrolled]
            added = self._enroll(targets, org.id)
            touched = sorted(set(targets) | (set(uuids) if deleted else set()))
            if touched:
                execute(
                    self.session,
                    update(UniqueIdentity).where(UniqueIdentity.uuid.in_(touched)).values(last_modified=utc_now()),
                )

        info = (
            f"inserted domain '{domain}' into organization '{organization}', "
            f"enrollments deleted: {deleted}, added: {added}"
        )
        logger.info(f"put_org_domain: {info}")
        return {
            "organization": organization,
            "domain": domain,
            "is_top_domain": is_top_domain,
            "deleted": deleted,
            "added": added,
            "info": info,
        }

    @with_context("delete_org_domain")
    def delete_org_domain(self, organization: str, domain: str) -> str:
        org = self.organizations.get_by_name(organization)
        self.domains.delete(org.id, domain)
        return f"Deleted domain '{domain}' from organization '{organization}'"
