"""
Tests for the merge/move engine: merges, moves, archive checkpoints and
domain attachment.
"""

from datetime import datetime

import pytest
from sqlalchemy import select

from database.identity_service import IdentityGraphService
from database.models import (
    Domain,
    Enrollment,
    EnrollmentArchive,
    Identity,
    IdentityArchive,
    Profile,
    ProfileArchive,
    UniqueIdentity,
    UniqueIdentityArchive,
    MAX_PERIOD_DATE,
    MIN_PERIOD_DATE,
)
from errors import ConflictError, NotFoundError, ValidationError


def add_person(engine, uuid, **profile):
    engine.add_nested_unique_identity(uuid)
    if profile:
        engine.profiles.edit(uuid, profile)


def rows(session, model, *criteria):
    """Column values of every matching row, ready for comparison."""
    session.expire_all()
    table = model.__table__
    result = session.execute(select(table).where(*criteria).order_by(*table.primary_key.columns))
    return [dict(row) for row in result.mappings().all()]


def subgraph(session, uuid):
    return {
        "uidentities": [
            {k: v for k, v in row.items() if k != "last_modified"}
            for row in rows(session, UniqueIdentity, UniqueIdentity.uuid == uuid)
        ],
        "profiles": rows(session, Profile, Profile.uuid == uuid),
        "identities": rows(session, Identity, Identity.uuid == uuid),
        "enrollments": rows(session, Enrollment, Enrollment.uuid == uuid),
    }


def covered(enrollments):
    """Set of days covered by the enrollments, for comparing total coverage."""
    days = set()
    for e in enrollments:
        start, end = e["start"].toordinal(), e["end"].toordinal()
        days.update(range(start, end + 1))
    return days


@pytest.fixture
def engine(session):
    return IdentityGraphService(session)


@pytest.fixture
def acme(engine):
    return engine.organizations.add("Acme").id


# ============================================
# MERGE ENROLLMENTS
# ============================================

class TestMergeEnrollments:

    def test_overlapping_are_collapsed(self, engine, acme):
        add_person(engine, "u1")
        engine.enrollments.add("u1", acme, datetime(2010, 1, 1), datetime(2012, 1, 1))
        engine.enrollments.add("u1", acme, datetime(2011, 1, 1), datetime(2014, 1, 1))
        engine.enrollments.add("u1", acme, datetime(2016, 1, 1), datetime(2017, 1, 1))

        result = engine.merge_enrollments("u1", acme)

        assert result == {"kept": 1, "added": 1, "deleted": 2}
        periods = [(e.start, e.end) for e in engine.enrollments.list_by_uuid("u1", acme)]
        assert periods == [
            (datetime(2010, 1, 1), datetime(2014, 1, 1)),
            (datetime(2016, 1, 1), datetime(2017, 1, 1)),
        ]

    def test_already_merged_is_noop(self, engine, acme):
        add_person(engine, "u1")
        engine.enrollments.add("u1", acme, datetime(2010, 1, 1), datetime(2012, 1, 1))
        assert engine.merge_enrollments("u1", acme) == {"kept": 1, "added": 0, "deleted": 0}

    def test_no_enrollments(self, engine, acme):
        add_person(engine, "u1")
        with pytest.raises(NotFoundError) as exc:
            engine.merge_enrollments("u1", acme)
        assert str(exc.value).startswith("merge_enrollments:")


# ============================================
# MERGE UNIQUE IDENTITIES
# ============================================

class TestMergeUniqueIdentities:

    @pytest.fixture
    def pair(self, engine, acme):
        add_person(engine, "u1", name="Alice", email="alice@acme.com", is_bot=1)
        add_person(engine, "u2", country_code="PL")
        engine.identities.add("git", "alice@acme.com", "Alice", "alice", uuid="u1")
        engine.identities.add("gerrit", "alice@acme.com", "Alice", None, uuid="u1")
        engine.identities.add("git", "a2@acme.com", "A2", None, uuid="u2")
        engine.enrollments.add("u1", acme, datetime(2010, 1, 1), datetime(2012, 1, 1))
        engine.enrollments.add("u2", acme, datetime(2011, 1, 1), datetime(2014, 1, 1))
        return "u1", "u2"

    def test_merge(self, session, engine, acme, pair):
        before = covered(rows(session, Enrollment))

        assert engine.merge_unique_identities("u1", "u2", archive=True) is True

        assert engine.uidentities.get("u1", missing_fatal=False) is None
        profile = engine.profiles.get("u2")
        assert (profile.name, profile.email, profile.country_code, profile.is_bot) == (
            "Alice", "alice@acme.com", "PL", 1
        )
        assert len(engine.identities.list_by_uuid("u2")) == 3
        assert rows(session, Identity, Identity.uuid == "u1") == []
        enrollments = rows(session, Enrollment, Enrollment.uuid == "u2")
        assert [(e["start"], e["end"]) for e in enrollments] == [
            (datetime(2010, 1, 1), datetime(2014, 1, 1))
        ]
        assert covered(enrollments) == before

    def test_archive_shares_one_checkpoint(self, session, engine, pair):
        engine.merge_unique_identities("u1", "u2", archive=True)
        archived = rows(session, UniqueIdentityArchive)
        assert sorted(r["uuid"] for r in archived) == ["u1", "u2"]
        assert len({r["archived_at"] for r in archived}) == 1
        at = archived[0]["archived_at"]
        for model in (ProfileArchive, IdentityArchive, EnrollmentArchive):
            assert {r["archived_at"] for r in rows(session, model)} == {at}
        assert len(rows(session, IdentityArchive)) == 3

    def test_without_archive(self, session, engine, pair):
        engine.merge_unique_identities("u1", "u2", archive=False)
        assert rows(session, UniqueIdentityArchive) == []

    def test_same_uuid(self, engine, pair):
        assert engine.merge_unique_identities("u1", "u1") is False

    def test_missing_source(self, engine, pair):
        with pytest.raises(NotFoundError) as exc:
            engine.merge_unique_identities("ghost", "u2")
        assert exc.value.code == "404"
        assert "merge_unique_identities" in str(exc.value)


# ============================================
# ARCHIVE CHECKPOINTS
# ============================================

class TestArchiveCheckpoints:

    @pytest.fixture
    def alice(self, engine, acme):
        add_person(engine, "u1", name="Alice")
        engine.identities.add("git", "alice@acme.com", "Alice", None, uuid="u1")
        engine.enrollments.add("u1", acme, datetime(2010, 1, 1), datetime(2012, 1, 1))
        return "u1"

    def test_round_trip_restores_rows(self, session, engine, acme, alice):
        before = subgraph(session, alice)
        at = engine.archive_uuid(alice)

        engine.profiles.edit(alice, {"name": "Somebody else"})
        engine.identities.add("gerrit", "x@y.com", None, None, uuid=alice)
        engine.enrollments.add(alice, acme, datetime(2015, 1, 1), datetime(2016, 1, 1))
        engine.uidentities.delete(alice)

        engine.unarchive_uuid(alice, at)
        assert subgraph(session, alice) == before
        assert rows(session, UniqueIdentityArchive) == []

    def test_delete_and_unarchive_profile(self, session, engine, alice):
        before = subgraph(session, alice)
        engine.delete_profile_nested(alice, archive=True)
        assert engine.uidentities.get(alice, missing_fatal=False) is None
        engine.unarchive_profile_nested(alice)
        assert subgraph(session, alice) == before

    def test_unarchive_without_checkpoint(self, engine):
        with pytest.raises(NotFoundError):
            engine.unarchive_profile_nested("never-archived")


# ============================================
# MOVE IDENTITY
# ============================================

class TestMoveIdentity:

    @pytest.fixture
    def identity_id(self, engine):
        add_person(engine, "u1", name="Alice")
        add_person(engine, "u2", name="Bob")
        engine.identities.add("git", "bob@acme.com", "Bob", None, uuid="u2")
        return engine.identities.add("git", "alice@acme.com", "Alice", None, uuid="u1").id

    def test_move(self, engine, identity_id):
        assert engine.move_identity(identity_id, "u2", archive=False) == "moved"
        assert engine.identities.get(identity_id).uuid == "u2"

    def test_move_to_own_uuid_is_unchanged(self, engine, identity_id):
        assert engine.move_identity(identity_id, "u1", archive=False) == "unchanged"

    def test_move_to_missing_uuid(self, engine, identity_id):
        with pytest.raises(NotFoundError):
            engine.move_identity(identity_id, "ghost")

    def test_move_to_own_id_creates_unique_identity(self, engine, identity_id):
        assert engine.move_identity(identity_id, identity_id, archive=False) == "moved"
        assert engine.uidentities.get(identity_id) is not None
        assert engine.profiles.get(identity_id).name is None

    def test_repeated_move_restores_previous_state(self, session, engine, identity_id):
        before = {uuid: subgraph(session, uuid) for uuid in ("u1", "u2")}

        assert engine.move_identity(identity_id, "u2", archive=True) == "moved"
        assert engine.identities.get(identity_id).uuid == "u2"

        assert engine.move_identity(identity_id, "u2", archive=True) == "unarchived"
        assert {uuid: subgraph(session, uuid) for uuid in ("u1", "u2")} == before


class TestUnarchiveCheckpoint:
    """Only a checkpoint shared by the identity and exactly two uuids is undone."""

    @pytest.fixture
    def identity_id(self, engine):
        for uuid, name in (("u1", "Alice"), ("u2", "Bob"), ("u3", "Carol")):
            add_person(engine, uuid, name=name)
        return engine.identities.add("git", "alice@acme.com", "Alice", None, uuid="u1").id

    def live(self, session):
        return {model.__tablename__: rows(session, model) for model in (UniqueIdentity, Profile, Identity, Enrollment)}

    def test_different_checkpoints(self, session, engine, identity_id):
        engine.identities.archive(identity_id, datetime(2020, 1, 1))
        engine.archive_uuid("u2", datetime(2021, 1, 1))
        before = self.live(session)

        assert engine.unarchive(identity_id, "u2") is False
        assert self.live(session) == before

        assert engine.move_identity(identity_id, "u2", archive=True) == "moved"
        assert engine.identities.get(identity_id).uuid == "u2"

    def test_checkpoint_with_one_uuid(self, session, engine, identity_id):
        at = datetime(2020, 1, 1)
        engine.identities.archive(identity_id, at)
        engine.archive_uuid("u2", at)
        before = self.live(session)

        assert engine.unarchive(identity_id, "u2") is False
        assert self.live(session) == before

    def test_checkpoint_with_three_uuids(self, session, engine, identity_id):
        at = datetime(2020, 1, 1)
        for uuid in ("u1", "u2", "u3"):
            engine.archive_uuid(uuid, at)
        engine.profiles.edit("u2", {"name": "Robert"})
        before = self.live(session)

        assert engine.unarchive(identity_id, "u2") is False
        assert self.live(session) == before
        assert engine.profiles.get("u2").name == "Robert"


# ============================================
# NESTED ADDS
# ============================================

class TestNestedAdds:

    def test_add_unique_identity_twice(self, engine):
        engine.add_nested_unique_identity("u1")
        with pytest.raises(ConflictError):
            engine.add_nested_unique_identity("u1")

    def test_identity_without_uuid_gets_own_unique_identity(self, engine):
        identity = engine.add_nested_identity("git", "alice@acme.com", "Alice", "alice")
        assert identity.uuid == identity.id
        profile = engine.profiles.get(identity.id)
        assert (profile.name, profile.email) == ("Alice", "alice@acme.com")

    def test_identity_with_missing_uuid(self, engine):
        with pytest.raises(NotFoundError):
            engine.add_nested_identity("git", "alice@acme.com", uuid="ghost")


# ============================================
# ATTACH DOMAIN TO ORGANIZATION
# ============================================

class TestPutOrgDomain:

    @pytest.fixture
    def people(self, engine, acme):
        add_person(engine, "u1", email="alice@acme.com")
        add_person(engine, "u2", email="bob@dev.acme.com")
        add_person(engine, "u3", email="carol@other.org")
        return ["u1", "u2", "u3"]

    def test_enrolls_matching_people(self, session, engine, people):
        result = engine.put_org_domain("Acme", "acme.com", overwrite=False, is_top_domain=True)

        assert result["added"] == 2
        assert result["deleted"] == 0
        assert "added: 2" in result["info"]
        domains = rows(session, Domain)
        assert [(d["domain"], bool(d["is_top_domain"])) for d in domains] == [("acme.com", True)]
        enrollments = rows(session, Enrollment)
        assert sorted(e["uuid"] for e in enrollments) == ["u1", "u2"]
        assert {(e["start"], e["end"]) for e in enrollments} == {(MIN_PERIOD_DATE, MAX_PERIOD_DATE)}

    def test_skips_enrolled_people(self, engine, acme, people):
        other = engine.organizations.add("Other").id
        engine.enrollments.add("u1", other, datetime(2010, 1, 1), datetime(2011, 1, 1))
        result = engine.put_org_domain("Acme", "acme.com")
        assert result["added"] == 1

    def test_overwrite_replaces_enrollments(self, session, engine, acme, people):
        other = engine.organizations.add("Other").id
        engine.enrollments.add("u1", other, datetime(2010, 1, 1), datetime(2011, 1, 1))
        result = engine.put_org_domain("Acme", "acme.com", overwrite=True)
        assert (result["deleted"], result["added"]) == (1, 2)
        assert {e["organization_id"] for e in rows(session, Enrollment)} == {acme}

    def test_wildcards_in_domain_match_literally(self, session, engine, people):
        add_person(engine, "u4", email="dave@acXme.com")
        add_person(engine, "u5", email="erin@ac_me.com")
        engine.identities.add("git", "frank@ac%me.com", "Frank", None, uuid="u3")

        result = engine.put_org_domain("Acme", "ac_me.com")
        assert result["added"] == 1
        assert [e["uuid"] for e in rows(session, Enrollment)] == ["u5"]

    def test_skip_enrollments(self, session, engine, people):
        result = engine.put_org_domain("Acme", "acme.com", skip_enrollments=True)
        assert result["added"] == 0
        assert rows(session, Enrollment) == []

    def test_duplicate_domain(self, engine, people):
        engine.put_org_domain("Acme", "acme.com", skip_enrollments=True)
        with pytest.raises(ConflictError):
            engine.put_org_domain("Acme", "acme.com")

    def test_empty_domain(self, engine, people):
        with pytest.raises(ValidationError):
            engine.put_org_domain("Acme", "  ")

    def test_delete_org_domain(self, session, engine, people):
        engine.put_org_domain("Acme", "acme.com", skip_enrollments=True)
        engine.delete_org_domain("Acme", "acme.com")
        assert rows(session, Domain) == []
        with pytest.raises(NotFoundError):
            engine.delete_org_domain("Acme", "acme.com")


class TestPutOrgDomainAtomicity:
    """A failure while enrolling rolls the domain back with the enrollments."""

    def test_rollback(self, provider, service, monkeypatch):
        with provider.session_scope() as session:
            engine = IdentityGraphService(session)
            engine.organizations.add("Acme")
            add_person(engine, "u1", email="alice@acme.com")

        def failing_enroll(self, uuids, organization_id):
            raise ConflictError("enrollment already exists")

        monkeypatch.setattr(IdentityGraphService, "_enroll", failing_enroll)

        with pytest.raises(ConflictError) as exc:
            service.put_org_domain("Acme", "acme.com")
        assert exc.value.code == "409"

        with provider.session_scope() as session:
            assert rows(session, Domain) == []
            assert rows(session, Enrollment) == []
