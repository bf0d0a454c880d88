"""
SQLAlchemy ORM Models for the Affiliation Knowledge Store

This module defines the identity graph schema:
- Unique identities (one per real person) and their profiles
- Source-specific identities pointing at a unique identity
- Organizations, their domains and time-bounded enrollments
- Archive twin tables used as append-only history for rollback

Tables:
1. uidentities - Root node of the identity graph
2. profiles - Displayed facts, one-to-one with uidentities
3. identities - One persona on one data source
4. organizations - Employers
5. domains_organizations - Email domains bound to an organization
6. enrollments - "person worked at org between start and end"
7. matching_blacklist - Emails excluded from identity matching
8. countries - ISO-3166 reference table
9. *_archive - Twin tables carrying archived_at
"""

import hashlib
import re
import unicodedata
from datetime import datetime, timezone
from enum import Enum as PyEnum
from typing import Optional, Union

from sqlalchemy import (
    String, Integer, Boolean, DateTime, SmallInteger,
    ForeignKey, Index, UniqueConstraint,
)
from sqlalchemy.dialects import mysql
from sqlalchemy.orm import declarative_base, Mapped, mapped_column

# Base class for all models
Base = declarative_base()

# Microsecond precision on MySQL; archive checkpoints compare by equality
Timestamp = DateTime().with_variant(mysql.DATETIME(fsp=6), "mysql")

# Closed calendar range every enrollment endpoint must lie in
MIN_PERIOD_DATE = datetime(1900, 1, 1)
MAX_PERIOD_DATE = datetime(2100, 1, 1)


# ============================================
# ENUMS
# ============================================

class Gender(str, PyEnum):
    """Allowed profile genders"""
    MALE = "male"
    FEMALE = "female"


# ============================================
# LIVE TABLES
# ============================================

class UniqueIdentity(Base):
    """
    Root node of the identity graph.

    Never mutated except that last_modified is bumped whenever a dependent
    profile, identity or enrollment changes.
    """
    __tablename__ = "uidentities"

    uuid: Mapped[str] = mapped_column(String(128), primary_key=True)
    last_modified: Mapped[Optional[datetime]] = mapped_column(Timestamp, nullable=True)

    def __repr__(self) -> str:
        return f"<UniqueIdentity(uuid='{self.uuid}')>"


class Country(Base):
    """ISO-3166 alpha-2 country reference (read-only)"""
    __tablename__ = "countries"

    code: Mapped[str] = mapped_column(String(2), primary_key=True)
    name: Mapped[str] = mapped_column(String(191), nullable=False)
    alpha3: Mapped[str] = mapped_column(String(3), nullable=False)

    def __repr__(self) -> str:
        return f"<Country(code='{self.code}', name='{self.name}')>"


class Profile(Base):
    """Displayed facts of a person, one-to-one with a unique identity"""
    __tablename__ = "profiles"

    uuid: Mapped[str] = mapped_column(
        String(128),
        ForeignKey("uidentities.uuid", ondelete="CASCADE"),
        primary_key=True,
    )
    name: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    gender: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    gender_acc: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    is_bot: Mapped[Optional[int]] = mapped_column(SmallInteger, nullable=True, default=0)
    country_code: Mapped[Optional[str]] = mapped_column(
        String(2),
        ForeignKey("countries.code"),
        nullable=True,
    )

    __table_args__ = (
        Index('ix_profiles_email', 'email'),
        Index('ix_profiles_name', 'name'),
    )

    def __repr__(self) -> str:
        return f"<Profile(uuid='{self.uuid}', name='{self.name}')>"


class Identity(Base):
    """
    One persona on one data source.

    The id is derived from (source, email, name, username) by identity_hash();
    the uuid may change when the identity is moved.
    """
    __tablename__ = "identities"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    uuid: Mapped[Optional[str]] = mapped_column(
        String(128),
        ForeignKey("uidentities.uuid", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )
    source: Mapped[str] = mapped_column(String(32), nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    username: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    last_modified: Mapped[Optional[datetime]] = mapped_column(Timestamp, nullable=True)

    __table_args__ = (
        Index('ix_identities_email', 'email'),
        Index('ix_identities_source', 'source'),
    )

    def __repr__(self) -> str:
        return f"<Identity(id='{self.id}', source='{self.source}', uuid='{self.uuid}')>"


class Organization(Base):
    """Employer an enrollment points at"""
    __tablename__ = "organizations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(191), nullable=False, unique=True)

    def __repr__(self) -> str:
        return f"<Organization(id={self.id}, name='{self.name}')>"


class Domain(Base):
    """Email domain bound to an organization"""
    __tablename__ = "domains_organizations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
    )
    domain: Mapped[str] = mapped_column(String(128), nullable=False)
    is_top_domain: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    __table_args__ = (
        UniqueConstraint('domain', 'organization_id', name='uq_domain_organization'),
        Index('ix_domains_domain', 'domain'),
    )

    def __repr__(self) -> str:
        return f"<Domain(id={self.id}, domain='{self.domain}', organization_id={self.organization_id})>"


class Enrollment(Base):
    """Closed interval [start, end] during which a person worked at an organization"""
    __tablename__ = "enrollments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    uuid: Mapped[str] = mapped_column(
        String(128),
        ForeignKey("uidentities.uuid", ondelete="CASCADE"),
        nullable=False,
    )
    organization_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
    )
    start: Mapped[datetime] = mapped_column(Timestamp, nullable=False)
    end: Mapped[datetime] = mapped_column("end", Timestamp, nullable=False)

    __table_args__ = (
        UniqueConstraint('uuid', 'organization_id', 'start', 'end', name='uq_enrollment_period'),
        Index('ix_enrollments_uuid_org', 'uuid', 'organization_id'),
    )

    def __repr__(self) -> str:
        return (
            f"<Enrollment(id={self.id}, uuid='{self.uuid}', organization_id={self.organization_id}, "
            f"start={self.start}, end={self.end})>"
        )


class MatchingBlacklist(Base):
    """Email excluded from identity matching; stored, not applied here"""
    __tablename__ = "matching_blacklist"

    excluded: Mapped[str] = mapped_column(String(128), primary_key=True)

    def __repr__(self) -> str:
        return f"<MatchingBlacklist(excluded='{self.excluded}')>"


# ============================================
# ARCHIVE TABLES
# ============================================

class UniqueIdentityArchive(Base):
    __tablename__ = "uidentities_archive"

    archive_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    uuid: Mapped[str] = mapped_column(String(128), nullable=False)
    last_modified: Mapped[Optional[datetime]] = mapped_column(Timestamp, nullable=True)
    archived_at: Mapped[datetime] = mapped_column(Timestamp, nullable=False)

    __table_args__ = (
        Index('ix_uidentities_archive_key', 'uuid', 'archived_at'),
        Index('ix_uidentities_archive_at', 'archived_at'),
    )


class ProfileArchive(Base):
    __tablename__ = "profiles_archive"

    archive_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    uuid: Mapped[str] = mapped_column(String(128), nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    gender: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    gender_acc: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    is_bot: Mapped[Optional[int]] = mapped_column(SmallInteger, nullable=True)
    country_code: Mapped[Optional[str]] = mapped_column(String(2), nullable=True)
    archived_at: Mapped[datetime] = mapped_column(Timestamp, nullable=False)

    __table_args__ = (
        Index('ix_profiles_archive_key', 'uuid', 'archived_at'),
    )


class IdentityArchive(Base):
    __tablename__ = "identities_archive"

    archive_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String(128), nullable=False)
    uuid: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    source: Mapped[str] = mapped_column(String(32), nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    username: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    last_modified: Mapped[Optional[datetime]] = mapped_column(Timestamp, nullable=True)
    archived_at: Mapped[datetime] = mapped_column(Timestamp, nullable=False)

    __table_args__ = (
        Index('ix_identities_archive_key', 'id', 'archived_at'),
        Index('ix_identities_archive_uuid', 'uuid', 'archived_at'),
    )


class EnrollmentArchive(Base):
    __tablename__ = "enrollments_archive"

    archive_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[int] = mapped_column(Integer, nullable=False)
    uuid: Mapped[str] = mapped_column(String(128), nullable=False)
    organization_id: Mapped[int] = mapped_column(Integer, nullable=False)
    start: Mapped[datetime] = mapped_column(Timestamp, nullable=False)
    end: Mapped[datetime] = mapped_column("end", Timestamp, nullable=False)
    archived_at: Mapped[datetime] = mapped_column(Timestamp, nullable=False)

    __table_args__ = (
        Index('ix_enrollments_archive_key', 'id', 'archived_at'),
        Index('ix_enrollments_archive_uuid', 'uuid', 'archived_at'),
    )


# ============================================
# HELPER FUNCTIONS
# ============================================

_MANUAL_REPLACES = (("ł", "l"), ("ø", "o"), ("ß", "ss"), ("æ", "ae"))

_DATE_FORMATS = (
    "%Y-%m-%dT%H:%M:%S.%fZ",
    "%Y-%m-%dT%H:%M:%SZ",
    "%Y-%m-%dT%H:%M:%S.%f",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%d %H:%M:%S.%f",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d",
)


def utc_now() -> datetime:
    """Current UTC time as a naive datetime, the storage convention."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Convert an aware datetime to naive UTC; naive values are taken as UTC."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def parse_date(value: Union[str, datetime]) -> datetime:
    """
    Parse a date coming from a client or a query parameter.

    Accepts YYYY-MM-DD, the canonical YYYY-MM-DDTHH:MM:SS.sssZ form and
    ISO-8601 strings with an offset.

    Raises:
        ValueError: If the value cannot be parsed
    """
    if isinstance(value, datetime):
        return to_naive_utc(value)
    text = str(value).strip()
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    return to_naive_utc(datetime.fromisoformat(text.replace("Z", "+00:00")))


def format_date(value: Optional[datetime]) -> Optional[str]:
    """Render a stored datetime in the canonical wire format."""
    if value is None:
        return None
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def strip_unicode(text: str) -> str:
    """
    NFKD-normalize ``text`` and drop every rune below U+0020 or at/above U+007F.

    A few letters with no NFKD decomposition are transliterated first.
    """
    if not text:
        return ""
    for src, dst in _MANUAL_REPLACES:
        text = text.replace(src, dst)
    normalized = unicodedata.normalize('NFKD', text)
    return ''.join(c for c in normalized if 32 <= ord(c) < 127)


def identity_hash(
    source: str,
    email: Optional[str] = None,
    name: Optional[str] = None,
    username: Optional[str] = None,
) -> str:
    """
    Derive the stable identity id.

    Args:
        source: Data source (git, gerrit, ...)
        email, name, username: Optional identity fields, empty when missing

    Returns:
        Lowercase hex SHA-1 of 'source:email:name:username' after strip_unicode
    """
    key = ":".join(part or "" for part in (source, email, name, username))
    return hashlib.sha1(strip_unicode(key).encode("utf-8")).hexdigest()


def normalize_optional(value: Optional[str]) -> Optional[str]:
    """Trim whitespace; whitespace-only becomes None."""
    if value is None:
        return None
    value = value.strip()
    return value or None


def anonymize_email(email: Optional[str]) -> Optional[str]:
    """Fixed anonymization for downstream consumers: '@' becomes '!'."""
    email = normalize_optional(email)
    if email is None:
        return None
    return re.sub("@", "!", email)
