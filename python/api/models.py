"""
Pydantic request/response schemas for the Affiliation API

Requests are validated here; responses mirror the dicts produced by
api.service so FastAPI can document and filter them.
"""

from typing import List, Optional, Dict, Any

from pydantic import BaseModel, Field, field_validator


# ============================================
# REQUESTS
# ============================================

class ProfileInput(BaseModel):
    """Profile fields to change; empty or missing fields are left untouched."""
    name: Optional[str] = Field(default=None, max_length=128)
    email: Optional[str] = Field(default=None, max_length=128)
    gender: Optional[str] = Field(default=None, description="male or female")
    gender_acc: Optional[int] = Field(default=None, description="Gender accuracy 1-100")
    is_bot: Optional[int] = Field(default=None, description="0 or 1")
    country_code: Optional[str] = Field(default=None, max_length=2)

    @field_validator('country_code')
    @classmethod
    def upper_country(cls, v: Optional[str]) -> Optional[str]:
        return v.strip().upper() if v else v


class IdentityInput(BaseModel):
    """New identity; without uuid a new unique identity is created for it."""
    source: str = Field(..., min_length=1, max_length=32)
    email: Optional[str] = Field(default=None, max_length=128)
    name: Optional[str] = Field(default=None, max_length=128)
    username: Optional[str] = Field(default=None, max_length=128)
    uuid: Optional[str] = Field(default=None, max_length=128)


class IdentityEditInput(BaseModel):
    source: Optional[str] = Field(default=None, max_length=32)
    email: Optional[str] = Field(default=None, max_length=128)
    name: Optional[str] = Field(default=None, max_length=128)
    username: Optional[str] = Field(default=None, max_length=128)
    uuid: Optional[str] = Field(default=None, max_length=128)


class OrganizationInput(BaseModel):
    name: str = Field(..., min_length=1, max_length=191)


class EnrollmentInput(BaseModel):
    """
    Enrollment of a unique identity at an organization (by name).

    Dates accept YYYY-MM-DD or YYYY-MM-DDTHH:MM:SS[.sss]Z; a missing start or
    end means the period bound.
    """
    uuid: str = Field(..., min_length=1, max_length=128)
    organization: str = Field(..., min_length=1, max_length=191)
    start: Optional[str] = None
    end: Optional[str] = None
    merge: bool = Field(default=False, description="Merge overlapping enrollments afterwards")


class WithdrawInput(BaseModel):
    uuid: str = Field(..., min_length=1, max_length=128)
    organization: str = Field(..., min_length=1, max_length=191)
    start: Optional[str] = None
    end: Optional[str] = None


class MatchingBlacklistInput(BaseModel):
    email: str = Field(..., min_length=1, max_length=128)


# ============================================
# RESPONSES
# ============================================

class ErrorResponse(BaseModel):
    """Error envelope: HTTP status code as a string and a redacted message."""
    code: str = Field(..., description="HTTP status code, e.g. '404'")
    message: str


class TextStatus(BaseModel):
    text: str


class IdentityData(BaseModel):
    id: str
    uuid: Optional[str] = None
    source: str
    name: Optional[str] = None
    email: Optional[str] = None
    username: Optional[str] = None
    last_modified: Optional[str] = None


class EnrollmentData(BaseModel):
    id: int
    uuid: str
    organization_id: int
    organization_name: Optional[str] = None
    start: str
    end: str


class UniqueIdentityNested(BaseModel):
    """A person: profile fields, last_modified, identities and enrollments."""
    uuid: str
    name: Optional[str] = None
    email: Optional[str] = None
    gender: Optional[str] = None
    gender_acc: Optional[int] = None
    is_bot: Optional[int] = None
    country_code: Optional[str] = None
    last_modified: Optional[str] = None
    identities: List[IdentityData] = Field(default_factory=list)
    enrollments: List[EnrollmentData] = Field(default_factory=list)


class PagedResponse(BaseModel):
    n_records: int
    rows: int
    page: int
    n_pages: int
    search: str = ""


class ProfilesResponse(PagedResponse):
    uidentities: List[UniqueIdentityNested]


class ProfileEnrollmentsResponse(BaseModel):
    uuid: str
    enrollments: List[EnrollmentData]


class DomainData(BaseModel):
    id: int
    organization_id: int
    organization_name: Optional[str] = None
    domain: str
    is_top_domain: bool = False


class OrganizationData(BaseModel):
    id: int
    name: str
    domains: List[DomainData] = Field(default_factory=list)


class OrganizationsResponse(PagedResponse):
    organizations: List[OrganizationData]


class DomainsResponse(PagedResponse):
    domains: List[DomainData]


class PutOrgDomainResponse(BaseModel):
    organization: str
    domain: str
    is_top_domain: bool
    deleted: int
    added: int
    info: str


class MatchingBlacklistResponse(PagedResponse):
    emails: List[str]


class MatchingBlacklistData(BaseModel):
    email: str


class CountryData(BaseModel):
    code: str
    name: str
    alpha3: str


class UnaffiliatedData(BaseModel):
    uuid: str
    name: Optional[str] = None
    contributions: int


class UnaffiliatedResponse(BaseModel):
    unaffiliated: List[UnaffiliatedData]
    rows: int
    page: int


class ContributorData(BaseModel):
    uuid: str
    name: Optional[str] = None
    email: Optional[str] = None
    organization: Optional[str] = None
    doc_count: int = 0
    git_lines_added: int = 0
    git_lines_changed: int = 0
    git_lines_removed: int = 0
    git_commits: int = 0
    gerrit_approvals: int = 0
    gerrit_merged_changesets: int = 0


class TopContributorsResponse(BaseModel):
    contributors: List[ContributorData]
    from_: int = Field(..., alias="from")
    to: int
    limit: int
    offset: int

    model_config = {"populate_by_name": True}


class AffiliationIdentity(BaseModel):
    source: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None
    username: Optional[str] = None


class AffiliationEnrollment(BaseModel):
    start: Optional[str] = None
    end: Optional[str] = None
    organization: Optional[str] = None


class AffiliationProfile(BaseModel):
    uuid: str
    name: Optional[str] = None
    email: Optional[str] = None
    identities: List[AffiliationIdentity]
    enrollments: List[AffiliationEnrollment]


class AllAffiliationsResponse(BaseModel):
    profiles: List[AffiliationProfile]


class DirectoryOrganization(BaseModel):
    id: str
    name: str
    domains: List[Dict[str, Any]] = Field(default_factory=list)


class DirectoryOrganizationsResponse(BaseModel):
    organizations: List[DirectoryOrganization]
    rows: int
    page: int
    search: str = ""


class UserData(BaseModel):
    id: str
    name: Optional[str] = None
    email: Optional[str] = None
    username: Optional[str] = None


class UsersResponse(BaseModel):
    users: List[UserData]


class HealthResponse(BaseModel):
    """Readiness report; always returned with HTTP 200."""
    status: str
    database: Dict[str, Any]
    operations: Dict[str, Any] = {}
    slow_operations: List[str] = []
    time: Optional[str] = None
