"""
FastAPI Affiliation API Server

REST endpoints over the identity graph (profiles, identities, organizations,
domains, enrollments), the contributor statistics of the document store and
the organization/user directories.

Usage:
    uvicorn api.server:app --port 8080
"""

import logging
from typing import List, Optional
from urllib.parse import unquote

from fastapi import APIRouter, Depends, FastAPI, Query, Response
from fastapi.responses import StreamingResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from api.models import (
    AllAffiliationsResponse,
    CountryData,
    DirectoryOrganizationsResponse,
    DomainsResponse,
    EnrollmentInput,
    ErrorResponse,
    HealthResponse,
    IdentityData,
    IdentityEditInput,
    IdentityInput,
    MatchingBlacklistData,
    MatchingBlacklistInput,
    MatchingBlacklistResponse,
    OrganizationData,
    OrganizationInput,
    OrganizationsResponse,
    ProfileEnrollmentsResponse,
    ProfileInput,
    ProfilesResponse,
    PutOrgDomainResponse,
    TextStatus,
    TopContributorsResponse,
    UnaffiliatedResponse,
    UniqueIdentityNested,
    UsersResponse,
    WithdrawInput,
)
from api.middleware import (
    InflightLimitMiddleware,
    RequestLoggingMiddleware,
    setup_cors,
    setup_exception_handlers,
)
from api.service import AffiliationService
from config_manager import ConfigManager, ConfigurationError, get_config
from database.connection import close_db, init_db
from directory import OrganizationDirectory, UserDirectory
from document_store import DocumentStoreClient
from errors import InternalError
from structured_logging import configure_logging

logger = logging.getLogger(__name__)

# Global state
_service: Optional[AffiliationService] = None

ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Bad request"},
    404: {"model": ErrorResponse, "description": "Not found"},
    409: {"model": ErrorResponse, "description": "Conflict"},
    500: {"model": ErrorResponse, "description": "Internal server error"},
}

router = APIRouter()


def get_service() -> AffiliationService:
    """Dependency to get the facade instance."""
    if _service is None:
        raise InternalError("service not initialized, it is starting up")
    return _service


def build_service(config: ConfigManager) -> AffiliationService:
    """Wire the facade from configuration; unset endpoints leave their client out."""
    provider = init_db()
    document_store = None
    if config.document_store.url:
        document_store = DocumentStoreClient.from_config(config.document_store)
    org_directory = OrganizationDirectory.from_config(config.directory) if config.directory.org_url else None
    user_directory = UserDirectory.from_config(config.directory) if config.directory.user_url else None
    return AffiliationService(provider, document_store, org_directory, user_directory)


def project_slugs_param(project_slugs: str) -> str:
    """Path slugs may arrive URL-encoded twice."""
    return unquote(project_slugs)


# ============================================
# HEALTH AND METRICS
# ============================================

@router.get("/health", response_model=HealthResponse, summary="Health check")
def health(service: AffiliationService = Depends(get_service)):
    """Return the store probe. Always returns HTTP 200."""
    return service.health()


@router.get("/metrics", include_in_schema=False)
def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# ============================================
# PROFILES
# ============================================

@router.get("/profiles", response_model=ProfilesResponse, responses=ERROR_RESPONSES)
def get_profiles(
    q: Optional[str] = None,
    rows: Optional[int] = None,
    page: Optional[int] = None,
    service: AffiliationService = Depends(get_service),
):
    """Profiles with identities and enrollments; q='uuid=...' is an exact match."""
    return service.get_profiles_nested(q, rows, page)


@router.get("/profile/{uuid}", response_model=UniqueIdentityNested, responses=ERROR_RESPONSES)
def get_profile(uuid: str, service: AffiliationService = Depends(get_service)):
    return service.get_profile_nested(uuid)


@router.post("/profile/{uuid}", response_model=UniqueIdentityNested, responses=ERROR_RESPONSES)
def add_unique_identity(uuid: str, service: AffiliationService = Depends(get_service)):
    return service.add_unique_identity(uuid)


@router.put("/profile/{uuid}", response_model=UniqueIdentityNested, responses=ERROR_RESPONSES)
def edit_profile(uuid: str, body: ProfileInput, service: AffiliationService = Depends(get_service)):
    return service.edit_profile(uuid, body.model_dump(exclude_none=True))


@router.delete("/profile/{uuid}", response_model=TextStatus, responses=ERROR_RESPONSES)
def delete_profile(uuid: str, archive: bool = True, service: AffiliationService = Depends(get_service)):
    """Delete a person; with archive (default) the subgraph can be restored later."""
    return service.delete_profile(uuid, archive)


@router.post("/unarchive_profile/{uuid}", response_model=UniqueIdentityNested, responses=ERROR_RESPONSES)
def unarchive_profile(uuid: str, service: AffiliationService = Depends(get_service)):
    return service.unarchive_profile(uuid)


@router.get("/enrollments/{uuid}", response_model=ProfileEnrollmentsResponse, responses=ERROR_RESPONSES)
def get_profile_enrollments(uuid: str, service: AffiliationService = Depends(get_service)):
    return service.get_profile_enrollments(uuid)


# ============================================
# IDENTITIES
# ============================================

@router.post("/identity", response_model=UniqueIdentityNested, responses=ERROR_RESPONSES)
def add_identity(body: IdentityInput, service: AffiliationService = Depends(get_service)):
    return service.add_identity(body.source, body.email, body.name, body.username, body.uuid)


@router.put("/identity/{identity_id}", response_model=IdentityData, responses=ERROR_RESPONSES)
def edit_identity(identity_id: str, body: IdentityEditInput, service: AffiliationService = Depends(get_service)):
    return service.edit_identity(identity_id, body.model_dump(exclude_unset=True))


@router.delete("/identity/{identity_id}", response_model=TextStatus, responses=ERROR_RESPONSES)
def delete_identity(identity_id: str, archive: bool = False, service: AffiliationService = Depends(get_service)):
    return service.delete_identity(identity_id, archive)


@router.put("/move_identity/{from_id}/{to_uuid}", response_model=UniqueIdentityNested, responses=ERROR_RESPONSES)
def move_identity(
    from_id: str,
    to_uuid: str,
    archive: bool = True,
    service: AffiliationService = Depends(get_service),
):
    """Move an identity; repeating an archived move restores the state before it."""
    return service.move_identity(from_id, to_uuid, archive)


@router.put(
    "/merge_unique_identities/{from_uuid}/{to_uuid}",
    response_model=UniqueIdentityNested,
    responses=ERROR_RESPONSES,
)
def merge_unique_identities(
    from_uuid: str,
    to_uuid: str,
    archive: bool = True,
    service: AffiliationService = Depends(get_service),
):
    return service.merge_unique_identities(from_uuid, to_uuid, archive)


# ============================================
# ORGANIZATIONS AND DOMAINS
# ============================================

@router.get("/organizations", response_model=OrganizationsResponse, responses=ERROR_RESPONSES)
def get_organizations(
    q: Optional[str] = None,
    rows: Optional[int] = None,
    page: Optional[int] = None,
    service: AffiliationService = Depends(get_service),
):
    return service.get_organizations(q, rows, page)


@router.get("/organization/{organization_id}", response_model=OrganizationData, responses=ERROR_RESPONSES)
def get_organization(organization_id: int, service: AffiliationService = Depends(get_service)):
    return service.get_organization(organization_id)


@router.get("/find_organization_by_name/{name}", response_model=OrganizationData, responses=ERROR_RESPONSES)
def find_organization_by_name(name: str, service: AffiliationService = Depends(get_service)):
    return service.find_organization_by_name(name)


@router.post("/organization", response_model=OrganizationData, responses=ERROR_RESPONSES)
def add_organization(body: OrganizationInput, service: AffiliationService = Depends(get_service)):
    return service.add_organization(body.name)


@router.put("/organization/{organization_id}", response_model=OrganizationData, responses=ERROR_RESPONSES)
def edit_organization(
    organization_id: int,
    body: OrganizationInput,
    service: AffiliationService = Depends(get_service),
):
    return service.edit_organization(organization_id, body.name)


@router.delete("/organization/{organization_id}", response_model=TextStatus, responses=ERROR_RESPONSES)
def delete_organization(organization_id: int, service: AffiliationService = Depends(get_service)):
    return service.delete_organization(organization_id)


@router.get("/domains", response_model=DomainsResponse, responses=ERROR_RESPONSES)
def get_domains(
    org_id: Optional[int] = None,
    q: Optional[str] = None,
    rows: Optional[int] = None,
    page: Optional[int] = None,
    service: AffiliationService = Depends(get_service),
):
    return service.get_domains(org_id, q, rows, page)


@router.put("/org_domain/{organization}/{domain}", response_model=PutOrgDomainResponse, responses=ERROR_RESPONSES)
def put_org_domain(
    organization: str,
    domain: str,
    overwrite: bool = False,
    top: bool = False,
    skip_enrollments: bool = False,
    service: AffiliationService = Depends(get_service),
):
    """Bind a domain and enroll everybody whose email ends with it."""
    return service.put_org_domain(organization, domain, overwrite, top, skip_enrollments)


@router.delete("/org_domain/{organization}/{domain}", response_model=TextStatus, responses=ERROR_RESPONSES)
def delete_org_domain(organization: str, domain: str, service: AffiliationService = Depends(get_service)):
    return service.delete_org_domain(organization, domain)


# ============================================
# ENROLLMENTS
# ============================================

@router.post("/enrollment", response_model=UniqueIdentityNested, responses=ERROR_RESPONSES)
def add_enrollment(body: EnrollmentInput, service: AffiliationService = Depends(get_service)):
    return service.add_enrollment(body.uuid, body.organization, body.start, body.end, body.merge)


@router.put("/enrollment/{enrollment_id}", response_model=UniqueIdentityNested, responses=ERROR_RESPONSES)
def edit_enrollment(
    enrollment_id: int,
    body: EnrollmentInput,
    service: AffiliationService = Depends(get_service),
):
    return service.edit_enrollment(enrollment_id, body.uuid, body.organization, body.start, body.end, body.merge)


@router.delete("/enrollment/{enrollment_id}", response_model=TextStatus, responses=ERROR_RESPONSES)
def delete_enrollment(enrollment_id: int, service: AffiliationService = Depends(get_service)):
    return service.delete_enrollment(enrollment_id)


@router.put("/withdraw_enrollment", response_model=UniqueIdentityNested, responses=ERROR_RESPONSES)
def withdraw_enrollment(body: WithdrawInput, service: AffiliationService = Depends(get_service)):
    return service.withdraw_enrollment(body.uuid, body.organization, body.start, body.end)


@router.put(
    "/merge_enrollments/{uuid}/{organization_id}",
    response_model=UniqueIdentityNested,
    responses=ERROR_RESPONSES,
)
def merge_enrollments(uuid: str, organization_id: int, service: AffiliationService = Depends(get_service)):
    return service.merge_enrollments(uuid, organization_id)


# ============================================
# MATCHING BLACKLIST AND COUNTRIES
# ============================================

@router.get("/matching_blacklist", response_model=MatchingBlacklistResponse, responses=ERROR_RESPONSES)
def get_matching_blacklist(
    q: Optional[str] = None,
    rows: Optional[int] = None,
    page: Optional[int] = None,
    service: AffiliationService = Depends(get_service),
):
    return service.get_matching_blacklist(q, rows, page)


@router.post("/matching_blacklist", response_model=MatchingBlacklistData, responses=ERROR_RESPONSES)
def add_matching_blacklist(body: MatchingBlacklistInput, service: AffiliationService = Depends(get_service)):
    return service.add_matching_blacklist(body.email)


@router.delete("/matching_blacklist/{email}", response_model=TextStatus, responses=ERROR_RESPONSES)
def delete_matching_blacklist(email: str, service: AffiliationService = Depends(get_service)):
    return service.delete_matching_blacklist(email)


@router.get("/countries", response_model=List[CountryData])
def get_countries(service: AffiliationService = Depends(get_service)):
    return service.get_countries()


@router.get("/country/{code}", response_model=CountryData, responses=ERROR_RESPONSES)
def get_country(code: str, service: AffiliationService = Depends(get_service)):
    return service.get_country(code)


# ============================================
# CONTRIBUTOR STATISTICS
# ============================================

@router.get("/unaffiliated/{project_slugs:path}", response_model=UnaffiliatedResponse, responses=ERROR_RESPONSES)
def get_unaffiliated(
    project_slugs: str,
    rows: Optional[int] = None,
    page: Optional[int] = None,
    top: Optional[int] = Query(None, description="Page size when rows is not given"),
    service: AffiliationService = Depends(get_service),
):
    """Contributors of the projects without any enrollment, most active first."""
    if rows is None:
        rows = top
    return service.get_unaffiliated(project_slugs_param(project_slugs), rows, page)


@router.get(
    "/top_contributors/{project_slugs:path}",
    response_model=TopContributorsResponse,
    responses=ERROR_RESPONSES,
)
def get_top_contributors(
    project_slugs: str,
    from_: Optional[int] = Query(None, alias="from"),
    to: Optional[int] = None,
    limit: Optional[int] = None,
    offset: Optional[int] = None,
    service: AffiliationService = Depends(get_service),
):
    """from/to are epoch milliseconds; offset counts pages of limit rows."""
    return service.get_top_contributors(project_slugs_param(project_slugs), from_, to, limit, offset)


@router.get("/top_contributors_csv/{project_slugs:path}", responses=ERROR_RESPONSES)
def get_top_contributors_csv(
    project_slugs: str,
    from_: Optional[int] = Query(None, alias="from"),
    to: Optional[int] = None,
    limit: Optional[int] = None,
    offset: Optional[int] = None,
    service: AffiliationService = Depends(get_service),
):
    # materialized first so that errors still produce the error envelope
    chunks = list(service.top_contributors_csv(
        project_slugs_param(project_slugs), from_ms=from_, to_ms=to, limit=limit, offset=offset,
    ))
    return StreamingResponse(
        iter(chunks),
        media_type="text/csv",
        headers={"Content-Disposition": "attachment; filename=top_contributors.csv"},
    )


@router.get("/all", response_model=AllAffiliationsResponse, responses=ERROR_RESPONSES)
def get_all_affiliations(service: AffiliationService = Depends(get_service)):
    return service.get_all_affiliations()


# ============================================
# DIRECTORIES
# ============================================

@router.get(
    "/list_organizations_directory",
    response_model=DirectoryOrganizationsResponse,
    responses=ERROR_RESPONSES,
)
def list_organizations_directory(
    q: str = "",
    rows: Optional[int] = None,
    page: Optional[int] = None,
    service: AffiliationService = Depends(get_service),
):
    return service.get_list_organizations_directory(q, rows, page)


@router.get("/list_users", response_model=UsersResponse, responses=ERROR_RESPONSES)
def list_users(
    q: str = "",
    rows: Optional[int] = None,
    page: Optional[int] = None,
    service: AffiliationService = Depends(get_service),
):
    return service.get_list_users(q, rows, page)


@router.get("/list_all_users", response_model=UsersResponse, responses=ERROR_RESPONSES)
def list_all_users(service: AffiliationService = Depends(get_service)):
    return service.get_list_all_users()


# ============================================
# APPLICATION
# ============================================

def create_app(config: Optional[ConfigManager] = None) -> FastAPI:
    config = config or get_config()
    application = FastAPI(
        title="Affiliation API",
        description="Identity graph and contributor affiliation service",
        version="1.0.0",
        docs_url="/api/docs",
        openapi_url="/api/openapi.json",
    )
    setup_cors(application, config.server.cors_origins)
    application.add_middleware(InflightLimitMiddleware, max_inflight=config.server.max_inflight)
    application.add_middleware(RequestLoggingMiddleware)
    setup_exception_handlers(application)
    application.include_router(router)
    return application


# Create FastAPI application
app = create_app()


@app.on_event("startup")
async def startup():
    """Load configuration, set up logging and connect the stores."""
    global _service

    config = get_config()
    configure_logging(config.logging.level)
    logger.info("Starting Affiliation API...")
    try:
        _service = build_service(config)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        raise
    logger.info("Affiliation API ready")


@app.on_event("shutdown")
async def shutdown():
    """Cleanup on shutdown."""
    logger.info("Shutting down Affiliation API...")
    close_db()


if __name__ == "__main__":
    import uvicorn

    settings = get_config()
    uvicorn.run(app, host=settings.server.host, port=settings.server.port)
