"""
Database Package for the Affiliation Service

This package provides:
- SQLAlchemy ORM models for the identity graph and its archive tables
- Session provider and Unit of Work for transaction management
- Repository pattern for data access
- The merge/move engine and read-side queries
- Performance monitoring and query timing
"""

from database.models import (
    Base,
    UniqueIdentity,
    Profile,
    Identity,
    Organization,
    Domain,
    Enrollment,
    MatchingBlacklist,
    Country,
    UniqueIdentityArchive,
    ProfileArchive,
    IdentityArchive,
    EnrollmentArchive,
    MIN_PERIOD_DATE,
    MAX_PERIOD_DATE,
    identity_hash,
)
from database.connection import (
    DatabaseSessionProvider,
    DatabaseSettings,
    UnitOfWork,
    get_db_provider,
    init_db,
    close_db,
    create_test_provider,
)
from database.date_ranges import merge_date_ranges
from database.identity_service import IdentityGraphService
from database.monitoring import (
    query_timer,
    get_db_metrics,
    get_slow_query_report,
    reset_metrics,
    check_health,
    HealthStatus,
)

__all__ = [
    # Base
    'Base',
    # Live tables
    'UniqueIdentity',
    'Profile',
    'Identity',
    'Organization',
    'Domain',
    'Enrollment',
    'MatchingBlacklist',
    'Country',
    # Archive tables
    'UniqueIdentityArchive',
    'ProfileArchive',
    'IdentityArchive',
    'EnrollmentArchive',
    'MIN_PERIOD_DATE',
    'MAX_PERIOD_DATE',
    'identity_hash',
    # Provider
    'DatabaseSessionProvider',
    'DatabaseSettings',
    'UnitOfWork',
    'get_db_provider',
    'init_db',
    'close_db',
    'create_test_provider',
    # Engine
    'merge_date_ranges',
    'IdentityGraphService',
    # Monitoring
    'query_timer',
    'get_db_metrics',
    'get_slow_query_report',
    'reset_metrics',
    'check_health',
    'HealthStatus',
]
