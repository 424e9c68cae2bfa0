"""
Database Package for the MVR Exchange

This package provides:
- SQLAlchemy ORM models for subjects, MVR records and their children
- A session provider with Unit of Work transaction management
- Repository pattern for data access
- Performance monitoring and query timing

The transactional workflows live in ``database.record_store``.
"""

from database.models import (
    Base,
    PermissiblePurpose,
    UpsertOutcome,
    Subject,
    MVRRecord,
    LicenseInfo,
    TrafficViolation,
    Withdrawal,
    AccidentReport,
    TrafficCrime,
    Transaction,
)
from database.connection import (
    DatabaseSessionProvider,
    DatabaseSettings,
    UnitOfWork,
    create_sqlite_engine,
    create_test_provider,
)
from database.repositories import (
    RepositoryError,
    EntityNotFoundError,
    DuplicateEntityError,
    SubjectRepository,
    MVRRepository,
)
from database.monitoring import (
    query_timer,
    timed_query,
    get_db_metrics,
    get_slow_query_report,
    reset_metrics,
    configure_monitoring,
    check_health,
    HealthStatus,
)

__all__ = [
    # Base
    'Base',
    # Enums
    'PermissiblePurpose',
    'UpsertOutcome',
    # Models
    'Subject',
    'MVRRecord',
    'LicenseInfo',
    'TrafficViolation',
    'Withdrawal',
    'AccidentReport',
    'TrafficCrime',
    'Transaction',
    # Connection
    'DatabaseSessionProvider',
    'DatabaseSettings',
    'UnitOfWork',
    'create_sqlite_engine',
    'create_test_provider',
    # Repositories
    'RepositoryError',
    'EntityNotFoundError',
    'DuplicateEntityError',
    'SubjectRepository',
    'MVRRepository',
    # Monitoring
    'query_timer',
    'timed_query',
    'get_db_metrics',
    'get_slow_query_report',
    'reset_metrics',
    'configure_monitoring',
    'check_health',
    'HealthStatus',
]
