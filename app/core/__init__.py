"""
Core Application - Infrastructure & Base Classes

Generic building blocks shared by the marketplace, payments and
notifications apps. No domain logic lives here.

Models (import from core.models):
    - BaseModel: Abstract model with timestamps (created_at, updated_at)

Model Mixins (import from core.model_mixins):
    - UUIDPrimaryKeyMixin: UUID as primary key
    - AppendOnlyMixin: Insert-only rows (no update, no delete)

Services (import from core.services):
    - BaseService: Logger and transaction helpers
    - ServiceResult: Success/failure wrapper for expected failures

Exceptions (import from core.exceptions):
    - BaseApplicationError: Base exception with error codes
    - ValidationError, NotFoundError, PermissionDeniedError,
      ConflictError, ExternalServiceError

Views (import from core.views):
    - health_check: Database/cache probe for load balancers
"""
