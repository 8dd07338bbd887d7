"""
Rank engine error taxonomy.

Single-item operations raise these internally; the outward wrappers in
ranks.workflow / ranks.promotions turn them into OperationResult values.
Batch execution never raises them per user, it counts them instead.
"""


class RankEngineError(Exception):
    """Base class. ``code`` is stable and safe to expose to callers."""

    code = "rank_engine_error"

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context


class InvalidArgument(RankEngineError):
    code = "invalid_argument"


class NotFound(RankEngineError):
    code = "not_found"


class InvalidState(RankEngineError):
    code = "invalid_state"


class Conflict(RankEngineError):
    code = "conflict"


class DependencyFailure(RankEngineError):
    code = "dependency_failure"
