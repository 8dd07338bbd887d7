"""Map engine OperationResult failures onto HTTP responses."""

from fastapi import HTTPException

from ranks.results import OperationResult

STATUS_BY_CODE = {
    "invalid_argument": 400,
    "not_found": 404,
    "invalid_state": 409,
    "conflict": 409,
    "dependency_failure": 503,
}


def unwrap(result: OperationResult) -> dict:
    """Return the result body, or raise the HTTP error matching its code."""
    if not result.success and result.code is not None:
        raise HTTPException(
            status_code=STATUS_BY_CODE.get(result.code, 400),
            detail=result.to_dict(),
        )
    return result.to_dict()
