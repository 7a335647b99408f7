import hashlib
import json

from fastapi import HTTPException

from poolhub.errors import ResultKind
from poolhub.schemas import OperationResult


def hash_request(body: dict) -> str:
    return hashlib.sha256(json.dumps(body, sort_keys=True).encode()).hexdigest()


status_by_kind = {
    ResultKind.INSUFFICIENT_FUNDS: 402,
    ResultKind.POOL_FULL: 409,
    ResultKind.POOL_CLOSED: 409,
    ResultKind.PLAYER_LOCKED: 409,
    ResultKind.STALE_WRITE: 409,
    ResultKind.INVALID_REFERRAL: 400,
    ResultKind.INVALID_NUMBER: 422,
    ResultKind.POOL_NOT_FOUND: 404,
    ResultKind.NOT_MEMBER: 404,
    ResultKind.ACCOUNT_NOT_FOUND: 404,
    ResultKind.TRANSACTION_NOT_FOUND: 404,
    ResultKind.GATEWAY_ERROR: 502,
    ResultKind.OFFLINE: 503,
}


def result_response(result: OperationResult) -> dict:
    """Successful results go back as JSON; rejections become HTTP errors carrying the result."""
    body = result.model_dump(mode="json")
    if result.ok:
        return body
    raise HTTPException(status_code=status_by_kind.get(result.kind, 500), detail=body)
