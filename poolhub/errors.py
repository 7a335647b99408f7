"""
Failure taxonomy shared by the engine, wallet service and sync reconciler.

Internal steps raise these; the public entry points catch them and hand the
caller an ``OperationResult`` carrying the matching ``ResultKind``.
"""
from enum import Enum


class ResultKind(str, Enum):
    SUCCESS = "success"
    ALREADY_JOINED = "already_joined"
    ALREADY_LOCKED = "already_locked"
    ALREADY_SETTLED = "already_settled"
    IN_FLIGHT = "in_flight"
    QUEUED = "queued"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    POOL_FULL = "pool_full"
    POOL_CLOSED = "pool_closed"
    POOL_NOT_FOUND = "pool_not_found"
    NOT_MEMBER = "not_member"
    PLAYER_LOCKED = "player_locked"
    INVALID_NUMBER = "invalid_number"
    ACCOUNT_NOT_FOUND = "account_not_found"
    STALE_WRITE = "stale_write"
    DANGLING = "transaction_dangling_failure"
    SYNC_EXHAUSTED = "sync_exhausted"
    OFFLINE = "offline"
    TRANSACTION_NOT_FOUND = "transaction_not_found"
    ALREADY_FINALIZED = "already_finalized"
    INVALID_REFERRAL = "invalid_referral"
    ALREADY_REFERRED = "already_referred"
    GATEWAY_ERROR = "gateway_error"
    ERROR = "error"


# idempotency short-circuits, reported as ok to the caller
OK_KINDS = {
    ResultKind.SUCCESS,
    ResultKind.ALREADY_JOINED,
    ResultKind.ALREADY_LOCKED,
    ResultKind.ALREADY_SETTLED,
    ResultKind.IN_FLIGHT,
    ResultKind.QUEUED,
    ResultKind.ALREADY_FINALIZED,
    ResultKind.ALREADY_REFERRED,
}


class PoolHubError(Exception):
    kind = ResultKind.ERROR
    default_message = "Something went wrong, please try again"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message


class InsufficientFunds(PoolHubError):
    kind = ResultKind.INSUFFICIENT_FUNDS
    default_message = "Insufficient wallet balance"


class PoolFull(PoolHubError):
    kind = ResultKind.POOL_FULL
    default_message = "Pool is full"


class PoolClosed(PoolHubError):
    kind = ResultKind.POOL_CLOSED
    default_message = "Pool is no longer accepting entries"


class PoolNotFound(PoolHubError):
    kind = ResultKind.POOL_NOT_FOUND
    default_message = "Pool not found"


class NotMember(PoolHubError):
    kind = ResultKind.NOT_MEMBER
    default_message = "Player is not in this pool"


class PlayerLocked(PoolHubError):
    kind = ResultKind.PLAYER_LOCKED
    default_message = "Number already locked, cannot leave this round"


class InvalidNumber(PoolHubError):
    kind = ResultKind.INVALID_NUMBER
    default_message = "Number is outside the pool range"


class AccountNotFound(PoolHubError):
    kind = ResultKind.ACCOUNT_NOT_FOUND
    default_message = "Wallet not found"


class AlreadyJoined(PoolHubError):
    kind = ResultKind.ALREADY_JOINED
    default_message = "Already joined this pool"


class AlreadyLocked(PoolHubError):
    kind = ResultKind.ALREADY_LOCKED
    default_message = "Number already locked"


class StaleWrite(PoolHubError):
    kind = ResultKind.STALE_WRITE
    default_message = "The pool changed while saving, please try again"


class TransactionDanglingFailure(PoolHubError):
    """Money moved but neither the paired state change nor its reversal landed."""

    kind = ResultKind.DANGLING
    default_message = "Payment needs manual review, support has been notified"


class SyncExhausted(PoolHubError):
    kind = ResultKind.SYNC_EXHAUSTED
    default_message = "We were unable to sync your offline activity. Please retry."


class TransactionNotFound(PoolHubError):
    kind = ResultKind.TRANSACTION_NOT_FOUND
    default_message = "Transaction not found"


class InvalidReferral(PoolHubError):
    kind = ResultKind.INVALID_REFERRAL
    default_message = "This referral code is invalid or you cannot refer yourself"


class GatewayError(PoolHubError):
    kind = ResultKind.GATEWAY_ERROR
    default_message = "Payment provider is unavailable, please try again later"
