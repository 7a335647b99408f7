from typing import Awaitable, Callable

from fastapi.concurrency import run_in_threadpool

from poolhub import ledger, reconciliation
from poolhub import transactions as recorder
from poolhub.errors import PoolHubError, ResultKind, TransactionDanglingFailure
from poolhub.logging_config import get_logger
from poolhub.schemas import OperationResult

logger = get_logger(__name__)


class UnitOfWorkService:
    """
    Base for services that talk to the shared store one step at a time.

    Every step opens its own session and commits on its own, and runs off the
    event loop, so other coroutines may interleave between any two steps.
    """

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def _call(self, fn, *args, **kwargs):
        with self.session_factory() as db:
            return fn(db, *args, **kwargs)

    async def _step(self, fn, *args, **kwargs):
        return await run_in_threadpool(self._call, fn, *args, **kwargs)

    async def _normalized(
        self, action: str, subject: str, factory: Callable[[], Awaitable[OperationResult]], **fields
    ) -> OperationResult:
        try:
            return await factory()
        except PoolHubError as exc:
            log = logger.error if exc.kind == ResultKind.DANGLING else logger.warning
            log("%s rejected subject=%s kind=%s reason=%s", action, subject, exc.kind.value, exc.message)
            return OperationResult.from_error(exc, **fields)
        except Exception:  # noqa: BLE001
            logger.exception("%s failed subject=%s", action, subject)
            return OperationResult(ok=False, kind=ResultKind.ERROR, message=PoolHubError.default_message, **fields)

    async def _flag(self, kind: str, user_id: str, amount_cents: int, pool_id=None, tx_id=None, detail=None) -> None:
        try:
            await self._step(reconciliation.flag_for_review, kind, user_id, amount_cents, pool_id, tx_id, detail)
        except Exception:  # noqa: BLE001
            # the ERROR log line is the last record left
            logger.exception(
                "Could not persist reconciliation flag kind=%s user_id=%s tx_id=%s amount_cents=%s",
                kind,
                user_id,
                tx_id,
                amount_cents,
            )

    async def _fail_quietly(self, tx_id: str, reason: str) -> None:
        try:
            await self._step(recorder.fail, tx_id, reason)
        except Exception:  # noqa: BLE001
            logger.exception("Could not mark transaction failed tx_id=%s", tx_id)

    async def _move(self, tx_id: str, user_id: str, delta_cents: int, pool_id=None) -> int:
        """
        Ledger step of a recorded movement.

        A movement the ledger refused (no funds, no account) never landed, so
        its transaction is failed. Anything else leaves the outcome unknown:
        the transaction stays pending and the movement is flagged for review
        rather than reported as a clean failure.
        """
        try:
            return await self._step(ledger.adjust_balance, user_id, delta_cents)
        except PoolHubError as exc:
            await self._fail_quietly(tx_id, f"ledger refused movement: {exc.message}")
            raise
        except Exception as exc:
            kind = reconciliation.FLAG_DANGLING_DEBIT if delta_cents < 0 else reconciliation.FLAG_CREDIT_FAILED
            await self._flag(kind, user_id, abs(delta_cents), pool_id, tx_id, f"ledger outcome unknown: {exc}")
            raise TransactionDanglingFailure() from exc
