"""
Offline queue and sync reconciler.

While offline, joins and wallet movements are stored as intents in the local
store. Once connectivity returns the queue is drained: each intent is claimed,
replayed through the same engine or wallet path an online call would take, and
only then marked synced. Failures back off per intent; after the configured
number of attempts an intent is parked as exhausted and surfaced as a
dismissable warning until someone retries it by hand.
"""
import asyncio
from dataclasses import asdict, dataclass, field
from typing import Awaitable, Callable, Dict, Optional

from fastapi.concurrency import run_in_threadpool

from poolhub.config import JOINABLE_STATUSES, TransactionKind, TransactionStatus, settings
from poolhub.database import utcnow
from poolhub.engine import PoolEngine
from poolhub.errors import PoolClosed, PoolNotFound, ResultKind, SyncExhausted
from poolhub.logging_config import get_logger
from poolhub.offline_db import (
    INTENT_MODELS,
    STATUS_EXHAUSTED,
    STATUS_PENDING,
    STATUS_REJECTED,
    STATUS_SYNCING,
    OfflineStore,
    PendingBet,
    PendingTransaction,
)
from poolhub.realtime import SYNC_CHANNEL, Broadcaster
from poolhub.schemas import OperationResult, Principal
from poolhub.wallet_service import WalletService

logger = get_logger(__name__)

SYNCED_KINDS = {ResultKind.SUCCESS, ResultKind.ALREADY_JOINED}

# outcomes that will not change by trying again
REJECTED_KINDS = {
    ResultKind.INSUFFICIENT_FUNDS,
    ResultKind.POOL_FULL,
    ResultKind.POOL_CLOSED,
    ResultKind.POOL_NOT_FOUND,
    ResultKind.INVALID_NUMBER,
    ResultKind.ACCOUNT_NOT_FOUND,
    ResultKind.DANGLING,
}


@dataclass
class SyncCounts:
    synced: int = 0
    retrying: int = 0
    rejected: int = 0
    exhausted: int = 0
    skipped: int = 0

    def add(self, outcome: str) -> None:
        setattr(self, outcome, getattr(self, outcome) + 1)


@dataclass
class SyncSummary:
    bets: SyncCounts = field(default_factory=SyncCounts)
    transactions: SyncCounts = field(default_factory=SyncCounts)
    purged: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


class OfflineSyncService:
    def __init__(
        self,
        engine: PoolEngine,
        wallet: WalletService,
        store: OfflineStore,
        broadcaster: Optional[Broadcaster] = None,
        max_attempts: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.engine = engine
        self.wallet = wallet
        self.store = store
        self.broadcaster = broadcaster or engine.broadcaster
        self.max_attempts = max_attempts or settings.sync_max_attempts
        self.backoff_seconds = settings.sync_backoff_seconds if backoff_seconds is None else backoff_seconds
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._job: Optional[asyncio.Task] = None
        self.online = True

    @property
    def is_syncing(self) -> bool:
        return self._lock.locked()

    async def _publish(self, event: str, **payload) -> None:
        await self.broadcaster.publish(SYNC_CHANNEL, {"event": event, **payload})

    # -- connectivity -------------------------------------------------------------

    async def handle_online(self) -> Optional[asyncio.Task]:
        if not self.online:
            logger.info("Connectivity restored")
        self.online = True
        released = await run_in_threadpool(self.store.release_stale_claims)
        if released:
            logger.warning("Released %s intents left mid-sync", released)
        await self._publish("online")
        return await self.schedule_sync_if_needed()

    async def handle_offline(self) -> None:
        # a replay already in progress finishes its current intent; no new one starts
        if self.online:
            logger.info("Connectivity lost, queueing locally")
        self.online = False
        await self._publish("offline")

    # -- queueing -------------------------------------------------------------------

    async def create_offline_bet(self, principal: Principal, pool_id: str) -> str:
        bet = PendingBet(
            pool_id=pool_id,
            player_id=principal.user_id,
            display_name=principal.display_name,
            player_data=principal.snapshot(),
        )
        bet = await run_in_threadpool(self.store.put, bet)
        await self._publish("queued", intentId=bet.id)
        if self.online:
            await self.schedule_sync_if_needed()
        return bet.id

    async def create_offline_transaction(
        self, principal: Principal, amount_cents: int, kind: TransactionKind, description: Optional[str] = None
    ) -> str:
        intent = PendingTransaction(
            user_id=principal.user_id,
            display_name=principal.display_name,
            amount_cents=amount_cents,
            kind=TransactionKind(kind).value,
            description=description,
        )
        intent = await run_in_threadpool(self.store.put, intent)
        await self._publish("queued", intentId=intent.id)
        if self.online:
            await self.schedule_sync_if_needed()
        return intent.id

    async def join_pool(self, principal: Principal, pool_id: str) -> OperationResult:
        if self.online:
            return await self.engine.join_pool(principal, pool_id)
        intent_id = await self.create_offline_bet(principal, pool_id)
        return OperationResult.success(
            "Your bet has been saved and will be placed when you're back online",
            kind=ResultKind.QUEUED,
            pool_id=pool_id,
            data={"intentId": intent_id},
        )

    async def record_transaction(
        self, principal: Principal, amount_cents: int, kind: TransactionKind, description: Optional[str] = None
    ) -> OperationResult:
        if self.online:
            return await self.wallet.apply_transaction(principal, amount_cents, kind, description)
        intent_id = await self.create_offline_transaction(principal, amount_cents, kind, description)
        return OperationResult.success(
            "Transaction saved and will sync when you're back online",
            kind=ResultKind.QUEUED,
            data={"intentId": intent_id},
        )

    async def get_pool(self, pool_id: str) -> Optional[dict]:
        """Fresh view when online (refreshing the cache), the last cached view otherwise."""
        if self.online:
            view = await run_in_threadpool(self.engine.get_pool_view, pool_id)
            if view is None:
                return None
            data = view.model_dump(mode="json")
            await run_in_threadpool(self.store.cache_pool, pool_id, data)
            return data
        return await run_in_threadpool(self.store.get_cached_pool, pool_id)

    # -- draining -------------------------------------------------------------------

    async def schedule_sync_if_needed(self) -> Optional[asyncio.Task]:
        if not self.online:
            return None
        if self.is_syncing or (self._job is not None and not self._job.done()):
            return None
        if not await run_in_threadpool(self.store.has_unsynced):
            return None
        self._job = asyncio.create_task(self._drain())
        return self._job

    async def _drain(self) -> SyncSummary:
        summary = SyncSummary()
        while self.online:
            summary = await self.perform_sync()
            next_due = await run_in_threadpool(self.store.next_retry_at)
            if next_due is None:
                break
            delay = max(0.0, (next_due - utcnow()).total_seconds())
            logger.info("Next sync attempt in %.1fs", delay)
            await self._sleep(delay)
        return summary

    async def perform_sync(self) -> SyncSummary:
        summary = SyncSummary()
        if not self.online:
            return summary
        async with self._lock:
            await self._publish("sync-started")
            for bet in await run_in_threadpool(self.store.due, PendingBet):
                if not self.online:
                    break
                summary.bets.add(await self._replay(PendingBet, bet.id, self._replay_bet))
            for intent in await run_in_threadpool(self.store.due, PendingTransaction):
                if not self.online:
                    break
                summary.transactions.add(await self._replay(PendingTransaction, intent.id, self._replay_transaction))
            summary.purged = await run_in_threadpool(self.store.cleanup_synced)
            logger.info("Sync finished summary=%s", summary.to_dict())
            await self._publish("sync-completed", summary=summary.to_dict())
        return summary

    async def _replay(self, model, intent_id: str, replay: Callable) -> str:
        # the claim re-checks ``synced`` right before the replay
        intent = await run_in_threadpool(self.store.claim, model, intent_id)
        if intent is None:
            return "skipped"
        try:
            result = await replay(intent)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Replay crashed intent_id=%s", intent_id)
            result = OperationResult(ok=False, kind=ResultKind.ERROR, message=str(exc))

        if result.kind in SYNCED_KINDS:
            await run_in_threadpool(self.store.mark_synced, model, intent_id)
            logger.info("Synced intent_id=%s kind=%s", intent_id, result.kind.value)
            await self._publish("synced", intentId=intent_id)
            return "synced"
        if result.kind in REJECTED_KINDS:
            await run_in_threadpool(self.store.mark_rejected, model, intent_id, result.message)
            logger.warning("Rejected intent_id=%s kind=%s reason=%s", intent_id, result.kind.value, result.message)
            await self._publish("rejected", intentId=intent_id, message=result.message)
            return "rejected"

        status = await run_in_threadpool(
            self.store.record_failure, model, intent_id, result.message, self.max_attempts, self.backoff_seconds
        )
        if status == STATUS_EXHAUSTED:
            warning = SyncExhausted()
            logger.warning("Giving up on intent_id=%s after %s attempts", intent_id, self.max_attempts)
            await self._publish("exhausted", intentId=intent_id, message=warning.message)
            return "exhausted"
        logger.warning("Sync attempt failed intent_id=%s kind=%s", intent_id, result.kind.value)
        return "retrying"

    async def _replay_bet(self, bet: PendingBet) -> OperationResult:
        view = await run_in_threadpool(self.engine.get_pool_view, bet.pool_id)
        if view is None:
            return OperationResult.from_error(PoolNotFound(), pool_id=bet.pool_id)
        if view.status not in JOINABLE_STATUSES:
            return OperationResult.from_error(PoolClosed(), pool_id=bet.pool_id)
        principal = Principal(user_id=bet.player_id, display_name=bet.display_name)
        result = await self.engine.join_pool(principal, bet.pool_id)
        if result.kind == ResultKind.SUCCESS and result.transaction_id:
            txn = await run_in_threadpool(self.wallet.get_transaction, result.transaction_id)
            if txn is None or txn.status != TransactionStatus.COMPLETED.value:
                # seat taken but charge not finalized; the next attempt reports AlreadyJoined
                return OperationResult(
                    ok=False, kind=ResultKind.ERROR, message="Entry fee not yet confirmed", pool_id=bet.pool_id
                )
        return result

    async def _replay_transaction(self, intent: PendingTransaction) -> OperationResult:
        # the intent id rides along as external_ref, so an attempt that may have
        # landed already is found here instead of being charged twice
        existing = await run_in_threadpool(self.wallet.find_transaction_by_ref, intent.id)
        if existing is not None:
            logger.info(
                "Intent already applied intent_id=%s tx_id=%s status=%s", intent.id, existing.id, existing.status
            )
            return OperationResult.success("Transaction already applied", transaction_id=existing.id)
        principal = Principal(user_id=intent.user_id, display_name=intent.display_name)
        return await self.wallet.apply_transaction(
            principal, intent.amount_cents, TransactionKind(intent.kind), intent.description, external_ref=intent.id
        )

    # -- manual control -------------------------------------------------------------

    async def retry_intent(self, intent_id: str) -> OperationResult:
        reset = 0
        for model in INTENT_MODELS:
            reset += await run_in_threadpool(self.store.reset, model, intent_id, (STATUS_EXHAUSTED, STATUS_REJECTED))
        if not reset:
            return OperationResult(ok=False, kind=ResultKind.ERROR, message="Nothing to retry for this item")
        if not self.online:
            return OperationResult.success("Will retry when you're back online", kind=ResultKind.QUEUED)
        job = await self.schedule_sync_if_needed()
        return OperationResult.success("Retry scheduled", data={"scheduled": job is not None})

    async def trigger_manual_sync(self) -> OperationResult:
        if not self.online:
            return OperationResult(ok=False, kind=ResultKind.OFFLINE, message="You need to be online to sync your data")
        if self.is_syncing:
            return OperationResult.success("Please wait for the current sync to complete", kind=ResultKind.IN_FLIGHT)
        for model in INTENT_MODELS:
            await run_in_threadpool(self.store.reset, model)
            await run_in_threadpool(self.store.expedite, model)
        summary = await self.perform_sync()
        return OperationResult.success("Sync complete", data=summary.to_dict())

    def dismiss_warning(self, intent_id: str) -> bool:
        return self.store.dismiss_warning(intent_id)

    def warnings(self) -> list:
        return [
            {
                "intentId": intent.id,
                "status": intent.status,
                "attempts": intent.attempt_count,
                "message": SyncExhausted.default_message if intent.status == STATUS_EXHAUSTED else intent.last_error,
            }
            for intent in self.store.warnings()
        ]

    def get_sync_status(self) -> Dict[str, object]:
        return {
            "isOnline": self.online,
            "isSyncing": self.is_syncing,
            "pending": sum(self.store.count(model, STATUS_PENDING, STATUS_SYNCING) for model in INTENT_MODELS),
            "exhausted": sum(self.store.count(model, STATUS_EXHAUSTED) for model in INTENT_MODELS),
            "rejected": sum(self.store.count(model, STATUS_REJECTED) for model in INTENT_MODELS),
            "warnings": self.warnings(),
        }


async def background_sync_worker(service: OfflineSyncService, poll_seconds: Optional[float] = None):
    interval = poll_seconds or settings.sync_backoff_seconds
    while True:
        try:
            await service.schedule_sync_if_needed()
        except Exception:  # noqa: BLE001
            logger.exception("Sync scheduling failed")
        await asyncio.sleep(interval)
