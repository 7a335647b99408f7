"""
Pool lifecycle engine.

Orchestrates join, leave, lock and settlement against the pool store, the
wallet ledger and the transaction recorder. Each step runs in its own unit of
work, so any of them can fail on its own; where a later step fails after money
has moved, the engine runs an explicit compensation and, if that also fails,
flags the movement for manual reconciliation.

Public coroutines never raise: they return an ``OperationResult``.
"""
import asyncio
import inspect
from datetime import timedelta
from typing import Awaitable, Callable, List, Optional, Set, Tuple

from fastapi.concurrency import run_in_threadpool

from poolhub import ledger, pool_store, reconciliation
from poolhub import transactions as recorder
from poolhub.config import (
    JOINABLE_STATUSES,
    SELECTABLE_STATUSES,
    PoolStatus,
    TransactionKind,
    TransactionStatus,
    settings,
)
from poolhub.database import utcnow
from poolhub.errors import (
    AlreadyJoined,
    InvalidNumber,
    NotMember,
    PlayerLocked,
    PoolClosed,
    PoolFull,
    PoolNotFound,
    ResultKind,
    StaleWrite,
    TransactionDanglingFailure,
)
from poolhub.logging_config import get_logger
from poolhub.models import ChatMessage
from poolhub.realtime import ALL_POOLS_CHANNEL, Broadcaster, chat_channel, pool_channel
from poolhub.schemas import ChatMessageView, OperationResult, PlayerView, PoolView, Principal
from poolhub.service import UnitOfWorkService
from poolhub.settlement import Selection, compute_winners, payouts

logger = get_logger(__name__)


async def _maybe_await(value):
    if inspect.isawaitable(value):
        await value


class PoolEngine(UnitOfWorkService):
    def __init__(self, session_factory, broadcaster: Optional[Broadcaster] = None):
        super().__init__(session_factory)
        self.broadcaster = broadcaster or Broadcaster()
        self._in_flight: Set[Tuple[str, str]] = set()

    # -- plumbing -----------------------------------------------------------

    async def _guarded(self, action: str, pool_id: str, player_id: str, factory: Callable[[], Awaitable[OperationResult]]):
        key = (pool_id, player_id)
        if key in self._in_flight:
            logger.info("Duplicate %s ignored pool_id=%s player_id=%s", action, pool_id, player_id)
            return OperationResult.success(
                f"A {action} for this pool is already in progress", kind=ResultKind.IN_FLIGHT, pool_id=pool_id
            )
        self._in_flight.add(key)
        try:
            return await self._normalized(action, pool_id, factory)
        finally:
            self._in_flight.discard(key)

    async def _normalized(self, action: str, pool_id: str, factory: Callable[[], Awaitable[OperationResult]], **fields):
        fields.setdefault("pool_id", pool_id)
        return await super()._normalized(action, pool_id, factory, **fields)

    async def _compensate(
        self,
        tx_id: str,
        user_id: str,
        amount_cents: int,
        pool_id: str,
        reason: str,
        remove_member_round: Optional[int] = None,
    ) -> None:
        """Reverse a movement whose paired state change did not land."""
        try:
            if remove_member_round is not None:
                await self._step(pool_store.remove_player_from_pool, pool_id, user_id, remove_member_round)
            await self._step(ledger.adjust_balance, user_id, amount_cents, compensating=True)
            await self._step(recorder.fail, tx_id, reason)
        except Exception as exc:
            logger.error(
                "TransactionDanglingFailure tx_id=%s user_id=%s pool_id=%s amount_cents=%s reason=%s error=%s",
                tx_id,
                user_id,
                pool_id,
                amount_cents,
                reason,
                exc,
            )
            await self._flag(
                reconciliation.FLAG_DANGLING_DEBIT,
                user_id,
                amount_cents,
                pool_id,
                tx_id,
                f"{reason}; compensation failed: {exc}",
            )
            raise TransactionDanglingFailure() from exc
        logger.warning(
            "Compensated tx_id=%s user_id=%s pool_id=%s amount_cents=%s reason=%s",
            tx_id,
            user_id,
            pool_id,
            amount_cents,
            reason,
        )

    async def _system_message(self, pool_id: str, text: str) -> None:
        try:
            await self._step(_insert_message, pool_id, "system", text, True)
            await self.broadcaster.publish(chat_channel(pool_id), {"poolId": pool_id})
        except Exception:  # noqa: BLE001
            logger.warning("System chat message dropped pool_id=%s text=%s", pool_id, text, exc_info=True)

    async def _notify_pool(self, pool_id: str) -> None:
        await self.broadcaster.publish(pool_channel(pool_id), {"poolId": pool_id})
        await self.broadcaster.publish(ALL_POOLS_CHANNEL, {"poolId": pool_id})

    async def _load_pool(self, pool_id: str):
        pool = await self._step(pool_store.get_pool, pool_id)
        if pool is None:
            raise PoolNotFound()
        return pool

    # -- join / leave / lock --------------------------------------------------

    async def join_pool(self, principal: Principal, pool_id: str) -> OperationResult:
        return await self._guarded("join", pool_id, principal.user_id, lambda: self._join(principal, pool_id))

    async def _join(self, principal: Principal, pool_id: str) -> OperationResult:
        user_id = principal.user_id
        await self._step(ledger.ensure_account, user_id, principal.display_name)
        # always a fresh read: a cached count may under-report current_players
        pool = await self._load_pool(pool_id)
        member = await self._step(pool_store.get_member, pool_id, user_id, pool.round_number)
        if member is not None:
            return OperationResult.success("Already joined this pool", kind=ResultKind.ALREADY_JOINED, pool_id=pool_id)
        if pool.status not in JOINABLE_STATUSES:
            raise PoolClosed()
        if pool.current_players >= pool.max_players:
            raise PoolFull()

        fee = pool.entry_fee_cents
        txn = await self._step(
            recorder.begin,
            user_id,
            -fee,
            TransactionKind.GAME_ENTRY,
            pool_id=pool_id,
            description=f"Entry fee for pool {pool_id}",
        )
        balance = await self._move(txn.id, user_id, -fee, pool_id)

        try:
            await self._step(pool_store.insert_member, pool_id, pool.round_number, user_id, principal.snapshot())
        except Exception as exc:
            await self._compensate(txn.id, user_id, fee, pool_id, f"membership insert failed: {exc!r}")
            if isinstance(exc, AlreadyJoined):
                # another client joined for this player first; their charge stands
                return OperationResult.success(
                    "Already joined this pool", kind=ResultKind.ALREADY_JOINED, pool_id=pool_id, transaction_id=txn.id
                )
            raise

        try:
            await self._step(pool_store.increment_players, pool_id, 1)
        except Exception as exc:
            await self._compensate(
                txn.id, user_id, fee, pool_id, f"seat reservation failed: {exc!r}", remove_member_round=pool.round_number
            )
            raise

        try:
            await self._step(recorder.complete, txn.id)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Join committed but transaction not completed tx_id=%s", txn.id)
            await self._flag(reconciliation.FLAG_STALE_PENDING, user_id, -fee, pool_id, txn.id, f"complete failed: {exc}")

        logger.info("Joined pool_id=%s player_id=%s tx_id=%s balance_cents=%s", pool_id, user_id, txn.id, balance)
        await self._system_message(pool_id, f"{principal.display_name} has joined the pool")
        await self._notify_pool(pool_id)
        return OperationResult.success(
            "Joined pool", pool_id=pool_id, transaction_id=txn.id, balance_cents=balance
        )

    async def leave_pool(self, principal: Principal, pool_id: str) -> OperationResult:
        return await self._guarded("leave", pool_id, principal.user_id, lambda: self._leave(principal, pool_id))

    async def _leave(self, principal: Principal, pool_id: str) -> OperationResult:
        user_id = principal.user_id
        pool = await self._load_pool(pool_id)
        member = await self._step(pool_store.get_member, pool_id, user_id, pool.round_number)
        if member is None:
            raise NotMember()
        if member.locked:
            raise PlayerLocked()
        if pool.status == PoolStatus.COMPLETED.value:
            raise PoolClosed("Round already settled")

        refund_txn = None
        refund = 0
        balance = None
        if pool.status in JOINABLE_STATUSES:
            refund = pool.entry_fee_cents * settings.leave_refund_percent // 100
            refund_txn = await self._step(
                recorder.begin,
                user_id,
                refund,
                TransactionKind.GAME_REFUND,
                pool_id=pool_id,
                description=f"Refund for leaving pool {pool_id} ({100 - settings.leave_refund_percent}% fee applied)",
            )
            balance = await self._move(refund_txn.id, user_id, refund, pool_id)

        try:
            removed = await self._step(pool_store.remove_player_from_pool, pool_id, user_id, pool.round_number)
        except Exception as exc:
            if refund_txn is not None:
                await self._compensate(refund_txn.id, user_id, -refund, pool_id, f"membership removal failed: {exc!r}")
            raise
        if not removed:
            if refund_txn is not None:
                await self._compensate(refund_txn.id, user_id, -refund, pool_id, "membership changed during leave")
            current = await self._step(pool_store.get_member, pool_id, user_id, pool.round_number)
            raise NotMember() if current is None else PlayerLocked()

        try:
            await self._step(pool_store.increment_players, pool_id, -1)
        except Exception:  # noqa: BLE001
            logger.exception("Player count not decremented pool_id=%s player_id=%s", pool_id, user_id)

        if refund_txn is not None:
            try:
                await self._step(recorder.complete, refund_txn.id)
            except Exception as exc:  # noqa: BLE001
                logger.exception("Leave committed but refund not completed tx_id=%s", refund_txn.id)
                await self._flag(
                    reconciliation.FLAG_STALE_PENDING, user_id, refund, pool_id, refund_txn.id, f"complete failed: {exc}"
                )

        logger.info("Left pool_id=%s player_id=%s refund_cents=%s", pool_id, user_id, refund)
        await self._system_message(pool_id, f"{principal.display_name} has left the pool")
        await self._notify_pool(pool_id)
        return OperationResult.success(
            f"Left pool, refunded {refund}" if refund else "Left pool, no refund once the game has started",
            pool_id=pool_id,
            transaction_id=refund_txn.id if refund_txn is not None else None,
            balance_cents=balance,
            data={"refundCents": refund},
        )

    async def lock_in_number(self, principal: Principal, pool_id: str, number: int) -> OperationResult:
        return await self._normalized("lock", pool_id, lambda: self._lock(principal, pool_id, number))

    async def _lock(self, principal: Principal, pool_id: str, number: int) -> OperationResult:
        user_id = principal.user_id
        for attempt in range(1, settings.max_stale_retries + 1):
            pool = await self._load_pool(pool_id)
            member = await self._step(pool_store.get_member, pool_id, user_id, pool.round_number)
            if member is None:
                raise NotMember()
            if member.locked:
                return OperationResult.success(
                    "Number already locked",
                    kind=ResultKind.ALREADY_LOCKED,
                    pool_id=pool_id,
                    data={"selectedNumber": member.selected_number},
                )
            if pool.status not in SELECTABLE_STATUSES:
                raise PoolClosed("Pool is not accepting selections")
            if not pool.number_min <= number <= pool.number_max:
                raise InvalidNumber(f"Pick a number between {pool.number_min} and {pool.number_max}")

            if await self._step(pool_store.lock_member, member.id, member.version, number):
                try:
                    await self._step(
                        pool_store.upsert_player_in_pool, pool_id, user_id, {"selectedNumber": number, "locked": True}
                    )
                except Exception:  # noqa: BLE001
                    logger.warning("Snapshot not refreshed after lock pool_id=%s player_id=%s", pool_id, user_id)
                logger.info("Locked number pool_id=%s player_id=%s number=%s", pool_id, user_id, number)
                await self._notify_pool(pool_id)
                return OperationResult.success("Number locked", pool_id=pool_id, data={"selectedNumber": number})
            logger.warning("Stale write on lock pool_id=%s player_id=%s attempt=%s", pool_id, user_id, attempt)
        raise StaleWrite()

    # -- settlement -----------------------------------------------------------

    async def settle_pool(self, pool_id: str) -> OperationResult:
        return await self._normalized("settle", pool_id, lambda: self._settle(pool_id))

    async def _settle(self, pool_id: str) -> OperationResult:
        pool = await self._load_pool(pool_id)
        if pool.status == PoolStatus.COMPLETED.value:
            return OperationResult.success(
                "Round already settled", kind=ResultKind.ALREADY_SETTLED, pool_id=pool_id, data={"winners": pool.results}
            )
        members = await self._step(pool_store.list_members, pool_id, pool.round_number)
        selections = [
            Selection(m.player_id, m.display_name, m.selected_number if m.locked else None) for m in members
        ]
        winners = compute_winners(
            pool.game_type,
            pool.entry_fee_cents,
            pool.current_players,
            pool.number_min,
            pool.number_max,
            selections,
        )
        results = [w.to_dict() for w in winners]
        prizes = payouts(winners)
        owed = await self._step(pool_store.claim_settlement, pool_id, pool.round_number, results, prizes)
        if owed is None:
            return OperationResult.success("Round already settled", kind=ResultKind.ALREADY_SETTLED, pool_id=pool_id)

        try:
            player_ids = await self._step(pool_store.archive_round, pool_id, pool.round_number, prizes)
        except Exception:  # noqa: BLE001
            logger.exception("Round not archived pool_id=%s round=%s", pool_id, pool.round_number)
            player_ids = [m.player_id for m in members]
        try:
            await self._step(ledger.record_games, player_ids, set(prizes))
        except Exception:  # noqa: BLE001
            logger.exception("Player stats not updated pool_id=%s", pool_id)

        failed: List[str] = []
        for player_id, flag_id in owed.items():
            if not await self._pay_winner(pool_id, player_id, prizes[player_id], flag_id):
                failed.append(player_id)

        logger.info(
            "Settled pool_id=%s round=%s winners=%s failed_payouts=%s", pool_id, pool.round_number, len(prizes), len(failed)
        )
        if winners:
            await self._system_message(pool_id, f"Round over: {winners[0].number} was the least picked number")
        await self._notify_pool(pool_id)
        return OperationResult.success(
            "Round settled", pool_id=pool_id, data={"winners": results, "failedPayouts": failed}
        )

    async def _pay_winner(self, pool_id: str, player_id: str, amount: int, flag_id: int) -> bool:
        """
        Pay the prize recorded by ``flag_id``.

        The flag is claimed first so two workers never pay the same prize, and
        the credit carries ``payout-<flag_id>`` as its external ref so a retry
        can tell whether an earlier attempt already landed. A failed attempt
        puts the flag back on the queue as ``payout_failed``.
        """
        if not await self._step(reconciliation.claim_flag, flag_id):
            logger.info("Payout already being handled flag_id=%s player_id=%s", flag_id, player_id)
            return False
        ref = f"payout-{flag_id}"
        prior = await self._step(recorder.find_by_external_ref, ref)
        if prior is not None:
            if prior.status == TransactionStatus.COMPLETED.value:
                await self._resolve_payout(flag_id, f"paid by tx {prior.id}")
                return True
            # an attempt is still pending; whether it credited is unknown
            await self._release_payout(flag_id, f"earlier payout tx {prior.id} still pending", prior.id)
            return False

        txn = None
        try:
            txn = await self._step(
                recorder.begin,
                player_id,
                amount,
                TransactionKind.GAME_WINNING,
                external_ref=ref,
                pool_id=pool_id,
                description=f"Prize for winning in pool {pool_id}",
            )
            await self._step(ledger.adjust_balance, player_id, amount)
        except Exception as exc:  # noqa: BLE001
            logger.error("Payout failed pool_id=%s player_id=%s amount_cents=%s error=%s", pool_id, player_id, amount, exc)
            if txn is not None:
                await self._fail_quietly(txn.id, f"payout failed: {exc}")
            await self._release_payout(flag_id, f"payout failed: {exc}", txn.id if txn else None)
            return False

        try:
            await self._step(recorder.complete, txn.id)
        except Exception as exc:  # noqa: BLE001
            # the prize was credited; only the audit status lags
            logger.exception("Payout credited but transaction not completed tx_id=%s", txn.id)
            await self._flag(reconciliation.FLAG_STALE_PENDING, player_id, amount, pool_id, txn.id, f"complete failed: {exc}")
        await self._resolve_payout(flag_id, f"paid by tx {txn.id}")
        logger.info("Paid prize pool_id=%s player_id=%s amount_cents=%s tx_id=%s", pool_id, player_id, amount, txn.id)
        return True

    async def _resolve_payout(self, flag_id: int, detail: str) -> None:
        try:
            await self._step(reconciliation.resolve_flag, flag_id, detail)
        except Exception:  # noqa: BLE001
            # left in processing, so it shows on the report but is never paid twice
            logger.exception("Could not resolve payout flag flag_id=%s", flag_id)

    async def _release_payout(self, flag_id: int, detail: str, tx_id: Optional[str]) -> None:
        try:
            await self._step(
                reconciliation.release_flag, flag_id, detail, kind=reconciliation.FLAG_PAYOUT_FAILED, transaction_id=tx_id
            )
        except Exception:  # noqa: BLE001
            logger.exception("Could not release payout flag flag_id=%s", flag_id)

    async def retry_failed_payouts(self, pool_id: Optional[str] = None) -> OperationResult:
        async def run() -> OperationResult:
            flags = await self._step(reconciliation.open_flags, reconciliation.PAYOUT_FLAGS, pool_id)
            paid = 0
            for flag in flags:
                if await self._pay_winner(flag.pool_id, flag.user_id, flag.amount_cents, flag.id):
                    paid += 1
            return OperationResult.success(
                f"Retried {len(flags)} payouts, {paid} paid",
                pool_id=pool_id,
                data={"retried": len(flags), "paid": paid, "failed": len(flags) - paid},
            )

        return await super()._normalized("retry payouts", pool_id or "all", run, pool_id=pool_id)

    async def settle_due_pools(self) -> List[OperationResult]:
        due = await self._step(pool_store.due_pools)
        results = []
        for pool in due:
            results.append(await self.settle_pool(pool.id))
        return results

    # -- round administration -------------------------------------------------

    async def open_pool(self, pool_id: str) -> OperationResult:
        async def run() -> OperationResult:
            pool = await self._load_pool(pool_id)
            if pool.status != PoolStatus.WAITING.value:
                raise PoolClosed(f"Pool is {pool.status}")
            await self._step(pool_store.set_status, pool_id, PoolStatus.OPEN.value)
            await self._notify_pool(pool_id)
            return OperationResult.success("Pool open", pool_id=pool_id)

        return await self._normalized("open", pool_id, run)

    async def start_round(self, pool_id: str, duration_seconds: Optional[int] = None) -> OperationResult:
        async def run() -> OperationResult:
            pool = await self._load_pool(pool_id)
            if pool.status not in JOINABLE_STATUSES:
                raise PoolClosed(f"Pool is {pool.status}")
            seconds = duration_seconds or settings.round_duration_seconds
            now = utcnow()
            await self._step(
                pool_store.set_status, pool_id, PoolStatus.ACTIVE.value, starts_at=now, ends_at=now + timedelta(seconds=seconds)
            )
            logger.info("Round started pool_id=%s round=%s duration_seconds=%s", pool_id, pool.round_number, seconds)
            await self._system_message(pool_id, "The game has started, lock in your number")
            await self._notify_pool(pool_id)
            return OperationResult.success("Round started", pool_id=pool_id)

        return await self._normalized("start", pool_id, run)

    async def reopen_pool(self, pool_id: str) -> OperationResult:
        async def run() -> OperationResult:
            await self._load_pool(pool_id)
            if not await self._step(pool_store.advance_round, pool_id):
                raise PoolClosed("Only a completed pool can open a new round")
            await self._notify_pool(pool_id)
            return OperationResult.success("New round open", pool_id=pool_id)

        return await self._normalized("reopen", pool_id, run)

    # -- chat -----------------------------------------------------------------

    async def send_message(self, principal: Principal, pool_id: str, text: str) -> OperationResult:
        async def run() -> OperationResult:
            await self._load_pool(pool_id)
            message = await self._step(_insert_message, pool_id, principal.display_name, text, False)
            await self.broadcaster.publish(chat_channel(pool_id), {"poolId": pool_id})
            return OperationResult.success(
                "Message sent", pool_id=pool_id, data=ChatMessageView.model_validate(message).model_dump(mode="json")
            )

        return await self._normalized("chat", pool_id, run)

    def list_messages(self, pool_id: str, limit: int = 200) -> List[ChatMessageView]:
        return self._call(_list_messages, pool_id, limit)

    # -- reads and subscriptions ------------------------------------------------

    def get_pool_view(self, pool_id: str) -> Optional[PoolView]:
        return self._call(_pool_view, pool_id)

    def list_pool_views(self, game_type: Optional[str] = None) -> List[PoolView]:
        pools = self._call(pool_store.list_pools, game_type)
        return [PoolView.model_validate(pool) for pool in pools]

    async def on_pool_update(self, pool_id: str, callback) -> Callable[[], None]:
        async def refresh(_event=None):
            view = await run_in_threadpool(self.get_pool_view, pool_id)
            if view is not None:
                await _maybe_await(callback(view))

        unsubscribe = self.broadcaster.subscribe(pool_channel(pool_id), refresh)
        await refresh()
        return unsubscribe

    async def on_chat_update(self, pool_id: str, callback) -> Callable[[], None]:
        async def refresh(_event=None):
            messages = await run_in_threadpool(self.list_messages, pool_id)
            await _maybe_await(callback(messages))

        unsubscribe = self.broadcaster.subscribe(chat_channel(pool_id), refresh)
        await refresh()
        return unsubscribe

    async def on_pools_update(self, callback, game_type: Optional[str] = None) -> Callable[[], None]:
        async def refresh(_event=None):
            views = await run_in_threadpool(self.list_pool_views, game_type)
            await _maybe_await(callback(views))

        unsubscribe = self.broadcaster.subscribe(ALL_POOLS_CHANNEL, refresh)
        await refresh()
        return unsubscribe


def _insert_message(db, pool_id: str, sender: str, text: str, is_system: bool) -> ChatMessage:
    message = ChatMessage(pool_id=pool_id, sender=sender, message=text, is_system=is_system)
    db.add(message)
    db.commit()
    db.refresh(message)
    return message


def _list_messages(db, pool_id: str, limit: int) -> List[ChatMessageView]:
    rows = (
        db.query(ChatMessage)
        .filter(ChatMessage.pool_id == pool_id)
        .order_by(ChatMessage.created_at, ChatMessage.id)
        .limit(limit)
        .all()
    )
    return [ChatMessageView.model_validate(row) for row in rows]


def _pool_view(db, pool_id: str) -> Optional[PoolView]:
    pool = pool_store.get_pool(db, pool_id)
    if pool is None:
        return None
    view = PoolView.model_validate(pool)
    view.players = [
        PlayerView.model_validate(member) for member in pool_store.list_members(db, pool_id, pool.round_number)
    ]
    return view


async def background_settlement_worker(engine: PoolEngine, poll_seconds: Optional[float] = None):
    interval = poll_seconds or settings.settlement_poll_seconds
    while True:
        try:
            await engine.settle_due_pools()
        except Exception:  # noqa: BLE001
            logger.exception("Settlement sweep failed")
        await asyncio.sleep(interval)
