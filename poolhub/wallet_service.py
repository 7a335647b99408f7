"""
Wallet operations outside the pool lifecycle: direct ledger movements,
gateway-backed deposits and withdrawals, and referral bonuses.
"""
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from poolhub import ledger, milestones, reconciliation
from poolhub import transactions as recorder
from poolhub.clients.payment_client import PaymentGatewayClient
from poolhub.config import TransactionKind, TransactionStatus, settings
from poolhub.errors import (
    AccountNotFound,
    InvalidReferral,
    ResultKind,
    TransactionDanglingFailure,
    TransactionNotFound,
)
from poolhub.logging_config import get_logger
from poolhub.models import Account, Referral
from poolhub.schemas import OperationResult, Principal, TransactionView
from poolhub.service import UnitOfWorkService

logger = get_logger(__name__)


class WalletService(UnitOfWorkService):
    def __init__(self, session_factory, gateway: Optional[PaymentGatewayClient] = None):
        super().__init__(session_factory)
        self.gateway = gateway

    def _gateway(self) -> PaymentGatewayClient:
        if self.gateway is None:
            self.gateway = PaymentGatewayClient()
        return self.gateway

    # -- reads ------------------------------------------------------------------

    def get_wallet(self, user_id: str) -> Optional[dict]:
        return self._call(_wallet_summary, user_id)

    def list_transactions(self, user_id: str, limit: int = 100) -> List[TransactionView]:
        rows = self._call(recorder.list_user_transactions, user_id, limit)
        return [TransactionView.model_validate(row) for row in rows]

    def get_transaction(self, tx_id: str) -> Optional[TransactionView]:
        row = self._call(recorder.get_transaction, tx_id)
        return TransactionView.model_validate(row) if row is not None else None

    def find_transaction_by_ref(self, external_ref: str) -> Optional[TransactionView]:
        row = self._call(recorder.find_by_external_ref, external_ref)
        return TransactionView.model_validate(row) if row is not None else None

    # -- direct movements -------------------------------------------------------

    async def apply_transaction(
        self,
        principal: Principal,
        amount_cents: int,
        kind: TransactionKind,
        description: Optional[str] = None,
        pool_id: Optional[str] = None,
        external_ref: Optional[str] = None,
    ) -> OperationResult:
        """Record and apply a signed ledger movement in one go."""

        async def run() -> OperationResult:
            await self._step(ledger.ensure_account, principal.user_id, principal.display_name)
            txn = await self._step(
                recorder.begin,
                principal.user_id,
                amount_cents,
                kind,
                external_ref=external_ref,
                pool_id=pool_id,
                description=description,
            )
            balance = await self._move(txn.id, principal.user_id, amount_cents, pool_id)
            await self._complete_or_flag(txn.id, principal.user_id, amount_cents, pool_id)
            return OperationResult.success(
                "Transaction applied", transaction_id=txn.id, balance_cents=balance, pool_id=pool_id
            )

        return await self._normalized("transaction", principal.user_id, run)

    # -- gateway-backed movements -------------------------------------------------

    async def initiate_deposit(self, principal: Principal, amount_cents: int) -> OperationResult:
        async def run() -> OperationResult:
            await self._step(ledger.ensure_account, principal.user_id, principal.display_name)
            txn = await self._step(
                recorder.begin, principal.user_id, amount_cents, TransactionKind.DEPOSIT, description="Deposit"
            )
            try:
                external_ref = await self._gateway().create_deposit(txn.id, principal.user_id, amount_cents)
            except Exception as exc:
                await self._fail_quietly(txn.id, f"gateway rejected deposit: {exc}")
                raise
            await self._step(_attach_external_ref, txn.id, external_ref)
            logger.info("Deposit initiated tx_id=%s user_id=%s amount_cents=%s", txn.id, principal.user_id, amount_cents)
            return OperationResult.success(
                "Deposit pending confirmation", transaction_id=txn.id, data={"externalRef": external_ref}
            )

        return await self._normalized("deposit", principal.user_id, run)

    async def initiate_withdrawal(self, principal: Principal, amount_cents: int) -> OperationResult:
        async def run() -> OperationResult:
            user_id = principal.user_id
            txn = await self._step(
                recorder.begin, user_id, -amount_cents, TransactionKind.WITHDRAWAL, description="Withdrawal"
            )
            # the debit is a hold until the provider confirms the payout
            balance = await self._move(txn.id, user_id, -amount_cents)
            try:
                external_ref = await self._gateway().create_payout(txn.id, user_id, amount_cents)
            except Exception as exc:
                await self._release_hold(txn.id, user_id, amount_cents, f"gateway rejected payout: {exc}")
                raise
            await self._step(_attach_external_ref, txn.id, external_ref)
            logger.info("Withdrawal initiated tx_id=%s user_id=%s amount_cents=%s", txn.id, user_id, amount_cents)
            return OperationResult.success(
                "Withdrawal pending confirmation",
                transaction_id=txn.id,
                balance_cents=balance,
                data={"externalRef": external_ref},
            )

        return await self._normalized("withdrawal", principal.user_id, run)

    async def handle_gateway_result(self, tx_id: str, external_ref: Optional[str], success: bool) -> OperationResult:
        """
        Apply the provider's final answer for a deposit or withdrawal.

        The pending -> terminal status change is claimed before any money moves,
        so a repeated callback finds the transaction finalized and does nothing.
        """

        async def run() -> OperationResult:
            txn = await self._step(recorder.get_transaction, tx_id)
            if txn is None:
                raise TransactionNotFound()
            if txn.status != TransactionStatus.PENDING.value:
                return OperationResult.success(
                    "Transaction already finalized", kind=ResultKind.ALREADY_FINALIZED, transaction_id=tx_id
                )
            amount = abs(txn.amount_cents)

            if txn.kind == TransactionKind.DEPOSIT.value:
                if not success:
                    await self._step(recorder.fail, tx_id, "deposit declined by provider")
                    return OperationResult.success("Deposit declined", transaction_id=tx_id)
                if not await self._step(recorder.complete, tx_id, external_ref):
                    return OperationResult.success(
                        "Transaction already finalized", kind=ResultKind.ALREADY_FINALIZED, transaction_id=tx_id
                    )
                try:
                    balance = await self._step(ledger.adjust_balance, txn.user_id, amount)
                except Exception as exc:
                    await self._flag(
                        reconciliation.FLAG_CREDIT_FAILED, txn.user_id, amount, None, tx_id, f"deposit credit failed: {exc}"
                    )
                    raise TransactionDanglingFailure() from exc
                logger.info("Deposit credited tx_id=%s user_id=%s amount_cents=%s", tx_id, txn.user_id, amount)
                return OperationResult.success("Deposit credited", transaction_id=tx_id, balance_cents=balance)

            if txn.kind == TransactionKind.WITHDRAWAL.value:
                if success:
                    await self._step(recorder.complete, tx_id, external_ref)
                    logger.info("Withdrawal completed tx_id=%s user_id=%s", tx_id, txn.user_id)
                    return OperationResult.success("Withdrawal completed", transaction_id=tx_id)
                await self._release_hold(tx_id, txn.user_id, amount, "payout declined by provider")
                return OperationResult.success("Withdrawal declined, funds returned", transaction_id=tx_id)

            raise TransactionNotFound(f"Transaction {tx_id} is not a gateway payment")

        return await self._normalized("gateway result", tx_id, run)

    async def _release_hold(self, tx_id: str, user_id: str, amount_cents: int, reason: str) -> None:
        if not await self._step(recorder.fail, tx_id, reason):
            logger.info("Hold already released tx_id=%s", tx_id)
            return
        try:
            await self._step(ledger.adjust_balance, user_id, amount_cents, compensating=True)
        except Exception as exc:
            logger.error(
                "TransactionDanglingFailure tx_id=%s user_id=%s amount_cents=%s reason=%s error=%s",
                tx_id,
                user_id,
                amount_cents,
                reason,
                exc,
            )
            await self._flag(
                reconciliation.FLAG_DANGLING_DEBIT, user_id, amount_cents, None, tx_id, f"{reason}; release failed: {exc}"
            )
            raise TransactionDanglingFailure() from exc
        logger.warning("Released withdrawal hold tx_id=%s user_id=%s amount_cents=%s", tx_id, user_id, amount_cents)

    async def _complete_or_flag(self, tx_id: str, user_id: str, amount_cents: int, pool_id: Optional[str]) -> None:
        try:
            await self._step(recorder.complete, tx_id)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Balance moved but transaction not completed tx_id=%s", tx_id)
            await self._flag(reconciliation.FLAG_STALE_PENDING, user_id, amount_cents, pool_id, tx_id, f"complete failed: {exc}")

    # -- referrals ----------------------------------------------------------------

    async def apply_referral_code(self, principal: Principal, code: str) -> OperationResult:
        async def run() -> OperationResult:
            await self._step(ledger.ensure_account, principal.user_id, principal.display_name)
            referrer = await self._step(_account_by_referral_code, code.strip().lower())
            if referrer is None or referrer.user_id == principal.user_id:
                raise InvalidReferral()
            return await self._referral_bonus(referrer.user_id, principal.user_id)

        return await self._normalized("referral", principal.user_id, run)

    async def process_referral_bonus(self, referrer_id: str, referred_id: str) -> OperationResult:
        async def run() -> OperationResult:
            if referrer_id == referred_id:
                raise InvalidReferral()
            return await self._referral_bonus(referrer_id, referred_id)

        return await self._normalized("referral", referrer_id, run)

    async def _referral_bonus(self, referrer_id: str, referred_id: str) -> OperationResult:
        bonus = settings.referral_bonus_cents
        if await self._step(_account, referrer_id) is None:
            raise AccountNotFound()
        referral = await self._step(_record_referral, referrer_id, referred_id, bonus)
        if referral is None:
            return OperationResult.success("Referral already applied", kind=ResultKind.ALREADY_REFERRED)

        txn = await self._step(
            recorder.begin,
            referrer_id,
            bonus,
            TransactionKind.REFERRAL_BONUS,
            description=f"Referral bonus for inviting {referred_id}",
        )
        await self._step(_link_referral_transaction, referral.id, txn.id)
        try:
            await self._step(ledger.adjust_balance, referrer_id, bonus)
        except Exception as exc:  # noqa: BLE001
            await self._fail_quietly(txn.id, f"bonus credit failed: {exc}")
            await self._flag(reconciliation.FLAG_CREDIT_FAILED, referrer_id, bonus, None, txn.id, f"referral bonus not credited: {exc}")
            return OperationResult.success("Referral recorded, bonus pending review", transaction_id=txn.id)
        await self._complete_or_flag(txn.id, referrer_id, bonus, None)
        logger.info("Referral bonus referrer_id=%s referred_id=%s amount_cents=%s", referrer_id, referred_id, bonus)
        return OperationResult.success("Referral applied", transaction_id=txn.id)

    def referral_info(self, user_id: str) -> Optional[dict]:
        return self._call(milestones.referral_info, user_id)

    def milestone_progress(self, user_id: str) -> Optional[dict]:
        account = self._call(_account, user_id)
        if account is None:
            return None
        return milestones.get_milestone_progress(account.games_played)


def _account(db: Session, user_id: str) -> Optional[Account]:
    return db.get(Account, user_id)


def _account_by_referral_code(db: Session, code: str) -> Optional[Account]:
    return db.query(Account).filter(Account.referral_code == code).first()


def _wallet_summary(db: Session, user_id: str) -> Optional[dict]:
    account = db.get(Account, user_id)
    if account is None:
        return None
    return {
        "userId": account.user_id,
        "displayName": account.display_name,
        "balanceCents": account.balance_cents,
        "gamesPlayed": account.games_played,
        "gamesWon": account.games_won,
        "referralCode": account.referral_code,
    }


def _attach_external_ref(db: Session, tx_id: str, external_ref: str) -> None:
    txn = recorder.get_transaction(db, tx_id)
    if txn is None:
        raise TransactionNotFound()
    txn.external_ref = external_ref
    db.add(txn)
    db.commit()


def _record_referral(db: Session, referrer_id: str, referred_id: str, bonus_cents: int) -> Optional[Referral]:
    referral = Referral(referrer_id=referrer_id, referred_id=referred_id, bonus_cents=bonus_cents)
    db.add(referral)
    try:
        db.commit()
    except IntegrityError:
        # each user can only ever be referred once
        db.rollback()
        return None
    db.refresh(referral)
    db.query(Account).filter(Account.user_id == referred_id).update(
        {"referred_by": referrer_id}, synchronize_session=False
    )
    db.commit()
    return referral


def _link_referral_transaction(db: Session, referral_id: int, tx_id: str) -> None:
    db.query(Referral).filter(Referral.id == referral_id).update({"transaction_id": tx_id}, synchronize_session=False)
    db.commit()
