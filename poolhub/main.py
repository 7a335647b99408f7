import asyncio
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Response, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from poolhub.clients.payment_client import PaymentGatewayClient
from poolhub.config import GameType, settings
from poolhub.database import SessionLocal, engine, get_db
from poolhub.db import get_or_create_idempotency, store_idempotency
from poolhub.engine import PoolEngine, background_settlement_worker
from poolhub.helpers import hash_request, result_response
from poolhub.logging_config import get_logger
from poolhub.models import Base
from poolhub.offline_db import OfflineStore
from poolhub.realtime import Broadcaster
from poolhub.reconciliation import generate_reconciliation_csv
from poolhub.schemas import (
    AmountRequest,
    ChatRequest,
    GatewayResult,
    LockRequest,
    Principal,
    ReferralRequest,
    StartRoundRequest,
)
from poolhub.security import get_principal, require_bearer_token, validate_signature
from poolhub.seed import seed_pools
from poolhub.sync import OfflineSyncService, background_sync_worker
from poolhub.wallet_service import WalletService

logger = get_logger(__name__)

Base.metadata.create_all(bind=engine)

broadcaster = Broadcaster()
pool_engine = PoolEngine(SessionLocal, broadcaster)
wallet_service = WalletService(SessionLocal, PaymentGatewayClient())
offline_store = OfflineStore(settings.offline_db_url)
sync_service = OfflineSyncService(pool_engine, wallet_service, offline_store, broadcaster)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting Pool Hub")
    if settings.seed_pools:
        with SessionLocal() as db:
            seed_pools(db)
    workers = []
    if settings.run_background_workers:
        logger.info("Starting settlement and sync workers")
        workers.append(asyncio.create_task(background_settlement_worker(pool_engine)))
        workers.append(asyncio.create_task(background_sync_worker(sync_service)))
    yield
    for task in workers:
        task.cancel()
    if wallet_service.gateway is not None:
        await wallet_service.gateway.aclose()
    logger.info("Pool Hub stopped")


app = FastAPI(title="Pool Hub", lifespan=lifespan)


async def _idempotent(db: Session, key: Optional[str], body: dict, produce):
    body_hash = hash_request(body)
    if key:
        existing = get_or_create_idempotency(db, key, body_hash)
        if existing:
            return existing
    response = result_response(await produce())
    if key:
        store_idempotency(db, key, body_hash, response)
    return response


# -- pools --------------------------------------------------------------------------


@app.get("/pools")
async def list_pools(game_type: Optional[GameType] = None):
    views = await run_in_threadpool(pool_engine.list_pool_views, game_type.value if game_type else None)
    return [view.model_dump(mode="json") for view in views]


@app.get("/pools/{pool_id}")
async def get_pool(pool_id: str):
    view = await sync_service.get_pool(pool_id)
    if view is None:
        raise HTTPException(status_code=404, detail="pool not found")
    return view


@app.post("/pools/{pool_id}/join")
async def join_pool(
    pool_id: str,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
    idempotency_key: str | None = Header(None),
):
    body = {"action": "join", "poolId": pool_id, "userId": principal.user_id}
    return await _idempotent(db, idempotency_key, body, lambda: sync_service.join_pool(principal, pool_id))


@app.post("/pools/{pool_id}/leave")
async def leave_pool(pool_id: str, principal: Principal = Depends(get_principal)):
    return result_response(await pool_engine.leave_pool(principal, pool_id))


@app.post("/pools/{pool_id}/lock")
async def lock_in_number(pool_id: str, request: LockRequest, principal: Principal = Depends(get_principal)):
    return result_response(await pool_engine.lock_in_number(principal, pool_id, request.number))


@app.get("/pools/{pool_id}/chat")
async def list_messages(pool_id: str, limit: int = Query(200, ge=1, le=500)):
    messages = await run_in_threadpool(pool_engine.list_messages, pool_id, limit)
    return [message.model_dump(mode="json") for message in messages]


@app.post("/pools/{pool_id}/chat")
async def send_message(pool_id: str, request: ChatRequest, principal: Principal = Depends(get_principal)):
    return result_response(await pool_engine.send_message(principal, pool_id, request.message))


@app.websocket("/ws/pools/{pool_id}")
async def pool_stream(websocket: WebSocket, pool_id: str):
    if await run_in_threadpool(pool_engine.get_pool_view, pool_id) is None:
        await websocket.close(code=1008, reason="pool not found")
        return
    await websocket.accept()
    updates: asyncio.Queue = asyncio.Queue()

    async def forward():
        while True:
            view = await updates.get()
            await websocket.send_json(view.model_dump(mode="json"))

    async def until_disconnect():
        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            logger.info("Pool stream closed pool_id=%s", pool_id)

    unsubscribe = await pool_engine.on_pool_update(pool_id, updates.put)
    tasks = {asyncio.create_task(forward()), asyncio.create_task(until_disconnect())}
    try:
        await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in tasks:
            task.cancel()
        unsubscribe()


# -- round administration -----------------------------------------------------------


@app.post("/admin/pools/{pool_id}/open")
async def open_pool(pool_id: str, _auth=Depends(require_bearer_token)):
    return result_response(await pool_engine.open_pool(pool_id))


@app.post("/admin/pools/{pool_id}/start")
async def start_round(pool_id: str, request: StartRoundRequest | None = None, _auth=Depends(require_bearer_token)):
    duration = request.duration_seconds if request else None
    return result_response(await pool_engine.start_round(pool_id, duration))


@app.post("/admin/pools/{pool_id}/settle")
async def settle_pool(pool_id: str, _auth=Depends(require_bearer_token)):
    return result_response(await pool_engine.settle_pool(pool_id))


@app.post("/admin/pools/{pool_id}/reopen")
async def reopen_pool(pool_id: str, _auth=Depends(require_bearer_token)):
    return result_response(await pool_engine.reopen_pool(pool_id))


@app.post("/admin/payouts/retry")
async def retry_payouts(pool_id: Optional[str] = None, _auth=Depends(require_bearer_token)):
    return result_response(await pool_engine.retry_failed_payouts(pool_id))


@app.get("/reconciliation_data")
async def download_reconciliation_csv(_auth=Depends(require_bearer_token), db: Session = Depends(get_db)):
    csv_text, mismatch_count = generate_reconciliation_csv(db)
    return Response(
        content=csv_text,
        media_type="text/csv",
        headers={
            "Content-Disposition": 'attachment; filename="reconciliation.csv"',
            "X-Mismatch-Count": str(mismatch_count),
        },
    )


# -- wallet -------------------------------------------------------------------------


@app.get("/wallet")
async def get_wallet(principal: Principal = Depends(get_principal)):
    wallet = await run_in_threadpool(wallet_service.get_wallet, principal.user_id)
    if wallet is None:
        raise HTTPException(status_code=404, detail="wallet not found")
    return wallet


@app.get("/wallet/transactions")
async def list_transactions(principal: Principal = Depends(get_principal), limit: int = Query(100, ge=1, le=500)):
    rows = await run_in_threadpool(wallet_service.list_transactions, principal.user_id, limit)
    return [row.model_dump(mode="json") for row in rows]


@app.post("/wallet/deposit")
async def deposit(
    request: AmountRequest,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
    idempotency_key: str | None = Header(None),
):
    body = {"action": "deposit", "userId": principal.user_id, "amountCents": request.amountCents}
    return await _idempotent(
        db, idempotency_key, body, lambda: wallet_service.initiate_deposit(principal, request.amountCents)
    )


@app.post("/wallet/withdraw")
async def withdraw(
    request: AmountRequest,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
    idempotency_key: str | None = Header(None),
):
    body = {"action": "withdraw", "userId": principal.user_id, "amountCents": request.amountCents}
    return await _idempotent(
        db, idempotency_key, body, lambda: wallet_service.initiate_withdrawal(principal, request.amountCents)
    )


@app.post("/webhooks/payments")
async def payment_webhook(
    payload: GatewayResult,
    x_signature: str | None = Header(None),
    x_timestamp: str | None = Header(None),
):
    if not x_signature or not x_timestamp:
        raise HTTPException(status_code=401, detail="missing signature")
    validate_signature(payload.model_dump(), x_signature, x_timestamp)
    logger.info(
        "Received payment webhook txId=%s externalRef=%s success=%s",
        payload.transactionId,
        payload.externalRef,
        payload.success,
    )
    return result_response(
        await wallet_service.handle_gateway_result(payload.transactionId, payload.externalRef, payload.success)
    )


@app.get("/referrals")
async def referral_info(principal: Principal = Depends(get_principal)):
    info = await run_in_threadpool(wallet_service.referral_info, principal.user_id)
    if info is None:
        raise HTTPException(status_code=404, detail="wallet not found")
    return info


@app.post("/referrals")
async def apply_referral(request: ReferralRequest, principal: Principal = Depends(get_principal)):
    return result_response(await wallet_service.apply_referral_code(principal, request.referralCode))


@app.get("/milestones")
async def milestone_progress(principal: Principal = Depends(get_principal)):
    progress = await run_in_threadpool(wallet_service.milestone_progress, principal.user_id)
    if progress is None:
        raise HTTPException(status_code=404, detail="wallet not found")
    return progress


# -- offline sync -------------------------------------------------------------------


@app.get("/sync/status")
async def sync_status(_auth=Depends(require_bearer_token)):
    return await run_in_threadpool(sync_service.get_sync_status)


@app.post("/sync/online")
async def go_online(_auth=Depends(require_bearer_token)):
    await sync_service.handle_online()
    return await run_in_threadpool(sync_service.get_sync_status)


@app.post("/sync/offline")
async def go_offline(_auth=Depends(require_bearer_token)):
    await sync_service.handle_offline()
    return await run_in_threadpool(sync_service.get_sync_status)


@app.post("/sync/trigger")
async def trigger_sync(_auth=Depends(require_bearer_token)):
    return result_response(await sync_service.trigger_manual_sync())


@app.post("/sync/intents/{intent_id}/retry")
async def retry_intent(intent_id: str, _auth=Depends(require_bearer_token)):
    return result_response(await sync_service.retry_intent(intent_id))


@app.delete("/sync/warnings/{intent_id}")
async def dismiss_warning(intent_id: str, _auth=Depends(require_bearer_token)):
    if not await run_in_threadpool(sync_service.dismiss_warning, intent_id):
        raise HTTPException(status_code=404, detail="warning not found")
    return {"status": "dismissed"}


@app.get("/health")
async def health():
    return {"status": "ok"}
