from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from poolhub.errors import OK_KINDS, PoolHubError, ResultKind


class Principal(BaseModel):
    user_id: str
    display_name: str

    def snapshot(self) -> dict:
        return {
            "id": self.user_id,
            "username": self.display_name,
            "selectedNumber": None,
            "locked": False,
        }


class OperationResult(BaseModel):
    ok: bool
    kind: ResultKind
    message: str
    pool_id: Optional[str] = None
    transaction_id: Optional[str] = None
    balance_cents: Optional[int] = None
    data: Optional[Any] = None

    @classmethod
    def success(cls, message: str, kind: ResultKind = ResultKind.SUCCESS, **fields) -> "OperationResult":
        return cls(ok=kind in OK_KINDS, kind=kind, message=message, **fields)

    @classmethod
    def from_error(cls, exc: PoolHubError, **fields) -> "OperationResult":
        return cls(ok=exc.kind in OK_KINDS, kind=exc.kind, message=exc.message, **fields)


class PlayerView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    player_id: str
    display_name: str
    selected_number: Optional[int] = None
    locked: bool = False
    is_winner: bool = False
    prize_cents: int = 0


class PoolView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    game_type: str
    entry_fee_cents: int
    max_players: int
    current_players: int
    status: str
    number_min: int
    number_max: int
    round_number: int
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    results: Optional[List[dict]] = None
    players: List[PlayerView] = Field(default_factory=list)


class ChatMessageView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    pool_id: str
    sender: str
    message: str
    is_system: bool
    created_at: datetime


class TransactionView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    amount_cents: int
    kind: str
    status: str
    pool_id: Optional[str] = None
    external_ref: Optional[str] = None
    description: Optional[str] = None
    created_at: datetime


class LockRequest(BaseModel):
    number: int


class ChatRequest(BaseModel):
    message: str = Field(..., min_length=1, max_length=500)


class StartRoundRequest(BaseModel):
    duration_seconds: Optional[int] = Field(default=None, gt=0)


class AmountRequest(BaseModel):
    amountCents: int = Field(..., gt=0)


class ReferralRequest(BaseModel):
    referralCode: str


class GatewayResult(BaseModel):
    transactionId: str
    externalRef: Optional[str] = None
    success: bool
