from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict


class StrictRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")


class CreateCardRequest(StrictRequest):
    currency: str
    message: Optional[str] = None
    amount_fiat: Optional[float] = None
    token_mint: Optional[str] = None
    expires_at: Optional[datetime] = None
    template_url: Optional[str] = None
    refund_wallet: Optional[str] = None


class UpdateCardRequest(StrictRequest):
    message: Optional[str] = None
    currency: Optional[str] = None
    amount_fiat: Optional[float] = None
    token_mint: Optional[str] = None
    expires_at: Optional[datetime] = None
    template_url: Optional[str] = None
    refund_wallet: Optional[str] = None


class ClaimCardRequest(StrictRequest):
    public_id: str
    cvv: str
    destination_wallet: str


class RegisterRequest(StrictRequest):
    username: str
    password: str
    email: Optional[str] = None


class LoginRequest(StrictRequest):
    username: str
    password: str


class EmailRequest(StrictRequest):
    email: str


class UsernameRequest(StrictRequest):
    username: str


class CreateCardResponse(BaseModel):
    public_id: str
    cvv: str
    deposit_address: Optional[str] = None


class LockCardResponse(BaseModel):
    success: bool
    public_id: str
    already_locked: bool


class ClaimCardResponse(BaseModel):
    success: bool
    public_id: str
    signature: str
    amount_sol: float
    tax_sol: float
    destination_wallet: str


class SolPriceResponse(BaseModel):
    sol_usd: float
    price_usd: float


class StatsResponse(BaseModel):
    total_funded: float
    total_burned: float
