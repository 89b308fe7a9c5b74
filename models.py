from pydantic import BaseModel, Field, StrictInt, field_validator
from datetime import datetime
from typing import Optional

from config import get_settings


class ResetRequest(BaseModel):
    account: str = Field(
        default_factory=lambda: get_settings().default_account,
        max_length=256,
        description="Account identifier"
    )

    @field_validator('account', mode='before')
    @classmethod
    def default_null_account(cls, v):
        return get_settings().default_account if v is None else v


class ChargeRequest(BaseModel):
    account: str = Field(
        default_factory=lambda: get_settings().default_account,
        max_length=256,
        description="Account identifier"
    )
    charges: StrictInt = Field(
        default_factory=lambda: get_settings().default_charge,
        ge=0,
        description="Amount to deduct, in integer units"
    )

    # null means absent
    @field_validator('account', mode='before')
    @classmethod
    def default_null_account(cls, v):
        return get_settings().default_account if v is None else v

    @field_validator('charges', mode='before')
    @classmethod
    def default_null_charges(cls, v):
        return get_settings().default_charge if v is None else v


class ChargeResult(BaseModel):
    authorized: bool = Field(..., description="Whether the balance covered the charge")
    remainingBalance: int = Field(..., description="Balance after the charge was evaluated")
    appliedCharge: int = Field(..., description="Amount actually deducted (0 when declined)")


class BalanceResponse(BaseModel):
    account: str = Field(..., description="Account identifier")
    balance: int = Field(..., description="Current balance")


class ErrorResponse(BaseModel):
    detail: str = Field(..., description="Error description")
    error_code: str = Field(..., description="Machine-readable error code")
    timestamp: datetime = Field(default_factory=datetime.now, description="Error timestamp")


class HealthResponse(BaseModel):
    status: str = Field(..., description="Service health status")
    timestamp: datetime = Field(default_factory=datetime.now)
    store_backend: str = Field(..., description="Configured ledger store backend")
    store_reachable: Optional[bool] = Field(None, description="Whether the ledger store answered a ping")
