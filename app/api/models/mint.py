# app/api/models/mint.py
from pydantic import BaseModel, Field, field_validator
from typing import Optional
import re

ADDRESS_PATTERN = re.compile(r"^0x[0-9a-fA-F]{40}$")


class MintRequest(BaseModel):
    """
    Request body for a paid mint. The recipient defaults to the payer.
    """
    to: Optional[str] = Field(None, description="Address receiving the minted tokens (defaults to the payer).")
    quantity: int = Field(1, ge=1, description="Number of tokens to mint.")

    @field_validator("to")
    @classmethod
    def validate_address(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not ADDRESS_PATTERN.match(v):
            raise ValueError("to must be a 0x-prefixed 20-byte hex address")
        return v

    class Config:
        json_schema_extra = {
            "example": {
                "to": "0x1fb1f1d3620eab8e3b69dd2b2c40933a61c7f276",
                "quantity": 1
            }
        }


class MintResponse(BaseModel):
    """
    Response model for a completed mint.
    """
    success: bool = True
    txHash: str = Field(..., description="Transaction hash of the mint.")
    quantity: int
    recipient: str
    payer: Optional[str] = None
    replayed: bool = Field(False, description="True when answered from an earlier settlement of the same nonce.")


class HealthResponse(BaseModel):
    status: str
    message: str
    minterAddress: Optional[str] = None
    networks: list
