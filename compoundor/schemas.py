"""
Response schemas for the external JSON sources.

Each client validates its payload here so malformed responses fail at the
boundary with a typed error instead of leaking missing fields downstream.
"""

from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class LinkedBault(BaseModel):
    id: str


class TokenLp(BaseModel):
    symbol: str = ""
    price: Optional[float] = None


class BackendVault(BaseModel):
    """One island entry from the Kodiak backend"""
    provider: Optional[str] = None
    id: Optional[str] = None
    baults: List[LinkedBault] = Field(default_factory=list)
    tokenLp: TokenLp = Field(default_factory=TokenLp)


class BackendVaultList(BaseModel):
    data: List[BackendVault]


class SubgraphBundle(BaseModel):
    ethPriceUSD: Optional[str] = None


class SubgraphToken(BaseModel):
    id: str
    derivedETH: Optional[str] = None


class SubgraphResponse(BaseModel):
    """GraphQL envelope; token aliases land in `data` as token_<i> keys"""
    data: Optional[Dict[str, Optional[dict]]] = None
    errors: Optional[List[dict]] = None


class QuoteTx(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    to: str
    data: str
    value: int = 0
    from_: Optional[str] = Field(default=None, alias="from")


class Quote(BaseModel):
    """Enso route response, reduced to what the compoundor uses"""
    model_config = ConfigDict(populate_by_name=True)

    amount_out: int = Field(alias="amountOut")
    tx: QuoteTx
    gas: Optional[int] = None
    price_impact: Optional[float] = Field(default=None, alias="priceImpact")

    @field_validator("amount_out")
    @classmethod
    def _non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("amountOut must be >= 0")
        return v
