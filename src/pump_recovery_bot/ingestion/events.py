"""Decoded feed records: token creations and bonding-curve trades."""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Optional, Union

from ..utils.errors import MalformedEvent


class TradeSide(str, Enum):
    BUY = "buy"
    SELL = "sell"


@dataclass(frozen=True, slots=True)
class CreateEvent:
    mint: str
    symbol: str
    name: str
    trader: str
    initial_buy: float
    market_cap_sol: float
    v_tokens: float
    v_sol: float
    timestamp: int
    sol_amount: Optional[float] = None
    signature: Optional[str] = None

    @property
    def price(self) -> float:
        return self.v_sol / self.v_tokens


@dataclass(frozen=True, slots=True)
class TradeEvent:
    mint: str
    side: TradeSide
    trader: str
    token_amount: float
    new_balance: Optional[float]
    market_cap_sol: float
    v_tokens: float
    v_sol: float
    timestamp: int
    sol_amount: Optional[float] = None
    signature: Optional[str] = None

    @property
    def price(self) -> float:
        return self.v_sol / self.v_tokens

    @property
    def is_buy(self) -> bool:
        return self.side is TradeSide.BUY

    @property
    def signed_amount(self) -> float:
        return self.token_amount if self.is_buy else -self.token_amount

    def dedupe_key(self) -> tuple:
        if self.signature:
            return ("sig", self.signature)
        return (
            self.side.value,
            self.trader,
            self.token_amount,
            self.new_balance,
            self.market_cap_sol,
            self.v_tokens,
            self.v_sol,
            self.timestamp,
        )


FeedEvent = Union[CreateEvent, TradeEvent]

_COMMON_FIELDS = ("mint", "timestamp", "marketCapSol", "vTokensInBondingCurve", "vSolInBondingCurve")


def _require(record: Mapping[str, Any], key: str) -> Any:
    value = record.get(key)
    if value is None or value == "":
        raise MalformedEvent(f"missing field {key}", context={"field": key, "mint": record.get("mint")})
    return value


def _number(record: Mapping[str, Any], key: str, *, positive: bool = False, required: bool = True) -> Optional[float]:
    raw = _require(record, key) if required else record.get(key)
    if raw is None:
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError) as exc:
        raise MalformedEvent(
            f"field {key} is not numeric", context={"field": key, "mint": record.get("mint")}
        ) from exc
    if not math.isfinite(value) or value < 0 or (positive and value == 0):
        raise MalformedEvent(
            f"field {key} out of range: {value}", context={"field": key, "mint": record.get("mint")}
        )
    return value


def parse_feed_record(record: Mapping[str, Any]) -> FeedEvent:
    """Validate a raw feed record and build the matching event.

    Raises :class:`MalformedEvent` for missing or invalid fields and for unknown
    ``txType`` values.
    """

    if not isinstance(record, Mapping):
        raise MalformedEvent("feed record must be an object")
    tx_type = str(_require(record, "txType")).lower()
    for key in _COMMON_FIELDS:
        _require(record, key)
    mint = str(record["mint"])
    timestamp = int(_number(record, "timestamp"))
    market_cap = _number(record, "marketCapSol")
    v_tokens = _number(record, "vTokensInBondingCurve", positive=True)
    v_sol = _number(record, "vSolInBondingCurve", positive=True)
    sol_amount = _number(record, "solAmount", required=False)
    signature = record.get("signature")
    if tx_type == "create":
        return CreateEvent(
            mint=mint,
            symbol=str(_require(record, "symbol")),
            name=str(_require(record, "name")),
            trader=str(_require(record, "traderPublicKey")),
            initial_buy=_number(record, "initialBuy"),
            market_cap_sol=market_cap,
            v_tokens=v_tokens,
            v_sol=v_sol,
            timestamp=timestamp,
            sol_amount=sol_amount,
            signature=str(signature) if signature else None,
        )
    if tx_type in (TradeSide.BUY.value, TradeSide.SELL.value):
        return TradeEvent(
            mint=mint,
            side=TradeSide(tx_type),
            trader=str(_require(record, "traderPublicKey")),
            token_amount=_number(record, "tokenAmount"),
            new_balance=_number(record, "newTokenBalance"),
            market_cap_sol=market_cap,
            v_tokens=v_tokens,
            v_sol=v_sol,
            timestamp=timestamp,
            sol_amount=sol_amount,
            signature=str(signature) if signature else None,
        )
    raise MalformedEvent(f"unsupported txType {tx_type!r}", context={"mint": mint, "txType": tx_type})


__all__ = ["CreateEvent", "FeedEvent", "TradeEvent", "TradeSide", "parse_feed_record"]
