from __future__ import annotations

import time
from typing import Any, Dict, List

import pytest
import requests

from pump_recovery_bot.config.settings import SolPriceConfig
from pump_recovery_bot.ingestion.sol_price import SolPriceOracle, SolPriceUnavailable


class FakeResponse:
    def __init__(self, payload: Dict[str, Any], status: int = 200) -> None:
        self._payload = payload
        self.status_code = status

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"status {self.status_code}")

    def json(self) -> Dict[str, Any]:
        return self._payload


class FakeSession:
    def __init__(self, responses: List[FakeResponse]) -> None:
        self._responses = responses
        self.calls = 0

    def get(self, url: str, **kwargs: Any) -> FakeResponse:
        self.calls += 1
        return self._responses[min(self.calls, len(self._responses)) - 1]


@pytest.fixture(autouse=True)
def no_backoff(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(time, "sleep", lambda seconds: None)


def test_refresh_caches_fetched_price() -> None:
    session = FakeSession([FakeResponse({"solana": {"usd": 180.0}})])
    oracle = SolPriceOracle(SolPriceConfig(fallback_price_usd=None), session=session)

    assert oracle.refresh() == 180.0
    assert oracle.refresh() == 180.0
    assert session.calls == 1
    assert oracle.price == 180.0
    assert oracle.sol_to_usd(2.0) == 360.0
    assert oracle.usd_to_sol(90.0) == 0.5


def test_failed_refresh_falls_back_to_configured_price() -> None:
    session = FakeSession([FakeResponse({}, status=503)])
    oracle = SolPriceOracle(SolPriceConfig(fallback_price_usd=150.0), session=session)

    assert oracle.refresh() is None
    assert session.calls == 3
    assert oracle.price == 150.0


def test_unknown_price_without_fallback_raises() -> None:
    session = FakeSession([FakeResponse({"solana": {"usd": 0}})])
    oracle = SolPriceOracle(SolPriceConfig(fallback_price_usd=None), session=session)

    assert oracle.refresh() is None
    with pytest.raises(SolPriceUnavailable):
        oracle.price


def test_static_price_skips_network() -> None:
    session = FakeSession([])
    oracle = SolPriceOracle(SolPriceConfig(static_price_usd=100.0), session=session)

    assert oracle.is_static
    assert oracle.refresh() == 100.0
    assert oracle.price == 100.0
    assert session.calls == 0
