import pytest
import requests

from compoundor import prices
from compoundor.config import IBGT, LBGT, WBERA
from compoundor.errors import ConfigError, PriceIndexError
from compoundor.prices import PriceOracle, SubgraphPriceIndex

from conftest import ISLAND_A, ONE, FakePriceIndex, FakeQuoter


def make_oracle(quoter=None, price_index=None, wrapper_slippage_bps=100):
    return PriceOracle(price_index or FakePriceIndex(), quoter or FakeQuoter(amount_out=0),
                       wrapper_slippage_bps=wrapper_slippage_bps, quote_slippage_bps=20)


def test_zero_amount_is_zero_without_prices_or_quotes():
    quoter = FakeQuoter(error="should not be called")
    oracle = make_oracle(quoter=quoter)
    assert oracle.value_of(IBGT, 0, ISLAND_A) == 0
    oracle.set_price(IBGT, 2.0)
    oracle.set_price(ISLAND_A, 1.0)
    assert oracle.value_of(IBGT, 0, ISLAND_A) == 0
    assert quoter.calls == []


def test_price_ratio_without_slippage():
    oracle = make_oracle()
    oracle.set_price(IBGT, 2.0)
    oracle.set_price(ISLAND_A, 1.0)
    assert oracle.value_of(IBGT, 10 * ONE, ISLAND_A, apply_slippage=False) == 20 * ONE


def test_wrapper_slippage_scales_value():
    oracle = make_oracle(wrapper_slippage_bps=5000)
    oracle.set_price(IBGT, 2.0)
    oracle.set_price(ISLAND_A, 1.0)
    assert oracle.value_of(IBGT, 10 * ONE, ISLAND_A) == 10 * ONE


def test_value_is_floored():
    oracle = make_oracle(wrapper_slippage_bps=0)
    oracle.set_price(IBGT, 1.0)
    oracle.set_price(ISLAND_A, 3.0)
    assert oracle.value_of(IBGT, 10, ISLAND_A) == 3


def test_missing_price_falls_back_to_quote():
    quoter = FakeQuoter(amount_out=7 * ONE)
    oracle = make_oracle(quoter=quoter)
    oracle.set_price(IBGT, 2.0)

    assert oracle.value_of(IBGT, 5 * ONE, ISLAND_A) == 7 * ONE
    assert quoter.calls == [(IBGT, ISLAND_A, 5 * ONE, 20)]


def test_zero_target_price_falls_back_to_quote():
    quoter = FakeQuoter(amount_out=3)
    oracle = make_oracle(quoter=quoter)
    oracle.set_price(IBGT, 2.0)
    oracle.set_price(ISLAND_A, 0.0)
    assert oracle.value_of(IBGT, ONE, ISLAND_A) == 3


def test_full_wrapper_slippage_rejected():
    with pytest.raises(ConfigError):
        make_oracle(wrapper_slippage_bps=10000)

    oracle = make_oracle()
    oracle.set_price(IBGT, 1.0)
    oracle.set_price(ISLAND_A, 1.0)
    oracle.wrapper_slippage_bps = 10000
    with pytest.raises(ConfigError):
        oracle.value_of(IBGT, ONE, ISLAND_A)


def test_refresh_prices_native_at_base_price():
    index = FakePriceIndex(prices={IBGT: 1.5, LBGT: 1.4}, base_price=0.8)
    oracle = make_oracle(price_index=index)
    oracle.refresh([IBGT, LBGT, WBERA])
    assert oracle.price_of(IBGT) == 1.5
    assert oracle.price_of(WBERA) == 0.8
    assert index.base_calls == 1


def test_refresh_failure_leaves_empty_table():
    oracle = make_oracle(price_index=FakePriceIndex(fail=True))
    oracle.set_price(IBGT, 1.0)
    oracle.refresh([IBGT])
    assert oracle.prices == {}


class FakeResponse:

    def __init__(self, payload, status_code=200):
        self.payload = payload
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code}")

    def json(self):
        return self.payload


def test_subgraph_prices(monkeypatch):
    queries = []

    def fake_post(url, json, timeout):
        queries.append(json['query'])
        if 'bundle' in json['query']:
            return FakeResponse({'data': {'bundle': {'ethPriceUSD': "2.0"}}})
        return FakeResponse({'data': {
            'token_0': {'id': IBGT.lower(), 'derivedETH': "1.5"},
            'token_1': None,
        }})

    monkeypatch.setattr(prices.requests, "post", fake_post)
    result = SubgraphPriceIndex().fetch_prices([IBGT, LBGT])

    assert result == {IBGT.lower(): 3.0}
    assert f'token_0: token(id: "{IBGT.lower()}")' in queries[1]


def test_subgraph_missing_bundle(monkeypatch):
    monkeypatch.setattr(prices.requests, "post",
                        lambda url, json, timeout: FakeResponse({'data': {'bundle': None}}))
    with pytest.raises(PriceIndexError):
        SubgraphPriceIndex().fetch_base_price()


def test_subgraph_prices_reuse_known_base_price(monkeypatch):
    queries = []

    def fake_post(url, json, timeout):
        queries.append(json['query'])
        return FakeResponse({'data': {'token_0': {'id': IBGT.lower(), 'derivedETH': "2.0"}}})

    monkeypatch.setattr(prices.requests, "post", fake_post)
    result = SubgraphPriceIndex().fetch_prices([IBGT], base_price=0.5)

    assert result == {IBGT.lower(): 1.0}
    assert len(queries) == 1 and 'bundle' not in queries[0]
