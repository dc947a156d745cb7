"""
Token pricing for wrapper valuation

SubgraphPriceIndex reads USD prices from the Kodiak v3 subgraph. PriceOracle
keeps the per-cycle price table and converts token amounts into staking-token
base units, falling back to a live swap quote when a price is missing.
"""

import logging
import math
from typing import Dict, Iterable, List, Optional

import requests
from pydantic import ValidationError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from compoundor.config import BPS_DENOMINATOR, PRICE_SUBGRAPH_URL, TOKEN_DECIMALS, WBERA, check_wrapper_slippage
from compoundor.errors import PriceIndexError
from compoundor.schemas import SubgraphBundle, SubgraphResponse, SubgraphToken

logger = logging.getLogger(__name__)


class SubgraphPriceIndex:
    """USD prices from the Kodiak subgraph, base asset priced by bundle 1"""

    def __init__(self, url: str = PRICE_SUBGRAPH_URL, timeout: int = 15):
        self.url = url
        self.timeout = timeout

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(min=1, max=10),
           retry=retry_if_exception_type(requests.RequestException), reraise=True)
    def _post(self, query: str) -> SubgraphResponse:
        response = requests.post(self.url, json={'query': query}, timeout=self.timeout)
        response.raise_for_status()
        try:
            return SubgraphResponse.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise PriceIndexError(f"Malformed subgraph response: {e}") from e

    def fetch_base_price(self) -> float:
        """USD price of the base asset (BERA)"""
        payload = self._post('{ bundle(id: "1") { ethPriceUSD } }')
        raw = (payload.data or {}).get('bundle')
        bundle = SubgraphBundle.model_validate(raw) if raw else SubgraphBundle()
        if not bundle.ethPriceUSD:
            raise PriceIndexError("Failed to fetch BERA price from bundle")
        return float(bundle.ethPriceUSD)

    def fetch_prices(self, tokens: List[str], base_price: Optional[float] = None) -> Dict[str, float]:
        """USD price per token, keyed by lowercase address; unknown tokens are omitted"""
        if base_price is None:
            base_price = self.fetch_base_price()
        if not tokens:
            return {}

        aliases = "\n".join(
            f'token_{i}: token(id: "{address.lower()}") {{ id derivedETH }}'
            for i, address in enumerate(tokens)
        )
        payload = self._post(f"query {{\n{aliases}\n}}")
        data = payload.data or {}

        prices = {}
        for i, address in enumerate(tokens):
            raw = data.get(f"token_{i}")
            if not raw:
                continue
            token = SubgraphToken.model_validate(raw)
            if token.derivedETH:
                prices[address.lower()] = float(token.derivedETH) * base_price
        return prices


class PriceOracle:
    """Values token amounts in a target token's base units"""

    def __init__(self, price_index, quoter, wrapper_slippage_bps: int, quote_slippage_bps: int):
        check_wrapper_slippage(wrapper_slippage_bps)
        self.price_index = price_index
        self.quoter = quoter
        self.wrapper_slippage_bps = wrapper_slippage_bps
        self.quote_slippage_bps = quote_slippage_bps
        self.prices: Dict[str, float] = {}

    def refresh(self, tokens: Iterable[str]):
        """Reload the price table for this cycle; the native asset uses the base price"""
        tokens = [t for t in tokens if t.lower() != WBERA.lower()]
        try:
            base_price = self.price_index.fetch_base_price()
            prices = self.price_index.fetch_prices(tokens, base_price=base_price)
            prices[WBERA.lower()] = base_price
        except (PriceIndexError, requests.RequestException) as e:
            logger.warning(f"Price index unavailable, valuations will use live quotes: {e}")
            prices = {}
        self.prices = prices
        logger.debug(f"Loaded {len(prices)} token prices")

    def set_price(self, token: str, price: Optional[float]):
        if price is None:
            self.prices.pop(token.lower(), None)
        else:
            self.prices[token.lower()] = price

    def price_of(self, token: str) -> Optional[float]:
        return self.prices.get(token.lower())

    def value_of(self, token: str, amount: int, target: str, apply_slippage: bool = True) -> int:
        """Value of `amount` token base units in target base units, floored"""
        if amount == 0:
            return 0

        p_token = self.price_of(token)
        p_target = self.price_of(target)

        if p_token is None or p_target is None or p_target <= 0:
            quote = self.quoter.quote(token, target, amount, self.quote_slippage_bps)
            return quote.amount_out

        check_wrapper_slippage(self.wrapper_slippage_bps)

        units = amount / 10 ** TOKEN_DECIMALS
        value = units * p_token / p_target
        if apply_slippage:
            value *= (BPS_DENOMINATOR - self.wrapper_slippage_bps) / BPS_DENOMINATOR
        return int(math.floor(value * 10 ** TOKEN_DECIMALS))
