import logging
from typing import Optional

import requests
from pydantic import ValidationError

from compoundor.config import BOUNTY_HELPER_ADDRESS, CHAIN_ID, ENSO_ROUTE_URL
from compoundor.errors import QuoteError
from compoundor.schemas import Quote

logger = logging.getLogger(__name__)


class EnsoQuoter:
    """Swap quotes routed through the BountyHelper"""

    def __init__(self, api_key: str, url: str = ENSO_ROUTE_URL, chain_id: int = CHAIN_ID,
                 timeout: int = 15, session: Optional[requests.Session] = None):
        self.api_key = api_key
        self.url = url
        self.chain_id = chain_id
        self.timeout = timeout
        self.session = session or requests.Session()

    def quote(self, token_in: str, token_out: str, amount: int, slippage_bps: int) -> Quote:
        """Quote `amount` of token_in into token_out; raises QuoteError"""
        params = {
            'chainId': self.chain_id,
            'fromAddress': BOUNTY_HELPER_ADDRESS,
            'receiver': BOUNTY_HELPER_ADDRESS,
            'spender': BOUNTY_HELPER_ADDRESS,
            'tokenIn': token_in,
            'tokenOut': token_out,
            'amountIn': str(amount),
            'slippage': str(slippage_bps),
            'routingStrategy': 'router',
        }
        headers = {
            'Authorization': f"Bearer {self.api_key}",
            'Content-Type': 'application/json',
        }

        try:
            response = self.session.get(self.url, params=params, headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            raise QuoteError(f"request failed: {e}") from e

        if not response.ok:
            logger.warning(f"Enso quote {token_in} -> {token_out} returned {response.status_code}: {response.text[:200]}")
            raise QuoteError(f"HTTP {response.status_code}")

        try:
            quote = Quote.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise QuoteError(f"unusable response: {e}") from e

        logger.debug(f"Quote {amount} {token_in} -> {quote.amount_out} {token_out} @ {slippage_bps}bps")
        return quote
