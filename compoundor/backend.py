import logging
from typing import Dict, Any, List

import requests
from pydantic import ValidationError
from web3 import Web3

from compoundor.config import KODIAK_VAULTS_API_URL
from compoundor.errors import BackendError
from compoundor.models import VaultRecord
from compoundor.schemas import BackendVaultList

logger = logging.getLogger(__name__)


def fetch_vaults(config: Dict[str, Any], url: str = KODIAK_VAULTS_API_URL,
                 timeout: int = 20) -> List[VaultRecord]:
    """Fetch Kodiak islands that have a bault, honoring the allow-lists"""
    try:
        response = requests.get(url, timeout=timeout)
    except requests.RequestException as e:
        raise BackendError(f"Vault list request failed: {e}") from e

    if not response.ok:
        logger.error(f"Error fetching baults from Kodiak backend: {response.status_code} {response.reason}")
        return []

    try:
        payload = BackendVaultList.model_validate(response.json())
    except (ValueError, ValidationError) as e:
        raise BackendError(f"Malformed vault list: {e}") from e

    only_baults = set(config.get('onlyBaults') or [])
    only_staking_tokens = set(config.get('onlyStakingTokens') or [])

    vaults = []
    for island in payload.data:
        if island.provider != "kodiak" or not island.id or not island.baults:
            continue
        bault = island.baults[0].id
        if only_baults and bault.lower() not in only_baults:
            continue
        if only_staking_tokens and island.id.lower() not in only_staking_tokens:
            continue
        try:
            vaults.append(VaultRecord(
                vault_address=Web3.to_checksum_address(bault),
                staking_token=Web3.to_checksum_address(island.id),
                symbol=island.tokenLp.symbol,
                staking_token_price=island.tokenLp.price,
            ))
        except ValueError:
            logger.warning(f"Skipping island with invalid address: {island.id} / {bault}")

    logger.debug(f"Backend returned {len(vaults)} baults")
    return vaults
