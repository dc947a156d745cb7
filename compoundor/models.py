"""
Records passed between the compoundor stages
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from compoundor.schemas import Quote

STATUS_SUCCESS = 'success'
STATUS_SKIPPED = 'skipped'
STATUS_FAILED = 'failed'


@dataclass
class VaultRecord:
    """One bault and its per-cycle on-chain snapshot"""
    vault_address: str
    staking_token: str
    symbol: str
    staking_token_price: Optional[float] = None
    bounty: int = 0
    earned_reward: int = 0
    wrapper_restriction: Optional[str] = None  # None means any wrapper
    block_number: Optional[int] = None
    selected_wrapper: Optional[str] = None
    wrapper_mint_amount: int = 0
    wrapper_value_in_staking_token: int = 0
    error: Optional[str] = None


@dataclass(frozen=True)
class WrapperPreview:
    """Batched previewClaimBgtWrapper results for one vault"""
    wrapper_mint_amounts: List[int]
    earned: int
    has_any_failure: bool


@dataclass(frozen=True)
class Selection:
    wrapper: str
    mint_amount: int
    value_in_staking_token: int


@dataclass
class EligibleVault:
    vault: VaultRecord
    quote: Quote


@dataclass
class IneligibleVault:
    vault: VaultRecord
    reason: str
    shortfall: int = 0


@dataclass
class RetryRecord:
    attempt_count: int
    baseline_earned: int


class RetryBook:
    """Retry state per vault, kept by the scheduler across cycles"""

    def __init__(self):
        self._records: Dict[str, RetryRecord] = {}

    def get(self, vault: str) -> Optional[RetryRecord]:
        return self._records.get(vault.lower())

    def record_failure(self, vault: str, attempt_count: int, baseline_earned: int) -> RetryRecord:
        """Store the attempt count, keeping the first baseline seen"""
        existing = self.get(vault)
        baseline = existing.baseline_earned if existing else baseline_earned
        record = RetryRecord(attempt_count=attempt_count, baseline_earned=baseline)
        self._records[vault.lower()] = record
        return record

    def clear(self, vault: str):
        self._records.pop(vault.lower(), None)

    def __contains__(self, vault: str) -> bool:
        return vault.lower() in self._records

    def __len__(self) -> int:
        return len(self._records)


@dataclass
class CompoundOutcome:
    vault: VaultRecord
    status: str
    retry_count: int = 0
    tx_hash: Optional[str] = None
    surplus: Optional[int] = None
    error: Optional[str] = None


@dataclass
class CycleReport:
    started_at: float
    block_number: int = 0
    ineligible: List[IneligibleVault] = field(default_factory=list)
    eligible: List[EligibleVault] = field(default_factory=list)
    outcomes: List[CompoundOutcome] = field(default_factory=list)
    fetch_seconds: float = 0.0
    tx_seconds: float = 0.0
    total_seconds: float = 0.0
    rpc_stats: Dict[str, int] = field(default_factory=dict)

    def count(self, status: str) -> int:
        return sum(1 for o in self.outcomes if o.status == status)

    @property
    def failed(self) -> bool:
        """Every executed vault failed"""
        return bool(self.outcomes) and self.count(STATUS_FAILED) == len(self.outcomes)
