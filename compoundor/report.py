"""
Cycle report rendering
"""

from datetime import datetime
from typing import Optional

from rich.console import Console
from rich.table import Table

from compoundor.config import EXPLORER_TX_URL, TOKEN_DECIMALS, WBERA, WRAPPERS
from compoundor.models import STATUS_FAILED, STATUS_SKIPPED, STATUS_SUCCESS, CycleReport

WRAPPER_NAMES = dict(zip([w.lower() for w in WRAPPERS], ["yBGT", "LBGT", "iBGT", "mBGT"]))
WRAPPER_NAMES[WBERA.lower()] = "BERA"

STATUS_STYLES = {
    STATUS_SUCCESS: "green",
    STATUS_SKIPPED: "yellow",
    STATUS_FAILED: "red",
}


def format_readable_amount(amount: int, decimals: int = TOKEN_DECIMALS) -> str:
    """Base units as a short human number: 1.23M, 4.5K, 12.3456, 0.12, 1.00e-05"""
    value = amount / 10 ** decimals
    if value == 0:
        return "0"
    if abs(value) >= 1_000_000:
        return f"{value / 1_000_000:.2f}M"
    if abs(value) >= 1_000:
        return f"{value / 1_000:.2f}K"
    if abs(value) >= 1:
        return f"{value:.4f}".rstrip("0").rstrip(".")
    if abs(value) >= 0.01:
        return f"{float(f'{value:.2g}')}"
    return f"{value:.2e}"


def calculate_bounty_percentage(value: int, bounty: int) -> str:
    if bounty == 0:
        return "0%"
    return f"{value / bounty * 100:.2f}%"


def format_address(address: Optional[str]) -> str:
    """Format address for display (shortened)"""
    if not address:
        return "0x0000"
    return f"{address[:6]}...{address[-4:]}"


def wrapper_name(address: Optional[str]) -> str:
    if not address:
        return "-"
    return WRAPPER_NAMES.get(address.lower(), format_address(address))


def tx_link(tx_hash: str) -> str:
    return f"{EXPLORER_TX_URL}/{tx_hash}"


def render_report(report: CycleReport, console: Optional[Console] = None):
    """Print the ineligible, eligible and outcome sections plus timings"""
    console = console or Console()
    started = datetime.fromtimestamp(report.started_at).strftime('%Y-%m-%d %H:%M:%S')
    console.rule(f"Ran at {started} | block {report.block_number}")

    ineligible = Table(title=f"Not ready to compound: {len(report.ineligible)}", expand=True)
    ineligible.add_column("Vault", style="cyan", no_wrap=True)
    ineligible.add_column("Wrapper")
    ineligible.add_column("Value / Bounty", justify="right")
    ineligible.add_column("Reason")
    for item in report.ineligible:
        v = item.vault
        ineligible.add_row(
            v.symbol or format_address(v.vault_address),
            wrapper_name(v.selected_wrapper),
            f"{format_readable_amount(v.wrapper_value_in_staking_token)} / {format_readable_amount(v.bounty)}"
            f" ({calculate_bounty_percentage(v.wrapper_value_in_staking_token, v.bounty)})",
            item.reason,
        )
    console.print(ineligible)

    eligible = Table(title=f"Ready to compound: {len(report.eligible)}", expand=True)
    eligible.add_column("Vault", style="cyan", no_wrap=True)
    eligible.add_column("Wrapper")
    eligible.add_column("Earned BGT", justify="right")
    eligible.add_column("Quote / Bounty", justify="right")
    for item in report.eligible:
        v = item.vault
        eligible.add_row(
            v.symbol or format_address(v.vault_address),
            wrapper_name(v.selected_wrapper),
            format_readable_amount(v.earned_reward),
            f"{format_readable_amount(item.quote.amount_out)} / {format_readable_amount(v.bounty)}"
            f" ({calculate_bounty_percentage(item.quote.amount_out, v.bounty)})",
        )
    console.print(eligible)

    if report.outcomes:
        outcomes = Table(title="Results", expand=True)
        outcomes.add_column("Vault", style="cyan", no_wrap=True)
        outcomes.add_column("Status", justify="center")
        outcomes.add_column("Retries", justify="right")
        outcomes.add_column("Surplus", justify="right")
        outcomes.add_column("Details")
        for outcome in report.outcomes:
            style = STATUS_STYLES.get(outcome.status, "white")
            details = tx_link(outcome.tx_hash) if outcome.tx_hash else (outcome.error or "")
            if outcome.status == STATUS_FAILED:
                details = f"{details} (island {outcome.vault.staking_token})"
            outcomes.add_row(
                outcome.vault.symbol or format_address(outcome.vault.vault_address),
                f"[{style}]{outcome.status}[/{style}]",
                str(outcome.retry_count),
                format_readable_amount(outcome.surplus) if outcome.surplus is not None else "-",
                details,
            )
        console.print(outcomes)

    stats = ", ".join(f"{k}={v}" for k, v in report.rpc_stats.items())
    console.print(
        f"Fetch: {report.fetch_seconds:.2f}s | "
        f"Transactions: {report.tx_seconds:.2f}s "
        f"({report.count(STATUS_SUCCESS)} successful, {report.count(STATUS_SKIPPED)} skipped, "
        f"{report.count(STATUS_FAILED)} failed) | "
        f"Total: {report.total_seconds:.2f}s"
        + (f" | RPC: {stats}" if stats else "")
    )
