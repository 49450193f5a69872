"""
Rebase scheduler

Grows the scaling factor of every active yield token on a fixed cadence
so that a day of runs compounds to the configured APR/APY.
"""
import logging
import math
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_FLOOR, localcontext
from typing import List, Optional

from pydantic import ValidationError

from kubi_pipeline.db import Database
from kubi_pipeline.errors import RebaseSkipped
from kubi_pipeline.models.yield_config import ProviderExtra, ProviderToken, RateMode, TokenConfig
from kubi_pipeline.services.ledger import LedgerService

logger = logging.getLogger(__name__)

DAYS_PER_YEAR = 365.0


def apr_to_daily(apr_percent: float) -> float:
    """12.5 (percent APR) -> daily growth fraction"""
    return (apr_percent / 100.0) / DAYS_PER_YEAR


def apy_to_daily(apy_percent: float) -> float:
    """12.5 (percent APY, compounded daily) -> daily growth fraction"""
    return math.pow(1.0 + apy_percent / 100.0, 1.0 / DAYS_PER_YEAR) - 1.0


def growth_per_rebase(daily_growth: float, runs_per_day: int) -> float:
    """Per-run growth that compounds to daily_growth over runs_per_day runs"""
    if daily_growth == 0:
        return 0.0
    base = 1.0 + daily_growth
    if base <= 0:
        return 0.0
    return math.pow(base, 1.0 / runs_per_day) - 1.0


def compute_new_scaling_factor(current_factor: int, growth: float) -> int:
    """floor(current_factor * (1 + growth)), exact for uint256 factors"""
    if growth <= 0:
        return current_factor
    with localcontext() as ctx:
        ctx.prec = 100
        candidate = Decimal(current_factor) * (Decimal(1) + Decimal(growth))
        return int(candidate.to_integral_value(rounding=ROUND_FLOOR))


def daily_growth_for_config(config: TokenConfig) -> float:
    if config.mode == RateMode.APR:
        return apr_to_daily(config.percent)
    if config.mode == RateMode.APY:
        return apy_to_daily(config.percent)
    raise ValueError(f"Unknown rate mode: {config.mode}")


def load_active_provider_tokens(ledger: LedgerService, chain_id: int) -> List[ProviderToken]:
    """
    Active providers on chain_id resolved to their yield tokens.

    extra_data overrides (percent, mode, name, active, skipIfZero) are
    validated here, once per load. Invalid extra_data is ignored.
    """
    result: List[ProviderToken] = []

    for provider, token in ledger.active_yield_providers(chain_id):
        if not token.address:
            logger.warning(f"Skip yield provider {provider.id}: empty representative token address")
            continue
        if provider.apr is None:
            logger.warning(f"Skip yield provider {provider.id}: apr is NULL")
            continue

        try:
            extra = ProviderExtra.model_validate(provider.extra_data or {})
        except ValidationError as e:
            logger.warning(f"Yield provider {provider.id} has invalid extra_data, using defaults: {e}")
            extra = ProviderExtra()

        percent = extra.percent if extra.percent is not None else float(provider.apr)
        if percent <= 0:
            logger.warning(f"Skip yield provider {provider.id}: apr <= 0 ({percent})")
            continue
        if not extra.active:
            logger.info(f"Skip yield provider {provider.id}: disabled in extra_data")
            continue

        result.append(ProviderToken(
            provider_id=provider.id,
            name=extra.name or token.symbol or provider.protocol_name or provider.id,
            address=token.address,
            config=TokenConfig(
                mode=extra.mode or RateMode.APR,
                percent=percent,
                active=True,
                skip_if_zero=extra.skipIfZero,
            ),
        ))

    return result


def next_run_at(now: datetime, interval_minutes: int) -> datetime:
    """Next slot on the interval grid anchored at midnight UTC"""
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    elapsed = (now - midnight).total_seconds()
    slots = math.floor(elapsed / (interval_minutes * 60)) + 1
    return midnight + timedelta(minutes=slots * interval_minutes)


@dataclass
class RunSummary:
    submitted: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


class RebaseScheduler:
    """
    Sequential rebase runs over the active yield tokens of one chain.

    Only one run executes at a time; a run triggered while another is in
    flight is skipped rather than queued.
    """

    def __init__(self, database: Database, token_client, chain_id: int, runs_per_day: int):
        self.db = database
        self.token_client = token_client
        self.chain_id = chain_id
        self.runs_per_day = runs_per_day
        self._run_lock = threading.Lock()

    def load_tokens(self) -> List[ProviderToken]:
        with self.db.session() as session:
            return load_active_provider_tokens(LedgerService(session), self.chain_id)

    def mark_applied(self, provider_id: str) -> None:
        with self.db.session() as session:
            LedgerService(session).mark_rate_applied(provider_id)

    def rebase_token(self, token: ProviderToken) -> str:
        """
        Rebase one token.

        Returns:
            Transaction hash

        Raises:
            RebaseSkipped: When the computed factor would not grow
        """
        config = token.config
        if config.percent <= 0:
            raise RebaseSkipped(f"percent must be > 0 (got {config.percent})")

        current = self.token_client.scaling_factor(token.address)
        if current == 0 and config.skip_if_zero:
            raise RebaseSkipped("scaling factor is zero")

        daily = daily_growth_for_config(config)
        per_run = growth_per_rebase(daily, self.runs_per_day)
        candidate = compute_new_scaling_factor(current, per_run)

        if candidate <= current:
            raise RebaseSkipped(
                f"computed newFactor <= currentFactor "
                f"(current={current} new={candidate} intervalGrowth={per_run})"
            )

        tx_hash = self.token_client.rebase(token.address, candidate)
        logger.info(
            f"[{token.name}] rebased: tx={tx_hash} intervalGrowth={per_run * 100:.8f}% "
            f"dailyGrowth={daily * 100:.6f}% current={current} new={candidate}"
        )
        return tx_hash

    def run_once(self) -> Optional[RunSummary]:
        """One scheduled run; None if a previous run was still in flight"""
        if not self._run_lock.acquire(blocking=False):
            logger.warning("Previous rebase run still in progress, skipping this run")
            return None

        try:
            logger.info(f"== rebase run {datetime.now(timezone.utc).isoformat()} chain={self.chain_id} ==")
            summary = RunSummary()
            tokens = self.load_tokens()
            if not tokens:
                logger.info(f"No active yield providers found for chainID={self.chain_id}")
                return summary

            for token in tokens:
                try:
                    self.rebase_token(token)
                    self.mark_applied(token.provider_id)
                    summary.submitted.append(token.provider_id)
                except RebaseSkipped as e:
                    logger.info(f"[{token.name}] rebase skipped: {e}")
                    summary.skipped.append(token.provider_id)
                except Exception as e:
                    logger.error(f"[{token.name}] rebase error: {e}", exc_info=True)
                    summary.failed.append(token.provider_id)
            return summary
        finally:
            self._run_lock.release()

    def run_forever(self, stop_event: threading.Event, interval_minutes: int) -> None:
        """Run now, then on every interval slot until stop_event is set"""
        logger.info(f"Rebase scheduler started: every {interval_minutes} min, {self.runs_per_day} runs/day")
        while not stop_event.is_set():
            try:
                self.run_once()
            except Exception as e:
                logger.error(f"Error in rebase job: {e}", exc_info=True)

            now = datetime.now(timezone.utc)
            wait = (next_run_at(now, interval_minutes) - now).total_seconds()
            logger.debug(f"Next rebase run in {wait:.0f}s")
            stop_event.wait(wait)
        logger.info("Rebase scheduler stopped")
