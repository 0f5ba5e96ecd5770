"""
PositionExecutor: open / close / swap sequences for one instance.

Every collaborator call goes through the RetryManager, one call at a time,
so a retry window of a mutating step is never interleaved with another
mutating step of the same instance.

Sequences:
- open_positions     ranges + funding plan, then one call per plan slice.
                     Chain: leg A, leg B base, leg B top-up. If leg B fails
                     cleanly, leg A is closed and the chain is attempted once
                     more, unless leg B's error is non-retryable: that one is
                     raised as soon as leg A is closed. A failed top-up is
                     logged and tolerated.
- close_positions    close each address; an ambiguous close is reconciled by
                     refreshing the position (gone = landed) before retrying
- swap_to_y          leftover X -> Y, fresh quote per attempt, dust skipped
- refresh_positions  read current amounts; missing positions are reported
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from lpbot.config.strategy_config import StrategyConfig
from lpbot.core.errors import (
    ConsistencyError,
    NonRetryableExecutionError,
    PartialExecutionError,
    PositionNotFoundError,
)
from lpbot.core.interfaces import PositionService, SwapService
from lpbot.core.types import BinRange, CloseResult, Position, StrategyKind
from lpbot.execution.retry_manager import OperationClass, RetryContext, RetryManager
from lpbot.strategy.distribution_planner import AllocationSlice, DistributionPlanner, FundingStep
from lpbot.strategy.range_calculator import RangeCalculator

log = logging.getLogger("lpbot")

_EVENT_LEVELS = {
    "chain_leg_b_failed": logging.WARNING,
    "chain_topup_failed": logging.WARNING,
    "position_close_failed": logging.WARNING,
    "close_amounts_unknown": logging.WARNING,
}


@dataclass
class OpenResult:
    positions: List[Position]
    ranges: List[BinRange]
    amount: float
    chain_attempts: int = 1
    topup_failed: bool = False


@dataclass
class CloseOutcome:
    closed: List[str] = field(default_factory=list)
    returned_x: float = 0.0
    returned_y: float = 0.0
    # closed, but what they returned is not counted in returned_x / returned_y
    unknown_amounts: List[str] = field(default_factory=list)


@dataclass
class SwapOutcome:
    swapped: bool
    in_amount: float = 0.0
    out_amount: float = 0.0
    tx_ref: Optional[str] = None
    skipped_reason: Optional[str] = None


@dataclass
class PositionExecutorConfig:
    # whole-chain attempts when leg B fails after leg A opened
    chain_create_attempts: int = 2
    # X amounts at or below this are not worth a swap
    dust_threshold_x: float = 0.0
    log_event_callback: Optional[Callable[..., None]] = None


class PositionExecutor:
    """
    Executes position sequences through the RetryManager.

    Stateless apart from its collaborators: the caller owns the position
    record and passes the strategy config per call, so a config update only
    needs a new config object.
    """

    def __init__(
        self,
        instance_id: str,
        positions: PositionService,
        swaps: SwapService,
        retry: RetryManager,
        planner: Optional[DistributionPlanner] = None,
        calculator: Optional[RangeCalculator] = None,
        config: Optional[PositionExecutorConfig] = None,
    ) -> None:
        self.instance_id = instance_id
        self._positions = positions
        self._swaps = swaps
        self._retry = retry
        self._planner = planner or DistributionPlanner()
        self._calculator = calculator or RangeCalculator()
        self.config = config or PositionExecutorConfig()
        self._log_event = self.config.log_event_callback or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        payload = {"event": event, "instance_id": self.instance_id, **kwargs}
        log.log(_EVENT_LEVELS.get(event, logging.INFO), json.dumps(payload, default=str))

    @staticmethod
    def _override(strategy: StrategyConfig, op: OperationClass) -> Optional[Dict[str, Any]]:
        return strategy.retry_overrides.get(op.value)

    # ------------------------------------------------------------------
    # Open
    # ------------------------------------------------------------------

    async def open_positions(self, strategy: StrategyConfig, active_bin: int, amount: float) -> OpenResult:
        """Open the instance's position(s) around active_bin, funded with `amount` Y."""
        ranges = self._calculator.ranges_for(strategy.kind, active_bin, strategy.bin_count, strategy.effective_side)
        plan = self._planner.plan(strategy.kind, ranges, amount)
        self._log_event(
            "open_positions",
            kind=strategy.kind.value,
            active_bin=active_bin,
            ranges=[r.to_list() for r in ranges],
            amount=amount,
        )

        if strategy.kind == StrategyKind.SIMPLE:
            position = await self._open_slice(strategy, plan[0])
            return OpenResult(positions=[position], ranges=ranges, amount=amount)

        attempts = max(1, self.config.chain_create_attempts)
        attempt = 0
        while True:
            attempt += 1
            try:
                positions, topup_failed = await self._open_chain(strategy, plan)
            except _ChainLegBFailed as exc:
                if attempt >= attempts:
                    raise PartialExecutionError(
                        f"chain create failed after {attempt} attempts: {exc.cause}",
                        cause=exc.cause,
                    ) from exc.cause
                self._log_event("chain_create_retry", attempt=attempt, error=str(exc.cause))
                continue
            return OpenResult(
                positions=positions,
                ranges=ranges,
                amount=amount,
                chain_attempts=attempt,
                topup_failed=topup_failed,
            )

    async def _open_chain(self, strategy: StrategyConfig, plan: List[AllocationSlice]) -> Tuple[List[Position], bool]:
        opens = [s for s in plan if s.step == FundingStep.OPEN]
        topups = [s for s in plan if s.step == FundingStep.ADD]

        leg_a = await self._open_slice(strategy, opens[0])
        try:
            leg_b = await self._open_slice(strategy, opens[1])
        except ConsistencyError as exc:
            # leg B may have landed; nothing is unwound blindly
            raise PartialExecutionError(
                f"chain leg B outcome unknown: {exc}",
                completed=[leg_a],
                cause=exc,
            ) from exc
        except Exception as exc:
            self._log_event("chain_leg_b_failed", leg_a=leg_a.address, error=str(exc))
            try:
                await self.close_positions(strategy, [leg_a.address])
            except PartialExecutionError as close_exc:
                raise PartialExecutionError(
                    f"chain leg B failed and leg A could not be closed: {close_exc}",
                    completed=[leg_a],
                    cause=exc,
                ) from exc
            if isinstance(exc, NonRetryableExecutionError):
                raise
            raise _ChainLegBFailed(exc) from exc

        topup_failed = False
        for topup in topups:
            try:
                leg_b = await self._retry.run(
                    lambda s=topup, addr=leg_b.address: self._positions.add_liquidity(addr, s.shape.value, s.amount),
                    OperationClass.POSITION_CREATE,
                    self.instance_id,
                    self._override(strategy, OperationClass.POSITION_CREATE),
                    validate=_valid_position,
                )
            except Exception as exc:
                topup_failed = True
                self._log_event("chain_topup_failed", address=leg_b.address, amount=topup.amount, error=str(exc))
        return [leg_a, leg_b], topup_failed

    async def _open_slice(self, strategy: StrategyConfig, slice_: AllocationSlice) -> Position:
        position = await self._retry.run(
            lambda: self._positions.open(strategy.pool_address, slice_.bin_range, slice_.shape.value, slice_.amount),
            OperationClass.POSITION_CREATE,
            self.instance_id,
            self._override(strategy, OperationClass.POSITION_CREATE),
            validate=_valid_position,
        )
        self._log_event(
            "position_opened",
            leg=slice_.leg,
            address=position.address,
            range=slice_.bin_range.to_list(),
            shape=slice_.shape.value,
            amount=slice_.amount,
        )
        return position

    # ------------------------------------------------------------------
    # Close / swap
    # ------------------------------------------------------------------

    async def close_positions(self, strategy: StrategyConfig, addresses: List[str]) -> CloseOutcome:
        """
        Close every address, continuing past failures.

        Raises PartialExecutionError listing the addresses still open when any
        close could not be completed.
        """
        outcome = CloseOutcome()
        failed: List[str] = []
        last_error: Optional[BaseException] = None
        for address in addresses:
            try:
                result = await self._retry.run(
                    lambda addr=address: self._positions.close(addr),
                    OperationClass.POSITION_CLOSE,
                    self.instance_id,
                    self._override(strategy, OperationClass.POSITION_CLOSE),
                    reconcile=lambda err, ctx, addr=address: self._reconcile_close(addr, err, ctx),
                )
            except Exception as exc:
                failed.append(address)
                last_error = exc
                self._log_event("position_close_failed", address=address, error=str(exc))
                continue
            outcome.closed.append(address)
            if not result.amounts_known:
                outcome.unknown_amounts.append(address)
                self._log_event("close_amounts_unknown", address=address)
                continue
            outcome.returned_x += result.returned_x
            outcome.returned_y += result.returned_y
            self._log_event(
                "position_closed",
                address=address,
                returned_x=result.returned_x,
                returned_y=result.returned_y,
            )
        if failed:
            raise PartialExecutionError(
                f"{len(failed)} of {len(addresses)} position(s) could not be closed: {last_error}",
                completed=outcome.closed,
                remaining=failed,
                cause=last_error,
            )
        return outcome

    async def _reconcile_close(self, address: str, error: BaseException, ctx: RetryContext) -> Optional[CloseResult]:
        """
        A position that no longer exists was closed; one that still exists was not.

        The returned amounts of a close confirmed this way are unknown: the
        result carries amounts_known=False and zero amounts, so its X is not
        swapped and callers funding a rebuild fall back on their own figures.
        """
        try:
            await self._positions.refresh(address)
        except PositionNotFoundError:
            self._log_event("close_reconciled", address=address, landed=True, attempt=ctx.attempt, error=str(error))
            return CloseResult(amounts_known=False)
        self._log_event("close_reconciled", address=address, landed=False, attempt=ctx.attempt, error=str(error))
        return None

    async def swap_to_y(self, strategy: StrategyConfig, amount_x: float) -> SwapOutcome:
        if amount_x <= self.config.dust_threshold_x:
            return SwapOutcome(swapped=False, in_amount=amount_x, skipped_reason="dust")

        async def quote_and_swap():
            quote = await self._swaps.quote(strategy.token_x, strategy.token_y, amount_x)
            return await self._swaps.swap(quote, strategy.slippage_bps)

        result = await self._retry.run(
            quote_and_swap,
            OperationClass.TOKEN_SWAP,
            self.instance_id,
            self._override(strategy, OperationClass.TOKEN_SWAP),
            validate=lambda r: r is not None and r.output_amount >= 0,
        )
        self._log_event("swap_done", in_amount=amount_x, out_amount=result.output_amount, tx_ref=result.tx_ref)
        return SwapOutcome(swapped=True, in_amount=amount_x, out_amount=result.output_amount, tx_ref=result.tx_ref)

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    async def refresh_positions(
        self,
        strategy: StrategyConfig,
        addresses: List[str],
    ) -> Tuple[List[Position], List[str]]:
        """Return (refreshed positions, addresses no longer on chain)."""
        refreshed: List[Position] = []
        missing: List[str] = []
        for address in addresses:
            try:
                position = await self._retry.run(
                    lambda addr=address: self._positions.refresh(addr),
                    OperationClass.READ_QUERY,
                    self.instance_id,
                    self._override(strategy, OperationClass.READ_QUERY),
                )
            except PositionNotFoundError:
                missing.append(address)
                self._log_event("position_missing", address=address)
                continue
            refreshed.append(position)
        return refreshed, missing


class _ChainLegBFailed(Exception):
    """Leg B failed cleanly and leg A was closed; the chain may be retried."""

    def __init__(self, cause: BaseException) -> None:
        super().__init__(str(cause))
        self.cause = cause


def _valid_position(position: Any) -> bool:
    return isinstance(position, Position) and bool(position.address)
