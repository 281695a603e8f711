"""Concurrent submission of pre-signed transactions and acknowledgement timing."""
from __future__ import annotations

import asyncio
import sys
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from eth_utils import to_hex
from web3 import AsyncWeb3
from web3.exceptions import TimeExhausted

from .errors import BroadcastError
from .txfactory import SignedVerifyTx


@dataclass
class BroadcastOutcome:
    index: int
    sender: str
    tx_hash: Optional[str] = None
    ack_sec: Optional[float] = None
    error: Optional[str] = None
    status: Optional[int] = None
    gas_used: Optional[int] = None
    block_number: Optional[int] = None

    @property
    def accepted(self) -> bool:
        return self.error is None


@dataclass
class BroadcastResult:
    outcomes: List[BroadcastOutcome]
    elapsed: float
    failures: List[BroadcastOutcome] = field(init=False)

    def __post_init__(self) -> None:
        self.failures = [outcome for outcome in self.outcomes if not outcome.accepted]

    @property
    def accepted(self) -> int:
        return len(self.outcomes) - len(self.failures)

    @property
    def failed(self) -> int:
        return len(self.failures)

    @property
    def tps(self) -> float:
        return compute_tps(self.accepted, self.elapsed)

    @property
    def failure_rate(self) -> float:
        return self.failed / len(self.outcomes) if self.outcomes else 0.0


def compute_tps(count: int, elapsed: float) -> float:
    return count / elapsed if elapsed > 0 else 0.0


class Broadcaster:
    """Submits raw transactions concurrently and times their acknowledgements.

    The timed window opens immediately before the first submission and closes
    once every ``eth_sendRawTransaction`` call has returned. Block inclusion is
    not part of the measurement.
    """

    def __init__(
        self,
        web3: AsyncWeb3,
        timeout: Optional[float] = None,
        max_in_flight: Optional[int] = None,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self.web3 = web3
        self.timeout = timeout
        self.max_in_flight = max_in_flight
        self.clock = clock

    async def _submit(
        self,
        item: SignedVerifyTx,
        start: float,
        semaphore: asyncio.Semaphore,
    ) -> BroadcastOutcome:
        outcome = BroadcastOutcome(index=item.index, sender=item.sender)
        async with semaphore:
            try:
                request = self.web3.eth.send_raw_transaction(item.raw)
                if self.timeout is not None:
                    tx_hash = await asyncio.wait_for(request, self.timeout)
                else:
                    tx_hash = await request
                outcome.tx_hash = to_hex(tx_hash)
                outcome.ack_sec = self.clock() - start
            except asyncio.TimeoutError:
                outcome.tx_hash = item.tx_hash
                outcome.error = f"no acknowledgement within {self.timeout}s"
            except Exception as exc:  # noqa: BLE001 - rejection is recorded per transaction
                outcome.tx_hash = item.tx_hash
                outcome.error = str(exc) or type(exc).__name__
        if outcome.error:
            print(
                f"[ERROR] Submission {item.index} from {item.sender} failed: {outcome.error}",
                file=sys.stderr,
            )
        return outcome

    async def broadcast(
        self, signed_txs: Sequence[SignedVerifyTx], fail_fast: bool = False
    ) -> BroadcastResult:
        semaphore = asyncio.Semaphore(self.max_in_flight or max(1, len(signed_txs)))
        start = self.clock()
        outcomes = await asyncio.gather(
            *(self._submit(item, start, semaphore) for item in signed_txs)
        )
        elapsed = self.clock() - start

        result = BroadcastResult(outcomes=list(outcomes), elapsed=elapsed)
        if fail_fast and result.failures:
            failed = [outcome.index for outcome in result.failures]
            raise BroadcastError(
                f"{len(failed)} of {len(outcomes)} submissions rejected "
                f"(first: {result.failures[0].error})",
                failed_indices=failed,
            )
        return result


async def collect_receipts(
    web3: AsyncWeb3,
    outcomes: Sequence[BroadcastOutcome],
    timeout: float = 120,
) -> List[BroadcastOutcome]:
    """Fill status, gas and block of accepted transactions once the clock is stopped."""

    async def fetch(outcome: BroadcastOutcome) -> None:
        if not outcome.accepted or not outcome.tx_hash:
            return
        try:
            receipt: Dict[str, Any] = await web3.eth.wait_for_transaction_receipt(
                outcome.tx_hash, timeout=timeout
            )
        except TimeExhausted:
            print(
                f"[ERROR] Receipt timeout for submission {outcome.index} ({outcome.tx_hash})",
                file=sys.stderr,
            )
            return
        except Exception as exc:  # noqa: BLE001 - auditing is best effort
            print(
                f"[ERROR] Failed while fetching receipt for {outcome.tx_hash}: {exc}",
                file=sys.stderr,
            )
            return
        outcome.status = receipt.get("status")
        outcome.gas_used = receipt.get("gasUsed")
        outcome.block_number = receipt.get("blockNumber")

    await asyncio.gather(*(fetch(outcome) for outcome in outcomes))
    return list(outcomes)
