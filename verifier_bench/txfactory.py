"""Signed verification transactions, one disposable identity per transaction."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, List

from eth_account import Account
from eth_utils import to_checksum_address, to_hex

from .errors import SigningError


@dataclass(frozen=True)
class TxTemplate:
    to: str
    data: bytes
    gas: int
    chain_id: int
    gas_price: int = 0

    def unsigned(self) -> Dict[str, Any]:
        # Every identity is fresh, so nonce 0 is always the next nonce.
        return {
            "to": to_checksum_address(self.to),
            "nonce": 0,
            "value": 0,
            "data": to_hex(self.data),
            "gas": self.gas,
            "gasPrice": self.gas_price,
            "chainId": self.chain_id,
        }


@dataclass(frozen=True)
class SignedVerifyTx:
    index: int
    sender: str
    raw: bytes
    tx_hash: str


class TxFactory:
    def __init__(self, template: TxTemplate, create_account: Callable[[], Any] = Account.create) -> None:
        self.template = template
        self._create_account = create_account

    def build(self, count: int) -> List[SignedVerifyTx]:
        if count < 1:
            raise ValueError(f"Transaction count must be positive, received {count}")

        unsigned = self.template.unsigned()
        signed_txs: List[SignedVerifyTx] = []
        for index in range(count):
            try:
                account = self._create_account()
                signed = account.sign_transaction(dict(unsigned))
            except Exception as exc:  # noqa: BLE001 - any key or signing failure aborts the run
                raise SigningError(f"Failed to sign transaction {index}: {exc}") from exc
            signed_txs.append(
                SignedVerifyTx(
                    index=index,
                    sender=account.address,
                    raw=bytes(signed.raw_transaction),
                    tx_hash=to_hex(signed.hash),
                )
            )
        return signed_txs
