"""Compiled verifier contract: ABI encoding, deployment and warm-up calls."""
from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from eth_abi import encode as abi_encode
from eth_account import Account
from eth_utils import function_abi_to_4byte_selector, to_bytes, to_checksum_address, to_hex
from eth_utils.abi import collapse_if_tuple
from web3 import AsyncWeb3
from web3.exceptions import TimeExhausted

from .errors import DeploymentError, GasEstimationError


@dataclass
class ContractArtifact:
    name: str
    abi: List[Dict[str, Any]]
    bytecode: bytes

    def _input_types(self, entry: Dict[str, Any]) -> List[str]:
        return [collapse_if_tuple(item) for item in entry.get("inputs", [])]

    def constructor_types(self) -> List[str]:
        for entry in self.abi:
            if entry.get("type") == "constructor":
                return self._input_types(entry)
        return []

    def function_entry(self, name: str, arg_count: Optional[int] = None) -> Dict[str, Any]:
        candidates = [
            entry
            for entry in self.abi
            if entry.get("type") == "function" and entry.get("name") == name
        ]
        if arg_count is not None:
            candidates = [entry for entry in candidates if len(entry.get("inputs", [])) == arg_count]
        if not candidates:
            raise DeploymentError(f"Contract {self.name} has no function {name}() taking {arg_count} argument(s)")
        return candidates[0]

    def has_function(self, name: str) -> bool:
        return any(entry.get("type") == "function" and entry.get("name") == name for entry in self.abi)

    def deploy_data(self, args: Sequence[Any]) -> bytes:
        types = self.constructor_types()
        if len(types) != len(args):
            raise DeploymentError(
                f"Constructor of {self.name} takes {len(types)} argument(s), received {len(args)}"
            )
        return self.bytecode + (abi_encode(types, list(args)) if types else b"")

    def call_data(self, name: str, args: Sequence[Any]) -> bytes:
        entry = self.function_entry(name, len(args))
        selector = function_abi_to_4byte_selector(entry)
        types = self._input_types(entry)
        return selector + (abi_encode(types, list(args)) if types else b"")


def load_contract_artifact(path: str) -> ContractArtifact:
    if not os.path.exists(path):
        raise DeploymentError(f"Contract artifact not found: {path}")
    with open(path, "r", encoding="utf-8") as handle:
        try:
            data = json.load(handle)
        except json.JSONDecodeError as exc:
            raise DeploymentError(f"Contract artifact {path} is not valid JSON: {exc}") from exc

    abi = data.get("abi")
    bytecode = data.get("bytecode")
    # foundry nests the creation code under bytecode.object
    if isinstance(bytecode, dict):
        bytecode = bytecode.get("object")
    if not abi or not bytecode or bytecode == "0x":
        raise DeploymentError(f"Contract artifact {path} must include abi and bytecode")

    name = data.get("contractName") or os.path.splitext(os.path.basename(path))[0]
    return ContractArtifact(name=name, abi=abi, bytecode=to_bytes(hexstr=bytecode))


class Deployer:
    """Sends deployment and setup transactions from a funded account."""

    def __init__(
        self,
        web3: AsyncWeb3,
        chain_id: int,
        gas_limit: int,
        gas_price: int = 0,
        private_key: Optional[str] = None,
        receipt_timeout: int = 120,
    ) -> None:
        self.web3 = web3
        self.chain_id = chain_id
        self.gas_limit = gas_limit
        self.gas_price = gas_price
        self.receipt_timeout = receipt_timeout
        self._account = Account.from_key(private_key) if private_key else None
        self._address: Optional[str] = None

    async def address(self) -> str:
        if self._address is None:
            if self._account is not None:
                self._address = self._account.address
            else:
                accounts = await self.web3.eth.accounts
                if not accounts:
                    raise DeploymentError(
                        "No deployer key given and the node exposes no unlocked accounts"
                    )
                self._address = to_checksum_address(accounts[0])
        return self._address

    async def send(self, tx: Dict[str, Any], action: str) -> Dict[str, Any]:
        sender = await self.address()
        try:
            nonce = await self.web3.eth.get_transaction_count(sender, "pending")
            tx = {
                **tx,
                "nonce": nonce,
                "gas": self.gas_limit,
                "gasPrice": self.gas_price,
                "chainId": self.chain_id,
                "value": 0,
            }
            if self._account is not None:
                signed = self._account.sign_transaction(tx)
                tx_hash = await self.web3.eth.send_raw_transaction(signed.raw_transaction)
            else:
                tx_hash = await self.web3.eth.send_transaction({**tx, "from": sender})
            receipt = await self.web3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self.receipt_timeout
            )
        except TimeExhausted as exc:
            raise DeploymentError(f"Timed out waiting for the {action} receipt") from exc
        except Exception as exc:  # noqa: BLE001 - surface RPC failures as deployment errors
            raise DeploymentError(f"{action} failed: {exc}") from exc

        if receipt.get("status", 0) != 1:
            raise DeploymentError(f"{action} transaction reverted (tx {to_hex(tx_hash)})")
        return receipt

    async def deploy(self, artifact: ContractArtifact, args: Sequence[Any]) -> str:
        receipt = await self.send({"data": to_hex(artifact.deploy_data(args))}, f"Deployment of {artifact.name}")
        address = receipt.get("contractAddress")
        if not address:
            raise DeploymentError(f"Deployment receipt of {artifact.name} carries no contract address")
        return to_checksum_address(address)

    async def call_init(self, artifact: ContractArtifact, address: str) -> Dict[str, Any]:
        return await self.send(
            {"to": address, "data": to_hex(artifact.call_data("init", []))},
            f"{artifact.name}.init()",
        )


async def estimate_gas(
    web3: AsyncWeb3, to: str, data: bytes, sender: Optional[str] = None
) -> int:
    tx: Dict[str, Any] = {"to": to, "data": to_hex(data)}
    if sender:
        tx["from"] = sender
    try:
        return int(await web3.eth.estimate_gas(tx))
    except Exception as exc:  # noqa: BLE001 - any RPC failure is reported, never fatal
        raise GasEstimationError(f"Gas estimation for {to} failed: {exc}") from exc
