import itertools
import json
from types import SimpleNamespace

import pytest

from verifier_bench.artifacts import STRUCTURE_FIELDS

BIG = 2**254
DEPLOYER_KEY = "0x" + "11" * 32
CONTRACT_ADDRESS = "0x" + "ab" * 20

BCC_ABI = [
    {
        "type": "constructor",
        "inputs": [
            {"name": "vkGroth", "type": "uint256[]"},
            {"name": "vkLink", "type": "uint256[]"},
            {"name": "batchSize", "type": "uint256"},
        ],
    },
    {
        "type": "function",
        "name": "verify",
        "inputs": [
            {"name": "instance", "type": "uint256[]"},
            {"name": "proofGroth", "type": "uint256[]"},
            {"name": "proofLink", "type": "uint256[]"},
        ],
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "nonpayable",
    },
    {"type": "function", "name": "init", "inputs": [], "outputs": [], "stateMutability": "nonpayable"},
]

# points per field: G1 fields hold (x, y) pairs, G2 fields hold pairs of (re, im)
POINT_COUNTS = {
    "vk_groth": {"alpha": 1, "beta": 1, "delta": 1, "abc": 2, "gamma": 1},
    "proof_groth": {"a": 1, "b": 1, "c": 1, "d": 1},
    "vk_link": {"C": 1, "a": 1},
    "proof_link": {"pi": 2},
    "instance": {"link_com": 1, "pd_cm": 1},
}


def g1_text(points):
    return "[" + ", ".join(f"({x}, {y})" for x, y in points) + "]"


def g2_text(points):
    rendered = []
    for pair in points:
        rendered.append("(" + ", ".join(f"QuadExtField({re} + {im} * u)" for re, im in pair) + ")")
    return "[" + ", ".join(rendered) + "]"


def make_structures():
    counter = itertools.count(1)
    structures = {}
    for name, fields in STRUCTURE_FIELDS.items():
        structures[name] = {}
        for field_name, kind in fields:
            count = POINT_COUNTS[name][field_name]
            if kind == "g1":
                points = [(BIG + next(counter), BIG + next(counter)) for _ in range(count)]
            else:
                points = [
                    tuple((BIG + next(counter), BIG + next(counter)) for _ in range(2))
                    for _ in range(count)
                ]
            structures[name][field_name] = (kind, points)
    return structures


def render_document(structures):
    document = {}
    for name, fields in structures.items():
        inner = {}
        for field_name, (kind, points) in fields.items():
            inner[field_name] = g1_text(points) if kind == "g1" else g2_text(points)
        document[name] = json.dumps(inner)
    return document


def field_values(structures, name, field_name):
    kind, points = structures[name][field_name]
    if kind == "g1":
        return [str(value) for x, y in points for value in (x, y)]
    return [str(value) for pair in points for re, im in pair for value in (im, re)]


def expected_flat(structures, name):
    return [
        value
        for field_name, _ in STRUCTURE_FIELDS[name]
        for value in field_values(structures, name, field_name)
    ]


@pytest.fixture
def structures():
    return make_structures()


@pytest.fixture
def write_artifact(tmp_path):
    def _write(document, filename="proof.json"):
        path = tmp_path / filename
        path.write_text(json.dumps(document), encoding="utf-8")
        return str(path)

    return _write


@pytest.fixture
def artifact_path(structures, write_artifact):
    return write_artifact(render_document(structures))


@pytest.fixture
def contract_path(tmp_path):
    path = tmp_path / "BccSNARK.json"
    path.write_text(
        json.dumps({"contractName": "BccSNARK", "abi": BCC_ABI, "bytecode": "0x6080604052"}),
        encoding="utf-8",
    )
    return str(path)


class FakeEth:
    """Async stand-in for ``AsyncWeb3.eth``."""

    def __init__(self, chain_id=1337, gas=123456, estimate_error=None, reject=()):
        self._chain_id = chain_id
        self.gas = gas
        self.estimate_error = estimate_error
        self.reject = set(reject)
        self.sent = []
        self.receipt_status = 1

    @property
    def chain_id(self):
        async def _get():
            return self._chain_id

        return _get()

    @property
    def accounts(self):
        async def _get():
            return ["0x" + "cd" * 20]

        return _get()

    async def get_transaction_count(self, address, block="latest"):
        return 0

    async def send_raw_transaction(self, raw):
        index = len(self.sent)
        self.sent.append(bytes(raw))
        if index in self.reject:
            raise ValueError("nonce too low")
        return index.to_bytes(32, "big")

    async def send_transaction(self, tx):
        self.sent.append(tx)
        return (len(self.sent) - 1).to_bytes(32, "big")

    async def wait_for_transaction_receipt(self, tx_hash, timeout=120):
        return {
            "status": self.receipt_status,
            "contractAddress": CONTRACT_ADDRESS,
            "gasUsed": 21000,
            "blockNumber": 7,
        }

    async def estimate_gas(self, tx):
        if self.estimate_error:
            raise self.estimate_error
        return self.gas


@pytest.fixture
def fake_web3():
    return SimpleNamespace(eth=FakeEth())
