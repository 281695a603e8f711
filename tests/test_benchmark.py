import asyncio
import csv
import json
from types import SimpleNamespace

import pytest

from conftest import CONTRACT_ADDRESS, DEPLOYER_KEY, FakeEth
from verifier_bench import benchmark
from verifier_bench.artifacts import ArtifactCache
from verifier_bench.benchmark import (
    BenchConfig,
    SweepReport,
    build_config,
    parse_args,
    percentile,
    run_batch,
    write_outputs,
)
from verifier_bench.contract import Deployer, load_contract_artifact


def make_config(artifact_path, contract_path, **overrides):
    values = dict(artifact=artifact_path, contract=contract_path, tx_count=5, deployer_key=DEPLOYER_KEY)
    values.update(overrides)
    return BenchConfig(**values)


def run_one(config, eth, batch_size=4):
    web3 = SimpleNamespace(eth=eth)
    deployer = Deployer(web3, chain_id=1337, gas_limit=config.deploy_gas, private_key=config.deployer_key)
    return asyncio.run(
        run_batch(
            web3,
            config,
            load_contract_artifact(config.contract),
            ArtifactCache(config.artifact),
            deployer,
            1337,
            batch_size,
        )
    )


def test_default_config_sweeps_powers_of_two(artifact_path, contract_path):
    config = build_config(parse_args(["--artifact", artifact_path, "--contract", contract_path]))
    assert config.batch_sizes == [2**k for k in range(1, 11)]
    assert config.tx_count == 100
    assert config.gas_limit == 100_000_000
    assert config.layout == "bcc"


def test_explicit_batch_sizes(artifact_path, contract_path, capsys):
    args = parse_args(
        ["--artifact", artifact_path, "--contract", contract_path, "--batch-size", "8", "--batch-size", "12"]
    )
    assert build_config(args).batch_sizes == [8, 12]
    assert "not a power of two" in capsys.readouterr().err


@pytest.mark.parametrize(
    "extra, message",
    [
        (["--tx-count", "0"], "tx-count"),
        (["--max-in-flight", "0"], "max-in-flight"),
        (["--batch-size", "0"], "positive"),
        (["--timeout", "0"], "timeout"),
    ],
)
def test_invalid_options(artifact_path, contract_path, extra, message):
    args = parse_args(["--artifact", artifact_path, "--contract", contract_path] + extra)
    with pytest.raises(ValueError, match=message):
        build_config(args)


def test_artifact_is_required(contract_path, monkeypatch):
    monkeypatch.delenv("PROOF_ARTIFACT", raising=False)
    with pytest.raises(ValueError, match="proof artifact"):
        build_config(parse_args(["--contract", contract_path]))


def test_percentile():
    values = [float(i) for i in range(1, 21)]
    assert percentile(values, 0.95) == 19.0
    assert percentile([3.0], 0.5) == 3.0
    with pytest.raises(ValueError):
        percentile([], 0.5)


def test_dry_run_encodes_without_network(artifact_path, contract_path, capsys):
    code = benchmark.main(
        ["--artifact", artifact_path, "--contract", contract_path, "--dry-run", "--batch-size", "2"]
    )
    out = capsys.readouterr().out
    assert code == 0
    assert "Batch Size: 2 | vk_groth=18, vk_link=12, instance=8" in out
    assert "Dry run complete" in out


def test_main_exits_non_zero_on_parse_error(tmp_path, contract_path, capsys):
    code = benchmark.main(
        ["--artifact", str(tmp_path / "missing.json"), "--contract", contract_path, "--dry-run"]
    )
    assert code == 1
    assert "Fatal error" in capsys.readouterr().err


def test_run_batch_deploys_signs_and_broadcasts(artifact_path, contract_path, capsys):
    eth = FakeEth()
    run = run_one(make_config(artifact_path, contract_path, call_init=True), eth, batch_size=4)

    assert run.batch_size == 4
    assert run.contract_address.lower() == CONTRACT_ADDRESS
    assert run.accepted == 5
    assert run.failed == 0
    assert run.gas_estimate == 123456
    assert run.tps > 0
    # deployment, init() and five verify transactions
    assert len(eth.sent) == 7
    assert len(set(eth.sent[2:])) == 5

    out = capsys.readouterr().out
    assert "Batch Size: 4" in out
    assert "TPS:" in out
    assert "Gas: 123456" in out


def test_gas_estimation_failure_is_not_fatal(artifact_path, contract_path, capsys):
    eth = FakeEth(estimate_error=ValueError("execution reverted"))
    run = run_one(make_config(artifact_path, contract_path), eth)

    assert run.gas_estimate is None
    assert run.accepted == 5
    assert "[WARN] Gas estimation" in capsys.readouterr().out


def test_rejected_submissions_are_counted(artifact_path, contract_path):
    # index 0 is the deployment, so 1 and 2 are the first two verify calls
    eth = FakeEth(reject={1, 2})
    run = run_one(make_config(artifact_path, contract_path), eth)

    assert run.accepted == 3
    assert run.failed == 2
    assert run.failure_rate == pytest.approx(0.4)


def test_receipts_are_collected_on_request(artifact_path, contract_path):
    run = run_one(make_config(artifact_path, contract_path, wait_receipts=True), FakeEth())
    assert all(outcome.status == 1 for outcome in run.outcomes)
    assert all(outcome.gas_used == 21000 for outcome in run.outcomes)


def test_write_outputs(artifact_path, contract_path, tmp_path):
    run = run_one(make_config(artifact_path, contract_path), FakeEth(), batch_size=2)
    config = make_config(
        artifact_path,
        contract_path,
        label="bcc run",
        output_dir=str(tmp_path / "out"),
        report_dir=str(tmp_path / "reports"),
    )
    report = SweepReport(chain_id=1337, block_stats={"latest": 9, "avg": 1.0, "min": 1.0, "max": 1.0}, runs=[run])

    paths = write_outputs(config, report)

    with open(paths["csv"], newline="", encoding="utf-8") as handle:
        rows = list(csv.DictReader(handle))
    assert len(rows) == 5
    assert {row["batch_size"] for row in rows} == {"2"}
    assert paths["csv"].endswith("bcc_run.csv")

    with open(paths["summary"], encoding="utf-8") as handle:
        summary = json.load(handle)
    assert summary["timed_window"] == "acknowledgement"
    assert summary["runs"][0]["accepted"] == 5
    assert "outcomes" not in summary["runs"][0]

    with open(paths["report"], encoding="utf-8") as handle:
        report_text = handle.read()
    assert "| 2 | 5 | 0 |" in report_text


class BlockEth:
    @property
    def block_number(self):
        async def _get():
            return 3

        return _get()

    async def get_block(self, number):
        return {"timestamp": 100 + 2 * number}


def test_fetch_block_stats():
    stats = asyncio.run(benchmark.fetch_block_stats(SimpleNamespace(eth=BlockEth())))
    assert stats == {"latest": 3, "avg": 2.0, "min": 2.0, "max": 2.0}


class SweepEth(BlockEth, FakeEth):
    def __init__(self):
        FakeEth.__init__(self)
        self.receipts_awaited = []

    async def wait_for_transaction_receipt(self, tx_hash, timeout=120):
        self.receipts_awaited.append(tx_hash)
        return await FakeEth.wait_for_transaction_receipt(self, tx_hash, timeout)


class FakeProvider:
    def __init__(self):
        self.disconnected = False

    async def disconnect(self):
        self.disconnected = True


def test_main_runs_a_sweep_and_writes_outputs(artifact_path, contract_path, tmp_path, monkeypatch, capsys):
    eth = SweepEth()
    web3 = SimpleNamespace(eth=eth, provider=FakeProvider())

    async def fake_connect(config):
        return web3

    monkeypatch.setattr(benchmark, "connect", fake_connect)
    output_dir = tmp_path / "out"

    code = benchmark.main(
        [
            "--artifact", artifact_path,
            "--contract", contract_path,
            "--deployer-key", DEPLOYER_KEY,
            "--tx-count", "3",
            "--batch-size", "2",
            "--batch-size", "4",
            "--output-dir", str(output_dir),
        ]
    )

    assert code == 0
    # one deployment per batch size; only deployments wait for receipts here
    assert len(eth.receipts_awaited) == 2
    assert len(eth.sent) == 2 * (1 + 3)
    assert web3.provider.disconnected

    out = capsys.readouterr().out
    assert "Chain ID: 1337" in out
    sweep_lines = [line for line in out.splitlines() if line.startswith("Batch Size:") and "| TPS:" in line]
    assert [line.split(" |")[0] for line in sweep_lines] == ["Batch Size: 2", "Batch Size: 4"]

    (summary_path,) = output_dir.glob("verifier_summary_*.json")
    summary = json.loads(summary_path.read_text(encoding="utf-8"))
    assert summary["chain_id"] == 1337
    assert [run["batch_size"] for run in summary["runs"]] == [2, 4]
    assert summary["block_stats"]["latest"] == 3

    with open(output_dir / "verifier.csv", newline="", encoding="utf-8") as handle:
        assert len(list(csv.DictReader(handle))) == 6


def test_sweep_disconnects_when_a_batch_fails(artifact_path, contract_path, monkeypatch):
    eth = SweepEth()
    eth.receipt_status = 0
    web3 = SimpleNamespace(eth=eth, provider=FakeProvider())

    async def fake_connect(config):
        return web3

    monkeypatch.setattr(benchmark, "connect", fake_connect)

    code = benchmark.main(
        ["--artifact", artifact_path, "--contract", contract_path, "--deployer-key", DEPLOYER_KEY, "--batch-size", "2"]
    )

    assert code == 1
    assert web3.provider.disconnected
