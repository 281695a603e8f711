#!/usr/bin/env python3
"""Benchmark zk verifier throughput (TPS) and gas cost on an EVM node."""
from __future__ import annotations

import argparse
import asyncio
import csv
import json
import math
import os
import statistics
import sys
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from web3 import AsyncWeb3
from web3.middleware import ExtraDataToPOAMiddleware

from .artifacts import ArtifactCache
from .broadcaster import BroadcastOutcome, Broadcaster, collect_receipts
from .contract import ContractArtifact, Deployer, estimate_gas, load_contract_artifact
from .errors import BenchError, GasEstimationError
from .inputs import LAYOUTS, InputBuilder, batch_sizes, is_power_of_two
from .txfactory import TxFactory, TxTemplate

DEFAULT_RPC_URL = "http://localhost:8545"
DEFAULT_OUTPUT_DIR = "benchmarks"
DEFAULT_TX_COUNT = 100
DEFAULT_GAS_LIMIT = 100_000_000
CSV_HEADER = [
    "batch_size",
    "index",
    "sender",
    "tx_hash",
    "accepted",
    "ack_sec",
    "status",
    "gas_used",
    "block_number",
    "error",
    "label",
]


@dataclass(frozen=True)
class BenchConfig:
    artifact: str
    contract: str
    rpc_url: str = DEFAULT_RPC_URL
    layout: str = "bcc"
    batch_sizes: List[int] = field(default_factory=batch_sizes)
    tx_count: int = DEFAULT_TX_COUNT
    chain_id: Optional[int] = None
    gas_limit: int = DEFAULT_GAS_LIMIT
    deploy_gas: int = DEFAULT_GAS_LIMIT
    gas_price: int = 0
    deployer_key: Optional[str] = None
    call_init: bool = False
    timeout: Optional[float] = None
    max_in_flight: Optional[int] = None
    fail_fast: bool = False
    wait_receipts: bool = False
    receipt_timeout: int = 120
    poa: bool = False
    label: str = "verifier"
    output_dir: str = DEFAULT_OUTPUT_DIR
    report_dir: Optional[str] = None
    summary_only: bool = False
    dry_run: bool = False


@dataclass
class BatchRun:
    batch_size: int
    contract_address: str
    tx_count: int
    accepted: int
    failed: int
    elapsed: float
    tps: float
    failure_rate: float
    gas_estimate: Optional[int]
    ack_latency: Optional[Dict[str, float]]
    outcomes: List[BroadcastOutcome] = field(repr=False, default_factory=list)

    def summary(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop("outcomes")
        return data


@dataclass
class SweepReport:
    chain_id: int
    block_stats: Dict[str, Optional[float]]
    runs: List[BatchRun]


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--artifact",
        default=os.getenv("PROOF_ARTIFACT"),
        help="Raw proof artifact JSON; may contain {batch_size} to load one file per batch size",
    )
    parser.add_argument(
        "--contract",
        default=os.getenv("CONTRACT_ARTIFACT"),
        help="Compiled verifier contract artifact (hardhat or foundry JSON with abi and bytecode)",
    )
    parser.add_argument(
        "--layout",
        choices=sorted(LAYOUTS),
        default="bcc",
        help="Which proof structures feed the constructor and verify()",
    )
    parser.add_argument(
        "--rpc-url",
        default=os.getenv("RPC_URL", DEFAULT_RPC_URL),
        help="JSON-RPC endpoint of the node under test",
    )
    parser.add_argument(
        "--chain-id",
        type=int,
        default=None,
        help="Chain id used for signing (defaults to eth_chainId of the node)",
    )
    parser.add_argument(
        "--tx-count",
        type=int,
        default=DEFAULT_TX_COUNT,
        help="Number of verify transactions (and ephemeral senders) per batch size",
    )
    parser.add_argument(
        "--batch-size",
        dest="batch_sizes",
        type=int,
        action="append",
        help="Batch size to benchmark; repeat for several. Defaults to the 2^min-log..2^max-log sweep",
    )
    parser.add_argument("--min-log", type=int, default=1, help="Smallest batch size exponent in the sweep")
    parser.add_argument("--max-log", type=int, default=10, help="Largest batch size exponent in the sweep")
    parser.add_argument(
        "--gas-limit",
        type=int,
        default=DEFAULT_GAS_LIMIT,
        help="Gas limit of each verify transaction (kept far above real usage to skip estimation)",
    )
    parser.add_argument(
        "--deploy-gas",
        type=int,
        default=DEFAULT_GAS_LIMIT,
        help="Gas limit for deployment and init() transactions",
    )
    parser.add_argument("--gas-price", type=int, default=0, help="Gas price in wei for all transactions")
    parser.add_argument(
        "--deployer-key",
        default=os.getenv("DEPLOYER_KEY"),
        help="Private key that deploys the verifier (defaults to the node's first unlocked account)",
    )
    parser.add_argument(
        "--init",
        dest="call_init",
        action="store_true",
        help="Call init() on each freshly deployed verifier before benchmarking",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Seconds to wait for each submission acknowledgement",
    )
    parser.add_argument(
        "--max-in-flight",
        type=int,
        default=None,
        help="Upper bound on concurrent submissions (default: all at once)",
    )
    parser.add_argument(
        "--fail-fast",
        action="store_true",
        help="Abort the run when any submission is rejected instead of counting failures",
    )
    parser.add_argument(
        "--wait-receipts",
        action="store_true",
        help="Fetch receipts after the timed window to record status and gas used",
    )
    parser.add_argument(
        "--receipt-timeout",
        type=int,
        default=120,
        help="Seconds to wait for each receipt when --wait-receipts is set",
    )
    parser.add_argument(
        "--poa",
        action="store_true",
        help="Inject POA middleware (recommended for Clique/IBFT/QBFT)",
    )
    parser.add_argument("--label", default="verifier", help="Label used when naming output files")
    parser.add_argument(
        "--output-dir",
        default=DEFAULT_OUTPUT_DIR,
        help="Directory where benchmark CSV and summary JSON will be written",
    )
    parser.add_argument(
        "--report-dir",
        help="Directory where a markdown benchmark report will be written",
    )
    parser.add_argument(
        "--summary-only",
        action="store_true",
        help="Skip CSV emission, only print and store summary statistics",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Parse artifacts and encode arguments without touching the node",
    )
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> BenchConfig:
    if not args.artifact:
        raise ValueError("A proof artifact is required (--artifact or PROOF_ARTIFACT)")
    if not args.contract:
        raise ValueError("A contract artifact is required (--contract or CONTRACT_ARTIFACT)")
    if args.tx_count < 1:
        raise ValueError("--tx-count must be at least 1")
    if args.max_in_flight is not None and args.max_in_flight < 1:
        raise ValueError("--max-in-flight must be at least 1")
    if args.timeout is not None and args.timeout <= 0:
        raise ValueError("--timeout must be greater than 0")

    sizes = args.batch_sizes or batch_sizes(args.min_log, args.max_log)
    for size in sizes:
        if size < 1:
            raise ValueError(f"Batch size must be positive, received {size}")
        if not is_power_of_two(size):
            print(f"[WARN] Batch size {size} is not a power of two", file=sys.stderr)

    return BenchConfig(
        artifact=args.artifact,
        contract=args.contract,
        rpc_url=args.rpc_url,
        layout=args.layout,
        batch_sizes=list(sizes),
        tx_count=args.tx_count,
        chain_id=args.chain_id,
        gas_limit=args.gas_limit,
        deploy_gas=args.deploy_gas,
        gas_price=args.gas_price,
        deployer_key=args.deployer_key,
        call_init=args.call_init,
        timeout=args.timeout,
        max_in_flight=args.max_in_flight,
        fail_fast=args.fail_fast,
        wait_receipts=args.wait_receipts,
        receipt_timeout=args.receipt_timeout,
        poa=args.poa,
        label=args.label,
        output_dir=args.output_dir,
        report_dir=args.report_dir,
        summary_only=args.summary_only,
        dry_run=args.dry_run,
    )


def percentile(values: List[float], fraction: float) -> float:
    if not values:
        raise ValueError("Cannot compute percentile of empty list")
    ordered = sorted(values)
    index = max(0, math.ceil(fraction * len(ordered)) - 1)
    return ordered[index]


def calculate_latency_stats(latencies: List[float]) -> Optional[Dict[str, float]]:
    if not latencies:
        return None
    return {
        "avg": statistics.mean(latencies),
        "p95": percentile(latencies, 0.95),
        "max": max(latencies),
        "count": len(latencies),
    }


def inject_poa_if_needed(web3: AsyncWeb3, enabled: bool) -> None:
    if enabled:
        try:
            web3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        except ValueError:
            # Middleware already present
            pass


async def connect(config: BenchConfig) -> AsyncWeb3:
    web3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(config.rpc_url))
    inject_poa_if_needed(web3, config.poa)
    if not await web3.is_connected():
        raise ConnectionError(f"Unable to reach RPC endpoint: {config.rpc_url}")
    return web3


async def fetch_block_stats(web3: AsyncWeb3, sample_count: int = 50) -> Dict[str, Optional[float]]:
    try:
        latest_block_number = await web3.eth.block_number
        start_number = max(0, latest_block_number - sample_count + 1)
        timestamps: List[int] = []
        for block_number in range(start_number, latest_block_number + 1):
            block = await web3.eth.get_block(block_number)
            if block:
                timestamps.append(int(block.get("timestamp", 0)))
    except Exception as exc:  # noqa: BLE001 - block stats are informational
        return {"latest": None, "avg": None, "min": None, "max": None, "error": str(exc)}

    intervals = [
        float(timestamps[index] - timestamps[index - 1]) for index in range(1, len(timestamps))
    ]
    if not intervals:
        return {"latest": latest_block_number, "avg": None, "min": None, "max": None}
    return {
        "latest": latest_block_number,
        "avg": float(statistics.mean(intervals)),
        "min": float(min(intervals)),
        "max": float(max(intervals)),
    }


def print_batch_summary(run: BatchRun) -> None:
    print("--- Batch Summary ---")
    print(f"Batch Size: {run.batch_size}")
    print(f"Contract: {run.contract_address}")
    print(f"Transactions submitted: {run.tx_count}")
    print(f"Accepted: {run.accepted}")
    print(f"Rejected: {run.failed} ({run.failure_rate:.2%})")
    print(f"Elapsed seconds: {run.elapsed:.4f}")
    print(f"TPS: {run.tps:.4f}")
    print(f"Gas: {run.gas_estimate if run.gas_estimate is not None else 'N/A'}", flush=True)


async def run_batch(
    web3: AsyncWeb3,
    config: BenchConfig,
    contract: ContractArtifact,
    artifacts: ArtifactCache,
    deployer: Deployer,
    chain_id: int,
    batch_size: int,
) -> BatchRun:
    builder = InputBuilder(artifacts.get(batch_size), LAYOUTS[config.layout])

    print(f"[INFO] Deploying {contract.name} for batch size {batch_size}...", flush=True)
    address = await deployer.deploy(contract, builder.constructor_args(batch_size))
    print(f"[INFO] Deployed at {address}", flush=True)
    if config.call_init:
        if contract.has_function("init"):
            await deployer.call_init(contract, address)
            print("[INFO] init() confirmed", flush=True)
        else:
            print(f"[WARN] {contract.name} has no init(); skipping", flush=True)

    payload = contract.call_data("verify", builder.verify_args(batch_size))
    template = TxTemplate(
        to=address,
        data=payload,
        gas=config.gas_limit,
        chain_id=chain_id,
        gas_price=config.gas_price,
    )
    print(f"[INFO] Signing {config.tx_count} transactions from ephemeral accounts...", flush=True)
    signed_txs = TxFactory(template).build(config.tx_count)

    broadcaster = Broadcaster(web3, timeout=config.timeout, max_in_flight=config.max_in_flight)
    result = await broadcaster.broadcast(signed_txs, fail_fast=config.fail_fast)

    # Everything below runs after the timed window closed.
    gas_estimate: Optional[int] = None
    try:
        gas_estimate = await estimate_gas(web3, address, payload, await deployer.address())
    except GasEstimationError as exc:
        print(f"[WARN] {exc}", flush=True)

    if config.wait_receipts:
        print(f"[INFO] Collecting receipts for {result.accepted} accepted transactions...", flush=True)
        await collect_receipts(web3, result.outcomes, timeout=config.receipt_timeout)

    run = BatchRun(
        batch_size=batch_size,
        contract_address=address,
        tx_count=len(signed_txs),
        accepted=result.accepted,
        failed=result.failed,
        elapsed=result.elapsed,
        tps=result.tps,
        failure_rate=result.failure_rate,
        gas_estimate=gas_estimate,
        ack_latency=calculate_latency_stats(
            [outcome.ack_sec for outcome in result.outcomes if outcome.ack_sec is not None]
        ),
        outcomes=result.outcomes,
    )
    print_batch_summary(run)
    return run


async def run_sweep(config: BenchConfig) -> SweepReport:
    contract = load_contract_artifact(os.path.abspath(config.contract))
    artifacts = ArtifactCache(config.artifact)
    web3 = await connect(config)
    try:
        chain_id = config.chain_id if config.chain_id is not None else await web3.eth.chain_id
        deployer = Deployer(
            web3,
            chain_id=chain_id,
            gas_limit=config.deploy_gas,
            gas_price=config.gas_price,
            private_key=config.deployer_key,
            receipt_timeout=config.receipt_timeout,
        )

        print("RPC:", config.rpc_url)
        print("Chain ID:", chain_id)
        print("Deployer:", await deployer.address())
        print("Layout:", config.layout)
        print("Batch sizes:", ", ".join(str(size) for size in config.batch_sizes))
        print("Transactions per batch:", config.tx_count, flush=True)

        runs: List[BatchRun] = []
        for batch_size in config.batch_sizes:
            runs.append(
                await run_batch(web3, config, contract, artifacts, deployer, chain_id, batch_size)
            )

        block_stats = await fetch_block_stats(web3)
    finally:
        # AsyncHTTPProvider caches its aiohttp session
        await web3.provider.disconnect()
    return SweepReport(chain_id=chain_id, block_stats=block_stats, runs=runs)


def dry_run(config: BenchConfig) -> int:
    contract = load_contract_artifact(os.path.abspath(config.contract))
    artifacts = ArtifactCache(config.artifact)
    layout = LAYOUTS[config.layout]

    for batch_size in config.batch_sizes:
        builder = InputBuilder(artifacts.get(batch_size), layout)
        lengths = ", ".join(
            f"{name}={len(builder.structure(name, batch_size))}"
            for name in layout.constructor + layout.verify
        )
        deploy_data = contract.deploy_data(builder.constructor_args(batch_size))
        payload = contract.call_data("verify", builder.verify_args(batch_size))
        print(
            f"Batch Size: {batch_size} | {lengths} | deploy data {len(deploy_data)} bytes "
            f"| calldata {len(payload)} bytes"
        )
    print("Dry run complete. No transactions sent.")
    return 0


def ensure_directory(path: str) -> None:
    if not os.path.exists(path):
        os.makedirs(path, exist_ok=True)


def sanitize_component(value: str) -> str:
    return "".join(char if char.isalnum() or char in ("-", "_") else "_" for char in value)


def build_output_paths(output_dir: str, label: str) -> Dict[str, str]:
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    ensure_directory(output_dir)
    label_part = sanitize_component(label)
    return {
        "csv": os.path.join(output_dir, f"{label_part}.csv"),
        "summary": os.path.join(output_dir, f"{label_part}_summary_{timestamp}.json"),
        "timestamp": timestamp,
    }


def write_csv(path: str, runs: List[BatchRun], label: str) -> None:
    write_header = not os.path.exists(path)
    with open(path, "a", newline="", encoding="utf-8") as handle:
        writer = csv.DictWriter(handle, fieldnames=CSV_HEADER)
        if write_header:
            writer.writeheader()
        for run in runs:
            for outcome in run.outcomes:
                writer.writerow(
                    {
                        "batch_size": run.batch_size,
                        "index": outcome.index,
                        "sender": outcome.sender,
                        "tx_hash": outcome.tx_hash,
                        "accepted": int(outcome.accepted),
                        "ack_sec": outcome.ack_sec,
                        "status": outcome.status,
                        "gas_used": outcome.gas_used,
                        "block_number": outcome.block_number,
                        "error": outcome.error,
                        "label": label,
                    }
                )


def build_summary_payload(
    config: BenchConfig, report: SweepReport, timestamp: str
) -> Dict[str, Any]:
    return {
        "timestamp": timestamp,
        "label": config.label,
        "rpc_url": config.rpc_url,
        "chain_id": report.chain_id,
        "layout": config.layout,
        "tx_count": config.tx_count,
        "gas_limit": config.gas_limit,
        "timed_window": "acknowledgement",
        "block_stats": report.block_stats,
        "runs": [run.summary() for run in report.runs],
    }


def format_latency_line(label: str, stats: Optional[Dict[str, float]]) -> str:
    if not stats or stats.get("count", 0) == 0:
        return f"- {label}: no acknowledged submissions"
    return (
        f"- {label}: avg {stats['avg']:.3f} s, p95 {stats['p95']:.3f} s, "
        f"max {stats['max']:.3f} s (n = {stats['count']})"
    )


def generate_report_filename(report_dir: str, timestamp: str, label: str) -> str:
    ensure_directory(report_dir)
    base_name = f"{timestamp[:8]}_{sanitize_component(label.lower())}"
    candidate = os.path.join(report_dir, f"{base_name}.md")
    counter = 2
    while os.path.exists(candidate):
        candidate = os.path.join(report_dir, f"{base_name}_run{counter}.md")
        counter += 1
    return candidate


def generate_markdown_report(
    report_dir: str, paths: Dict[str, str], summary_payload: Dict[str, Any], runs: List[BatchRun]
) -> str:
    timestamp = summary_payload["timestamp"]
    try:
        header_str = datetime.strptime(timestamp, "%Y%m%dT%H%M%SZ").strftime("%Y-%m-%dT%H:%M:%SZ")
    except ValueError:
        header_str = timestamp

    report_lines = [
        f"# {summary_payload['label']} verifier benchmark ({header_str})",
        "",
        f"- RPC: `{summary_payload['rpc_url']}` (chain {summary_payload['chain_id']})",
        f"- Layout: {summary_payload['layout']}",
        f"- Transactions per batch: {summary_payload['tx_count']}",
        "- Timed window: submission acknowledgement (not inclusion)",
        "",
        "## Throughput",
        "",
        "| Batch size | Accepted | Rejected | Elapsed (s) | TPS | Gas (verify) |",
        "|---:|---:|---:|---:|---:|---:|",
    ]
    for run in runs:
        gas = "N/A" if run.gas_estimate is None else str(run.gas_estimate)
        report_lines.append(
            f"| {run.batch_size} | {run.accepted} | {run.failed} | {run.elapsed:.3f} "
            f"| {run.tps:.2f} | {gas} |"
        )

    report_lines.extend(["", "## Acknowledgement Delay (T_ack − T_start)"])
    for run in runs:
        report_lines.append(format_latency_line(f"Batch {run.batch_size}", run.ack_latency))

    block_stats = summary_payload.get("block_stats") or {}
    latest = block_stats.get("latest")
    report_lines.extend(["", "## Block Interval"])
    report_lines.append(f"- Latest observed block: {'N/A' if latest is None else int(latest)}")
    if block_stats.get("avg") is not None:
        report_lines.append(f"- Average interval (last 50 blocks): {block_stats['avg']:.2f} s")
        report_lines.append(
            f"- Min/Max interval: {block_stats['min']:.2f} s / {block_stats['max']:.2f} s"
        )
    else:
        report_lines.append("- Average interval (last 50 blocks): N/A")

    report_lines.extend(["", "## Artifacts", f"- Summary JSON: `{paths['summary']}`"])
    if "csv" in paths:
        report_lines.append(f"- Detailed CSV: `{paths['csv']}`")

    report_path = generate_report_filename(
        os.path.abspath(report_dir), timestamp=timestamp, label=summary_payload["label"]
    )
    with open(report_path, "w", encoding="utf-8") as handle:
        handle.write("\n".join(report_lines) + "\n")
    print(f"Markdown report written to {report_path}")
    return report_path


def write_outputs(config: BenchConfig, report: SweepReport) -> Dict[str, str]:
    paths = build_output_paths(os.path.abspath(config.output_dir), config.label)
    if config.summary_only:
        paths.pop("csv")
    else:
        write_csv(paths["csv"], report.runs, config.label)
        print(f"Detailed results appended to {paths['csv']}")

    summary_payload = build_summary_payload(config, report, paths["timestamp"])
    with open(paths["summary"], "w", encoding="utf-8") as handle:
        json.dump(summary_payload, handle, indent=2)
    print(f"Summary written to {paths['summary']}")

    if config.report_dir:
        paths["report"] = generate_markdown_report(
            config.report_dir, paths, summary_payload, report.runs
        )
    return paths


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)

    try:
        config = build_config(args)
        if config.dry_run:
            return dry_run(config)
        report = asyncio.run(run_sweep(config))
    except (BenchError, ValueError, ConnectionError) as exc:
        print(f"Fatal error: {exc}", file=sys.stderr)
        return 1

    print("--- Sweep Summary ---")
    for run in report.runs:
        gas = "N/A" if run.gas_estimate is None else run.gas_estimate
        print(f"Batch Size: {run.batch_size} | TPS: {run.tps:.4f} | Gas: {gas}")

    write_outputs(config, report)
    return 0


if __name__ == "__main__":
    try:
        raise SystemExit(main())
    except Exception as exc:  # noqa: BLE001
        print(f"Fatal error: {exc}", file=sys.stderr)
        raise
