#!/usr/bin/env python3
"""Check recorded benchmark transactions against on-chain receipts."""
import argparse
import csv
import sys
from pathlib import Path

from web3 import Web3
from web3.exceptions import TransactionNotFound

DEFAULT_CSV_PATH = "benchmarks/verifier.csv"


def load_rows(csv_path, batch_size=None, sender=None):
    """Load CSV rows, optionally filtered by batch size and sender"""
    with open(csv_path, "r", encoding="utf-8") as f:
        rows = list(csv.DictReader(f))
    if batch_size is not None:
        rows = [row for row in rows if row["batch_size"] == str(batch_size)]
    if sender:
        rows = [row for row in rows if row["sender"].lower() == sender.lower()]
    return rows


def list_rows(rows):
    """Print every recorded submission"""
    accepted_count = 0
    rejected_count = 0
    for row in rows:
        accepted = row["accepted"] == "1"
        status_icon = "✅" if accepted else "❌"
        detail = f"ack {row['ack_sec']}s" if accepted else row["error"]
        print(f"{status_icon} [B={row['batch_size']} #{row['index']}] {row['sender']} {row['tx_hash']} - {detail}")
        if accepted:
            accepted_count += 1
        else:
            rejected_count += 1

    print("-" * 80)
    print(f"📊 Total: accepted {accepted_count} / rejected {rejected_count}")


def check_receipts(web3, rows):
    """Fetch the receipt of every accepted submission and tally the results"""
    summary = {"mined": 0, "reverted": 0, "pending": 0, "gas_used": []}
    for row in rows:
        if row["accepted"] != "1" or not row["tx_hash"]:
            continue
        try:
            receipt = web3.eth.get_transaction_receipt(row["tx_hash"])
        except TransactionNotFound:
            summary["pending"] += 1
            print(f"⏳ {row['tx_hash']} not mined yet")
            continue

        gas_used = receipt.get("gasUsed")
        if receipt.get("status") == 1:
            summary["mined"] += 1
            summary["gas_used"].append(gas_used)
            print(f"✅ {row['tx_hash']} block {receipt.get('blockNumber')} gasUsed {gas_used}")
        else:
            summary["reverted"] += 1
            print(f"❌ {row['tx_hash']} reverted in block {receipt.get('blockNumber')}")
    return summary


def main(argv=None):
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--csv", default=DEFAULT_CSV_PATH, help="Benchmark CSV written by verifier-bench")
    parser.add_argument("--rpc-url", default="http://localhost:8545", help="Node to query receipts from")
    parser.add_argument("--batch-size", type=int, help="Only check rows of this batch size")
    parser.add_argument("--sender", help="Only check rows sent by this ephemeral address")
    parser.add_argument("--list", action="store_true", help="List recorded rows without querying the node")
    args = parser.parse_args(argv)

    if not Path(args.csv).exists():
        print(f"❌ CSV file not found: {args.csv}")
        return 1

    rows = load_rows(args.csv, args.batch_size, args.sender)
    print(f"📁 File: {args.csv} ({len(rows)} rows)")
    print("-" * 80)

    if args.list:
        list_rows(rows)
        return 0

    web3 = Web3(Web3.HTTPProvider(args.rpc_url))
    if not web3.is_connected():
        print(f"❌ RPC connection failed: {args.rpc_url}", file=sys.stderr)
        return 1

    summary = check_receipts(web3, rows)
    print("-" * 80)
    print(f"📊 mined {summary['mined']} / reverted {summary['reverted']} / pending {summary['pending']}")
    if summary["gas_used"]:
        print(f"⛽ gasUsed min {min(summary['gas_used'])} max {max(summary['gas_used'])}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
