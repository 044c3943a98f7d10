# MIT License
# Copyright (c) 2025 Hashborn

import argparse
import asyncio
import json
import logging
import sys

from prometheus_client import start_http_server

from ..core.orchestrator import SyncOrchestrator
from ..core.reconcile import ReconciliationEngine
from ..ledger.reader import SolanaLedgerReader
from ..observability.metrics import metrics_registry
from ..storage.db import CacheStore
from ...protocol.config.params import NETWORKS, SyncConfig, load_config
from ...protocol.types.common import AccountMode, MirrorError
from ...protocol.types.reconcile import Scope

logger = logging.getLogger(__name__)


def build_config(args) -> SyncConfig:
    config = load_config(args.network)
    if args.rpc_url:
        config.rpc_url = args.rpc_url
    if args.program_id:
        config.program_id = args.program_id
    if args.db:
        config.cache_db_path = args.db
    if args.mode:
        config.account_mode = AccountMode(args.mode)
    return config


def build_scope(args) -> Scope:
    if args.wallet and args.property is not None:
        return Scope(wallet=args.wallet, property_id=args.property)
    if args.wallet:
        return Scope.for_wallet(args.wallet)
    if args.property is not None:
        return Scope.for_property(args.property, extra_wallets=args.extra_wallet)
    return Scope.everything()


def print_report(report):
    print(report.summary())
    for diff in report.diffs:
        print(f"  {diff.describe()}")
    for pair in report.unresolved_pairs:
        mark = " [ESCALATED]" if pair.escalated else ""
        print(f"  {pair.wallet[:8]}... property {pair.property_id}: unresolved ({pair.reason}){mark}")
    for diff in report.state_diffs:
        print(f"  {diff.describe()}")
    for state in report.unresolved_states:
        print(f"  {state.state_kind.value} {state.key}: unresolved ({state.reason})")


# --- Commands ---

async def cmd_once(args, config: SyncConfig):
    """Single cycle. --dry-run reports drift without writing."""
    reader = SolanaLedgerReader(config.rpc_url, config.commitment, config.rpc_timeout_sec)
    store = CacheStore(config.cache_db_path)
    try:
        engine = ReconciliationEngine(reader, store, config)
        scope = build_scope(args)
        if args.dry_run:
            report = await engine.reconcile(scope)
        else:
            report = await SyncOrchestrator(engine, config).run_sync_cycle(scope)
        if args.json:
            print(report.model_dump_json(indent=2))
        else:
            print_report(report)
        return 0 if report.failed == 0 else 1
    finally:
        await reader.close()
        store.close()


async def cmd_run(args, config: SyncConfig):
    """Periodic full-scope cycles until interrupted."""
    reader = SolanaLedgerReader(config.rpc_url, config.commitment, config.rpc_timeout_sec)
    store = CacheStore(config.cache_db_path)
    orchestrator = SyncOrchestrator(ReconciliationEngine(reader, store, config), config)

    if args.metrics_port:
        start_http_server(args.metrics_port, registry=metrics_registry)
        logger.info(f"Metrics exposed on :{args.metrics_port}/metrics")

    try:
        orchestrator.start(args.interval)
        while orchestrator.running:
            await asyncio.sleep(1.0)
    except asyncio.CancelledError:
        pass
    finally:
        await orchestrator.stop()
        await reader.close()
        store.close()
    return 0


async def cmd_inspect(args, config: SyncConfig):
    """Prints the decoded PlayerAccount of a wallet."""
    reader = SolanaLedgerReader(config.rpc_url, config.commitment, config.rpc_timeout_sec)
    store = CacheStore(config.cache_db_path)
    try:
        engine = ReconciliationEngine(reader, store, config)
        record = await engine.fetch_player_record(args.wallet)
        print(json.dumps(record.model_dump(), indent=2))
        return 0
    finally:
        await reader.close()
        store.close()


async def cmd_register(args, config: SyncConfig):
    reader = SolanaLedgerReader(config.rpc_url, config.commitment, config.rpc_timeout_sec)
    store = CacheStore(config.cache_db_path)
    orchestrator = SyncOrchestrator(ReconciliationEngine(reader, store, config), config)
    try:
        for wallet in args.wallets:
            await orchestrator.register_wallet(wallet)
            print(f"Registered {wallet}")
        return 0
    finally:
        await reader.close()
        store.close()


def main():
    parser = argparse.ArgumentParser(prog="ledgermirror-sync", description="Ledger -> cache reconciliation")
    parser.add_argument("--network", choices=list(NETWORKS), help="Network preset (default: $LEDGERMIRROR_NETWORK or devnet)")
    parser.add_argument("--rpc-url", help="Solana RPC endpoint")
    parser.add_argument("--program-id", help="Game program id")
    parser.add_argument("--db", help="Cache database path")
    parser.add_argument("--mode", choices=[m.value for m in AccountMode], help="Ledger account layout to read")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", required=True)

    # once
    p_once = subparsers.add_parser("once", help="Run a single sync cycle")
    p_once.add_argument("--wallet", help="Restrict to one wallet")
    p_once.add_argument("--property", type=int, help="Restrict to one property id")
    p_once.add_argument("--extra-wallet", action="append", default=[], help="Extra wallet to check for --property")
    p_once.add_argument("--dry-run", action="store_true", help="Report drift without writing")
    p_once.add_argument("--json", action="store_true", help="Print the report as JSON")

    # run
    p_run = subparsers.add_parser("run", help="Run periodic sync cycles")
    p_run.add_argument("--interval", type=float, help="Seconds between cycles")
    p_run.add_argument("--metrics-port", type=int, help="Serve Prometheus metrics on this port")

    # inspect
    p_inspect = subparsers.add_parser("inspect", help="Decode a wallet's PlayerAccount")
    p_inspect.add_argument("wallet")

    # register
    p_register = subparsers.add_parser("register", help="Add wallets to full-scope cycles")
    p_register.add_argument("wallets", nargs="+")

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s %(levelname)s: %(message)s',
        datefmt='%H:%M:%S'
    )

    try:
        config = build_config(args)
        if args.command == "once":
            code = asyncio.run(cmd_once(args, config))
        elif args.command == "run":
            code = asyncio.run(cmd_run(args, config))
        elif args.command == "inspect":
            code = asyncio.run(cmd_inspect(args, config))
        elif args.command == "register":
            code = asyncio.run(cmd_register(args, config))
        else:
            parser.print_help()
            code = 2
    except KeyboardInterrupt:
        code = 0
    except (MirrorError, ValueError) as e:
        print(f"Error: {e}")
        code = 1

    sys.exit(code)


if __name__ == "__main__":
    main()
