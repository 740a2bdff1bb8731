"""
Verify the turn ledger from the command line.

Usage:
    python verify_ledger.py                  # whole ledger
    python verify_ledger.py --conversation c1
    python verify_ledger.py --backend supabase
"""
import argparse
import json
import logging
import sys
from dataclasses import asdict

from config import DATABASE_URL, TURN_STORE_BACKEND
from services.supabase_turn_store import SupabaseTurnStore
from services.turn_store import SQLTurnStore
from services.verifier import ChainVerifier

logger = logging.getLogger(__name__)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Recompute and check every turn's hashes")
    parser.add_argument("--conversation", help="Only verify this conversation id")
    parser.add_argument(
        "--backend",
        choices=("sqlite", "supabase"),
        default=TURN_STORE_BACKEND,
        help="Turn store to read (default: TURN_STORE_BACKEND)",
    )
    parser.add_argument(
        "--database-url",
        default=DATABASE_URL,
        help="SQLAlchemy URL for the sqlite backend (default: DATABASE_URL)",
    )
    return parser.parse_args(argv)


def main(argv=None) -> int:
    """Run verification and print the JSON report; returns the exit code."""
    args = parse_args(argv)

    if args.backend == "supabase":
        store = SupabaseTurnStore()
    else:
        store = SQLTurnStore(args.database_url)

    try:
        result = ChainVerifier(store).verify(args.conversation)
    finally:
        store.close()

    print(json.dumps(asdict(result), indent=2))

    if not result.valid:
        logger.error(f"Ledger verification failed: {result.message}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
