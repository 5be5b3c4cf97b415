#!/usr/bin/env python3
"""Run a one-shot journal sync (manual trigger).

Usage:
    python scripts/sync_now.py
    python scripts/sync_now.py --vault ~/Notes --agenda 2024-03-01
"""

import argparse
import logging
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from notevault import config  # noqa: E402
from notevault.sync import SyncOrchestrator  # noqa: E402
from notevault.vault import FileVault  # noqa: E402


def main() -> None:
    parser = argparse.ArgumentParser(description="Run one notevault journal sync pass")
    parser.add_argument("--vault", help="Vault root (default: NOTEVAULT_VAULT_PATH)")
    parser.add_argument("--agenda", metavar="DATE",
                        help="Merge stored calendar events into this day's entry first")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        stream=sys.stderr,
    )
    config.ensure_data_dirs()

    orchestrator = SyncOrchestrator(FileVault(args.vault or config.VAULT_PATH))
    if args.agenda:
        entry = orchestrator.merge_agenda(args.agenda)
        if entry is None:
            print(f"Agenda not merged for {args.agenda}: conflict pending")

    result = orchestrator.run_sync()
    print(f"Journal sync complete: {result}")
    conflicts = orchestrator.get_conflicts()
    if conflicts:
        print(f"Pending conflicts: {', '.join(e.id for e in conflicts)}")


if __name__ == "__main__":
    main()
