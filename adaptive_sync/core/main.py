#!/usr/bin/env python3
"""
Entry point for the adaptive sync engine.

build_controller() wires the production collaborators together; main() runs one sync from the
command line and prints its summary.

    python -m adaptive_sync.core.main --mode test --max-api-calls 20
"""

import argparse
import json
from pathlib import Path
from typing import Optional, Union

from ..config import (
    DEFAULT_MAX_API_CALLS,
    HISTORY_DB,
    MODES,
    SHOPS_CSV,
    get_config,
)
from ..errors import SyncError
from ..storage.history import SqliteSyncHistory
from ..storage.shops import CsvShopStore
from ..utils.logger import logger
from .controller import RunController
from .places import PlaceSearchClient
from .progress import ProgressBus



def build_controller(
        shops_path: Union[str, Path] = SHOPS_CSV,
        history_path: Union[str, Path] = HISTORY_DB,
        search_client: Optional[PlaceSearchClient] = None,
        bus: Optional[ProgressBus] = None,
        ) -> RunController:
    return RunController(
        search_client=search_client or PlaceSearchClient(),
        sink=CsvShopStore(shops_path),
        history=SqliteSyncHistory(history_path),
        bus=bus or ProgressBus(),
    )


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Run one adaptive Places sync")
    parser.add_argument("--mode", choices=list(MODES), default="test", help="Grid to search")
    parser.add_argument("--max-api-calls", type=int, default=DEFAULT_MAX_API_CALLS,
                        help="Stop picking new cells after this many API calls")
    parser.add_argument("--requested-by", default="cli", help="Recorded in the sync history")
    args = parser.parse_args(argv)

    logger.info("Starting adaptive sync", extra={
        "operation": "main",
        "mode": args.mode,
        "max_api_calls": args.max_api_calls,
        "config": get_config(),
    })

    controller = build_controller()
    try:
        summary = controller.run(args.mode, max_api_calls=args.max_api_calls, requested_by=args.requested_by)
    except SyncError as e:
        logger.error(f"Adaptive sync failed: {e}", extra={
            "operation": "main",
            "mode": args.mode,
            "error": str(e),
        })
        return 1

    print(json.dumps(summary.to_dict(), indent=2))
    return 0 if not summary.aborted else 2


if __name__ == "__main__":
    raise SystemExit(main())
