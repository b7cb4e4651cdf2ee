#!/usr/bin/env python3
"""Main entry point for the Bike Rental console"""

import argparse
import sys
from typing import List, Optional

from .config import get_config
from .console import RentalConsole, seed_demo_data
from .engine import RentalEngine
from .errors import StorageError
from .logging_config import setup_logging
from .storage import create_storage


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="bike-rental", description="Bike Rental System admin console")
    parser.add_argument("--backend", choices=["memory", "json", "sqlite", "snapshot"],
                        help="storage backend (default from BIKE_RENTAL_STORAGE_BACKEND)")
    parser.add_argument("--data-dir", help="directory holding the json/sqlite/snapshot data")
    parser.add_argument("--seed-demo", dest="seed_demo", action="store_true", default=None,
                        help="populate an empty store with demo data")
    parser.add_argument("--no-seed-demo", dest="seed_demo", action="store_false")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Start the console session"""
    args = build_parser().parse_args(argv)

    overrides = {}
    if args.backend:
        overrides["storage_backend"] = args.backend
    if args.data_dir:
        overrides["data_dir"] = args.data_dir
    if args.seed_demo is not None:
        overrides["seed_demo_data"] = args.seed_demo
    config = get_config().model_copy(update=overrides)

    logger = setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)

    try:
        storage = create_storage(config)
        engine = RentalEngine(storage, config)
    except StorageError as e:
        logger.error("Cannot open %s storage: %s", config.storage_backend, e)
        print(f"❌ Cannot open {config.storage_backend} storage: {e}")
        return 2

    print(f"🚲 System initialized with {storage.name} storage.")

    try:
        if config.seed_demo_data and engine.is_empty():
            seed_demo_data(engine)
        return RentalConsole(engine, config).run()
    except (KeyboardInterrupt, EOFError):
        print("\n👋 Shutting down Bike Rental System...")
        return 0
    finally:
        storage.close()


if __name__ == "__main__":
    sys.exit(main())
