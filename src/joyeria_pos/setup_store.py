"""Utility for initializing the Joyería POS data directory.

The module doubles as a script (``joyeria-setup``) and as a library used by
tests or other tooling. It creates one empty JSON array per collection so the
store opens cleanly on first use.
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Iterable, Sequence

from . import data_manager
from .constants import Collection
from .exceptions import PersistenceFailure


CONFIG_FILE = data_manager.CONFIG_FILE_NAME


def existing_collections(data_dir: Path, collections: Iterable[Collection] = tuple(Collection)) -> list[Path]:
    """Return the collection files already present under ``data_dir``."""

    store = data_manager.JsonStore(data_dir)
    try:
        return [store.path_for(collection) for collection in collections if store.path_for(collection).exists()]
    finally:
        store.close()


def create_data_store(
    data_dir: Path,
    *,
    collections: Iterable[Collection] = tuple(Collection),
    overwrite: bool = False,
) -> Path:
    """Create the data directory with an empty file per collection.

    Parameters are overridable to facilitate testing. When ``overwrite`` is
    ``False`` (the default) this function raises ``FileExistsError`` if any
    collection file already exists.
    """

    data_dir = Path(data_dir).expanduser().resolve()
    collections = tuple(collections)
    present = existing_collections(data_dir, collections) if data_dir.exists() else []
    if present and not overwrite:
        raise FileExistsError(
            f"Refusing to overwrite existing collections: {', '.join(path.name for path in present)}"
        )

    data_dir.mkdir(parents=True, exist_ok=True)
    store = data_manager.JsonStore(data_dir)
    try:
        store.save_many({collection: [] for collection in collections})
    finally:
        store.close()
    return data_dir


def run_from_config(config_path: Path, *, overwrite: bool = False) -> Path:
    """Initialize the data directory named by ``config.ini``."""

    parser = data_manager.read_config(config_path)
    settings = data_manager.parse_settings(parser, base_path=config_path.expanduser().resolve().parent)
    return create_data_store(settings.data_dir, overwrite=overwrite)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the setup script."""

    parser = argparse.ArgumentParser(prog="joyeria-setup", description="Initialize the Joyería POS data directory")
    parser.add_argument(
        "--config",
        default=CONFIG_FILE,
        help="Path to configuration file (default: config.ini)",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Empty the collections if they already exist.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the CLI script."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()

    print("--- Joyería POS Setup ---")
    print(f"Using configuration: {config_path}")

    try:
        data_dir = run_from_config(config_path, overwrite=args.force)
    except FileNotFoundError as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except KeyError as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except FileExistsError as exc:
        print(f"\n[ERROR] {exc}")
        print("Run with --force to empty the existing collections if appropriate.")
        return 1
    except (PersistenceFailure, PermissionError, OSError) as exc:
        print(f"\n[ERROR] Unable to write collections: {exc}")
        return 1

    print(f"\n[SUCCESS] Initialized data directory at '{data_dir}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
