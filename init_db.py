"""
Tiny helper script to create (or upgrade) the marketplace snapshot before running the app.
Usage: python init_db.py
"""

import logging

from config import StoreSettings
from schemas import EntityKind
from store import MarketStore


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    settings = StoreSettings.from_env()
    store = MarketStore.open(settings)
    try:
        counts = ", ".join(f"{len(store.collection(kind))} {kind.value}" for kind in EntityKind)
        print(f"Snapshot {settings.storage_key!r} ready at {settings.database_url} ({counts})")
    finally:
        store.close()


if __name__ == "__main__":
    main()
