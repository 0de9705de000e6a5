# repricer/catalog.py
import asyncio
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional
from dotenv import load_dotenv

from .db import fetch_product_items, save_product_item
from .errors import PersistenceFailure
from .history import append_history
from .processor import process_item

load_dotenv()
PASS_CONCURRENCY = int(os.getenv("PASS_CONCURRENCY", "1"))

logger = logging.getLogger("repricer")
logger.setLevel(logging.INFO)
if not logger.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
    logger.addHandler(handler)


def utc_now():
    return datetime.now(timezone.utc)


@dataclass
class PassSummary:
    """What one catalog pass did, used for logging and the pass report."""

    started_at: datetime
    finished_at: Optional[datetime] = None
    items_seen: int = 0
    items_written: int = 0
    histories_written: int = 0
    link_results: list = field(default_factory=list)
    persistence_failures: list = field(default_factory=list)

    @property
    def attempted(self):
        return len(self.link_results)

    @property
    def failed(self):
        return sum(1 for r in self.link_results if r["outcome"] == "failed")

    @property
    def succeeded(self):
        return self.attempted - self.failed


class CatalogPass:
    """
    One full iteration over the product catalog.

    Args:
        fetcher (PriceFetcher): Price capability, usually a FetcherRegistry
        directory (RetailerDirectory, optional): Retailer names for logs and
            the pass report
        concurrency (int): Products processed at the same time. Each product
            is handled by a single task, so its links are never fetched twice
            at once and its history writes never race each other.
        tz (tzinfo, optional): Zone for the day gate, date keys and buckets
        policy (str, optional): History bucket policy
        clock (callable, optional): Returns the current aware datetime
    """

    def __init__(
        self,
        fetcher,
        directory=None,
        concurrency=PASS_CONCURRENCY,
        tz=None,
        policy=None,
        clock=utc_now,
    ):
        self.fetcher = fetcher
        self.directory = directory
        self.semaphore = asyncio.Semaphore(max(1, concurrency))
        self.tz = tz
        self.policy = policy
        self.clock = clock

    async def process_product(self, item, summary):
        """
        Process one product and persist it if anything was attempted.

        History is appended before the product document is written: if the
        product write is lost, the next pass re-fetches and rewrites the same
        date key, which is harmless.

        Returns:
            ProcessedItem or None: None if processing blew up unexpectedly
                (logged, the pass carries on)
        """
        async with self.semaphore:
            try:
                now = self.clock()
                processed = await process_item(
                    item, now, self.fetcher, self.directory, self.tz
                )
                self._record_links(summary, processed, now)

                if not item.dirty:
                    logger.info(f"No links due for {item.name}, skipping save")
                    return processed

                if item.transient:
                    logger.debug(f"Item {item.name} is transient, not persisting")
                    return processed

                try:
                    if await append_history(item, now, self.tz, self.policy):
                        summary.histories_written += 1
                except PersistenceFailure as e:
                    logger.error(f"Failed to update history for {item.name}: {e}")
                    summary.persistence_failures.append(str(e))

                try:
                    await save_product_item(item)
                    summary.items_written += 1
                    logger.info(f"Product item {item.name} saved")
                except PersistenceFailure as e:
                    logger.error(f"Failed to save product item {item.name}: {e}")
                    summary.persistence_failures.append(str(e))

                return processed
            except Exception as e:
                logger.exception(f"Failed to process product item {item.name}: {e}")
                return None

    def _record_links(self, summary, processed, now):
        item = processed.item
        by_key = {link.combo_key: link for link in item.retailers}
        for key in processed.attempted:
            link = by_key[key]
            failed = key in processed.errors
            summary.link_results.append(
                {
                    "product_id": str(item.source_id),
                    "product": item.name,
                    "retailer_id": link.retailer_id,
                    "retailer": (
                        self.directory.display_name(link.retailer_id)
                        if self.directory
                        else link.retailer_id
                    ),
                    "pack_id": link.pack_id,
                    "combo_key": key,
                    "outcome": "failed" if failed else "ok",
                    "price": str(link.latest_price) if link.latest_price is not None else None,
                    "error": processed.errors.get(key),
                    "attempted_at": now.isoformat(),
                }
            )

    async def run(self):
        """
        Execute a complete pass over every product item.

        Returns:
            PassSummary: Counts and per-link outcomes of the pass

        Raises:
            PyMongoError: If the catalog itself cannot be read. Per-item
                failures never escape.
        """
        summary = PassSummary(started_at=self.clock())
        logger.info("Fetching product items...")
        items = await fetch_product_items()
        summary.items_seen = len(items)

        if not items:
            logger.info("No product items found.")
        else:
            await asyncio.gather(*(self.process_product(i, summary) for i in items))

        summary.finished_at = self.clock()
        logger.info(
            f"Finished processing {summary.items_seen} product items: "
            f"{summary.succeeded} prices fetched, {summary.failed} failed, "
            f"{summary.items_written} items saved"
        )
        return summary
