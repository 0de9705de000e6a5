# repricer/directory.py
import logging
from urllib.parse import urljoin

from .db import load_retailers

logger = logging.getLogger("repricer.directory")


class RetailerDirectory:
    """
    Read-only lookup of retailer display metadata keyed by retailer id.

    Built once at startup from the ``product_retailers`` collection and handed
    to whatever needs lookups (fetch strategies, the item processor's logging,
    the pass reporter). Nothing mutates it during a pass.
    """

    def __init__(self, retailers=()):
        self._by_id = {r.retailer_id: r for r in retailers}

    def __len__(self):
        return len(self._by_id)

    def __iter__(self):
        return iter(self._by_id.values())

    def __contains__(self, retailer_id):
        return retailer_id in self._by_id

    def get(self, retailer_id):
        return self._by_id.get(retailer_id)

    def display_name(self, retailer_id):
        info = self._by_id.get(retailer_id)
        return info.name if info and info.name else retailer_id

    def resolve_url(self, retailer_id, url_parameters):
        """
        Turn stored URL parameters into an absolute product URL.

        Absolute URLs pass through untouched. Relative ones are joined onto
        ``https://{domain}`` of the retailer; without a known domain they are
        returned as-is and the fetch will fail on its own.
        """
        if url_parameters.startswith(("http://", "https://")):
            return url_parameters
        info = self._by_id.get(retailer_id)
        if info is None or not info.domain:
            return url_parameters
        return urljoin(f"https://{info.domain}/", url_parameters.lstrip("/"))


async def load_directory():
    """Load every retailer document into a RetailerDirectory."""
    logger.info("Loading product retailers...")
    retailers = await load_retailers()
    for r in retailers:
        logger.info(f"Loaded retailer: {r.name or r.retailer_id}")
    directory = RetailerDirectory(retailers)
    logger.info(f"Total retailers loaded: {len(directory)}")
    return directory

