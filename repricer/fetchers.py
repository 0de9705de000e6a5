# repricer/fetchers.py
import logging
import os
from decimal import Decimal
from typing import Protocol
import httpx
from bs4 import BeautifulSoup
from dotenv import load_dotenv

from .errors import FetchFailure
from .utils import network_retry, parse_price

load_dotenv()
FETCH_TIMEOUT = float(os.getenv("FETCH_TIMEOUT", "30"))
FETCH_RETRIES = int(os.getenv("FETCH_RETRIES", "2"))

DEFAULT_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
    ),
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-AU,en;q=0.9",
}

logger = logging.getLogger("repricer.fetchers")


class PriceFetcher(Protocol):
    async def fetch(self, retailer_id: str, url_parameters: str) -> Decimal:
        """Return the current price, or raise FetchFailure."""
        ...


class FetcherRegistry:
    """
    Resolves the fetch strategy for a retailer and delegates to it.

    The registry itself satisfies the PriceFetcher protocol, so the item
    processor only ever sees one fetcher.
    """

    def __init__(self, fetchers=None):
        self._fetchers = dict(fetchers or {})

    def register(self, retailer_id, fetcher):
        self._fetchers[retailer_id] = fetcher

    def __contains__(self, retailer_id):
        return retailer_id in self._fetchers

    def __len__(self):
        return len(self._fetchers)

    async def fetch(self, retailer_id, url_parameters):
        if not url_parameters:
            raise FetchFailure("Invalid URL provided for scraping.")
        fetcher = self._fetchers.get(retailer_id)
        if fetcher is None:
            raise FetchFailure(f"No scraper defined for retailer: {retailer_id}")
        return await fetcher.fetch(retailer_id, url_parameters)


class SelectorPriceFetcher:
    """
    Fetch a product page over HTTP and read the price from one CSS selector.

    A fresh ``httpx.AsyncClient`` is opened and closed on every call, so no
    connection state is shared between fetches or retailers.

    Args:
        selector (str): CSS selector of the element holding the price text
        directory (RetailerDirectory, optional): Used to turn relative URL
            parameters into absolute URLs on the retailer's domain
        timeout (float): Per-request timeout in seconds
        retries (int): Attempts made on transport errors before giving up
        transport (httpx.AsyncBaseTransport, optional): Custom transport,
            mainly for tests
    """

    def __init__(
        self,
        selector,
        directory=None,
        timeout=FETCH_TIMEOUT,
        retries=FETCH_RETRIES,
        transport=None,
    ):
        self.selector = selector
        self.directory = directory
        self.timeout = timeout
        self.retries = retries
        self._transport = transport

    async def fetch(self, retailer_id, url_parameters):
        """
        Fetch the price for one retailer link.

        Returns:
            Decimal: Parsed price. Decimal("0") when the element exists but
                its text holds no usable number.

        Raises:
            FetchFailure: On HTTP errors, exhausted transport retries or a
                missing price element
        """
        url = url_parameters
        if self.directory is not None:
            url = self.directory.resolve_url(retailer_id, url_parameters)

        try:
            html = await self._get(url)
        except httpx.HTTPError as e:
            raise FetchFailure(f"Failed to fetch {url}: {e}") from e

        soup = BeautifulSoup(html, "lxml")
        el = soup.select_one(self.selector)
        if el is None:
            raise FetchFailure(f"Price element {self.selector!r} not found on {url}")
        price = parse_price(el.get_text(strip=True))
        logger.debug(f"Extracted price {price} from {url}")
        return price

    async def _get(self, url):
        @network_retry(attempts=self.retries, exceptions=httpx.TransportError)
        async def get():
            async with httpx.AsyncClient(
                timeout=self.timeout,
                headers=DEFAULT_HEADERS,
                follow_redirects=True,
                transport=self._transport,
            ) as client:
                resp = await client.get(url)
                resp.raise_for_status()
                return resp.text

        return await get()


def build_registry(directory):
    """
    Register a SelectorPriceFetcher for every retailer that declares a
    ``priceSelector`` in the directory.
    """
    registry = FetcherRegistry()
    for info in directory:
        if info.price_selector:
            registry.register(
                info.retailer_id, SelectorPriceFetcher(info.price_selector, directory)
            )
        else:
            logger.warning(
                f"No price selector for retailer {info.name or info.retailer_id}; "
                "its links will fail until one is configured"
            )
    return registry
