# tests/test_fetchers.py
from decimal import Decimal

import httpx
import pytest

from repricer.directory import RetailerDirectory
from repricer.errors import FetchFailure
from repricer.fetchers import FetcherRegistry, SelectorPriceFetcher, build_registry
from repricer.models import RetailerInfo
from repricer.utils import parse_price

PAGE = """
<html><body>
  <div class="product">
    <span class="price-dollars">$1,234.50</span>
  </div>
</body></html>
"""


@pytest.fixture
def directory(sample_retailers):
    return RetailerDirectory([RetailerInfo.model_validate(r) for r in sample_retailers])


@pytest.mark.parametrize(
    "text, expected",
    [
        ("$1,234.50", Decimal("1234.50")),
        ("12.5", Decimal("12.50")),
        ("AUD 7", Decimal("7.00")),
        ("", Decimal("0")),
        (None, Decimal("0")),
        ("Sold out", Decimal("0")),
        ("1.2.3", Decimal("0")),
    ],
)
def test_parse_price(text, expected):
    assert parse_price(text) == expected


def test_resolve_url(directory):
    assert (
        directory.resolve_url("woolworths", "/shop/productdetails/1")
        == "https://www.woolworths.com.au/shop/productdetails/1"
    )
    assert directory.resolve_url("coles", "https://other.example/p") == "https://other.example/p"
    assert directory.resolve_url("aldi", "/p/1") == "/p/1"


def test_directory_lookups(directory):
    assert len(directory) == 2
    assert "coles" in directory
    assert directory.display_name("coles") == "Coles"
    assert directory.display_name("aldi") == "aldi"


async def test_registry_rejects_missing_url_and_unknown_retailer():
    registry = FetcherRegistry()

    with pytest.raises(FetchFailure, match="Invalid URL"):
        await registry.fetch("woolworths", "")
    with pytest.raises(FetchFailure, match="No scraper defined for retailer: aldi"):
        await registry.fetch("aldi", "/p/1")


def test_build_registry_only_for_retailers_with_selectors(directory):
    registry = build_registry(directory)

    assert len(registry) == 1
    assert "woolworths" in registry
    assert "coles" not in registry


async def test_selector_fetcher_reads_price(directory):
    requested = []

    def handler(request):
        requested.append(str(request.url))
        return httpx.Response(200, text=PAGE)

    fetcher = SelectorPriceFetcher(
        ".price-dollars", directory, transport=httpx.MockTransport(handler)
    )
    registry = FetcherRegistry({"woolworths": fetcher})

    price = await registry.fetch("woolworths", "/shop/productdetails/1")

    assert price == Decimal("1234.50")
    assert requested == ["https://www.woolworths.com.au/shop/productdetails/1"]


async def test_selector_fetcher_missing_element(directory):
    fetcher = SelectorPriceFetcher(
        ".price-cents",
        directory,
        transport=httpx.MockTransport(lambda request: httpx.Response(200, text=PAGE)),
    )

    with pytest.raises(FetchFailure, match="not found"):
        await fetcher.fetch("woolworths", "/shop/productdetails/1")


async def test_selector_fetcher_http_error(directory):
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(404, text="gone")

    fetcher = SelectorPriceFetcher(
        ".price-dollars", directory, retries=3, transport=httpx.MockTransport(handler)
    )

    with pytest.raises(FetchFailure):
        await fetcher.fetch("woolworths", "/shop/productdetails/1")
    # status errors are not retried
    assert len(calls) == 1


async def test_selector_fetcher_transport_error(directory):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    fetcher = SelectorPriceFetcher(
        ".price-dollars", directory, retries=1, transport=httpx.MockTransport(handler)
    )

    with pytest.raises(FetchFailure, match="connection refused"):
        await fetcher.fetch("woolworths", "/shop/productdetails/1")
