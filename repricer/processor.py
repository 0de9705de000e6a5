# repricer/processor.py
import logging
from decimal import InvalidOperation

from .errors import FetchFailure
from .gate import is_due
from .models import ProcessedItem, to_decimal

logger = logging.getLogger("repricer.processor")


async def process_item(item, now, fetcher, directory=None, tz=None):
    """
    Run every due retailer link of a product through the price fetcher.

    Links are handled one after another. For each link the fetch gate decides
    whether it is due; a due link is stamped with ``now`` before the fetch so
    that a crash mid-fetch still counts as today's attempt, then the fetch
    result is recorded on the link.

    Args:
        item (ProductItem): Product whose links are updated in place
        now (datetime): Time of this pass, stamped on attempted links
        fetcher (PriceFetcher): Capability used to fetch prices
        directory (RetailerDirectory, optional): Only used for readable logs
        tz (tzinfo, optional): Zone for the day gate

    Returns:
        ProcessedItem: Combo keys attempted, succeeded, failed and skipped.
            ``item.dirty`` is True when at least one link was attempted.

    Outcome per attempted link:
        - positive price: latest_price set, error flag cleared
        - zero price: error flag set, previous price kept
        - any exception from the fetcher: error flag set, previous price kept

    Note:
        Fetch errors never propagate; one bad link does not affect its
        siblings or other products.
    """
    result = ProcessedItem(item=item)

    for link in item.retailers:
        name = directory.display_name(link.retailer_id) if directory else link.retailer_id
        label = f"{name} pack {link.pack_id}"

        if not is_due(link, now, tz):
            if not link.url_parameters:
                logger.debug(f"No URL parameters for {label} on {item.name}, skipping")
            else:
                logger.debug(f"Skipping {label} on {item.name}, already attempted today")
            result.skipped.append(link.combo_key)
            continue

        link.last_attempted_at = now
        item.dirty = True
        result.attempted.append(link.combo_key)

        try:
            logger.info(f"Fetching price for {item.name} from {label}")
            raw = await fetcher.fetch(link.retailer_id, link.url_parameters)
        except FetchFailure as e:
            logger.warning(f"Failed to fetch price for {item.name} from {label}: {e}")
            _record_failure(result, link, str(e))
            continue
        except Exception as e:
            logger.exception(f"Unexpected error fetching {item.name} from {label}")
            _record_failure(result, link, repr(e))
            continue

        price = usable_price(raw)
        if price is None:
            logger.warning(
                f"Unusable price {raw!r} for {item.name} from {label}, "
                f"keeping {link.latest_price}"
            )
            _record_failure(result, link, f"unusable price {raw!r}")
            continue

        link.latest_price = price
        link.had_error_on_last_attempt = False
        result.succeeded.append(link.combo_key)
        logger.info(f"Price for {item.name} from {label}: {price}")

    return result


def usable_price(value):
    """Return ``value`` as a positive finite Decimal, or None when it is not one."""
    try:
        price = to_decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        return None
    if price is None or not price.is_finite() or price <= 0:
        return None
    return price


def _record_failure(result, link, reason):
    link.had_error_on_last_attempt = True
    result.failed.append(link.combo_key)
    result.errors[link.combo_key] = reason
