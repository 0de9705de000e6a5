# repricer/history.py
import logging

from .db import update_history
from .periods import bucket_id, date_key
from .models import to_decimal128

logger = logging.getLogger("repricer.history")


def build_observations(item):
    """
    Collect the prices of an item worth recording.

    Only links with a known price whose last attempt did not fail are kept,
    so an errored attempt never writes a stale price into history.

    Returns:
        dict: combo key -> Decimal price
    """
    return {
        link.combo_key: link.latest_price
        for link in item.retailers
        if link.latest_price is not None and not link.had_error_on_last_attempt
    }


def merge_day(days, day, prices):
    """
    Merge one day's prices into a bucket's ``days`` mapping.

    Args:
        days (dict | None): Stored mapping of date -> {combo key: price},
            or None for a bucket that does not exist yet
        day (str): Date key being written
        prices (dict): combo key -> price observed on ``day``

    Returns:
        dict: New mapping. A missing bucket becomes exactly ``{day: prices}``;
            otherwise other dates and other combo keys of ``day`` are kept
            and the given combo keys are overwritten.
    """
    if days is None:
        return {day: dict(prices)}
    merged = dict(days)
    merged[day] = {**(days.get(day) or {}), **prices}
    return merged


async def append_history(item, now, tz=None, policy=None):
    """
    Append today's observations of a dirty item to its history ledger.

    Args:
        item (ProductItem): Item processed in this pass
        now (datetime): Time of the pass; picks both bucket and date key
        tz (tzinfo, optional): Zone for the date key and bucket
        policy (str, optional): Bucket policy name

    Returns:
        bool: True if a history write happened

    Raises:
        PersistenceFailure: If the transactional merge fails
    """
    if item.transient:
        logger.debug(f"Item {item.name} has no source document, history not updated")
        return False

    prices = build_observations(item)
    if not prices:
        logger.info(f"No usable prices for {item.name}, skipping history update")
        return False

    bucket = bucket_id(now, policy, tz)
    day = date_key(now, tz)
    encoded = {key: to_decimal128(price) for key, price in prices.items()}

    await update_history(
        item.source_id, bucket, lambda days: merge_day(days, day, encoded)
    )
    logger.info(f"History updated for {item.name} in bucket {bucket} on {day}")
    return True
