# repricer/periods.py
import os
from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo
from dotenv import load_dotenv

from .errors import ConfigurationFailure

load_dotenv()
TIMEZONE = ZoneInfo(os.getenv("SCRAPER_TIMEZONE", "Australia/Sydney"))
HISTORY_BUCKET = os.getenv("HISTORY_BUCKET", "fiscal_quarter")

BUCKET_POLICIES = ("fiscal_quarter", "calendar_year")


def local_date(ts, tz=None):
    """
    Return the calendar date of a timestamp in the configured time zone.

    Naive timestamps are treated as UTC, which is how the document store
    hands them back when the client is not timezone aware.
    """
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(tz or TIMEZONE).date()


def date_key(now, tz=None):
    """History date key (YYYY-MM-DD) for ``now``."""
    return local_date(now, tz).isoformat()


def fiscal_quarter_id(day: date) -> str:
    """
    Return the Australian financial quarter id for a calendar date.

    The financial year starts in July:

        Jul-Sep -> Q1, Oct-Dec -> Q2, Jan-Mar -> Q3, Apr-Jun -> Q4

    The id carries the calendar year of the date itself, so every quarter
    id maps to exactly one three-month range: 2024-03-15 is ``Q32024`` and
    2024-07-01 is ``Q12024``.
    """
    if 7 <= day.month <= 9:
        quarter = 1
    elif 10 <= day.month <= 12:
        quarter = 2
    elif 1 <= day.month <= 3:
        quarter = 3
    else:
        quarter = 4

    return f"Q{quarter}{day.year}"


def calendar_year_id(day: date) -> str:
    return f"{day.year:04d}"


def check_bucket_policy(policy=None):
    policy = policy or HISTORY_BUCKET
    if policy not in BUCKET_POLICIES:
        raise ConfigurationFailure(
            f"Unknown HISTORY_BUCKET {policy!r}, expected one of {BUCKET_POLICIES}"
        )
    return policy


def bucket_id(now, policy=None, tz=None):
    """
    Compute the history bucket a timestamp falls into.

    Args:
        now (datetime): The observation time
        policy (str, optional): ``fiscal_quarter`` or ``calendar_year``.
            Defaults to the HISTORY_BUCKET setting.
        tz (tzinfo, optional): Zone the calendar date is taken in.
            Defaults to SCRAPER_TIMEZONE.

    Returns:
        str: Bucket id, e.g. ``Q32024`` or ``2024``

    Raises:
        ConfigurationFailure: If the policy name is not recognised
    """
    policy = check_bucket_policy(policy)
    day = local_date(now, tz)
    if policy == "calendar_year":
        return calendar_year_id(day)
    return fiscal_quarter_id(day)
