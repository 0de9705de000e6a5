# repricer/gate.py
from .periods import local_date


def is_due(link, now, tz=None):
    """
    Decide whether a retailer link should be fetched at ``now``.

    A link is fetched at most once per calendar day in the configured time
    zone, whatever the outcome of that attempt was.

    Args:
        link (RetailerLink): The link to check
        now (datetime): Current time
        tz (tzinfo, optional): Zone used for the day comparison. Defaults to
            SCRAPER_TIMEZONE.

    Returns:
        bool: False when the link has no URL parameters or was already
            attempted on the same local day, True otherwise.
    """
    if not link.url_parameters:
        return False
    if link.last_attempted_at is None:
        return True
    return local_date(link.last_attempted_at, tz) != local_date(now, tz)
