# repricer/utils.py
import re
from decimal import Decimal, InvalidOperation
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
)

CENT = Decimal("0.01")


def parse_price(text):
    """
    Parse a price as shown on a retailer page into a Decimal.

    Everything except digits and the decimal point is dropped, so "$1,234.50",
    "1234.50 AUD" and "$12.5" all parse. The result is rounded to cents.

    Args:
        text (str | None): Raw text of the price element

    Returns:
        Decimal: The price, or Decimal("0") when nothing usable was found.
            Callers treat zero as "element present but unparsable".
    """
    if not text:
        return Decimal("0")
    cleaned = re.sub(r"[^0-9\.]", "", text)
    try:
        return Decimal(cleaned).quantize(CENT)
    except InvalidOperation:
        return Decimal("0")


def network_retry(**tenacity_kwargs):
    """
    Retry decorator for page downloads.

    Only the given exception types are retried, so an HTTP status error or a
    parse problem fails at once while dropped connections and timeouts get
    another go with exponential backoff (1s, 2s, 4s ... capped at 10s). The
    last exception is re-raised once attempts run out.

    Args:
        **tenacity_kwargs:
            - attempts (int): Total attempts, first one included. Defaults to 3.
            - exceptions (type | tuple): Retried exception types. Defaults to
              Exception.
    """
    return retry(
        stop=stop_after_attempt(tenacity_kwargs.get("attempts", 3)),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type(tenacity_kwargs.get("exceptions", Exception)),
        reraise=True,
    )
