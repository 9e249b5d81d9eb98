import math
import re
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

import bleach


def sanitize_input(value: Optional[str]) -> str:
    """Sanitize a user-supplied string for safe display and search.

    - Strips HTML tags using bleach.clean(..., strip=True)
    - Removes obvious SQL metacharacters like '--' and ';'
    - Trims whitespace
    """
    if value is None:
        return ""
    # remove NULL bytes
    val = value.replace("\x00", "")
    # strip tags
    val = bleach.clean(val, strip=True)
    # remove common SQL comment and statement separators
    val = re.sub(r"(--|;)", "", val)
    return val.strip()


def escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


# Business rule: money is stored rounded to 2 decimals

def round_amount(value: Decimal) -> Decimal:
    return Decimal(value).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def line_total(quantity: int, price: Decimal, discount: Decimal) -> Decimal:
    """Unrounded price of one line: quantity * price * (1 - discount / 100)."""
    return Decimal(quantity) * Decimal(price) * (Decimal(1) - Decimal(discount) / Decimal(100))


def page_count(total: int, limit: int) -> int:
    return math.ceil(total / limit) if limit else 0
