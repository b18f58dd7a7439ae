"""
PayHere request and notification signatures.

Checkout digest:      MD5(merchant_id + order_id + amount + currency + MD5(secret))
Notification digest:  MD5(merchant_id + order_id + amount + currency + status_code + MD5(secret))

All digests are uppercase hex. Outgoing amounts are rendered by
``format_amount`` ("2500.00"), the same string the gateway hashes. An amount
received as text is verified exactly as received: "2500E00" is not "2500.00".
"""
import hashlib
import hmac
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Union

Amount = Union[Decimal, int, float, str]

_CENTS = Decimal("0.01")


def _md5_upper(value: str) -> str:
    return hashlib.md5(value.encode("utf-8")).hexdigest().upper()


def format_amount(value: Amount) -> str:
    """Render an amount with exactly two decimals and no grouping."""
    if isinstance(value, float):
        # repr is the shortest string that round-trips
        value = repr(value)
    amount = Decimal(value) if not isinstance(value, Decimal) else value
    if not amount.is_finite():
        raise ValueError(f"amount must be finite, got {value!r}")
    if amount < 0:
        raise ValueError(f"amount must not be negative, got {value!r}")
    amount = amount.copy_abs()  # "-0" -> "0"
    return "{:.2f}".format(amount.quantize(_CENTS, rounding=ROUND_HALF_UP))


def hash_secret(secret: str) -> str:
    return _md5_upper(secret)


def sign(merchant_id: str, order_id: str, amount: Amount, currency: str, secret: str) -> str:
    return _md5_upper(
        merchant_id + order_id + format_amount(amount) + currency + hash_secret(secret)
    )


def verify(
    merchant_id: str,
    order_id: str,
    amount: Amount,
    currency: str,
    status_code: str,
    secret: str,
    received: str,
) -> bool:
    """Check a notification digest. Returns False for any malformed input."""
    try:
        rendered = amount if isinstance(amount, str) else format_amount(amount)
        expected = _md5_upper(
            merchant_id + order_id + rendered + currency + status_code + hash_secret(secret)
        )
        return hmac.compare_digest(expected.encode("ascii"), received.upper().encode("ascii"))
    except (TypeError, ValueError, AttributeError, InvalidOperation, UnicodeError):
        return False
