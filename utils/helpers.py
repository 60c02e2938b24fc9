import logging
from datetime import datetime, timezone
from typing import Optional, Union
from urllib.parse import quote

from bolt11 import decode as bolt11_decode
from bolt11.exceptions import Bolt11Exception

# Setup logger for helper functions
logger = logging.getLogger(__name__)

# Workspace roles
PAY_BOUNTY = "PAY BOUNTY"
WITHDRAW_BUDGET = "WITHDRAW BUDGET"
VIEW_REPORT = "VIEW REPORT"

# Payment history statuses
PAYMENT_PENDING = "PENDING"
PAYMENT_COMPLETE = "COMPLETE"
PAYMENT_FAILED = "FAILED"

# Payment history types
PAYMENT_TYPE_PAYMENT = "payment"
PAYMENT_TYPE_DEPOSIT = "deposit"
PAYMENT_TYPE_WITHDRAW = "withdraw"

# Invoice types tracked for settlement polling
INVOICE_TYPE_BUDGET = "BUDGET"
INVOICE_TYPE_KEYSEND = "KEYSEND"

KEYSEND_TEXT = "memotext added for notification"


def decode_invoice_amount(payment_request: str) -> int:
    """
    Returns the amount of a bolt11 invoice in sats.
    Invoices that cannot be decoded or carry no amount yield 0.
    """
    if not payment_request:
        return 0
    try:
        decoded = bolt11_decode(payment_request)
    except Bolt11Exception as e:
        logger.warning(f"Could not decode invoice {payment_request[:24]}...: {e}")
        return 0
    except Exception as e:
        logger.error(f"Error decoding invoice {payment_request[:24]}...: {e}")
        return 0
    if not decoded.amount_msat:
        return 0
    return int(decoded.amount_msat) // 1000


def payment_memo(title: Optional[str]) -> str:
    """Memo attached to bounty keysend payments, url-quoted as the relay expects."""
    return quote(f"Payment For: {title or ''}")


def get_hours_difference(created: Union[float, int, None], now: Optional[float] = None) -> float:
    """Hours elapsed between an epoch timestamp and now."""
    if not created:
        return float("inf")
    if now is None:
        now = datetime.now(timezone.utc).timestamp()
    return (now - float(created)) / 3600


def format_pay_error(error: Optional[str]) -> str:
    if not error:
        return "Payment error"
    return error.strip() or "Payment error"
