import datetime
import decimal
import uuid
from decimal import Decimal, ROUND_HALF_UP

MONEY_QUANT = Decimal("0.01")


def to_money(value):
    return Decimal(value or 0).quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)


def to_json_compatible(value):
    if isinstance(value, dict):
        return {key: to_json_compatible(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [to_json_compatible(item) for item in value]
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, decimal.Decimal):
        return str(value)
    if isinstance(value, (datetime.date, datetime.datetime, datetime.time)):
        return value.isoformat()
    return value


def next_sequence_number(model, field, prefix):
    """Return the next ``<prefix>NNNN`` value for ``field`` on ``model``."""
    existing = model.objects.filter(**{f"{field}__startswith": prefix}).values_list(field, flat=True)
    serial = max([int(str(number).split("-")[-1]) for number in existing if str(number).split("-")[-1].isdigit()] + [0]) + 1
    return f"{prefix}{serial:04d}"


def payment_status_for(total, paid_amount):
    """Map a document total and its completed payments onto unpaid/partial/paid."""
    paid_amount = Decimal(paid_amount or 0)
    if paid_amount <= 0:
        return "unpaid"
    if paid_amount >= Decimal(total or 0):
        return "paid"
    return "partial"
