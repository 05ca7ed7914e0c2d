from __future__ import annotations
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any

from rqm.services.errors import InvalidAmount

Q0 = Decimal("1")


def D(x) -> Decimal:
    if isinstance(x, Decimal):
        return x
    return Decimal(str(x))


def to_rupiah(val: Any) -> int:
    """
    Wandelt Eingaben wie 150000, "150000", "150.000" oder "150.000,00" in ganze Rupiah.
    Tausenderpunkt wie im id-ID Format; Komma als Dezimaltrenner.
    """
    if val is None or val == "":
        raise InvalidAmount()
    if isinstance(val, bool):
        raise InvalidAmount()
    if isinstance(val, (int, float, Decimal)):
        d = D(val)
    else:
        s = str(val).strip().replace("Rp", "").replace(" ", "")
        s = s.replace(".", "").replace(",", ".")
        try:
            d = Decimal(s)
        except InvalidOperation:
            raise InvalidAmount()
    if not d.is_finite():
        raise InvalidAmount()
    return int(d.quantize(Q0, rounding=ROUND_HALF_UP))


def format_rupiah(amount: int) -> str:
    """1500000 -> 'Rp 1.500.000'"""
    sign = "-" if amount < 0 else ""
    return f"{sign}Rp {abs(int(amount)):,}".replace(",", ".")
