"""
Common — 固定小数点の金額

金額はサービス間を小数点以下 2 桁の文字列 ("10.00") でやり取りし、そのまま保存する。
ワイヤ上の float は最短表現 (repr) 経由で変換するので
5.1 は Decimal("5.10") になり、5.0999999... にはならない。

1 セント未満の端数 ("5.004") は丸めずに拒否する。
合計は常に呼び出し側が送った値の厳密な和になる。
"""

from decimal import Decimal, InvalidOperation
from typing import Annotated

from pydantic import BeforeValidator, PlainSerializer

CENT = Decimal("0.01")


def to_money(value) -> Decimal:
    if isinstance(value, bool):
        raise ValueError("amount must be a number or decimal string")
    if isinstance(value, float):
        value = repr(value)
    try:
        amount = Decimal(value)
        if not amount.is_finite():
            raise ValueError(f"invalid amount: {value!r}")
        cents = amount.quantize(CENT)
    except (InvalidOperation, TypeError) as e:
        raise ValueError(f"invalid amount: {value!r}") from e
    if cents != amount:
        raise ValueError(f"amount has more than two decimal places: {value!r}")
    return cents


def format_money(amount: Decimal) -> str:
    return f"{to_money(amount):.2f}"


Money = Annotated[
    Decimal,
    BeforeValidator(to_money),
    PlainSerializer(format_money, return_type=str),
]
