# bulkmart/services/reservation_pricing.py
from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

CENT = Decimal("0.01")


def quantize_money(value: Decimal) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Decimal) -> int:
    """金额 → 分（支付处理方使用最小货币单位）。"""
    return int((quantize_money(amount) * 100).to_integral_value(rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class PriceSnapshot:
    unit_price: Decimal
    total_price: Decimal
    deposit_amount: Decimal

    @property
    def balance_due(self) -> Decimal:
        return self.total_price - self.deposit_amount


def compute_price_snapshot(unit_price: Decimal, quantity: int, deposit_rate: Decimal) -> PriceSnapshot:
    """
    创建预约时锁定价格：
      total   = unit × qty
      deposit = total × rate
    均按四舍五入（half-up）到分。
    """
    unit = quantize_money(unit_price)
    total = quantize_money(unit * quantity)
    deposit = quantize_money(total * Decimal(deposit_rate))
    return PriceSnapshot(unit_price=unit, total_price=total, deposit_amount=deposit)
