"""
Cálculo de totales y estado de una cuenta (Tab).

Todos los servicios que modifican cargos o pagos terminan llamando a
recalculate_tab_totals para mantener subtotal/impuesto/total, el estado y
los saldos de los grupos de facturación consistentes.
"""
from collections import defaultdict
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from app.common.money import to_money
from app.core.config import settings
from app.modules.tabs.models import Tab, TabStatus


def calculate_tax(subtotal: Decimal, tax_rate: Optional[Decimal] = None) -> Decimal:
    rate = settings.TAX_RATE if tax_rate is None else tax_rate
    return to_money(to_money(subtotal) * rate)


def derive_status(tab: Tab) -> TabStatus:
    """paid / partial / open a partir de los montos. void y closed se respetan."""
    if tab.status in (TabStatus.VOID, TabStatus.CLOSED):
        return tab.status
    total = to_money(tab.total_amount)
    paid = to_money(tab.paid_amount)
    if total > 0 and paid >= total:
        return TabStatus.PAID
    if paid > 0:
        return TabStatus.PARTIAL
    return TabStatus.OPEN


def recalculate_group_balances(tab: Tab) -> None:
    """Saldo de cada grupo = cargos asignados + impuesto proporcional."""
    sums = defaultdict(lambda: Decimal("0"))
    for item in tab.line_items:
        if item.billing_group_id is not None:
            sums[item.billing_group_id] += to_money(item.total)
    for group in tab.billing_groups:
        subtotal = to_money(sums.get(group.id, Decimal("0")))
        group.current_balance = subtotal + calculate_tax(subtotal)


def recalculate_tab_totals(db: Session, tab: Tab) -> Tab:
    # flush so billing_group_id reflects relationship assignments
    db.flush()
    subtotal = to_money(sum((to_money(item.total) for item in tab.line_items), Decimal("0")))
    tax = calculate_tax(subtotal)
    tab.subtotal = subtotal
    tab.tax_amount = tax
    tab.total_amount = subtotal + tax
    tab.status = derive_status(tab)
    recalculate_group_balances(tab)
    return tab


def apply_paid_amount(tab: Tab, delta: Decimal) -> Tab:
    """Suma (o resta, en reembolsos) al monto pagado y re-deriva el estado."""
    paid = to_money(tab.paid_amount) + to_money(delta)
    tab.paid_amount = max(paid, Decimal("0.00"))
    tab.status = derive_status(tab)
    return tab
