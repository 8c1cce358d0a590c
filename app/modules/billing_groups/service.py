import logging
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Tuple
from uuid import UUID
from sqlalchemy.orm import Session
from sqlalchemy import func

from app.modules.billing_groups.models import (
    BillingGroup, BillingGroupRule, BillingGroupType, BillingGroupStatus, RuleAction, LineItemGroupOverride
)
from app.modules.billing_groups.schemas import (
    BillingGroupCreate, BillingGroupUpdate, RuleCreate, RuleUpdate,
    BillingSummaryOut, GroupSummary, BillingGroupOut, GroupDefinition, QuickSplitRequest, SplitRule
)
from app.modules.line_items.models import LineItem
from app.modules.line_items.schemas import LineItemOut
from app.modules.tabs.models import Tab, TabStatus, LOCKED_TAB_STATUSES
from app.modules.tabs.totals import recalculate_tab_totals, calculate_tax
from app.common.errors import AppError, NotFoundError, ValidationError, ConflictError, DatabaseError
from app.common.money import to_money, format_money

logger = logging.getLogger(__name__)

# Plantillas para habilitar grupos en una cuenta: (nombre, tipo)
BILLING_GROUP_TEMPLATES = {
    "hotel": [
        ("Room Charges", BillingGroupType.STANDARD),
        ("Restaurant & Bar", BillingGroupType.STANDARD),
        ("Spa & Activities", BillingGroupType.STANDARD),
        ("Incidentals", BillingGroupType.STANDARD),
    ],
    "restaurant": [
        ("Food", BillingGroupType.STANDARD),
        ("Beverages", BillingGroupType.STANDARD),
        ("Service & Tips", BillingGroupType.STANDARD),
    ],
    "corporate": [
        ("Business Expenses", BillingGroupType.CORPORATE),
        ("Personal Expenses", BillingGroupType.PERSONAL),
    ],
    "default": [
        ("General", BillingGroupType.STANDARD),
    ],
}


def rule_matches(conditions: dict, item: LineItem, now: datetime) -> bool:
    """
    Todas las condiciones presentes deben cumplirse.
    """
    item_metadata = item.metadata_ or {}

    categories = conditions.get("category")
    if categories:
        if item_metadata.get("category") not in categories:
            return False

    amount = conditions.get("amount")
    if amount:
        total = to_money(item.total)
        if amount.get("min") is not None and total < Decimal(str(amount["min"])):
            return False
        if amount.get("max") is not None and total > Decimal(str(amount["max"])):
            return False

    time_range = conditions.get("time")
    if time_range:
        current = now.strftime("%H:%M")
        start, end = time_range.get("start"), time_range.get("end")
        if start and end and start > end:
            # Rango que cruza la medianoche, ej. 22:00-02:00
            if not (current >= start or current <= end):
                return False
        else:
            if start and current < start:
                return False
            if end and current > end:
                return False

    days = conditions.get("day_of_week")
    if days:
        # Domingo = 0
        if (now.weekday() + 1) % 7 not in days:
            return False

    expected = conditions.get("metadata")
    if expected:
        for key, value in expected.items():
            if item_metadata.get(key) != value:
                return False

    return True


class BillingGroupService:
    """
    Grupos de facturación: sub-cuentas de una cuenta para dividir cargos
    entre varios pagadores.
    """

    def __init__(self, db: Session):
        self.db = db

    # ===== Lectura =====

    def get_group(self, group_id: UUID, organization_id: UUID) -> BillingGroup:
        group = self.db.query(BillingGroup).filter(
            BillingGroup.id == group_id,
            BillingGroup.organization_id == organization_id
        ).first()
        if not group:
            raise NotFoundError("Billing group")
        return group

    def _get_tab(self, tab_id: UUID, organization_id: UUID) -> Tab:
        tab = self.db.query(Tab).filter(Tab.id == tab_id, Tab.organization_id == organization_id).first()
        if not tab:
            raise NotFoundError("Tab")
        return tab

    def list_groups(self, organization_id: UUID, tab_id: Optional[UUID] = None) -> List[BillingGroup]:
        query = self.db.query(BillingGroup).filter(BillingGroup.organization_id == organization_id)
        if tab_id:
            query = query.filter(BillingGroup.tab_id == tab_id)
        return query.order_by(BillingGroup.tab_id, BillingGroup.group_number).all()

    # ===== Escritura =====

    def _next_group_number(self, tab_id: UUID) -> int:
        current = self.db.query(func.max(BillingGroup.group_number)).filter(BillingGroup.tab_id == tab_id).scalar()
        return (current or 0) + 1

    def build_group(self, tab: Tab, name: str, group_type: BillingGroupType, **fields) -> BillingGroup:
        group = BillingGroup(
            organization_id=tab.organization_id,
            group_number=self._next_group_number(tab.id),
            name=name,
            group_type=group_type,
            status=BillingGroupStatus.ACTIVE,
            current_balance=0,
            deposit_applied=0,
            **fields
        )
        tab.billing_groups.append(group)
        self.db.flush()
        return group

    def create_group(self, data: BillingGroupCreate, organization_id: UUID) -> BillingGroup:
        tab = self._get_tab(data.tab_id, organization_id)
        if tab.status == TabStatus.VOID:
            raise ValidationError("Cannot add billing groups to a void tab")

        try:
            group = self.build_group(
                tab, data.name, data.group_type,
                payer_email=data.payer_email,
                payer_organization_id=data.payer_organization_id,
                credit_limit=data.credit_limit,
                deposit_amount=to_money(data.deposit_amount),
                authorization_code=data.authorization_code,
                po_number=data.po_number,
                metadata_=data.metadata
            )
            self.db.commit()
            self.db.refresh(group)
            logger.info(f"Billing group {group.id} (#{group.group_number}) created on tab {tab.id}")
            return group
        except AppError:
            raise
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error creating billing group: {e}")
            raise DatabaseError("Failed to create billing group")

    def update_group(self, group_id: UUID, data: BillingGroupUpdate, organization_id: UUID) -> BillingGroup:
        group = self.get_group(group_id, organization_id)
        if group.tab.status == TabStatus.VOID:
            raise ValidationError("Cannot modify billing groups of a void tab")
        updates = data.model_dump(exclude_unset=True)

        if "deposit_amount" in updates and updates["deposit_amount"] is not None:
            if to_money(updates["deposit_amount"]) < to_money(group.deposit_applied):
                raise ValidationError("Deposit amount cannot be lower than the deposit already applied")
        if "credit_limit" in updates and updates["credit_limit"] is not None:
            if to_money(updates["credit_limit"]) < to_money(group.current_balance):
                raise ValidationError("Credit limit cannot be lower than the current balance")

        if "metadata" in updates:
            group.metadata_ = updates.pop("metadata")
        for field, value in updates.items():
            if value is not None or field in ("credit_limit", "payer_email", "payer_organization_id"):
                setattr(group, field, value)

        self.db.commit()
        self.db.refresh(group)
        return group

    def enable_billing_groups(self, tab_id: UUID, organization_id: UUID, template: str = "default",
                              default_groups: Optional[List[GroupDefinition]] = None) -> List[BillingGroup]:
        """
        Crea los grupos de una plantilla (o los indicados en default_groups).
        Los cargos sin grupo pasan al primero.
        """
        tab = self._get_tab(tab_id, organization_id)
        if tab.status == TabStatus.VOID:
            raise ValidationError("Cannot enable billing groups on a void tab")
        if tab.billing_groups:
            raise ConflictError("Billing groups are already enabled for this tab")

        try:
            if default_groups:
                definitions = [(g.name, g.group_type) for g in default_groups]
                template = "custom"
            else:
                definitions = BILLING_GROUP_TEMPLATES.get(template, BILLING_GROUP_TEMPLATES["default"])
            groups = [self.build_group(tab, name, group_type) for name, group_type in definitions]
            for item in tab.line_items:
                if item.billing_group_id is None:
                    item.billing_group = groups[0]

            recalculate_tab_totals(self.db, tab)
            self.db.commit()
            for group in groups:
                self.db.refresh(group)
            logger.info(f"Enabled {len(groups)} billing group(s) on tab {tab.id} using template '{template}'")
            return groups
        except AppError:
            raise
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error enabling billing groups on tab {tab_id}: {e}")
            raise DatabaseError("Failed to enable billing groups")

    def quick_split(self, tab_id: UUID, organization_id: UUID, data: QuickSplitRequest) -> Tuple[List[BillingGroup], int]:
        """
        Divide una cuenta sin grupos en un solo paso.

        - even: reparte los cargos en turnos entre N grupos
        - by_category: un grupo por categoría
        - corporate_personal: grupos con reglas de gastos de empresa y personales
        """
        tab = self._get_tab(tab_id, organization_id)
        if tab.status in LOCKED_TAB_STATUSES:
            raise ValidationError(f"Cannot split a {tab.status.value} tab")
        if tab.billing_groups:
            raise ConflictError("Billing groups are already enabled for this tab")
        items = list(tab.line_items)
        if not items:
            raise ValidationError("No line items to split")

        try:
            if data.split_type == "even":
                groups = [
                    self.build_group(tab, f"Group {n}", BillingGroupType.STANDARD)
                    for n in range(1, data.number_of_groups + 1)
                ]
                for index, item in enumerate(items):
                    item.billing_group = groups[index % len(groups)]

            elif data.split_type == "by_category":
                by_name = {}
                for item in items:
                    category = (item.metadata_ or {}).get("category")
                    name = str(category).replace("_", " ").title() if category else "Uncategorized"
                    if name not in by_name:
                        by_name[name] = self.build_group(tab, name, BillingGroupType.STANDARD)
                    item.billing_group = by_name[name]
                groups = list(by_name.values())

            else:
                corporate = self.build_group(tab, "Corporate Expenses", BillingGroupType.CORPORATE)
                personal = self.build_group(tab, "Personal Expenses", BillingGroupType.PERSONAL)
                rules = data.rules
                if rules and rules.corporate:
                    self._add_split_rule(corporate, "Corporate expenses", rules.corporate, priority=10)
                if rules and rules.personal:
                    self._add_split_rule(personal, "Personal expenses", rules.personal, priority=20)
                groups = [corporate, personal]
                for item in items:
                    group, _ = self.find_group_for_item(tab, item, now=item.created_at or datetime.now())
                    item.billing_group = group

            recalculate_tab_totals(self.db, tab)
            self.db.commit()
            for group in groups:
                self.db.refresh(group)
            logger.info(f"Tab {tab.id} split ({data.split_type}) into {len(groups)} billing group(s)")
            return groups, len(items)
        except AppError:
            raise
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error splitting tab {tab_id}: {e}")
            raise DatabaseError("Failed to split tab")

    def _add_split_rule(self, group: BillingGroup, name: str, split_rule: SplitRule, priority: int) -> BillingGroupRule:
        conditions = {}
        if split_rule.categories:
            conditions["category"] = split_rule.categories
        if split_rule.time_range:
            conditions["time"] = split_rule.time_range.model_dump()
        if split_rule.weekdays_only:
            conditions["day_of_week"] = [1, 2, 3, 4, 5]
        rule = BillingGroupRule(
            organization_id=group.organization_id,
            name=name,
            conditions=conditions,
            action=RuleAction.AUTO_ASSIGN,
            priority=priority,
            is_active=True
        )
        group.rules.append(rule)
        return rule

    # ===== Reglas =====

    def list_rules(self, group_id: UUID, organization_id: UUID) -> List[BillingGroupRule]:
        return list(self.get_group(group_id, organization_id).rules)

    def _get_rule(self, group_id: UUID, rule_id: UUID, organization_id: UUID) -> BillingGroupRule:
        rule = self.db.query(BillingGroupRule).filter(
            BillingGroupRule.id == rule_id,
            BillingGroupRule.billing_group_id == group_id,
            BillingGroupRule.organization_id == organization_id
        ).first()
        if not rule:
            raise NotFoundError("Billing group rule")
        return rule

    def create_rule(self, group_id: UUID, data: RuleCreate, organization_id: UUID) -> BillingGroupRule:
        group = self.get_group(group_id, organization_id)
        rule = BillingGroupRule(
            organization_id=organization_id,
            billing_group_id=group.id,
            name=data.name,
            conditions=data.conditions.model_dump(exclude_none=True, mode="json"),
            action=data.action,
            priority=data.priority,
            is_active=data.is_active
        )
        self.db.add(rule)
        self.db.commit()
        self.db.refresh(rule)
        return rule

    def update_rule(self, group_id: UUID, rule_id: UUID, data: RuleUpdate, organization_id: UUID) -> BillingGroupRule:
        rule = self._get_rule(group_id, rule_id, organization_id)
        updates = data.model_dump(exclude_unset=True, exclude_none=True)
        if "conditions" in updates:
            rule.conditions = data.conditions.model_dump(exclude_none=True, mode="json")
            updates.pop("conditions")
        for field, value in updates.items():
            setattr(rule, field, value)
        self.db.commit()
        self.db.refresh(rule)
        return rule

    def delete_rule(self, group_id: UUID, rule_id: UUID, organization_id: UUID) -> None:
        rule = self._get_rule(group_id, rule_id, organization_id)
        self.db.delete(rule)
        self.db.commit()
        logger.info(f"Billing group rule {rule_id} deleted")

    # ===== Asignación =====

    def find_group_for_item(self, tab: Tab, item: LineItem, now: Optional[datetime] = None) -> Tuple[Optional[BillingGroup], Optional[BillingGroupRule]]:
        """
        Evalúa las reglas activas de los grupos activos por prioridad ascendente.
        Sin coincidencia: grupo 'personal' o el primer grupo activo.
        """
        now = now or datetime.now()
        groups = [g for g in tab.billing_groups if g.status == BillingGroupStatus.ACTIVE]
        if not groups:
            return None, None

        rules = [
            (rule, group)
            for group in groups
            for rule in group.rules
            if rule.is_active and rule.action == RuleAction.AUTO_ASSIGN
        ]
        rules.sort(key=lambda pair: pair[0].priority)

        for rule, group in rules:
            if rule_matches(rule.conditions or {}, item, now):
                return group, rule

        fallback = next((g for g in groups if g.group_type == BillingGroupType.PERSONAL), groups[0])
        return fallback, None

    def check_credit_limit(self, group: BillingGroup, additional: Decimal) -> None:
        if group.credit_limit is None:
            return
        projected = to_money(group.current_balance) + to_money(additional) + calculate_tax(additional)
        if projected > to_money(group.credit_limit):
            raise ValidationError(
                f"Assignment would exceed the credit limit of billing group '{group.name}' "
                f"({format_money(group.credit_limit)})"
            )

    def assign_line_item(self, item: LineItem, group: Optional[BillingGroup], actor: str,
                         reason: Optional[str] = None, commit: bool = True) -> LineItem:
        """
        Asigna (o desasigna con group=None) un cargo y deja registro de la reasignación.
        """
        if item.tab.status in LOCKED_TAB_STATUSES:
            raise ValidationError(f"Cannot reassign line items of a {item.tab.status.value} tab")
        if group is not None:
            if group.tab_id != item.tab_id:
                raise ValidationError("Billing group belongs to a different tab")
            if group.status != BillingGroupStatus.ACTIVE:
                raise ValidationError("Cannot assign line items to a closed billing group")
            if item.billing_group_id != group.id:
                self.check_credit_limit(group, to_money(item.total))

        original_group_id = item.billing_group_id
        new_group_id = group.id if group else None
        if original_group_id == new_group_id:
            return item

        self.db.add(LineItemGroupOverride(
            organization_id=item.organization_id,
            line_item_id=item.id,
            original_group_id=original_group_id,
            new_group_id=new_group_id,
            reason=reason,
            overridden_by=actor
        ))
        item.billing_group = group
        recalculate_tab_totals(self.db, item.tab)
        if commit:
            self.db.commit()
            self.db.refresh(item)
        return item

    def bulk_assign(self, line_item_ids: List[UUID], group_id: Optional[UUID], organization_id: UUID,
                    actor: str, reason: Optional[str] = None) -> List[LineItem]:
        group = self.get_group(group_id, organization_id) if group_id else None
        items = self.db.query(LineItem).filter(
            LineItem.id.in_(line_item_ids),
            LineItem.organization_id == organization_id
        ).all()
        found = {i.id for i in items}
        missing = [str(i) for i in line_item_ids if i not in found]
        if missing:
            raise NotFoundError("Line item", details={"missing_ids": missing})

        try:
            for item in items:
                self.assign_line_item(item, group, actor, reason, commit=False)
            self.db.commit()
            return items
        except AppError:
            self.db.rollback()
            raise
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error in bulk assignment: {e}")
            raise DatabaseError("Failed to assign line items")

    # ===== Depósitos y resumen =====

    def apply_deposit(self, group_id: UUID, amount: Decimal, organization_id: UUID) -> Tuple[BillingGroup, Decimal]:
        group = self.get_group(group_id, organization_id)
        amount = to_money(amount)
        if amount <= 0:
            raise ValidationError("Deposit amount must be greater than zero")

        to_apply = min(amount, to_money(group.deposit_remaining))
        if to_apply <= 0:
            raise ValidationError("No deposit available to apply")

        group.deposit_applied = to_money(group.deposit_applied) + to_apply
        self.db.commit()
        self.db.refresh(group)
        logger.info(f"Applied deposit {to_apply} to billing group {group.id}")
        return group, to_apply

    def get_billing_summary(self, tab_id: UUID, organization_id: UUID) -> BillingSummaryOut:
        tab = self._get_tab(tab_id, organization_id)

        groups = []
        assigned = Decimal("0")
        for group in tab.billing_groups:
            items = [i for i in tab.line_items if i.billing_group_id == group.id]
            assigned += sum((to_money(i.total) for i in items), Decimal("0"))
            groups.append(GroupSummary(
                group=BillingGroupOut.model_validate(group),
                line_items=[LineItemOut.model_validate(i) for i in items],
                line_item_count=len(items)
            ))
        unassigned = [i for i in tab.line_items if i.billing_group_id is None]
        unassigned_total = sum((to_money(i.total) for i in unassigned), Decimal("0"))

        return BillingSummaryOut(
            tab_id=tab.id,
            groups=groups,
            unassigned_items=[LineItemOut.model_validate(i) for i in unassigned],
            totals={
                "subtotal": to_money(tab.subtotal),
                "tax_amount": to_money(tab.tax_amount),
                "total_amount": to_money(tab.total_amount),
                "paid_amount": to_money(tab.paid_amount),
                "balance": to_money(tab.balance),
                "assigned": to_money(assigned),
                "unassigned": to_money(unassigned_total),
            },
            deposit_remaining=to_money(sum((to_money(g.deposit_remaining) for g in tab.billing_groups), Decimal("0")))
        )
