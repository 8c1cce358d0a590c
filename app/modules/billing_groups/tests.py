"""
Tests para el módulo de Grupos de Facturación

- Evaluación de reglas (categoría, monto, horario con cruce de medianoche, día)
- Plantillas, depósitos, límite de crédito y resumen por grupo
- Eliminación segura y grupo por defecto
- Facturas por grupo
"""

import pytest
from datetime import datetime
from decimal import Decimal

from app.modules.billing_groups.service import rule_matches, BILLING_GROUP_TEMPLATES
from app.modules.line_items.models import LineItem

API = "/api/v1"

SUNDAY_NIGHT = datetime(2024, 6, 2, 23, 30)
MONDAY_NOON = datetime(2024, 6, 3, 12, 0)


def make_item(total="25.00", **metadata):
    return LineItem(description="Item", quantity=1, unit_price=Decimal(total), total=Decimal(total),
                    metadata_=metadata or None)


def create_group(client, headers, tab_id, **fields):
    payload = {"tab_id": tab_id, "name": "Company"}
    payload.update(fields)
    response = client.post(f"{API}/billing-groups/", json=payload, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()["data"]


# ===== RULES =====

class TestRuleMatching:
    """rule_matches: todas las condiciones presentes deben cumplirse"""

    def test_empty_conditions_match(self):
        assert rule_matches({}, make_item(), MONDAY_NOON)

    def test_category(self):
        conditions = {"category": ["bar", "wine"]}
        assert rule_matches(conditions, make_item(category="bar"), MONDAY_NOON)
        assert not rule_matches(conditions, make_item(category="spa"), MONDAY_NOON)
        assert not rule_matches(conditions, make_item(), MONDAY_NOON)

    def test_amount_range(self):
        conditions = {"amount": {"min": "10", "max": "50"}}
        assert rule_matches(conditions, make_item("10.00"), MONDAY_NOON)
        assert rule_matches(conditions, make_item("50.00"), MONDAY_NOON)
        assert not rule_matches(conditions, make_item("50.01"), MONDAY_NOON)
        assert not rule_matches(conditions, make_item("9.99"), MONDAY_NOON)

    @pytest.mark.parametrize("hour,minute,expected", [
        (23, 30, True),
        (1, 59, True),
        (2, 0, True),
        (2, 1, False),
        (12, 0, False),
    ])
    def test_time_range_wraps_midnight(self, hour, minute, expected):
        conditions = {"time": {"start": "22:00", "end": "02:00"}}
        now = datetime(2024, 6, 3, hour, minute)
        assert rule_matches(conditions, make_item(), now) is expected

    def test_time_range_same_day(self):
        conditions = {"time": {"start": "09:00", "end": "17:00"}}
        assert rule_matches(conditions, make_item(), MONDAY_NOON)
        assert not rule_matches(conditions, make_item(), SUNDAY_NIGHT)

    def test_day_of_week_sunday_is_zero(self):
        assert rule_matches({"day_of_week": [0, 6]}, make_item(), SUNDAY_NIGHT)
        assert not rule_matches({"day_of_week": [0, 6]}, make_item(), MONDAY_NOON)
        assert rule_matches({"day_of_week": [1]}, make_item(), MONDAY_NOON)

    def test_metadata_equality(self):
        conditions = {"metadata": {"room": "204", "vip": True}}
        assert rule_matches(conditions, make_item(room="204", vip=True), MONDAY_NOON)
        assert not rule_matches(conditions, make_item(room="204"), MONDAY_NOON)

    def test_rule_crud(self, client, auth_headers, create_tab):
        tab = create_tab()
        group = create_group(client, auth_headers, tab["id"])
        response = client.post(f"{API}/billing-groups/{group['id']}/rules", json={
            "name": "Late bar",
            "conditions": {"category": ["bar"], "time": {"start": "22:00", "end": "02:00"}, "day_of_week": [5, 6]},
            "priority": 5
        }, headers=auth_headers)
        assert response.status_code == 201
        rule = response.json()["data"]
        assert rule["action"] == "auto_assign"
        assert rule["conditions"]["time"] == {"start": "22:00", "end": "02:00"}

        response = client.patch(f"{API}/billing-groups/{group['id']}/rules/{rule['id']}",
                                json={"is_active": False}, headers=auth_headers)
        assert response.json()["data"]["is_active"] is False

        rules = client.get(f"{API}/billing-groups/{group['id']}/rules", headers=auth_headers).json()["data"]
        assert [r["id"] for r in rules] == [rule["id"]]

        response = client.delete(f"{API}/billing-groups/{group['id']}/rules/{rule['id']}", headers=auth_headers)
        assert response.json()["data"] == {"id": rule["id"], "deleted": True}

    def test_rule_rejects_invalid_conditions(self, client, auth_headers, create_tab):
        tab = create_tab()
        group = create_group(client, auth_headers, tab["id"])
        response = client.post(f"{API}/billing-groups/{group['id']}/rules", json={
            "name": "Bad", "conditions": {"day_of_week": [7]}
        }, headers=auth_headers)
        assert response.status_code == 400
        response = client.post(f"{API}/billing-groups/{group['id']}/rules", json={
            "name": "Bad", "conditions": {"time": {"start": "25:00", "end": "02:00"}}
        }, headers=auth_headers)
        assert response.status_code == 400


# ===== GROUPS =====

class TestBillingGroups:
    """Creación, plantillas, depósitos y resumen"""

    def test_create_group_numbers_sequentially(self, client, auth_headers, create_tab):
        tab = create_tab()
        first = create_group(client, auth_headers, tab["id"], name="Room")
        second = create_group(client, auth_headers, tab["id"], name="Bar", payer_email="boss@corp.com")
        assert (first["group_number"], second["group_number"]) == (1, 2)
        assert second["payer_email"] == "boss@corp.com"
        assert first["status"] == "active"

    def test_enable_template_moves_unassigned_items(self, client, auth_headers, create_tab):
        tab = create_tab()
        response = client.post(f"{API}/tabs/{tab['id']}/enable-billing-groups", json={"template": "hotel"},
                               headers=auth_headers)
        assert response.status_code == 201
        groups = response.json()["data"]
        assert [g["name"] for g in groups] == [name for name, _ in BILLING_GROUP_TEMPLATES["hotel"]]
        assert Decimal(groups[0]["current_balance"]) == Decimal("108.00")

        response = client.post(f"{API}/tabs/{tab['id']}/enable-billing-groups", json={"template": "hotel"},
                               headers=auth_headers)
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "CONFLICT"

    def test_enable_rejects_unknown_template(self, client, auth_headers, create_tab):
        tab = create_tab()
        response = client.post(f"{API}/tabs/{tab['id']}/enable-billing-groups", json={"template": "casino"},
                               headers=auth_headers)
        assert response.status_code == 400

    def test_credit_limit_cannot_drop_below_balance(self, client, auth_headers, create_tab):
        tab = create_tab()
        group = create_group(client, auth_headers, tab["id"])
        client.post(f"{API}/line-items/{tab['line_items'][0]['id']}/assign",
                    json={"billing_group_id": group["id"]}, headers=auth_headers)
        response = client.patch(f"{API}/billing-groups/{group['id']}", json={"credit_limit": "50.00"},
                                headers=auth_headers)
        assert response.status_code == 400

        response = client.patch(f"{API}/billing-groups/{group['id']}", json={"credit_limit": "500.00"},
                                headers=auth_headers)
        assert Decimal(response.json()["data"]["credit_limit"]) == Decimal("500.00")

    def test_apply_deposit(self, client, auth_headers, create_tab):
        tab = create_tab()
        group = create_group(client, auth_headers, tab["id"], deposit_amount="200.00")

        response = client.post(f"{API}/billing-groups/{group['id']}/deposit", json={"amount": "50.00"},
                               headers=auth_headers)
        assert response.status_code == 200
        body = response.json()
        assert Decimal(body["data"]["deposit_applied"]) == Decimal("50.00")
        assert Decimal(body["data"]["deposit_remaining"]) == Decimal("150.00")
        assert body["meta"] == {"applied": "50.00"}

        response = client.post(f"{API}/billing-groups/{group['id']}/deposit", json={"amount": "500.00"},
                               headers=auth_headers)
        assert response.json()["meta"] == {"applied": "150.00"}

        response = client.post(f"{API}/billing-groups/{group['id']}/deposit", json={"amount": "1.00"},
                               headers=auth_headers)
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "No deposit available to apply"

    def test_billing_summary(self, client, auth_headers, create_tab):
        tab = create_tab(line_items=[
            {"description": "Room night", "unit_price": "100.00"},
            {"description": "Parking", "unit_price": "20.00"},
        ])
        group = create_group(client, auth_headers, tab["id"], deposit_amount="30.00")
        room = next(i for i in tab["line_items"] if i["description"] == "Room night")
        client.post(f"{API}/line-items/{room['id']}/assign", json={"billing_group_id": group["id"]},
                    headers=auth_headers)

        response = client.get(f"{API}/tabs/{tab['id']}/billing-summary", headers=auth_headers)
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["groups"][0]["line_item_count"] == 1
        assert [i["description"] for i in data["unassigned_items"]] == ["Parking"]
        assert Decimal(data["totals"]["assigned"]) == Decimal("100.00")
        assert Decimal(data["totals"]["unassigned"]) == Decimal("20.00")
        assert Decimal(data["totals"]["total_amount"]) == Decimal("129.60")
        assert Decimal(data["deposit_remaining"]) == Decimal("30.00")

    def test_default_group_is_reused(self, client, auth_headers, create_tab):
        tab = create_tab()
        first = client.get(f"{API}/tabs/{tab['id']}/default-billing-group", headers=auth_headers).json()["data"]
        second = client.get(f"{API}/tabs/{tab['id']}/default-billing-group", headers=auth_headers).json()["data"]
        assert first["id"] == second["id"]
        assert first["name"] == "General"
        assert first["metadata"] == {"is_default": True}

    def test_cannot_add_group_to_void_tab(self, client, auth_headers, create_tab):
        tab = create_tab()
        client.post(f"{API}/tabs/{tab['id']}/void", json={"reason": "Test"}, headers=auth_headers)
        response = client.post(f"{API}/billing-groups/", json={"tab_id": tab["id"], "name": "Late"},
                               headers=auth_headers)
        assert response.status_code == 400

    def test_void_tab_groups_stay_closed(self, client, auth_headers, create_tab):
        tab = create_tab()
        group = create_group(client, auth_headers, tab["id"])
        client.post(f"{API}/tabs/{tab['id']}/void", json={"reason": "Test"}, headers=auth_headers)

        response = client.patch(f"{API}/billing-groups/{group['id']}", json={"status": "active"},
                                headers=auth_headers)
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Cannot modify billing groups of a void tab"
        group = client.get(f"{API}/billing-groups/{group['id']}", headers=auth_headers).json()["data"]
        assert group["status"] == "closed"


# ===== DELETION =====

class TestBillingGroupDeletion:
    """Eliminación con movimiento de cargos"""

    def test_delete_moves_items_to_target(self, client, auth_headers, create_tab):
        tab = create_tab()
        groups = client.post(f"{API}/tabs/{tab['id']}/enable-billing-groups", json={"template": "corporate"},
                             headers=auth_headers).json()["data"]
        business, personal = groups

        check = client.get(f"{API}/billing-groups/{business['id']}/deletion-check", headers=auth_headers).json()
        assert check["data"]["can_delete"] is True
        assert check["data"]["line_item_count"] == 1

        response = client.delete(f"{API}/billing-groups/{business['id']}?target_group_id={personal['id']}",
                                 headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["data"]["moved_line_items"] == 1

        personal = client.get(f"{API}/billing-groups/{personal['id']}", headers=auth_headers).json()["data"]
        assert Decimal(personal["current_balance"]) == Decimal("108.00")
        assert client.get(f"{API}/billing-groups/{business['id']}", headers=auth_headers).status_code == 404

    def test_delete_removes_draft_invoice(self, client, auth_headers, create_tab):
        tab = create_tab()
        group = create_group(client, auth_headers, tab["id"])
        client.post(f"{API}/line-items/{tab['line_items'][0]['id']}/assign",
                    json={"billing_group_id": group["id"]}, headers=auth_headers)
        invoice = client.post(f"{API}/billing-groups/{group['id']}/invoice", json={},
                              headers=auth_headers).json()["data"]

        check = client.get(f"{API}/billing-groups/{group['id']}/deletion-check", headers=auth_headers).json()
        assert check["data"]["has_draft_invoice"] is True

        response = client.delete(f"{API}/billing-groups/{group['id']}", headers=auth_headers)
        assert response.json()["data"]["deleted_draft_invoices"] == 1
        assert client.get(f"{API}/invoices/{invoice['id']}", headers=auth_headers).status_code == 404

    def test_delete_blocked_by_group_payment(self, client, auth_headers, create_tab, add_payment):
        tab = create_tab()
        group = create_group(client, auth_headers, tab["id"])
        add_payment(tab, "20.00", billing_group_id=group["id"])

        check = client.get(f"{API}/billing-groups/{group['id']}/deletion-check", headers=auth_headers).json()
        assert check["data"]["can_delete"] is False
        assert check["data"]["blockers"] == ["Billing group has 1 successful payment(s)"]

        response = client.delete(f"{API}/billing-groups/{group['id']}", headers=auth_headers)
        assert response.status_code == 400

    def test_target_must_differ(self, client, auth_headers, create_tab):
        tab = create_tab()
        group = create_group(client, auth_headers, tab["id"])
        response = client.delete(f"{API}/billing-groups/{group['id']}?target_group_id={group['id']}",
                                 headers=auth_headers)
        assert response.status_code == 400


# ===== GROUP INVOICES =====

class TestGroupInvoices:
    """Factura por el saldo del grupo"""

    def test_group_invoice_uses_group_balance_and_payer(self, client, auth_headers, create_tab, email_queue):
        tab = create_tab()
        group = create_group(client, auth_headers, tab["id"], payer_email="ap@corp.com")
        client.post(f"{API}/line-items/{tab['line_items'][0]['id']}/assign",
                    json={"billing_group_id": group["id"]}, headers=auth_headers)

        response = client.post(f"{API}/billing-groups/{group['id']}/invoice", json={"send_immediately": True},
                               headers=auth_headers)
        assert response.status_code == 201
        body = response.json()
        assert body["meta"] == {"sent": True}
        assert body["data"]["status"] == "sent"
        assert body["data"]["billing_group_id"] == group["id"]
        assert body["data"]["customer_email"] == "ap@corp.com"
        assert Decimal(body["data"]["total_amount"]) == Decimal("108.00")
        assert email_queue.calls[0]["to_email"] == "ap@corp.com"

    def test_group_invoice_requires_balance(self, client, auth_headers, create_tab):
        tab = create_tab()
        group = create_group(client, auth_headers, tab["id"])
        response = client.post(f"{API}/billing-groups/{group['id']}/invoice", json={}, headers=auth_headers)
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Invoice amount must be greater than zero"


# ===== QUICK SPLIT =====

class TestQuickSplit:
    """Dividir una cuenta sin grupos en un solo paso"""

    @pytest.fixture
    def cafe_tab(self, create_tab):
        return create_tab(line_items=[
            {"description": "Coffee", "unit_price": "4.00", "metadata": {"category": "beverages"}},
            {"description": "Sandwich", "unit_price": "10.00", "metadata": {"category": "food"}},
            {"description": "Dessert", "unit_price": "6.00", "metadata": {"category": "food"}},
            {"description": "Mystery item", "unit_price": "1.00"},
        ])

    def split(self, client, headers, tab_id, **payload):
        return client.post(f"{API}/tabs/{tab_id}/quick-split", json=payload, headers=headers)

    def test_even_split(self, client, auth_headers, cafe_tab):
        response = self.split(client, auth_headers, cafe_tab["id"], split_type="even", number_of_groups=2)
        assert response.status_code == 201
        data = response.json()["data"]
        assert data["groups_created"] == 2
        assert data["items_assigned"] == 4
        assert [g["name"] for g in data["groups"]] == ["Group 1", "Group 2"]

        summary = client.get(f"{API}/tabs/{cafe_tab['id']}/billing-summary", headers=auth_headers).json()["data"]
        assert [g["line_item_count"] for g in summary["groups"]] == [2, 2]
        assert summary["unassigned_items"] == []

    def test_split_by_category(self, client, auth_headers, cafe_tab):
        data = self.split(client, auth_headers, cafe_tab["id"], split_type="by_category").json()["data"]
        groups = {g["name"]: g for g in data["groups"]}
        assert set(groups) == {"Beverages", "Food", "Uncategorized"}
        assert Decimal(groups["Food"]["current_balance"]) == Decimal("17.28")
        assert Decimal(groups["Uncategorized"]["current_balance"]) == Decimal("1.08")

    def test_corporate_personal_split(self, client, auth_headers, create_tab):
        tab = create_tab(line_items=[
            {"description": "Client lunch", "unit_price": "50.00", "metadata": {"category": "business_meals"}},
            {"description": "Massage", "unit_price": "80.00", "metadata": {"category": "spa"}},
            {"description": "Newspaper", "unit_price": "2.00"},
        ])
        data = self.split(client, auth_headers, tab["id"], split_type="corporate_personal", rules={
            "corporate": {"categories": ["business_meals"]},
            "personal": {"categories": ["spa", "entertainment"]}
        }).json()["data"]
        corporate, personal = data["groups"]
        assert (corporate["name"], corporate["group_type"]) == ("Corporate Expenses", "corporate")
        assert (personal["name"], personal["group_type"]) == ("Personal Expenses", "personal")
        assert Decimal(corporate["current_balance"]) == Decimal("54.00")
        assert Decimal(personal["current_balance"]) == Decimal("88.56")

        rules = client.get(f"{API}/billing-groups/{corporate['id']}/rules", headers=auth_headers).json()["data"]
        assert rules[0]["conditions"] == {"category": ["business_meals"]}

        # Los cargos nuevos siguen las reglas creadas
        response = client.post(f"{API}/line-items/", json={
            "tab_id": tab["id"], "description": "Dinner with client", "unit_price": "30.00",
            "metadata": {"category": "business_meals"}
        }, headers=auth_headers)
        assert response.json()["data"]["billing_group_id"] == corporate["id"]

    @pytest.mark.parametrize("payload", [
        {"split_type": "even", "number_of_groups": 1},
        {"split_type": "even"},
        {"split_type": "by_guest"},
        {"split_type": "corporate_personal", "rules": {"corporate": {"time_range": {"start": "invalid_time"}}}},
    ])
    def test_invalid_request(self, client, auth_headers, cafe_tab, payload):
        response = self.split(client, auth_headers, cafe_tab["id"], **payload)
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_tab_without_items(self, client, auth_headers, create_tab):
        tab = create_tab()
        client.delete(f"{API}/line-items/{tab['line_items'][0]['id']}", headers=auth_headers)
        response = self.split(client, auth_headers, tab["id"], split_type="even", number_of_groups=2)
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "No line items to split"

    def test_tab_with_groups(self, client, auth_headers, cafe_tab):
        create_group(client, auth_headers, cafe_tab["id"])
        response = self.split(client, auth_headers, cafe_tab["id"], split_type="by_category")
        assert response.status_code == 409

    def test_unknown_tab(self, client, auth_headers):
        response = self.split(client, auth_headers, "00000000-0000-0000-0000-000000000000", split_type="by_category")
        assert response.status_code == 404


class TestCustomDefaultGroups:

    def test_enable_with_custom_groups(self, client, auth_headers, create_tab):
        tab = create_tab()
        response = client.post(f"{API}/tabs/{tab['id']}/enable-billing-groups", json={
            "template": "hotel",
            "default_groups": [
                {"name": "Conference", "group_type": "corporate"},
                {"name": "Guest", "group_type": "personal"},
            ]
        }, headers=auth_headers)
        assert response.status_code == 201
        groups = response.json()["data"]
        assert [(g["name"], g["group_type"]) for g in groups] == [("Conference", "corporate"), ("Guest", "personal")]
        assert Decimal(groups[0]["current_balance"]) == Decimal("108.00")

    def test_custom_groups_cannot_be_empty(self, client, auth_headers, create_tab):
        tab = create_tab()
        response = client.post(f"{API}/tabs/{tab['id']}/enable-billing-groups", json={"default_groups": []},
                               headers=auth_headers)
        assert response.status_code == 400
