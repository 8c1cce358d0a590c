"""
Tests para el módulo de Cargos (Line Items)

- Alta de cargos y recálculo de totales de la cuenta
- Protección por pagos (edición/borrado con force)
- Asignación automática por reglas y manual a grupos de facturación
"""

from decimal import Decimal

API = "/api/v1"


def enable_groups(client, headers, tab_id, template="restaurant"):
    response = client.post(f"{API}/tabs/{tab_id}/enable-billing-groups", json={"template": template}, headers=headers)
    assert response.status_code == 201, response.text
    return {g["name"]: g for g in response.json()["data"]}


def get_tab(client, headers, tab_id):
    return client.get(f"{API}/tabs/{tab_id}", headers=headers).json()["data"]


# ===== CREATE / UPDATE / DELETE =====

class TestLineItemCRUD:
    """Alta, edición y borrado de cargos"""

    def test_add_line_item_updates_tab_totals(self, client, auth_headers, create_tab):
        tab = create_tab()
        response = client.post(f"{API}/line-items/", json={
            "tab_id": tab["id"],
            "description": "Minibar",
            "quantity": 3,
            "unit_price": "4.50"
        }, headers=auth_headers)
        assert response.status_code == 201
        assert Decimal(response.json()["data"]["total"]) == Decimal("13.50")

        tab = get_tab(client, auth_headers, tab["id"])
        assert Decimal(tab["subtotal"]) == Decimal("113.50")
        assert Decimal(tab["tax_amount"]) == Decimal("9.08")
        assert Decimal(tab["total_amount"]) == Decimal("122.58")

    def test_cannot_add_to_closed_tab(self, client, auth_headers, create_tab):
        tab = create_tab()
        client.patch(f"{API}/tabs/{tab['id']}", json={"status": "closed"}, headers=auth_headers)
        response = client.post(f"{API}/line-items/", json={
            "tab_id": tab["id"], "description": "Late charge", "unit_price": "5.00"
        }, headers=auth_headers)
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Cannot add line items to a closed tab"

    def test_list_line_items_requires_tab_id(self, client, auth_headers):
        response = client.get(f"{API}/line-items/", headers=auth_headers)
        assert response.status_code == 400

    def test_list_line_items_includes_protection(self, client, auth_headers, create_tab):
        tab = create_tab()
        response = client.get(f"{API}/line-items/?tab_id={tab['id']}", headers=auth_headers)
        items = response.json()["data"]
        assert len(items) == 1
        assert items[0]["can_edit"] is True
        assert items[0]["payment_status"] == "unpaid"

    def test_update_line_item_recalculates(self, client, auth_headers, create_tab):
        tab = create_tab()
        item_id = tab["line_items"][0]["id"]
        response = client.patch(f"{API}/line-items/{item_id}", json={"quantity": 2}, headers=auth_headers)
        assert response.status_code == 200
        assert Decimal(response.json()["data"]["total"]) == Decimal("200.00")
        assert Decimal(get_tab(client, auth_headers, tab["id"])["total_amount"]) == Decimal("216.00")

    def test_delete_line_item(self, client, auth_headers, create_tab):
        tab = create_tab(line_items=[
            {"description": "Room night", "unit_price": "100.00"},
            {"description": "Parking", "unit_price": "20.00"},
        ])
        parking = next(i for i in tab["line_items"] if i["description"] == "Parking")
        response = client.delete(f"{API}/line-items/{parking['id']}", headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["data"] == {"id": parking["id"], "deleted": True}
        assert Decimal(get_tab(client, auth_headers, tab["id"])["subtotal"]) == Decimal("100.00")

    def test_line_item_of_other_organization(self, client, create_tab, other_org_headers):
        tab = create_tab()
        response = client.get(f"{API}/line-items/{tab['line_items'][0]['id']}", headers=other_org_headers)
        assert response.status_code == 404


# ===== PAYMENT PROTECTION =====

class TestPaymentProtection:
    """Los cargos de una cuenta con pagos requieren force"""

    def test_protection_status(self, client, auth_headers, create_tab, add_payment):
        tab = create_tab()
        add_payment(tab, "50.00")
        item_id = tab["line_items"][0]["id"]

        response = client.get(f"{API}/line-items/{item_id}/protection-status", headers=auth_headers)
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["is_protected"] is True
        assert data["payment_status"] == "partial"
        assert data["reasons"] == ["Tab has received payment(s) totaling $50.00"]

    def test_protected_item_requires_force(self, client, auth_headers, create_tab, add_payment):
        tab = create_tab()
        add_payment(tab, "50.00")
        item_id = tab["line_items"][0]["id"]

        response = client.patch(f"{API}/line-items/{item_id}", json={"unit_price": "90.00"}, headers=auth_headers)
        assert response.status_code == 400
        error = response.json()["error"]
        assert error["message"].endswith("Use force=true to override.")
        assert error["details"]["reasons"]

        response = client.patch(f"{API}/line-items/{item_id}?force=true", json={"unit_price": "90.00"},
                                headers=auth_headers)
        assert response.status_code == 200
        tab = get_tab(client, auth_headers, tab["id"])
        assert Decimal(tab["total_amount"]) == Decimal("97.20")
        assert tab["status"] == "partial"

    def test_protected_item_delete_requires_force(self, client, auth_headers, create_tab, add_payment):
        tab = create_tab(line_items=[
            {"description": "Room night", "unit_price": "100.00"},
            {"description": "Parking", "unit_price": "20.00"},
        ])
        add_payment(tab, "10.00")
        item_id = tab["line_items"][0]["id"]

        assert client.delete(f"{API}/line-items/{item_id}", headers=auth_headers).status_code == 400
        assert client.delete(f"{API}/line-items/{item_id}?force=true", headers=auth_headers).status_code == 200

    def test_force_does_not_unlock_void_tab(self, client, auth_headers, create_tab):
        tab = create_tab()
        item_id = tab["line_items"][0]["id"]
        client.post(f"{API}/tabs/{tab['id']}/void", json={"reason": "Duplicate"}, headers=auth_headers)

        response = client.patch(f"{API}/line-items/{item_id}?force=true", json={"unit_price": "5.00"},
                                headers=auth_headers)
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Cannot edit line items of a void tab"
        assert client.delete(f"{API}/line-items/{item_id}?force=true", headers=auth_headers).status_code == 400

        tab = get_tab(client, auth_headers, tab["id"])
        assert tab["status"] == "void"
        assert Decimal(tab["total_amount"]) == Decimal("108.00")

    def test_force_does_not_unlock_paid_tab(self, client, auth_headers, create_tab, add_payment):
        tab = create_tab()
        add_payment(tab, "108.00")
        item_id = tab["line_items"][0]["id"]
        response = client.patch(f"{API}/line-items/{item_id}?force=true", json={"quantity": 2},
                                headers=auth_headers)
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Cannot edit line items of a paid tab"

    def test_paid_invoice_protects_its_items(self, client, auth_headers, create_tab):
        tab = create_tab()
        item_id = tab["line_items"][0]["id"]
        invoice = client.post(f"{API}/invoices/", json={
            "tab_id": tab["id"], "line_item_ids": [item_id]
        }, headers=auth_headers).json()["data"]
        client.post(f"{API}/invoices/{invoice['id']}/mark-paid", json={"amount": "20.00"}, headers=auth_headers)

        data = client.get(f"{API}/line-items/{item_id}/protection-status", headers=auth_headers).json()["data"]
        assert data["is_protected"] is True
        assert "Associated invoice has been paid $20.00" in data["reasons"]


# ===== BILLING GROUP ASSIGNMENT =====

class TestLineItemAssignment:
    """Asignación por reglas y manual"""

    def test_rule_routes_new_item(self, client, auth_headers, create_tab):
        tab = create_tab()
        groups = enable_groups(client, auth_headers, tab["id"])
        beverages = groups["Beverages"]
        client.post(f"{API}/billing-groups/{beverages['id']}/rules", json={
            "name": "Drinks",
            "conditions": {"category": ["drinks", "wine"]},
            "priority": 10
        }, headers=auth_headers)

        response = client.post(f"{API}/line-items/", json={
            "tab_id": tab["id"], "description": "Red wine", "unit_price": "30.00",
            "metadata": {"category": "wine"}
        }, headers=auth_headers)
        assert response.json()["data"]["billing_group_id"] == beverages["id"]

        response = client.post(f"{API}/line-items/", json={
            "tab_id": tab["id"], "description": "Steak", "unit_price": "40.00",
            "metadata": {"category": "food"}
        }, headers=auth_headers)
        assert response.json()["data"]["billing_group_id"] == groups["Food"]["id"]

    def test_personal_group_is_fallback(self, client, auth_headers, create_tab):
        tab = create_tab()
        groups = enable_groups(client, auth_headers, tab["id"], template="corporate")
        response = client.post(f"{API}/line-items/", json={
            "tab_id": tab["id"], "description": "Souvenir", "unit_price": "12.00"
        }, headers=auth_headers)
        assert response.json()["data"]["billing_group_id"] == groups["Personal Expenses"]["id"]

    def test_explicit_group_respects_credit_limit(self, client, auth_headers, create_tab):
        tab = create_tab()
        group = client.post(f"{API}/billing-groups/", json={
            "tab_id": tab["id"], "name": "Company", "group_type": "corporate", "credit_limit": "50.00"
        }, headers=auth_headers).json()["data"]

        response = client.post(f"{API}/line-items/", json={
            "tab_id": tab["id"], "description": "Dinner", "unit_price": "60.00",
            "billing_group_id": group["id"]
        }, headers=auth_headers)
        assert response.status_code == 400
        assert "credit limit" in response.json()["error"]["message"]

    def test_assign_and_unassign(self, client, auth_headers, create_tab):
        tab = create_tab()
        group = client.post(f"{API}/billing-groups/", json={
            "tab_id": tab["id"], "name": "Room"
        }, headers=auth_headers).json()["data"]
        item_id = tab["line_items"][0]["id"]

        response = client.post(f"{API}/line-items/{item_id}/assign", json={
            "billing_group_id": group["id"], "reason": "Room charge"
        }, headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["data"]["billing_group_id"] == group["id"]
        group = client.get(f"{API}/billing-groups/{group['id']}", headers=auth_headers).json()["data"]
        assert Decimal(group["current_balance"]) == Decimal("108.00")

        response = client.post(f"{API}/line-items/{item_id}/unassign", headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["data"]["billing_group_id"] is None

    def test_void_tab_items_cannot_be_reassigned(self, client, auth_headers, create_tab):
        tab = create_tab()
        group = client.post(f"{API}/billing-groups/", json={
            "tab_id": tab["id"], "name": "Room"
        }, headers=auth_headers).json()["data"]
        item_id = tab["line_items"][0]["id"]
        client.post(f"{API}/line-items/{item_id}/assign", json={"billing_group_id": group["id"]},
                    headers=auth_headers)
        client.post(f"{API}/tabs/{tab['id']}/void", json={"reason": "Duplicate"}, headers=auth_headers)

        response = client.post(f"{API}/line-items/{item_id}/unassign", headers=auth_headers)
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Cannot reassign line items of a void tab"

        response = client.post(f"{API}/line-items/bulk-assign", json={
            "line_item_ids": [item_id], "billing_group_id": None
        }, headers=auth_headers)
        assert response.status_code == 400
        item = client.get(f"{API}/line-items/{item_id}", headers=auth_headers).json()["data"]
        assert item["billing_group_id"] == group["id"]

    def test_bulk_assign(self, client, auth_headers, create_tab):
        tab = create_tab(line_items=[
            {"description": "Room night", "unit_price": "100.00"},
            {"description": "Parking", "unit_price": "20.00"},
        ])
        group = client.post(f"{API}/billing-groups/", json={
            "tab_id": tab["id"], "name": "Company"
        }, headers=auth_headers).json()["data"]
        ids = [i["id"] for i in tab["line_items"]]

        response = client.post(f"{API}/line-items/bulk-assign", json={
            "line_item_ids": ids, "billing_group_id": group["id"]
        }, headers=auth_headers)
        assert response.status_code == 200
        assert {i["billing_group_id"] for i in response.json()["data"]} == {group["id"]}
