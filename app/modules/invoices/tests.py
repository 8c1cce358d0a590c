"""
Tests para el módulo de Facturación

- Numeración INV-YYYY-NNNN por organización
- Montos: cuenta completa, cargos seleccionados y grupos
- Envío (cola de Celery), pago manual, anulación
- Vista pública sin autenticación
- Render del correo de factura
"""

from decimal import Decimal
from uuid import uuid4

import app.modules.email.tasks as email_tasks
from app.common.utils import utcnow
from app.modules.email.service import email_service
from app.modules.invoices.service import InvoiceService

API = "/api/v1"


def create_invoice(client, headers, tab_id, **fields):
    payload = {"tab_id": tab_id}
    payload.update(fields)
    response = client.post(f"{API}/invoices/", json=payload, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()["data"]


# ===== NUMBERING =====

class TestInvoiceNumbering:
    """Secuencia por organización y año"""

    def test_sequential_numbers(self, client, auth_headers, create_tab):
        tab = create_tab()
        year = utcnow().year
        first = create_invoice(client, auth_headers, tab["id"], amount="10.00")
        second = create_invoice(client, auth_headers, tab["id"], amount="10.00")
        assert first["invoice_number"] == f"INV-{year}-0001"
        assert second["invoice_number"] == f"INV-{year}-0002"

    def test_sequence_is_per_organization(self, client, auth_headers, create_tab, other_org_headers):
        tab = create_tab()
        create_invoice(client, auth_headers, tab["id"])
        other_tab = client.post(f"{API}/tabs/", json={
            "customer_email": "x@example.com",
            "line_items": [{"description": "Coffee", "unit_price": "3.00"}]
        }, headers=other_org_headers).json()["data"]
        other = create_invoice(client, other_org_headers, other_tab["id"])
        assert other["invoice_number"] == f"INV-{utcnow().year}-0001"

    def test_tab_of_other_organization(self, client, create_tab, other_org_headers):
        tab = create_tab()
        response = client.post(f"{API}/invoices/", json={"tab_id": tab["id"]}, headers=other_org_headers)
        assert response.status_code == 404

    def test_sequence_per_year(self, db_session, organization):
        service = InvoiceService(db_session)
        assert service.generate_invoice_number(organization.id, 2024) == "INV-2024-0001"
        assert service.generate_invoice_number(organization.id, 2025) == "INV-2025-0001"
        assert service.generate_invoice_number(organization.id, 2024) == "INV-2024-0002"

    def test_public_url_format(self):
        url = InvoiceService.generate_public_url()
        assert url.startswith("inv_")
        assert len(url) == 28


# ===== CREATION =====

class TestInvoiceCreation:
    """Montos y validaciones al crear facturas"""

    def test_full_tab_invoice(self, client, auth_headers, create_tab):
        tab = create_tab()
        invoice = create_invoice(client, auth_headers, tab["id"], notes="Thanks")
        assert invoice["status"] == "draft"
        assert Decimal(invoice["total_amount"]) == Decimal("108.00")
        assert Decimal(invoice["balance_due"]) == Decimal("108.00")
        assert invoice["customer_email"] == "guest@example.com"
        assert invoice["due_date"] is not None
        assert len(invoice["line_items"]) == 1

    def test_selected_line_items(self, client, auth_headers, create_tab):
        tab = create_tab(line_items=[
            {"description": "Room night", "unit_price": "100.00"},
            {"description": "Parking", "unit_price": "20.00"},
        ])
        parking = next(i for i in tab["line_items"] if i["description"] == "Parking")
        invoice = create_invoice(client, auth_headers, tab["id"], line_item_ids=[parking["id"]])
        assert Decimal(invoice["total_amount"]) == Decimal("21.60")
        assert [li["description"] for li in invoice["line_items"]] == ["Parking"]

    def test_unknown_line_item(self, client, auth_headers, create_tab):
        tab = create_tab()
        missing = str(uuid4())
        response = client.post(f"{API}/invoices/", json={"tab_id": tab["id"], "line_item_ids": [missing]},
                               headers=auth_headers)
        assert response.status_code == 404
        assert response.json()["error"]["details"] == {"missing_ids": [missing]}

    def test_void_tab_cannot_be_invoiced(self, client, auth_headers, create_tab):
        tab = create_tab()
        client.post(f"{API}/tabs/{tab['id']}/void", json={"reason": "Test"}, headers=auth_headers)
        response = client.post(f"{API}/invoices/", json={"tab_id": tab["id"]}, headers=auth_headers)
        assert response.status_code == 400

    def test_tab_invoice_endpoint_sends(self, client, auth_headers, create_tab, email_queue):
        tab = create_tab()
        response = client.post(f"{API}/tabs/{tab['id']}/invoice?send=true", json={
            "recipient_email": "billing@guest.com",
            "cc_emails": ["assistant@guest.com"]
        }, headers=auth_headers)
        assert response.status_code == 201
        body = response.json()
        assert body["meta"] == {"sent": True}
        assert body["data"]["status"] == "sent"
        call = email_queue.calls[0]
        assert call["to_email"] == "billing@guest.com"
        assert call["cc_emails"] == ["assistant@guest.com"]

    def test_list_invoices_filters(self, client, auth_headers, create_tab):
        tab = create_tab()
        other = create_tab()
        create_invoice(client, auth_headers, tab["id"])
        voided = create_invoice(client, auth_headers, other["id"])
        client.post(f"{API}/invoices/{voided['id']}/void", headers=auth_headers)

        body = client.get(f"{API}/invoices/?tab_id={tab['id']}", headers=auth_headers).json()
        assert body["meta"]["totalItems"] == 1
        body = client.get(f"{API}/invoices/?status=void", headers=auth_headers).json()
        assert [i["id"] for i in body["data"]] == [voided["id"]]


# ===== LIFECYCLE =====

class TestInvoiceLifecycle:
    """draft -> sent -> paid / void"""

    def test_send_queues_email(self, client, auth_headers, create_tab, email_queue):
        tab = create_tab()
        invoice = create_invoice(client, auth_headers, tab["id"])
        response = client.post(f"{API}/invoices/{invoice['id']}/send", json={"message": "See you soon"},
                               headers=auth_headers)
        assert response.status_code == 200
        body = response.json()
        assert body["data"]["status"] == "sent"
        assert body["data"]["sent_at"] is not None
        assert body["meta"] == {"task_id": "task-1"}

        call = email_queue.calls[0]
        assert call["to_email"] == "guest@example.com"
        assert call["custom_message"] == "See you soon"
        assert call["invoice_data"]["number"] == invoice["invoice_number"]
        assert call["invoice_data"]["payment_url"].endswith(invoice["public_url"])
        assert call["organization_data"]["name"] == "Test Merchant"

    def test_send_without_recipient(self, client, auth_headers, create_tab, email_queue):
        tab = create_tab(customer_email=None, customer_organization_id=str(uuid4()))
        invoice = create_invoice(client, auth_headers, tab["id"])
        response = client.post(f"{API}/invoices/{invoice['id']}/send", json={}, headers=auth_headers)
        assert response.status_code == 400
        assert email_queue.calls == []

    def test_send_fails_when_queue_is_down(self, client, auth_headers, create_tab, monkeypatch):
        class BrokenQueue:
            def delay(self, **kwargs):
                raise ConnectionError("broker unavailable")

        monkeypatch.setattr(email_tasks, "send_invoice_email_task", BrokenQueue())
        tab = create_tab()
        invoice = create_invoice(client, auth_headers, tab["id"])
        response = client.post(f"{API}/invoices/{invoice['id']}/send", json={}, headers=auth_headers)
        assert response.status_code == 502
        assert response.json()["error"]["code"] == "EXTERNAL_SERVICE_ERROR"

        invoice = client.get(f"{API}/invoices/{invoice['id']}", headers=auth_headers).json()["data"]
        assert invoice["status"] == "draft"

    def test_mark_paid_partial_then_full(self, client, auth_headers, create_tab):
        tab = create_tab()
        invoice = create_invoice(client, auth_headers, tab["id"])

        response = client.post(f"{API}/invoices/{invoice['id']}/mark-paid", json={"amount": "8.00"},
                               headers=auth_headers)
        data = response.json()["data"]
        assert data["status"] == "sent"
        assert Decimal(data["balance_due"]) == Decimal("100.00")

        response = client.post(f"{API}/invoices/{invoice['id']}/mark-paid", json={"amount": "100.01"},
                               headers=auth_headers)
        assert response.status_code == 400

        response = client.post(f"{API}/invoices/{invoice['id']}/mark-paid", json={}, headers=auth_headers)
        data = response.json()["data"]
        assert data["status"] == "paid"
        assert data["paid_at"] is not None
        assert Decimal(data["balance_due"]) == Decimal("0.00")

    def test_paid_invoice_cannot_be_voided(self, client, auth_headers, create_tab):
        tab = create_tab()
        invoice = create_invoice(client, auth_headers, tab["id"])
        client.post(f"{API}/invoices/{invoice['id']}/mark-paid", json={}, headers=auth_headers)
        response = client.post(f"{API}/invoices/{invoice['id']}/void", headers=auth_headers)
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Cannot void a paid invoice"

    def test_void_invoice(self, client, auth_headers, create_tab):
        tab = create_tab()
        invoice = create_invoice(client, auth_headers, tab["id"])
        response = client.post(f"{API}/invoices/{invoice['id']}/void", headers=auth_headers)
        assert response.json()["data"]["status"] == "void"
        response = client.post(f"{API}/invoices/{invoice['id']}/send", json={}, headers=auth_headers)
        assert response.status_code == 400


# ===== PUBLIC VIEW =====

class TestPublicInvoice:
    """Vista pública por enlace"""

    def test_public_invoice_without_auth(self, client, auth_headers, create_tab):
        tab = create_tab()
        invoice = create_invoice(client, auth_headers, tab["id"])
        response = client.get(f"{API}/public/invoices/{invoice['public_url']}")
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["invoice_number"] == invoice["invoice_number"]
        assert Decimal(data["balance_due"]) == Decimal("108.00")
        assert "customer_email" not in data
        assert len(data["line_items"]) == 1

    def test_void_invoice_is_not_public(self, client, auth_headers, create_tab):
        tab = create_tab()
        invoice = create_invoice(client, auth_headers, tab["id"])
        client.post(f"{API}/invoices/{invoice['id']}/void", headers=auth_headers)
        assert client.get(f"{API}/public/invoices/{invoice['public_url']}").status_code == 404

    def test_unknown_public_url(self, client):
        assert client.get(f"{API}/public/invoices/inv_doesnotexist").status_code == 404


# ===== EMAIL =====

class TestInvoiceEmail:
    """Template y tarea de envío"""

    def test_render_invoice_template(self):
        html = email_service.render_template("invoice.html", {
            "organization_name": "Test Merchant",
            "customer_name": "Guest",
            "invoice_number": "INV-2025-0001",
            "invoice_date": "2025-01-10",
            "currency": "USD",
            "total_amount": "108.00",
            "balance_due": "108.00",
            "line_items": [{"description": "Room night", "quantity": 1, "total": "100.00"}],
            "payment_url": "http://localhost:3000/pay/inv_abc",
            "custom_message": "<b>Thanks</b>",
        })
        assert "INV-2025-0001" in html
        assert "Room night" in html
        assert "http://localhost:3000/pay/inv_abc" in html
        assert "&lt;b&gt;Thanks&lt;/b&gt;" in html

    def test_invoice_email_task(self, monkeypatch):
        sent = []

        def fake_send(**kwargs):
            sent.append(kwargs)
            return True

        monkeypatch.setattr(email_service, "send_template_email", fake_send)
        result = email_tasks.send_invoice_email_task.apply(kwargs={
            "to_email": "guest@example.com",
            "invoice_data": {"number": "INV-2025-0007", "total_amount": "10.00"},
            "organization_data": {"name": "Test Merchant"},
        }).get()

        assert result == {"status": "success", "recipient": "guest@example.com", "invoice_number": "INV-2025-0007"}
        assert sent[0]["subject"] == "Invoice INV-2025-0007 from Test Merchant"
        assert sent[0]["template_name"] == "invoice.html"
