"""
Tests para el módulo de Organizaciones

- Alta de organización (el creador queda como owner)
- Acceso restringido a la organización autenticada
- Gestión del equipo y reglas sobre owners
- Aviso por correo al agregar miembros
"""

import app.modules.email.tasks as email_tasks
from app.modules.email.service import email_service
from app.modules.email.tasks import send_template_email_task
from app.modules.organizations.models import Organization, OrganizationRole

API = "/api/v1"


class TestOrganizations:

    def test_create_organization(self, client, auth_headers):
        response = client.post(f"{API}/organizations/", json={
            "name": "Hotel Côte d'Azur",
            "is_corporate": True
        }, headers={"Authorization": auth_headers["Authorization"]})
        assert response.status_code == 201
        data = response.json()["data"]
        assert data["slug"] == "hotel-cote-d-azur"
        assert data["is_merchant"] is True
        assert data["is_corporate"] is True
        assert data["billing_email"] == "owner@example.com"

    def test_slug_is_unique(self, client, auth_headers):
        response = client.post(f"{API}/organizations/", json={"name": "Test Merchant"},
                               headers={"Authorization": auth_headers["Authorization"]})
        assert response.json()["data"]["slug"] == "test-merchant-2"

    def test_list_my_organizations(self, client, auth_headers):
        client.post(f"{API}/organizations/", json={"name": "Another Venue"},
                    headers={"Authorization": auth_headers["Authorization"]})
        response = client.get(f"{API}/organizations/", headers={"Authorization": auth_headers["Authorization"]})
        assert [o["name"] for o in response.json()["data"]] == ["Another Venue", "Test Merchant"]

    def test_get_own_organization(self, client, auth_headers, organization):
        response = client.get(f"{API}/organizations/{organization.id}", headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["data"]["name"] == "Test Merchant"

    def test_get_other_organization(self, client, organization, other_org_headers):
        response = client.get(f"{API}/organizations/{organization.id}", headers=other_org_headers)
        assert response.status_code == 403

    def test_not_a_member(self, client, auth_headers, db_session):
        stranger = Organization(name="Stranger", slug="stranger", is_merchant=True)
        db_session.add(stranger)
        db_session.commit()
        headers = {**auth_headers, "x-organization-id": str(stranger.id)}
        response = client.get(f"{API}/organizations/{stranger.id}", headers=headers)
        assert response.status_code == 403
        assert response.json()["error"]["message"] == "You do not have access to this organization"

    def test_update_organization(self, client, auth_headers, organization):
        response = client.patch(f"{API}/organizations/{organization.id}", json={
            "billing_email": "billing@merchant.com",
            "settings": {"default_due_days": 15}
        }, headers=auth_headers)
        data = response.json()["data"]
        assert data["billing_email"] == "billing@merchant.com"
        assert data["settings"] == {"default_due_days": 15}
        assert data["name"] == "Test Merchant"

    def test_member_cannot_update(self, client, organization, add_member):
        _, member_headers = add_member("member@example.com")
        response = client.patch(f"{API}/organizations/{organization.id}", json={"name": "Renamed"},
                                headers=member_headers)
        assert response.status_code == 403


class TestTeam:
    """Equipo de la organización"""

    def test_list_team(self, client, auth_headers, organization):
        response = client.get(f"{API}/organizations/{organization.id}/team", headers=auth_headers)
        team = response.json()["data"]
        assert len(team) == 1
        assert team[0]["email"] == "owner@example.com"
        assert team[0]["role"] == "owner"

    def test_add_member(self, client, auth_headers, organization, template_email_queue):
        client.post(f"{API}/auth/register", json={"email": "staff@example.com", "password": "Password123!"})
        response = client.post(f"{API}/organizations/{organization.id}/team", json={
            "email": "staff@example.com", "role": "admin"
        }, headers=auth_headers)
        assert response.status_code == 201
        assert response.json()["data"]["role"] == "admin"

        call = template_email_queue.calls[0]
        assert call["to_emails"] == ["staff@example.com"]
        assert call["template_name"] == "team_member_added.html"
        assert call["subject"] == "You've been added to Test Merchant on Tab"
        assert call["context"]["role"] == "admin"

        response = client.post(f"{API}/organizations/{organization.id}/team", json={
            "email": "staff@example.com"
        }, headers=auth_headers)
        assert response.status_code == 409

    def test_add_member_survives_email_queue_failure(self, client, auth_headers, organization, monkeypatch):
        class BrokenQueue:
            def delay(self, **kwargs):
                raise ConnectionError("broker unavailable")

        monkeypatch.setattr(email_tasks, "send_template_email_task", BrokenQueue())
        client.post(f"{API}/auth/register", json={"email": "staff@example.com", "password": "Password123!"})
        response = client.post(f"{API}/organizations/{organization.id}/team", json={
            "email": "staff@example.com"
        }, headers=auth_headers)
        assert response.status_code == 201

        team = client.get(f"{API}/organizations/{organization.id}/team", headers=auth_headers).json()["data"]
        assert {m["email"] for m in team} == {"owner@example.com", "staff@example.com"}

    def test_add_unknown_user(self, client, auth_headers, organization):
        response = client.post(f"{API}/organizations/{organization.id}/team", json={
            "email": "nobody@example.com"
        }, headers=auth_headers)
        assert response.status_code == 404
        assert response.json()["error"]["message"] == "User not found"

    def test_admin_cannot_add_owner(self, client, organization, add_member):
        _, admin_headers = add_member("admin@example.com", role=OrganizationRole.ADMIN)
        response = client.post(f"{API}/organizations/{organization.id}/team", json={
            "email": "owner2@example.com", "role": "owner"
        }, headers=admin_headers)
        assert response.status_code == 403

    def test_last_owner_is_protected(self, client, auth_headers, organization, owner):
        response = client.patch(f"{API}/organizations/{organization.id}/team/{owner.id}", json={"role": "admin"},
                                headers=auth_headers)
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Organization must keep at least one owner"

        response = client.delete(f"{API}/organizations/{organization.id}/team/{owner.id}", headers=auth_headers)
        assert response.status_code == 400

    def test_change_role_and_remove(self, client, auth_headers, organization, add_member):
        member, _ = add_member("member@example.com")
        response = client.patch(f"{API}/organizations/{organization.id}/team/{member.id}", json={"role": "viewer"},
                                headers=auth_headers)
        assert response.json()["data"] == {"user_id": str(member.id), "role": "viewer"}

        response = client.delete(f"{API}/organizations/{organization.id}/team/{member.id}", headers=auth_headers)
        assert response.json()["data"] == {"user_id": str(member.id), "removed": True}

        team = client.get(f"{API}/organizations/{organization.id}/team", headers=auth_headers).json()["data"]
        assert [m["email"] for m in team] == ["owner@example.com"]


# ===== TEAM NOTIFICATIONS =====

class TestTeamEmail:

    def test_template_renders(self):
        html = email_service.render_template("team_member_added.html", {
            "organization_name": "Test Merchant",
            "member_name": "Staff",
            "role": "admin",
            "dashboard_url": "http://localhost:3000/dashboard",
        })
        assert "Test Merchant" in html
        assert "<strong>admin</strong>" in html
        assert "http://localhost:3000/dashboard" in html

    def test_template_email_task(self, monkeypatch):
        sent = []

        def fake_send(**kwargs):
            sent.append(kwargs)
            return True

        monkeypatch.setattr(email_service, "send_template_email", fake_send)
        result = send_template_email_task.apply(kwargs={
            "to_emails": ["staff@example.com"],
            "subject": "Welcome",
            "template_name": "team_member_added.html",
            "context": {"organization_name": "Test Merchant"},
        }).get()

        assert result == {
            "status": "success", "template": "team_member_added.html", "recipients": ["staff@example.com"]
        }
        assert sent[0]["cc_emails"] is None
        assert sent[0]["context"] == {"organization_name": "Test Merchant"}
