"""
Tests para el módulo de API Keys

- Alta (la llave solo se muestra una vez), edición y revocación
- Autenticación de integraciones con x-api-key
- Límite de peticiones por llave
"""

import re

import app.modules.auth.dependencies as auth_dependencies
from app.core.config import settings
from app.modules.organizations.models import OrganizationRole

API = "/api/v1"

KEY_PATTERN = re.compile(r"^tab_(live|test)_[a-f0-9]{32}$")


def keys_url(organization):
    return f"{API}/organizations/{organization.id}/api-keys/"


def create_key(client, headers, organization, **fields):
    payload = {"name": "POS integration"}
    payload.update(fields)
    response = client.post(keys_url(organization), json=payload, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()["data"]


class TestApiKeyManagement:

    def test_create_key(self, client, auth_headers, organization):
        data = create_key(client, auth_headers, organization, environment="live")
        assert KEY_PATTERN.match(data["key"])
        assert data["key"].startswith("tab_live_")
        assert data["key_prefix"] == data["key"][:13]
        assert data["scope"] == "merchant"
        assert data["is_active"] is True

    def test_list_never_returns_key(self, client, auth_headers, organization):
        created = create_key(client, auth_headers, organization)
        keys = client.get(keys_url(organization), headers=auth_headers).json()["data"]
        assert [k["id"] for k in keys] == [created["id"]]
        assert "key" not in keys[0]
        assert created["key"] not in str(keys)

    def test_blank_name(self, client, auth_headers, organization):
        response = client.post(keys_url(organization), json={"name": "   "}, headers=auth_headers)
        assert response.status_code == 400

    def test_rename_key(self, client, auth_headers, organization):
        created = create_key(client, auth_headers, organization)
        response = client.patch(f"{keys_url(organization)}{created['id']}", json={"name": " Front desk "},
                                headers=auth_headers)
        assert response.json()["data"]["name"] == "Front desk"

    def test_revoke_key(self, client, auth_headers, organization):
        created = create_key(client, auth_headers, organization)
        response = client.delete(f"{keys_url(organization)}{created['id']}", headers=auth_headers)
        data = response.json()["data"]
        assert data["is_active"] is False
        assert data["revoked_at"] is not None

        response = client.delete(f"{keys_url(organization)}{created['id']}", headers=auth_headers)
        assert response.status_code == 400
        response = client.patch(f"{keys_url(organization)}{created['id']}", json={"is_active": True},
                                headers=auth_headers)
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Revoked API keys cannot be re-activated"

    def test_member_cannot_manage_keys(self, client, organization, add_member):
        _, member_headers = add_member("member@example.com", role=OrganizationRole.MEMBER)
        response = client.get(keys_url(organization), headers=member_headers)
        assert response.status_code == 403

    def test_api_key_cannot_manage_keys(self, client, organization, api_key_headers):
        response = client.get(keys_url(organization), headers=api_key_headers)
        assert response.status_code == 403
        assert response.json()["error"]["message"] == "This operation requires a user session"


class TestApiKeyAuthentication:
    """Uso de la llave contra la API"""

    def test_created_key_authenticates(self, client, auth_headers, organization):
        created = create_key(client, auth_headers, organization)
        response = client.get(f"{API}/tabs/", headers={"x-api-key": created["key"]})
        assert response.status_code == 200

        keys = client.get(keys_url(organization), headers=auth_headers).json()["data"]
        assert keys[0]["last_used_at"] is not None

    def test_revoked_key_is_rejected(self, client, auth_headers, organization):
        created = create_key(client, auth_headers, organization)
        client.delete(f"{keys_url(organization)}{created['id']}", headers=auth_headers)
        response = client.get(f"{API}/tabs/", headers={"x-api-key": created["key"]})
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Invalid API key"

    def test_expired_key_is_rejected(self, client, auth_headers, organization):
        created = create_key(client, auth_headers, organization, expires_at="2020-01-01T00:00:00Z")
        response = client.get(f"{API}/tabs/", headers={"x-api-key": created["key"]})
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "API key has expired"

    def test_malformed_key(self, client):
        response = client.get(f"{API}/tabs/", headers={"x-api-key": "sk_live_123"})
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Invalid API key format"

    def test_corporate_scope_cannot_use_merchant_endpoints(self, client, auth_headers, organization):
        created = create_key(client, auth_headers, organization, scope="corporate")
        response = client.get(f"{API}/tabs/", headers={"x-api-key": created["key"]})
        assert response.status_code == 403

    def test_api_key_takes_priority_over_session(self, client, auth_headers, organization, other_org_headers):
        created = create_key(client, auth_headers, organization)
        client.post(f"{API}/tabs/", json={
            "customer_email": "guest@example.com",
            "line_items": [{"description": "Coffee", "unit_price": "3.00"}]
        }, headers=auth_headers)

        headers = {**other_org_headers, "x-api-key": created["key"]}
        body = client.get(f"{API}/tabs/", headers=headers).json()
        assert body["meta"]["totalItems"] == 1


class TestApiKeyRateLimit:
    """Límite de peticiones por llave"""

    def test_limit_exceeded_returns_429(self, client, api_key_headers, monkeypatch):
        monkeypatch.setattr(auth_dependencies, "check_rate_limit", lambda identifier, limit, window: (False, 30))
        response = client.get(f"{API}/tabs/", headers=api_key_headers)
        assert response.status_code == 429
        assert response.headers["Retry-After"] == "30"
        error = response.json()["error"]
        assert error["code"] == "RATE_LIMIT_EXCEEDED"
        assert error["details"] == {"retry_after": 30}

    def test_window_counter_per_key(self, client, api_key_headers, fake_redis, monkeypatch):
        monkeypatch.setattr(settings, "RATE_LIMIT_REQUESTS", 2)
        monkeypatch.setattr(settings, "RATE_LIMIT_WINDOW", 60)
        for _ in range(2):
            assert client.get(f"{API}/tabs/", headers=api_key_headers).status_code == 200

        response = client.get(f"{API}/tabs/", headers=api_key_headers)
        assert response.status_code == 429
        assert response.headers["Retry-After"] == "60"

    def test_sessions_are_not_rate_limited(self, client, auth_headers, fake_redis, monkeypatch):
        monkeypatch.setattr(settings, "RATE_LIMIT_REQUESTS", 1)
        for _ in range(3):
            assert client.get(f"{API}/tabs/", headers=auth_headers).status_code == 200
