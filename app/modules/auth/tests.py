"""
Tests para autenticación de usuarios del dashboard

- Registro y login con JWT
- /auth/me con organizaciones del usuario
- Envelope de errores y headers comunes de la API
"""

API = "/api/v1"


def register(client, email="new@example.com", password="Password123!", full_name="New User"):
    return client.post(f"{API}/auth/register", json={
        "email": email, "password": password, "full_name": full_name
    })


class TestRegisterAndLogin:

    def test_register_user(self, client):
        response = register(client, email="New@Example.com")
        assert response.status_code == 201
        data = response.json()["data"]
        assert data["email"] == "new@example.com"
        assert data["is_active"] is True
        assert "password" not in data

    def test_register_duplicate_email(self, client):
        register(client)
        response = register(client)
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "CONFLICT"

    def test_register_short_password(self, client):
        response = register(client, password="short")
        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "VALIDATION_ERROR"
        assert error["details"][0]["path"] == "body.password"

    def test_login_returns_token_and_organizations(self, client, owner, organization):
        response = client.post(f"{API}/auth/login", data={
            "username": "owner@example.com", "password": "Password123!"
        })
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["token_type"] == "bearer"
        assert data["access_token"]
        assert data["user"]["last_login"] is not None
        assert data["organizations"] == [{
            "organization_id": str(organization.id),
            "organization_name": "Test Merchant",
            "role": "owner",
            "is_merchant": True,
            "is_corporate": False
        }]

    def test_login_wrong_password(self, client, owner):
        response = client.post(f"{API}/auth/login", data={
            "username": "owner@example.com", "password": "WrongPassword1"
        })
        assert response.status_code == 401
        assert response.json() == {
            "success": False,
            "error": {"code": "UNAUTHORIZED", "message": "Invalid email or password"}
        }

    def test_login_inactive_user(self, client, db_session, owner):
        owner.is_active = False
        db_session.commit()
        response = client.post(f"{API}/auth/login", data={
            "username": "owner@example.com", "password": "Password123!"
        })
        assert response.status_code == 403


class TestCurrentUser:

    def test_me(self, client, auth_headers):
        response = client.get(f"{API}/auth/me", headers={"Authorization": auth_headers["Authorization"]})
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["user"]["email"] == "owner@example.com"
        assert data["organizations"][0]["organization_name"] == "Test Merchant"

    def test_me_without_token(self, client):
        response = client.get(f"{API}/auth/me")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "UNAUTHORIZED"

    def test_me_with_invalid_token(self, client):
        response = client.get(f"{API}/auth/me", headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401


class TestApiSurface:
    """Health check, headers de seguridad y errores HTTP genéricos"""

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "environment": "test"}

    def test_security_headers_and_request_id(self, client):
        response = client.get("/health", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-Request-ID"] == "req-123"

    def test_unknown_route_uses_error_envelope(self, client):
        response = client.get(f"{API}/does-not-exist")
        assert response.status_code == 404
        body = response.json()
        assert body["success"] is False
        assert body["error"]["code"] == "NOT_FOUND"
