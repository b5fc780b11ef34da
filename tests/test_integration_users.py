"""End-to-end tests for profile, security PIN, payment method, search and admin routes."""

from fastapi.testclient import TestClient

from hoopcards import app as app_module
from hoopcards.service.runtime import get_runtime

PASSWORD = "CourtSide1!Pass"

CARD = {
    "cardNumber": "4242 4242 4242 4242",
    "expiryMonth": "08",
    "expiryYear": "30",
    "cardBrand": "visa",
    "nickname": "Show money",
}

ADDRESS = {
    "street": "1 Arena Way",
    "city": "Chicago",
    "state": "IL",
    "zipCode": "60612",
    "country": "US",
}


def _actions(events):
    return [event.action for event in events]


def _set_pin(session, pin="1357", **extra):
    return session.request(
        "POST",
        f"/api/users/{session.user_id}/security-pin",
        json={"pin": pin, "confirmPin": pin, **extra},
    )


def _login(email, password=PASSWORD):
    browser = TestClient(app_module.app)
    response = browser.post("/api/auth/login", json={"email": email, "password": password})
    return browser, response


def _make_admin(make_session, email="admin@example.com"):
    session = make_session(email=email, name="Commissioner")
    get_runtime().auth.set_user_role(session.user_id, "ADMIN")
    # Re-login so the access token carries the new role
    browser, response = _login(email)
    session.client = browser
    session.csrf_token = response.json()["data"]["csrfToken"]
    return session


class TestProfile:
    def test_get_me(self, make_session, audit_events):
        session = make_session()
        response = session.client.get("/api/users/me")
        assert response.status_code == 200
        assert response.json()["data"]["email"] == "fan@example.com"
        assert response.json()["data"]["hasSecurityPin"] is False
        assert "USER_PROFILE_SELF_VIEWED" in _actions(audit_events)

    def test_update_me(self, make_session, audit_events):
        session = make_session()
        response = session.request("PATCH", "/api/users/me", json={"name": "Hardwood Fan"})
        assert response.status_code == 200
        assert response.json()["message"] == "Profile updated successfully"
        assert response.json()["data"]["name"] == "Hardwood Fan"
        assert "USER_PROFILE_SELF_UPDATED" in _actions(audit_events)

        unchanged = session.request("PATCH", "/api/users/me", json={"name": "Hardwood Fan"})
        assert unchanged.json()["message"] == "No changes detected"

    def test_update_me_rejects_bad_name(self, make_session):
        session = make_session()
        response = session.request("PATCH", "/api/users/me", json={"name": "<b>bold</b>"})
        assert response.status_code == 400
        assert "name" in response.json()["errors"]

    def test_email_change_requires_pin_when_set(self, make_session):
        session = make_session()
        assert _set_pin(session).status_code == 200

        denied = session.request("PATCH", "/api/users/me", json={"email": "moved@example.com"})
        assert denied.status_code == 403
        assert denied.json()["message"] == "Security PIN required for update_email"

        allowed = session.request(
            "PATCH", "/api/users/me", json={"email": "moved@example.com", "pin": "1357"}
        )
        assert allowed.status_code == 200
        assert allowed.json()["data"]["email"] == "moved@example.com"
        assert allowed.json()["data"]["emailVerified"] is False

    def test_email_change_to_taken_address(self, make_session):
        make_session(email="taken@example.com")
        session = make_session(email="mover@example.com")
        response = session.request("PATCH", "/api/users/me", json={"email": "taken@example.com"})
        assert response.status_code == 409
        assert response.json()["message"] == "Email already in use"

    def test_profile_update_rate_limited(self, make_session):
        session = make_session()
        statuses = [
            session.request("PATCH", "/api/users/me", json={"bio": f"bio {i}"}).status_code
            for i in range(11)
        ]
        assert statuses[:10] == [200] * 10
        assert statuses[10] == 429

    def test_extended_profile_shipping_requires_pin(self, make_session, audit_events):
        session = make_session()
        url = f"/api/users/{session.user_id}/profile"
        assert session.request("PATCH", url, json={"shippingAddress": ADDRESS}).status_code == 200

        _set_pin(session)
        moved = {**ADDRESS, "city": "Boston"}
        denied = session.request("PATCH", url, json={"shippingAddress": moved})
        assert denied.status_code == 403
        assert denied.json()["message"] == "Security PIN required for update_shipping_address"

        allowed = session.request("PATCH", url, json={"shippingAddress": moved, "pin": "1357"})
        assert allowed.status_code == 200
        assert allowed.json()["data"]["shippingAddress"]["city"] == "Boston"
        assert "USER_EXTENDED_PROFILE_UPDATED" in _actions(audit_events)

    def test_cannot_update_someone_elses_profile(self, make_session):
        owner = make_session(email="owner@example.com")
        other = make_session(email="other@example.com")
        response = other.request(
            "PATCH", f"/api/users/{owner.user_id}/profile", json={"bio": "hijacked"}
        )
        assert response.status_code == 403
        assert response.json()["message"] == "Forbidden: You can only update your own profile"

    def test_admin_updates_profile_without_pin(self, make_session):
        owner = make_session(email="owner@example.com")
        _set_pin(owner)
        admin = _make_admin(make_session)
        response = admin.request(
            "PATCH", f"/api/users/{owner.user_id}/profile", json={"shippingAddress": ADDRESS}
        )
        assert response.status_code == 200


class TestDeleteAccount:
    def test_delete_without_pin_when_pin_set(self, make_session):
        session = make_session()
        _set_pin(session)

        response = session.request("DELETE", "/api/users/me")
        assert response.status_code == 403
        assert response.json()["message"] == "Security PIN required for delete_account"
        assert get_runtime().store.get_user(session.user_id) is not None

    def test_delete_with_wrong_pin(self, make_session):
        session = make_session()
        _set_pin(session)
        response = session.request("DELETE", "/api/users/me", json={"pin": "0000"})
        assert response.status_code == 403
        assert response.json()["message"] == "Invalid security PIN"
        assert get_runtime().store.get_user(session.user_id) is not None

    def test_delete_with_pin(self, make_session, audit_events):
        session = make_session()
        _set_pin(session)
        response = session.request("DELETE", "/api/users/me", json={"pin": "1357"})
        assert response.status_code == 200
        assert response.json()["message"] == "Account deleted successfully"
        assert get_runtime().store.get_user(session.user_id) is None
        assert "ACCOUNT_DELETED" in _actions(audit_events)

        _, login = _login(session.email)
        assert login.status_code == 401

    def test_delete_without_pin_configured(self, make_session):
        session = make_session()
        response = session.request("DELETE", "/api/users/me")
        assert response.status_code == 200


class TestSecurityPin:
    def test_set_pin(self, make_session, audit_events):
        session = make_session()
        response = _set_pin(session)
        assert response.status_code == 200
        assert response.json()["message"] == "Security PIN set successfully"
        assert session.client.get("/api/users/me").json()["data"]["hasSecurityPin"] is True
        assert "SECURITY_PIN_SET" in _actions(audit_events)

    def test_set_pin_validation(self, make_session):
        session = make_session()
        response = session.request(
            "POST",
            f"/api/users/{session.user_id}/security-pin",
            json={"pin": "1234", "confirmPin": "4321"},
        )
        assert response.status_code == 400
        assert "confirmPin" in response.json()["errors"]

    def test_set_pin_for_another_user(self, make_session):
        owner = make_session(email="owner@example.com")
        other = make_session(email="other@example.com")
        response = other.request(
            "POST",
            f"/api/users/{owner.user_id}/security-pin",
            json={"pin": "1234", "confirmPin": "1234"},
        )
        assert response.status_code == 403
        assert response.json()["message"] == "Forbidden: You can only set your own security PIN"

    def test_replacing_pin_needs_current_pin(self, make_session):
        session = make_session()
        _set_pin(session)
        assert _set_pin(session, "2468").status_code == 403
        assert _set_pin(session, "2468", currentPin="1357").status_code == 200
        assert get_runtime().pin.verify_pin(session.user_id, "2468")

    def test_remove_pin(self, make_session, audit_events):
        session = make_session()
        _set_pin(session)
        url = f"/api/users/{session.user_id}/security-pin"

        assert session.request("DELETE", url).status_code == 403
        response = session.request("DELETE", url, json={"pin": "1357"})
        assert response.status_code == 200
        assert response.json()["message"] == "Security PIN removed successfully"
        assert not get_runtime().pin.has_pin(session.user_id)
        assert "SECURITY_PIN_REMOVED" in _actions(audit_events)

    def test_remove_someone_elses_pin(self, make_session):
        owner = make_session(email="owner@example.com")
        _set_pin(owner)
        other = make_session(email="other@example.com")
        response = other.request(
            "DELETE", f"/api/users/{owner.user_id}/security-pin", json={"pin": "1357"}
        )
        assert response.status_code == 403
        assert response.json()["message"] == (
            "Forbidden: You can only remove your own security PIN"
        )

    def test_admin_removes_pin_without_knowing_it(self, make_session):
        owner = make_session(email="owner@example.com")
        _set_pin(owner)
        admin = _make_admin(make_session)
        response = admin.request("DELETE", f"/api/users/{owner.user_id}/security-pin")
        assert response.status_code == 200
        assert not get_runtime().pin.has_pin(owner.user_id)

        missing = admin.request("DELETE", "/api/users/no-such-user/security-pin")
        assert missing.status_code == 404


class TestPaymentMethods:
    def test_adding_card_needs_pin_configured(self, make_session):
        session = make_session()
        response = session.request(
            "POST", "/api/users/me/payment-methods", json={**CARD, "pin": "1234"}
        )
        assert response.status_code == 403
        assert response.json()["message"] == (
            "Security PIN must be set up before performing this operation"
        )
        assert get_runtime().store.get_user(session.user_id).payment_methods == []

    def test_add_list_and_remove(self, make_session, audit_events):
        session = make_session()
        _set_pin(session)

        missing_pin = session.request("POST", "/api/users/me/payment-methods", json=CARD)
        assert missing_pin.status_code == 403

        added = session.request(
            "POST", "/api/users/me/payment-methods", json={**CARD, "pin": "1357"}
        )
        assert added.status_code == 201
        method = added.json()["data"]
        assert method["last4"] == "4242"
        assert "cardNumber" not in method and "fingerprint" not in method
        assert "PAYMENT_METHOD_ADDED" in _actions(audit_events)

        duplicate = session.request(
            "POST", "/api/users/me/payment-methods", json={**CARD, "pin": "1357"}
        )
        assert duplicate.status_code == 409
        assert duplicate.json()["message"] == "This card is already saved to your account"

        listed = session.client.get("/api/users/me/payment-methods")
        assert [m["id"] for m in listed.json()["data"]] == [method["id"]]

        url = f"/api/users/me/payment-methods/{method['id']}"
        assert session.request("DELETE", url).status_code == 403
        removed = session.request("DELETE", url, json={"pin": "1357"})
        assert removed.status_code == 200
        assert removed.json()["message"] == "Payment method removed successfully"

        gone = session.request("DELETE", url, json={"pin": "1357"})
        assert gone.status_code == 404

    def test_stored_card_keeps_no_full_number(self, make_session):
        session = make_session()
        _set_pin(session)
        session.request("POST", "/api/users/me/payment-methods", json={**CARD, "pin": "1357"})
        stored = get_runtime().store.get_user(session.user_id).payment_methods[0]
        assert "4242424242424242" not in stored.fingerprint
        assert stored.last4 == "4242"

    def test_invalid_card(self, make_session):
        session = make_session()
        _set_pin(session)
        response = session.request(
            "POST",
            "/api/users/me/payment-methods",
            json={**CARD, "cardNumber": "1234", "pin": "1357"},
        )
        assert response.status_code == 400
        assert "cardNumber" in response.json()["errors"]


class TestSearch:
    def test_search_is_public(self, client, make_session, audit_events):
        make_session(email="jordan@example.com", name="Michael Jordan")
        make_session(email="pippen@example.com", name="Scottie Pippen")

        response = client.get("/api/search", params={"q": "jordan"})
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["query"] == "jordan"
        assert [r["name"] for r in data["results"]] == ["Michael Jordan"]
        assert set(data["results"][0]) == {"id", "name"}
        assert "SEARCH_PERFORMED" in _actions(audit_events)

    def test_search_rate_limit(self, client):
        for _ in range(100):
            assert client.get("/api/search", params={"q": "x"}).status_code == 200
        response = client.get("/api/search", params={"q": "x"})
        assert response.status_code == 429
        assert response.json()["message"] == "Too many search requests. Please try again later."

    def test_search_requires_query(self, client):
        assert client.get("/api/search").status_code == 400


class TestAdmin:
    def test_non_admin_rejected(self, make_session, audit_events):
        session = make_session()
        response = session.client.get("/api/users")
        assert response.status_code == 403
        assert response.json()["message"] == "Insufficient permissions"
        assert "UNAUTHORIZED_ADMIN_ATTEMPT" in _actions(audit_events)

    def test_admin_lists_users(self, make_session, audit_events):
        make_session(email="fan@example.com")
        admin = _make_admin(make_session)
        response = admin.client.get("/api/users")
        assert response.status_code == 200
        assert {u["email"] for u in response.json()["data"]} == {
            "fan@example.com",
            "admin@example.com",
        }
        filtered = admin.client.get("/api/users", params={"role": "admin"})
        assert [u["email"] for u in filtered.json()["data"]] == ["admin@example.com"]
        assert "USERS_LISTED" in _actions(audit_events)

    def test_demoted_admin_token_is_rejected(self, make_session):
        admin = _make_admin(make_session)
        get_runtime().auth.set_user_role(admin.user_id, "USER")
        response = admin.client.get("/api/users")
        assert response.status_code == 403
        assert response.json()["message"] == "Insufficient permissions"

    def test_token_from_before_promotion_is_not_admin(self, make_session):
        session = make_session()
        get_runtime().auth.set_user_role(session.user_id, "ADMIN")
        assert session.client.get("/api/users").status_code == 403

    def test_update_role(self, make_session, audit_events):
        fan = make_session(email="fan@example.com")
        admin = _make_admin(make_session)
        response = admin.request(
            "PATCH", f"/api/users/{fan.user_id}/role", json={"role": "seller"}
        )
        assert response.status_code == 200
        assert response.json()["data"]["role"] == "SELLER"
        assert "USER_ROLE_UPDATED" in _actions(audit_events)

        invalid = admin.request("PATCH", f"/api/users/{fan.user_id}/role", json={"role": "god"})
        assert invalid.status_code == 400
        missing = admin.request("PATCH", "/api/users/nobody/role", json={"role": "USER"})
        assert missing.status_code == 404

    def test_delete_user(self, make_session, audit_events):
        fan = make_session(email="fan@example.com")
        admin = _make_admin(make_session)
        response = admin.request("DELETE", f"/api/users/{fan.user_id}")
        assert response.status_code == 200
        assert get_runtime().store.get_user(fan.user_id) is None
        assert "USER_DELETED_BY_ADMIN" in _actions(audit_events)

        again = admin.request("DELETE", f"/api/users/{fan.user_id}")
        assert again.status_code == 404

    def test_admin_cannot_delete_self(self, make_session):
        admin = _make_admin(make_session)
        response = admin.request("DELETE", f"/api/users/{admin.user_id}")
        assert response.status_code == 400
