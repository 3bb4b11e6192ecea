# tests/test_security.py
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from carecenter import models
from carecenter.database import get_db
from carecenter.exceptions import ValidationError
from carecenter.main import app
from carecenter.security import create_access_token, resolve_center_scope, verify_token


@pytest.fixture
def client(db):
    def _get_db():
        yield db

    app.dependency_overrides[get_db] = _get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_token_round_trip():
    token = create_access_token({"user_id": 5})
    assert verify_token(token)["user_id"] == 5
    assert verify_token(token, "refresh") is None
    assert verify_token("not-a-token") is None


def test_expired_token_is_rejected():
    token = create_access_token({"user_id": 5}, expires_delta=timedelta(minutes=-1))
    assert verify_token(token) is None


def test_bearer_token_resolves_the_caller(client, accountant):
    token = create_access_token({"user_id": accountant.id})
    response = client.get("/api/v1/accountant/bills", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 200


def test_missing_token(client):
    assert client.get("/api/v1/accountant/bills").status_code == 401


def test_inactive_user(client, db, accountant):
    accountant.status = "suspended"
    db.commit()
    token = create_access_token({"user_id": accountant.id})
    response = client.get("/api/v1/accountant/bills", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 403


class TestCenterScope:
    def test_non_superadmin_ignores_requested_center(self, accountant, center):
        assert resolve_center_scope(accountant, "999") == center.id

    def test_superadmin_defaults_to_all_centers(self, superadmin):
        assert resolve_center_scope(superadmin, None) is None
        assert resolve_center_scope(superadmin, "") is None

    @pytest.mark.parametrize("raw", ["abc", "0", "-3"])
    def test_superadmin_invalid_center(self, superadmin, raw):
        with pytest.raises(ValidationError) as exc:
            resolve_center_scope(superadmin, raw)
        assert exc.value.error_code == "INVALID_CENTER_ID"

    def test_unassigned_staff(self):
        user = models.User(username="x", role=models.UserRole.receptionist, center_id=None)
        with pytest.raises(ValidationError) as exc:
            resolve_center_scope(user, None)
        assert exc.value.error_code == "MISSING_CENTER_ASSIGNMENT"
