import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import main
from csrf import generate_csrf_token
from database import Base
from identity import (
    SESSION_COOKIE,
    AuthSession,
    Identity,
    IdentityError,
    IdentityProvider,
    get_identity_provider,
)
from models import User

ALICE = Identity("uuid-alice", "alice@example.com")


class FakeProvider(IdentityProvider):
    password_updates: list[tuple[str, str]] = []

    def sign_in(self, email: str, password: str) -> AuthSession:
        if password != "Secret123":
            raise IdentityError("Invalid login credentials")
        return AuthSession(ALICE, "jwt-alice")

    def sign_out(self, access_token: str) -> None:
        return None

    def verify_recovery(self, token_hash: str) -> AuthSession:
        if token_hash != "good-hash":
            raise IdentityError("Email link is invalid or has expired")
        return AuthSession(ALICE, "jwt-recovery")

    def update_password(self, access_token: str, new_password: str) -> None:
        self.password_updates.append((access_token, new_password))


@pytest.fixture()
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture()
def client(session_factory):
    def get_test_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    FakeProvider.password_updates.clear()
    main.app.dependency_overrides[main.get_db] = get_test_db
    main.app.dependency_overrides[get_identity_provider] = FakeProvider
    yield TestClient(main.app, follow_redirects=False)
    main.app.dependency_overrides.clear()


def login(client: TestClient) -> None:
    response = client.post(
        "/login",
        data={
            "email": ALICE.email,
            "password": "Secret123",
            "csrf_token": generate_csrf_token(),
        },
    )
    assert response.status_code == 303


def test_api_requires_session(client) -> None:
    response = client.get("/api/insights")
    assert response.status_code == 401


def test_pages_redirect_to_login(client) -> None:
    response = client.get("/")
    assert response.status_code == 303
    assert response.headers["location"] == "/login"


def test_login_rejects_bad_csrf(client) -> None:
    response = client.post(
        "/login",
        data={"email": ALICE.email, "password": "Secret123", "csrf_token": "nope"},
    )
    assert response.status_code == 400


def test_login_shows_provider_error(client) -> None:
    response = client.post(
        "/login",
        data={
            "email": ALICE.email,
            "password": "wrong",
            "csrf_token": generate_csrf_token(),
        },
    )
    assert response.status_code == 400
    assert "Invalid login credentials" in response.text


def test_onboarding_then_current_month(client) -> None:
    login(client)
    assert client.get("/api/months/current").status_code == 409

    response = client.post(
        "/onboarding",
        data={
            "income": "5000",
            "currency": "USD",
            "csrf_token": generate_csrf_token(ALICE.id),
        },
        headers={"HX-Request": "true"},
    )
    assert response.status_code == 204
    assert response.headers["HX-Trigger"] == "onboarding-complete"

    payload = client.get("/api/months/current").json()
    assert payload["summary"]["savings_amount"] == "1000.00"
    assert payload["summary"]["remaining"] == "4000.00"
    assert [a["name"] for a in payload["allocations"]][0] == "Savings"
    assert len(client.get("/api/categories").json()) == 7


def test_savings_allocation_is_rejected(client) -> None:
    login(client)
    client.post(
        "/onboarding",
        data={"income": "5000", "currency": "SLE", "csrf_token": generate_csrf_token(ALICE.id)},
    )
    month = client.get("/api/months/current").json()
    savings = next(a for a in month["allocations"] if a["is_savings"])

    response = client.post(
        f"/months/{month['id']}/allocations",
        data={
            "category_id": str(savings["category_id"]),
            "amount": "10",
            "csrf_token": generate_csrf_token(ALICE.id),
        },
    )
    assert response.status_code == 400
    assert response.json()["detail"] == "Savings allocation is calculated automatically"


def test_out_of_range_month_is_not_found(client) -> None:
    login(client)
    assert client.get("/budget/2019/5").status_code == 404
    assert client.get("/api/budget/2025/13").status_code == 404


def test_login_with_email_owned_by_other_account(client, session_factory) -> None:
    with session_factory() as db:
        db.add(User(id="uuid-old", email=ALICE.email))
        db.commit()

    response = client.post(
        "/login",
        data={
            "email": ALICE.email,
            "password": "Secret123",
            "csrf_token": generate_csrf_token(),
        },
    )

    assert response.status_code == 409
    assert "already linked to another account" in response.text
    assert SESSION_COOKIE not in response.cookies


def test_reset_page_without_session_offers_reset_request(client) -> None:
    response = client.get("/reset-password")

    assert response.status_code == 200
    assert 'action="/forgot-password"' in response.text


def test_recovery_link_signs_in_and_updates_password(client) -> None:
    response = client.get(
        "/reset-password", params={"token_hash": "good-hash", "type": "recovery"}
    )
    assert response.status_code == 200
    assert "Choose a new password" in response.text
    assert SESSION_COOKIE in response.cookies

    response = client.post(
        "/reset-password",
        data={
            "password": "NewSecret1",
            "confirm_password": "NewSecret1",
            "csrf_token": generate_csrf_token(ALICE.id),
        },
    )
    assert response.status_code == 303
    assert response.headers["location"] == "/settings"
    assert FakeProvider.password_updates == [("jwt-recovery", "NewSecret1")]


def test_expired_recovery_link_is_rejected(client) -> None:
    response = client.get(
        "/reset-password", params={"token_hash": "stale", "type": "recovery"}
    )

    assert response.status_code == 400
    assert "invalid or has expired" in response.text
    assert SESSION_COOKIE not in response.cookies
