from datetime import date

import pytest
from fastapi.testclient import TestClient

import api_server
from backend import main
from backend.scripts import seed_demo_sales


def export_row(name, commission, sub_id=""):
    return {"Nome do Item": name, "Comissão líquida do afiliado(R$)": commission, "Sub_id1": sub_id}


def signed_in(user_id):
    return lambda: {"user_id": user_id, "role": "viewer", "claims": {"sub": user_id}}


@pytest.fixture
def backend_client(store):
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


def test_health_is_public(backend_client):
    body = backend_client.get("/health").json()

    assert body["ok"] is True
    assert body["db"]["ok"] is True


def test_requests_without_token_are_rejected(backend_client):
    assert backend_client.get("/api/dashboard/stats").status_code in (401, 403)


def test_claims_without_subject_are_unauthenticated(backend_client):
    main.app.dependency_overrides[main.verify_clerk_token] = signed_in(None)

    resp = backend_client.get("/api/dashboard/stats")
    assert resp.status_code == 401
    assert resp.json()["ok"] is False


def test_accounts_only_see_their_own_sales(backend_client):
    main.app.dependency_overrides[main.verify_clerk_token] = signed_in("user_a")
    upload = backend_client.post(
        "/api/upload/csv",
        json={"referenceDate": "2024-05-10", "rows": [export_row("Camiseta", "10,50", "REF1")]},
    )
    assert upload.status_code == 200
    report = backend_client.post(
        "/api/reports/manual", json={"referralId": "REF1", "date": "2024-05-10", "revenueTotal": 10, "costTotal": 2}
    )
    assert report.status_code == 201

    main.app.dependency_overrides[main.verify_clerk_token] = signed_in("user_b")
    assert backend_client.get("/api/dashboard/stats").json()["sale_count"] == 0
    assert backend_client.get("/api/reports").json()["rows"] == []
    foreign = backend_client.post("/api/expenses", json={"reportId": report.json()["id"], "amount": 5})
    assert foreign.status_code == 400

    main.app.dependency_overrides[main.verify_clerk_token] = signed_in("user_a")
    assert backend_client.get("/api/dashboard/stats").json()["sale_count"] == 1
    assert len(backend_client.get("/dashboard").json()["products"]) == 1


def test_role_extraction():
    assert main._extract_role({"public_metadata": {"role": "Admin"}}) == "admin"
    assert main._extract_role({"org_role": "member"}) == "viewer"
    assert main._extract_role({}) == "viewer"


def test_seed_demo_sales(store):
    counts = seed_demo_sales.seed("demo", date(2024, 5, 10))

    assert counts == {"2024-05-10": 3, "2024-05-09": 2}
    stats = api_server.sales_stats("demo", "all")
    assert stats["revenue_social"] == "360.40"
    assert stats["revenue_video"] == "250.00"
    video = [g for g in api_server.product_groups("demo", "video") if g["date"] == "2024-05-09"]
    assert video[0]["quantity"] == 5
