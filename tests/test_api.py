from datetime import timedelta

from conftest import api_sign_in
from library_service.datastore import DataStoreError
from library_service.models import utcnow


def test_health(client):
    resp = client.get("/api/health")
    assert resp.status_code == 200
    assert resp.get_json() == {"status": "ok", "service": "library_service", "backend": "sql"}


def test_cors_headers_on_api(client):
    resp = client.get("/api/health", headers={"Origin": "http://localhost:3000"})
    assert resp.headers["Access-Control-Allow-Origin"] in ("*", "http://localhost:3000")


def test_anonymous_requests_are_refused(client, app_library):
    resp = client.get("/api/books")
    assert resp.status_code == 401
    assert resp.get_json()["error"] == "Sign in required"
    assert client.post(f"/api/books/{app_library.dune['id']}/borrow").status_code == 401


def test_identity_service_down_is_503(app, client, app_library, monkeypatch):
    api_sign_in(client, "member@example.com")

    def unreachable(stored):
        raise DataStoreError("identity service down")

    monkeypatch.setattr(app.extensions["datastore"], "resolve_identity", unreachable)
    assert client.get("/api/loans/me").status_code == 503


def test_sign_in(client, app_library):
    resp = api_sign_in(client, "member@example.com")
    assert resp.status_code == 200
    assert resp.get_json() == {"user_id": app_library.member["id"], "email": "member@example.com"}

    assert api_sign_in(client, "member@example.com", "wrong").status_code == 401
    assert client.post("/api/auth/sign-in", json={"email": ""}).status_code == 400


def test_profile_and_sign_out(client, app_library):
    api_sign_in(client, "member@example.com")
    profile = client.get("/api/profile").get_json()
    assert profile["first_name"] == "Sam"
    assert "password_hash" not in profile

    client.post("/api/auth/sign-out")
    assert client.get("/api/profile").status_code == 401


def test_books_query(client, app_library):
    api_sign_in(client, "member@example.com")
    books = client.get("/api/books").get_json()
    assert [b["title"] for b in books] == ["Brave New World", "Dune", "Solaris"]
    assert {b["title"]: b["can_borrow"] for b in books} == {
        "Brave New World": False,
        "Dune": True,
        "Solaris": True,
    }

    found = client.get("/api/books?query=9780156027601").get_json()
    assert [b["title"] for b in found] == ["Solaris"]


def test_categories(client, app_library):
    api_sign_in(client, "member@example.com")
    assert [c["name"] for c in client.get("/api/categories").get_json()] == ["Fiction"]


def test_borrow_decrements_availability(client, app_library):
    api_sign_in(client, "member@example.com")
    resp = client.post(f"/api/books/{app_library.dune['id']}/borrow")

    assert resp.status_code == 201
    body = resp.get_json()
    assert body["success"] is True
    assert body["loan_id"]
    assert body["book"]["available_copies"] == 1
    assert app_library.store.get_book(app_library.dune["id"])["available_copies"] == 1


def test_borrow_with_no_copies_is_conflict(client, app_library):
    api_sign_in(client, "member@example.com")
    resp = client.post(f"/api/books/{app_library.gone['id']}/borrow")
    assert resp.status_code == 409
    assert resp.get_json()["error"] == "No copies available"
    assert app_library.store.list_loans() == []


def test_borrow_after_last_copy_taken(client, app_library):
    app_library.store.borrow(app_library.solaris["id"], app_library.admin["id"])
    api_sign_in(client, "member@example.com")

    # the snapshot fetched for this request already shows 0 copies
    resp = client.post(f"/api/books/{app_library.solaris['id']}/borrow")
    assert resp.status_code == 409
    assert resp.get_json()["error"] == "No copies available"


def test_my_loans(client, app_library):
    store = app_library.store
    store.borrow(app_library.dune["id"], app_library.member["id"], utcnow() + timedelta(days=2))
    store.borrow(app_library.solaris["id"], app_library.admin["id"])

    api_sign_in(client, "member@example.com")
    body = client.get("/api/loans/me").get_json()

    assert body["profile"]["email"] == "member@example.com"
    assert body["total_fines"] == 0
    assert len(body["loans"]) == 1
    loan = body["loans"][0]
    assert loan["books"]["title"] == "Dune"
    assert loan["due_soon"] is True
    assert loan["overdue"] is False


def test_admin_endpoints_are_admin_only(client, app_library):
    api_sign_in(client, "member@example.com")
    resp = client.get("/api/loans")
    assert resp.status_code == 403
    assert resp.get_json()["error"] == "You do not have admin privileges"
    assert client.post("/api/books", json={"isbn": "1", "title": "T", "author": "A"}).status_code == 403
    assert client.post("/api/loans/1/return").status_code == 403


def test_admin_lists_and_returns_loans(client, app_library):
    loan_id = app_library.store.borrow(app_library.dune["id"], app_library.member["id"]).loan_id
    api_sign_in(client, "admin@example.com")

    loans = client.get("/api/loans").get_json()
    assert [l["id"] for l in loans] == [loan_id]
    assert loans[0]["profiles"]["email"] == "member@example.com"

    resp = client.post(f"/api/loans/{loan_id}/return")
    assert resp.status_code == 200
    assert resp.get_json()["success"] is True
    assert resp.get_json()["fine"] == 0.0

    again = client.post(f"/api/loans/{loan_id}/return")
    assert again.status_code == 409
    assert again.get_json()["error"] == "Loan is not active"


def test_admin_adds_book(client, app_library):
    api_sign_in(client, "admin@example.com")
    resp = client.post(
        "/api/books",
        json={"isbn": "9780553293357", "title": "Foundation", "author": "Isaac Asimov", "total_copies": 3},
    )
    assert resp.status_code == 201
    assert resp.get_json()["available_copies"] == 3

    duplicate = client.post(
        "/api/books", json={"isbn": "9780553293357", "title": "Foundation", "author": "Isaac Asimov"}
    )
    assert duplicate.status_code == 409


def test_invalid_book_is_bad_request(client, app_library):
    api_sign_in(client, "admin@example.com")
    resp = client.post("/api/books", json={"isbn": "1", "title": "", "author": "A"})
    assert resp.status_code == 400
    assert "title" in resp.get_json()["error"].lower()


def test_borrow_when_catalog_fails_to_load_is_bad_gateway(app, client, app_library, monkeypatch):
    api_sign_in(client, "member@example.com")

    def unreachable():
        raise DataStoreError("backend unreachable")

    monkeypatch.setattr(app.extensions["datastore"], "list_books", unreachable)
    resp = client.post(f"/api/books/{app_library.dune['id']}/borrow")
    assert resp.status_code == 502
    assert resp.get_json()["error"] == "backend unreachable"
    assert app_library.store.list_loans() == []


def test_non_object_json_bodies_are_bad_requests(client, app_library):
    assert client.post("/api/auth/sign-in", json=[]).status_code == 400
    assert client.post("/api/auth/sign-in", data="null", content_type="application/json").status_code == 400

    api_sign_in(client, "admin@example.com")
    resp = client.post("/api/books", json=["9780553293357"])
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "Request body must be a JSON object"
