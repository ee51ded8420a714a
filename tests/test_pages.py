from datetime import timedelta

import pytest

from conftest import sign_in
from library_service.datastore import DataStoreError
from library_service.models import utcnow


@pytest.mark.parametrize("path", ["/dashboard", "/inventory", "/admin"])
def test_anonymous_visitors_are_sent_to_sign_in(client, app_library, path):
    resp = client.get(path)
    assert resp.status_code == 302
    assert resp.headers["Location"].endswith("/auth")


def test_loading_identity_renders_placeholder(app, client, app_library, monkeypatch):
    sign_in(client, "member@example.com")

    def unreachable(stored):
        raise DataStoreError("identity service down")

    monkeypatch.setattr(app.extensions["datastore"], "resolve_identity", unreachable)
    resp = client.get("/dashboard")
    assert resp.status_code == 200
    assert b"Loading" in resp.data
    assert b'http-equiv="refresh"' in resp.data


def test_landing_page(client, app_library):
    assert b"Get Started" in client.get("/").data
    sign_in(client, "member@example.com")
    resp = client.get("/")
    assert resp.status_code == 302
    assert resp.headers["Location"].endswith("/dashboard")


def test_sign_in_and_dashboard(client, app_library):
    resp = sign_in(client, "member@example.com")
    assert resp.headers["Location"].endswith("/dashboard")

    page = client.get("/dashboard").get_data(as_text=True)
    assert "Welcome back, Sam!" in page
    assert app_library.member["library_card_id"] in page
    assert "No active loans" in page
    assert "£0.00" in page


def test_bad_password_returns_to_sign_in(client, app_library):
    resp = sign_in(client, "member@example.com", "nope")
    assert resp.headers["Location"].endswith("/auth")
    page = client.get("/auth").get_data(as_text=True)
    assert "Invalid email or password" in page
    assert client.get("/dashboard").status_code == 302


def test_sign_up_then_sign_out(client, app_library):
    resp = client.post(
        "/auth/sign-up",
        data={"email": "new@example.com", "password": "pw", "first_name": "Nia"},
    )
    assert resp.headers["Location"].endswith("/dashboard")
    assert "Welcome back, Nia!" in client.get("/dashboard").get_data(as_text=True)

    client.post("/auth/sign-out")
    assert client.get("/dashboard").status_code == 302


def test_member_cannot_open_admin(client, app_library):
    sign_in(client, "member@example.com")
    resp = client.get("/admin")
    assert resp.status_code == 302
    assert resp.headers["Location"].endswith("/dashboard")

    page = client.get("/dashboard").get_data(as_text=True)
    assert "Access Denied" in page
    assert "Admin Panel" not in page


def test_member_cannot_post_admin_actions(client, app_library):
    sign_in(client, "member@example.com")
    resp = client.post("/admin/books", data={"isbn": "1", "title": "T", "author": "A"})
    assert resp.headers["Location"].endswith("/dashboard")
    assert len(app_library.store.list_books()) == 3


def test_inventory_disables_unavailable_books(client, app_library):
    sign_in(client, "member@example.com")
    page = client.get("/inventory").get_data(as_text=True)
    gone = page.split(f'id="book-{app_library.gone["id"]}"')[1].split("</li>")[0]
    assert "Unavailable" in gone
    assert "disabled" in gone
    dune = page.split(f'id="book-{app_library.dune["id"]}"')[1].split("</li>")[0]
    assert "disabled" not in dune


def test_inventory_search(client, app_library):
    sign_in(client, "member@example.com")
    page = client.get("/inventory?q=lem").get_data(as_text=True)
    assert "Solaris" in page
    assert "Dune" not in page


def test_borrow_from_inventory(client, app_library):
    sign_in(client, "member@example.com")
    resp = client.post(f"/inventory/{app_library.dune['id']}/borrow")
    assert resp.status_code == 302
    assert "/inventory" in resp.headers["Location"]

    page = client.get("/inventory").get_data(as_text=True)
    assert "Book borrowed successfully!" in page
    assert "1 of 2 available" in page

    dashboard = client.get("/dashboard").get_data(as_text=True)
    assert "Dune" in dashboard
    assert "days left" in dashboard


def test_borrowing_unavailable_book_is_refused(client, app_library):
    sign_in(client, "member@example.com")
    client.post(f"/inventory/{app_library.gone['id']}/borrow")
    page = client.get("/inventory").get_data(as_text=True)
    assert "Unable to borrow: No copies available" in page
    assert app_library.store.list_loans() == []


def test_admin_adds_book(client, app_library):
    sign_in(client, "admin@example.com")
    resp = client.post(
        "/admin/books",
        data={
            "isbn": "9780553293357",
            "title": "Foundation",
            "author": "Isaac Asimov",
            "category_id": str(app_library.fiction["id"]),
            "total_copies": "2",
        },
    )
    assert resp.headers["Location"].endswith("/admin")
    page = client.get("/admin").get_data(as_text=True)
    assert "Book added successfully!" in page

    book = next(b for b in app_library.store.list_books() if b["title"] == "Foundation")
    assert book["available_copies"] == 2


def test_admin_processes_overdue_return(client, app_library):
    store = app_library.store
    loan_id = store.borrow(app_library.dune["id"], app_library.member["id"], utcnow() - timedelta(days=3)).loan_id

    sign_in(client, "admin@example.com")
    page = client.get("/admin").get_data(as_text=True)
    assert "Process Return" in page

    client.post(f"/admin/loans/{loan_id}/return")
    page = client.get("/admin").get_data(as_text=True)
    assert "Book returned successfully!: Fine: £1.50" in page
    row = page.split(f'id="loan-{loan_id}"')[1].split("</tr>")[0]
    assert "returned" in row
    assert "Process Return" not in row
    assert store.get_book(app_library.dune["id"])["available_copies"] == 2


def test_action_while_loading_refreshes_back_to_page(app, client, app_library, monkeypatch):
    sign_in(client, "member@example.com")

    def unreachable(stored):
        raise DataStoreError("identity service down")

    monkeypatch.setattr(app.extensions["datastore"], "resolve_identity", unreachable)
    resp = client.post(f"/inventory/{app_library.dune['id']}/borrow")
    page = resp.get_data(as_text=True)
    assert resp.status_code == 200
    assert 'content="2; url=/inventory"' in page
    assert "still loading" in page
    assert app_library.store.list_loans() == []

    monkeypatch.undo()
    resp = client.get("/inventory")
    assert resp.status_code == 200
    assert "2 of 2 available" in resp.get_data(as_text=True)
