from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from circulation_desk.api import app, get_ledger
from circulation_desk.config import settings
from circulation_desk.models import Book, User


@pytest.fixture
def client(ledger):
    app.dependency_overrides[get_ledger] = lambda: ledger
    with TestClient(app) as client:
        yield client
    app.dependency_overrides.clear()


def _headers(user_id=None):
    headers = {"X-API-Key": settings.api_key}
    if user_id is not None:
        headers["X-User-Id"] = str(user_id)
    return headers


def _issue(client, librarian, book, borrower, due="2024-01-01T00:00:00Z"):
    return client.post(
        "/circulation/issue",
        json={"book_id": book.id, "user_id": borrower.id, "due_date": due},
        headers=_headers(librarian.id),
    )


def test_health_check(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] in ("healthy", "degraded")


def test_create_book_and_user(client, librarian):
    response = client.post(
        "/books",
        json={"isbn": "9780441013593", "title": "Dune", "author": "Frank Herbert", "total_copies": 2},
        headers=_headers(librarian.id),
    )
    assert response.status_code == 201
    book = response.json()
    assert book["available_copies"] == 2

    response = client.get(f"/books/{book['id']}")
    assert response.json()["title"] == "Dune"

    response = client.post("/users", json={"name": "Bob", "email": "bob@example.com"}, headers=_headers())
    assert response.status_code == 201
    assert response.json()["role"] == "user"


def test_duplicate_book_is_rejected(client, librarian, book):
    response = client.post(
        "/books",
        json={"isbn": book.isbn, "title": "Again", "author": "Someone"},
        headers=_headers(librarian.id),
    )
    assert response.status_code == 400


def test_wrong_api_key_is_rejected(client, librarian, book, borrower):
    response = client.post(
        "/circulation/issue",
        json={"book_id": book.id, "user_id": borrower.id},
        headers={"X-API-Key": "wrong", "X-User-Id": str(librarian.id)},
    )
    assert response.status_code == 403
    assert response.json()["detail"] == "Could not validate credentials"


def test_issue_requires_staff(client, book, borrower):
    response = _issue(client, borrower, book, borrower)
    assert response.status_code == 403


def test_unknown_user_header(client, book, borrower):
    response = client.get(f"/circulation/user/{borrower.id}", headers=_headers(4242))
    assert response.status_code == 401


def test_issue_and_return_with_fine(client, ledger, store, librarian, book, borrower, clock):
    response = _issue(client, librarian, book, borrower)
    assert response.status_code == 201
    record = response.json()
    assert record["status"] == "borrowed"
    assert record["issued_by"] == librarian.id
    assert client.get(f"/books/{book.id}").json()["available_copies"] == 0

    clock.set(datetime(2024, 1, 4, tzinfo=timezone.utc))
    response = client.put(f"/circulation/{record['id']}/return", headers=_headers(librarian.id))
    assert response.status_code == 200
    returned = response.json()
    assert returned["status"] == "returned"
    assert returned["fine"] == "1.50"
    assert client.get(f"/books/{book.id}").json()["available_copies"] == 1

    response = client.put(f"/circulation/{record['id']}/return", headers=_headers(librarian.id))
    assert response.status_code == 400
    assert response.json()["code"] == "already_returned"


def test_issue_unavailable_book(client, store, librarian, book, borrower):
    other = store.add_user(User("Bob", "bob@example.com"))
    _issue(client, librarian, book, borrower)

    response = _issue(client, librarian, book, other)
    assert response.status_code == 400
    assert response.json()["code"] == "unavailable"


def test_issue_errors(client, librarian, book, borrower):
    response = client.post(
        "/circulation/issue",
        json={"book_id": book.id, "user_id": 999},
        headers=_headers(librarian.id),
    )
    assert response.status_code == 404
    assert response.json()["code"] == "not_found"

    response = client.post(
        "/circulation/issue",
        json={"book_id": 999, "user_id": borrower.id},
        headers=_headers(librarian.id),
    )
    assert response.status_code == 404
    assert response.json()["code"] == "not_found"


def test_renew_by_borrower_until_limit(client, librarian, book, borrower):
    record = _issue(client, librarian, book, borrower).json()

    response = client.put(f"/circulation/{record['id']}/renew", headers=_headers(borrower.id))
    assert response.status_code == 200
    assert response.json()["due_date"].startswith("2024-01-15")
    assert response.json()["renewal_count"] == 1

    client.put(f"/circulation/{record['id']}/renew", headers=_headers(borrower.id))
    response = client.put(f"/circulation/{record['id']}/renew", headers=_headers(borrower.id))
    assert response.status_code == 400
    assert response.json()["code"] == "renewal_limit_reached"


def test_renew_someone_elses_loan(client, store, librarian, book, borrower):
    stranger = store.add_user(User("Mallory", "mallory@example.com"))
    record = _issue(client, librarian, book, borrower).json()

    response = client.put(f"/circulation/{record['id']}/renew", headers=_headers(stranger.id))
    assert response.status_code == 403
    assert response.json()["code"] == "unauthorized"


def test_mark_lost(client, librarian, book, borrower):
    record = _issue(client, librarian, book, borrower).json()

    response = client.put(f"/circulation/{record['id']}/lost", headers=_headers(librarian.id))
    assert response.status_code == 200
    assert response.json()["status"] == "lost"
    assert client.get(f"/books/{book.id}").json()["available_copies"] == 0


def test_sweep_and_overdue_listing(client, librarian, book, borrower, clock):
    record = _issue(client, librarian, book, borrower).json()
    clock.set(datetime(2024, 2, 1, tzinfo=timezone.utc))

    # Reading does not flip the status
    response = client.get("/circulation/overdue", headers=_headers(librarian.id))
    assert response.json()["count"] == 1
    assert response.json()["data"][0]["status"] == "borrowed"

    response = client.post("/circulation/sweep", headers=_headers(librarian.id))
    assert response.status_code == 200
    assert [r["id"] for r in response.json()["data"]] == [record["id"]]

    response = client.post("/circulation/sweep", headers=_headers(librarian.id))
    assert response.json()["count"] == 0

    response = client.get(f"/circulation/{record['id']}", headers=_headers(borrower.id))
    assert response.json()["status"] == "overdue"


def test_borrower_views(client, store, librarian, book, borrower):
    stranger = store.add_user(User("Mallory", "mallory@example.com"))
    record = _issue(client, librarian, book, borrower).json()

    response = client.get(f"/circulation/user/{borrower.id}", headers=_headers(borrower.id))
    assert response.json()["count"] == 1

    response = client.get(f"/circulation/history/{borrower.id}", headers=_headers(librarian.id))
    assert response.json()["data"][0]["id"] == record["id"]

    response = client.get(f"/circulation/{record['id']}", headers=_headers(stranger.id))
    assert response.status_code == 403

    response = client.get(f"/users/{borrower.id}", headers=_headers(stranger.id))
    assert response.status_code == 403

    response = client.get("/circulation/9999", headers=_headers(librarian.id))
    assert response.status_code == 404


def test_list_circulations_paginates(client, store, librarian, borrower):
    for i in range(3):
        book = store.add_book(Book(f"Book {i}", "Author", f"200000000{i}"))
        _issue(client, librarian, book, borrower)

    response = client.get("/circulation?page=1&page_size=2", headers=_headers(librarian.id))
    body = response.json()
    assert response.status_code == 200
    assert (body["total"], body["count"], body["page_size"]) == (3, 2, 2)

    response = client.get("/circulation?status=returned", headers=_headers(librarian.id))
    assert response.json()["total"] == 0

    response = client.get("/circulation", headers=_headers(borrower.id))
    assert response.status_code == 403


def test_stats(client, librarian, book, borrower, clock):
    record = _issue(client, librarian, book, borrower).json()
    clock.set(datetime(2024, 1, 4, tzinfo=timezone.utc))
    client.put(f"/circulation/{record['id']}/return", headers=_headers(librarian.id))

    response = client.get("/stats", headers=_headers(librarian.id))
    stats = response.json()
    assert stats["total_books"] == 1
    assert stats["returned"] == 1
    assert stats["total_fines"] == "1.50"


def test_only_staff_create_staff_accounts(client, librarian, borrower):
    admin = {"name": "Eve", "email": "eve@example.com", "role": "admin"}

    response = client.post("/users", json=admin, headers=_headers())
    assert response.status_code == 403

    response = client.post("/users", json=admin, headers=_headers(borrower.id))
    assert response.status_code == 403

    response = client.get("/stats", headers=_headers(borrower.id))
    assert response.status_code == 403

    response = client.post("/users", json=admin, headers=_headers(librarian.id))
    assert response.status_code == 201
    assert response.json()["role"] == "admin"


def test_list_books(client, store, book):
    store.add_book(Book("Dune", "Frank Herbert", "9780441013593", total_copies=2))

    response = client.get("/books")
    assert response.status_code == 200
    assert [b["title"] for b in response.json()] == ["Dune", "Ulysses"]


def test_issue_with_due_date_already_past(client, librarian, book, borrower):
    response = _issue(client, librarian, book, borrower, due="2023-12-01T00:00:00Z")
    assert response.status_code == 201
    assert response.json()["status"] == "borrowed"
