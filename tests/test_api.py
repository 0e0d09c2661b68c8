def headers(user):
    return {"X-User-Id": user.id}


def test_create_user(client):
    response = client.post("/users/", json={"name": "New User", "city": "Accra"})
    assert response.status_code == 201
    data = response.json()
    assert data["success"]
    assert data["data"]["name"] == "New User"
    assert "id" in data["data"]


def test_create_user_requires_name(client):
    response = client.post("/users/", json={"city": "Accra"})
    assert response.status_code == 422


def test_get_books(client, test_book):
    response = client.get("/books/")
    assert response.status_code == 200
    data = response.json()
    assert len(data) == 1
    assert data[0]["title"] == test_book.title


def test_filter_books(client, test_book):
    response = client.get("/books/", params={"status": "Borrowed"})
    assert response.status_code == 200
    assert response.json() == []
    response = client.get("/books/", params={"text": "test"})
    assert len(response.json()) == 1


def test_get_single_book(client, test_book):
    response = client.get(f"/books/{test_book.id}")
    assert response.status_code == 200
    assert response.json()["title"] == test_book.title


def test_get_missing_book(client):
    response = client.get("/books/missing")
    assert response.status_code == 404
    assert response.json()["detail"] == "Book not found"


def test_add_book_requires_identity(client):
    response = client.post(
        "/books/",
        json={"title": "Dune", "author": "Frank Herbert", "genre": "Sci-Fi", "condition": "New"},
    )
    assert response.status_code == 401
    assert response.json()["detail"] == "Must be logged in"


def test_add_book(client, owner):
    response = client.post(
        "/books/",
        json={"title": "Dune", "author": "Frank Herbert", "genre": "Sci-Fi", "condition": "New"},
        headers=headers(owner),
    )
    assert response.status_code == 201
    assert response.json()["data"]["owner_id"] == owner.id


def test_borrow_book(client, test_book, owner, borrower):
    response = client.post(
        f"/books/{test_book.id}/transactions",
        json={"method": "IN_PERSON"},
        headers=headers(borrower),
    )
    assert response.status_code == 200
    data = response.json()
    assert data["success"]
    assert data["message"] == "Borrow request sent!"
    tx_id = data["data"]["id"]
    assert data["data"]["status"] == "REQUESTED"

    response = client.post(
        f"/transactions/{tx_id}/approve",
        json={"location_text": "Cafe", "scheduled_at": "2025-01-10T10:00:00Z"},
        headers=headers(owner),
    )
    assert response.json()["data"]["status"] == "PICKUP_SCHEDULED"

    client.post(f"/transactions/{tx_id}/pickup/confirm", headers=headers(borrower))
    response = client.post(f"/transactions/{tx_id}/pickup/confirm", headers=headers(owner))
    data = response.json()
    assert data["data"]["status"] == "BORROWING"
    assert data["data"]["phase"] == "Currently Borrowing"

    book = client.get(f"/books/{test_book.id}").json()
    assert book["status"] == "Borrowed"
    assert book["borrower_id"] == borrower.id

    status = client.get(f"/users/{borrower.id}/borrow-status").json()
    assert status == {"active": 1, "limit": 3, "can_borrow": True}

    mine = client.get("/transactions/", headers=headers(borrower)).json()
    assert [t["id"] for t in mine] == [tx_id]


def test_borrow_unavailable_book(client, test_book, borrower, make_user):
    client.post(f"/books/{test_book.id}/transactions", headers=headers(borrower))
    other = make_user("Other")
    response = client.post(f"/books/{test_book.id}/transactions", headers=headers(other))
    assert response.status_code == 200
    data = response.json()
    assert not data["success"]
    assert data["message"] == "Book already has an active transaction"


def test_return_cycle(client, test_book, owner, borrower, lend):
    tx_id = lend(test_book, borrower)
    client.post(
        f"/transactions/{tx_id}/return", json={"method": "COURIER"}, headers=headers(borrower)
    )
    client.post(
        f"/transactions/{tx_id}/return/schedule",
        json={"location_text": "Office"},
        headers=headers(owner),
    )
    client.post(f"/transactions/{tx_id}/return/confirm", headers=headers(owner))
    response = client.post(f"/transactions/{tx_id}/return/confirm", headers=headers(borrower))
    assert response.json()["data"]["status"] == "COMPLETED"
    assert client.get(f"/books/{test_book.id}/transaction").json() is None


def test_cancel_and_report_issue(client, test_book, owner, borrower):
    tx_id = client.post(
        f"/books/{test_book.id}/transactions", headers=headers(borrower)
    ).json()["data"]["id"]
    response = client.post(
        f"/transactions/{tx_id}/issues",
        json={"exchange_type": "pickup", "issue_note": "Wrong address"},
        headers=headers(borrower),
    )
    assert response.json()["data"]["pickup_exchange"]["issue_flag"]

    response = client.post(f"/transactions/{tx_id}/cancel", headers=headers(owner))
    assert response.json()["data"]["status"] == "CANCELLED"
    assert client.get(f"/transactions/{tx_id}").json()["status"] == "CANCELLED"


def test_waitlist_endpoints(client, test_book, borrower):
    response = client.post(f"/books/{test_book.id}/waitlist", headers=headers(borrower))
    assert response.json()["message"] == "Joined waitlist at position #1"
    position = client.get(f"/books/{test_book.id}/waitlist/position", headers=headers(borrower))
    assert position.json() == {"position": 1, "count": 1}
    assert len(client.get(f"/books/{test_book.id}/waitlist").json()) == 1
    response = client.delete(f"/books/{test_book.id}/waitlist", headers=headers(borrower))
    assert response.json()["success"]


def test_ratings_endpoints(client, test_book, owner, borrower):
    response = client.post(
        f"/users/{borrower.id}/ratings", json={"rating": 5}, headers=headers(owner)
    )
    assert response.json()["success"]
    assert client.get(f"/users/{borrower.id}").json()["is_trusted_borrower"]

    client.post(f"/books/{test_book.id}/ratings", json={"rating": 3}, headers=headers(borrower))
    assert client.get(f"/books/{test_book.id}/rating").json() == {"average": 3.0}
    reviews = client.get(f"/books/{test_book.id}/ratings").json()
    assert [(r["user_id"], r["rating"]) for r in reviews] == [(borrower.id, 3)]

    response = client.post(
        f"/users/{borrower.id}/ratings", json={"rating": 9}, headers=headers(owner)
    )
    assert response.status_code == 422


def test_direct_request_endpoints(client, test_book, owner, borrower):
    request_id = client.post(
        f"/books/{test_book.id}/requests", headers=headers(borrower)
    ).json()["data"]["id"]
    client.post(f"/requests/{request_id}/approve", headers=headers(owner))
    client.post(f"/requests/{request_id}/confirm-receipt", headers=headers(borrower))
    assert client.get(f"/books/{test_book.id}").json()["status"] == "Borrowed"
    client.post(f"/requests/{request_id}/request-return", headers=headers(owner))
    client.post(f"/books/{test_book.id}/return", headers=headers(borrower))
    response = client.post(f"/requests/{request_id}/confirm-return", headers=headers(owner))
    assert response.json()["data"]["status"] == "Returned"
    assert len(client.get("/requests/", headers=headers(owner)).json()) == 1


def test_organization_endpoints(client, owner, borrower):
    club = client.post(
        "/organizations/",
        json={"name": "Readers", "city": "Lagos", "location": "Yaba", "description": "Meetups"},
        headers=headers(owner),
    ).json()["data"]
    joined = client.post(f"/organizations/{club['id']}/join", headers=headers(borrower)).json()
    assert joined["data"]["role"] == "onlineMember"

    book = client.post(
        f"/organizations/{club['id']}/books",
        json={"title": "Ake", "author": "Wole Soyinka", "genre": "Memoir", "condition": "Good"},
        headers=headers(owner),
    ).json()["data"]
    request = client.post(
        f"/organization-books/{book['id']}/requests", headers=headers(borrower)
    ).json()["data"]
    approved = client.post(
        f"/organization-requests/{request['id']}/approve", headers=headers(owner)
    ).json()
    assert approved["data"]["status"] == "Approved"
    assert client.get(f"/organizations/{club['id']}/books").json()[0]["stock"] == 0

    second = client.post(
        f"/organization-books/{book['id']}/requests", headers=headers(borrower)
    ).json()
    assert second["message"] == "Book not available or out of stock"

    assert len(client.get("/organizations/", params={"city": "Lagos"}).json()) == 1
    assert len(client.get(f"/organizations/{club['id']}/members").json()) == 2
    assert len(client.get(f"/organizations/{club['id']}/requests").json()) == 1

    renamed = client.patch(
        f"/organizations/{club['id']}", json={"city": "Ibadan"}, headers=headers(owner)
    ).json()
    assert renamed["data"]["city"] == "Ibadan"
    assert renamed["data"]["name"] == "Readers"
    denied = client.patch(
        f"/organizations/{club['id']}", json={"city": "Abuja"}, headers=headers(borrower)
    ).json()
    assert denied["message"] == "Admin access required"


def test_admin_endpoints(client, make_user, borrower):
    moderator = make_user("Moderator", is_admin=True)
    response = client.post(f"/admin/users/{borrower.id}/ban", headers=headers(moderator))
    assert response.json()["message"] == "User banned successfully."
    stats = client.get("/admin/statistics", headers=headers(moderator)).json()
    assert stats["success"]
    assert stats["data"]["total_users"] == 2
    denied = client.get("/admin/statistics", headers=headers(borrower)).json()
    assert denied["message"] == "Admin access required"
