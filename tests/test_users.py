import main
from conftest import PASSWORD


def test_register_login_and_me(client):
    res = client.post("/auth/register", json={"username": "newbie", "email": "newbie@example.com", "password": "hunter22"})
    assert res.status_code == 201
    body = res.json()
    assert body["token_type"] == "bearer"
    assert body["user"]["username"] == "newbie"
    assert "passwordHash" not in body["user"]

    me = client.get("/auth/me", headers={"Authorization": f"Bearer {body['access_token']}"})
    assert me.status_code == 200
    assert me.json()["email"] == "newbie@example.com"
    assert me.json()["role"] == "user"

    login = client.post("/auth/login", json={"email": "newbie@example.com", "password": "hunter22"})
    assert login.status_code == 200
    assert login.json()["user"]["id"] == body["user"]["id"]


def test_register_duplicate_is_conflict(client, reader):
    res = client.post("/auth/register", json={"username": "reader", "email": "other@example.com", "password": "hunter22"})
    assert res.status_code == 409


def test_register_validates(client):
    res = client.post("/auth/register", json={"username": "ab", "email": "not-an-email", "password": "123"})
    assert res.status_code == 400
    assert {e["field"] for e in res.json()["errors"]} == {"username", "email", "password"}


def test_login_with_wrong_password(client, reader):
    assert client.post("/auth/login", json={"email": "reader@example.com", "password": PASSWORD}).status_code == 200
    res = client.post("/auth/login", json={"email": "reader@example.com", "password": "wrong-password"})
    assert res.status_code == 401


def test_me_requires_token(client):
    assert client.get("/auth/me").status_code == 401


def test_public_profile_includes_reviews(client, make_book, reader, post_review):
    book = make_book()
    post_review(reader, book["id"], 5)

    res = client.get(f"/users/{reader['id']}")

    assert res.status_code == 200
    body = res.json()
    assert body["user"]["username"] == "reader"
    assert "passwordHash" not in body["user"]
    assert len(body["reviews"]) == 1
    assert body["reviews"][0]["book"]["title"] == "Dune"

    reviews = client.get(f"/users/{reader['id']}/reviews").json()
    assert [r["bookId"] for r in reviews] == [book["id"]]


def test_unknown_profile_is_404(client):
    assert client.get("/users/64b7f0c2a1b2c3d4e5f60718").status_code == 404
    assert client.get("/users/bad-id").status_code == 404


def test_update_own_profile(client, reader):
    res = client.put(
        f"/users/{reader['id']}",
        json={"bio": "I read on trains.", "profileImage": "https://img.example.com/me.png"},
        headers=reader["headers"],
    )
    assert res.status_code == 200
    user = res.json()["user"]
    assert user["bio"] == "I read on trains."
    assert user["profileImage"] == "https://img.example.com/me.png"
    assert user["username"] == "reader"


def test_cannot_update_someone_elses_profile(client, make_user, reader):
    other = make_user("other")
    res = client.put(f"/users/{other['id']}", json={"bio": "hacked"}, headers=reader["headers"])
    assert res.status_code == 403
    assert client.get(f"/users/{other['id']}").json()["user"]["bio"] is None


def test_profile_update_rejects_taken_username(client, make_user, reader):
    make_user("taken")
    res = client.put(f"/users/{reader['id']}", json={"username": "taken"}, headers=reader["headers"])
    assert res.status_code == 400
    assert res.json()["detail"] == "Username or email already exists"


def test_profile_update_validates(client, reader):
    res = client.put(f"/users/{reader['id']}", json={"bio": "x" * 501, "email": "nope"}, headers=reader["headers"])
    assert res.status_code == 400
    assert {e["field"] for e in res.json()["errors"]} == {"bio", "email"}


def test_bootstrap_admin_once(client, db):
    res = client.post("/init/bootstrap")
    assert res.status_code == 200
    assert db["user"].find_one({"role": "admin"})["username"] == "admin"
    assert client.post("/init/bootstrap").status_code == 400


def test_health(client):
    assert client.get("/").json() == {"message": "Book Review API running"}
    assert client.get("/test").json()["database"] == "ok"


def test_concurrent_duplicate_registration(client, db, monkeypatch, password_hash):
    real_create = main.create_document

    def racing_create(database, collection, data):
        real_create(database, "user", {"username": "twin", "email": "twin@example.com",
                                       "password_hash": password_hash, "role": "user"})
        return real_create(database, collection, data)

    monkeypatch.setattr(main, "create_document", racing_create)
    res = client.post("/auth/register", json={"username": "twin", "email": "twin@example.com", "password": "hunter22"})

    assert res.status_code == 409
    assert db["user"].count_documents({"email": "twin@example.com"}) == 1


def test_concurrent_username_clash_on_profile_update(client, db, monkeypatch, reader):
    real_now = main.now

    def racing_now():
        db["user"].insert_one({"username": "grabbed", "email": "grabbed@example.com"})
        return real_now()

    monkeypatch.setattr(main, "now", racing_now)
    res = client.put(f"/users/{reader['id']}", json={"username": "grabbed"}, headers=reader["headers"])

    assert res.status_code == 400
    assert res.json()["detail"] == "Username or email already exists"


def test_bootstrap_with_taken_username(client, make_user):
    make_user("admin", role="user")
    res = client.post("/init/bootstrap")
    assert res.status_code == 400
    assert res.json()["detail"] == "Admin username or email is taken"


def test_profile_ids_are_case_insensitive(client, make_book, reader, post_review):
    book = make_book()
    post_review(reader, book["id"], 5)

    assert len(client.get(f"/users/{reader['id'].upper()}").json()["reviews"]) == 1
    assert len(client.get(f"/users/{reader['id'].upper()}/reviews").json()) == 1
    res = client.put(f"/users/{reader['id'].upper()}", json={"bio": "Same person."}, headers=reader["headers"])
    assert res.status_code == 200


def test_profile_update_can_clear_bio(client, reader):
    client.put(f"/users/{reader['id']}", json={"bio": "Temporary."}, headers=reader["headers"])
    res = client.put(f"/users/{reader['id']}", json={"bio": None}, headers=reader["headers"])
    assert res.status_code == 200
    assert res.json()["user"]["bio"] is None
    assert res.json()["user"]["username"] == "reader"
