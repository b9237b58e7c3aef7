from datetime import datetime, timedelta

from flask_jwt_extended import create_access_token


def test_register_sends_verification_link(client, mongo_db, sent_emails):
    resp = client.post(
        "/api/customers/register",
        json={
            "name": "João",
            "email": "Joao@Example.com",
            "phone": "11999990000",
            "password": "pedal123",
            "marketingOptIn": True,
        },
    )
    assert resp.status_code == 200
    assert resp.get_json() == {"ok": True}

    stored = mongo_db.customers.find_one({"email": "joao@example.com"})
    assert stored["emailVerified"] is False
    assert stored["marketingOptIn"] is True
    assert stored["cart"] == []
    assert len(stored["verifyToken"]) == 64
    assert len(stored["unsubscribeToken"]) == 48
    assert stored["verifyTokenExpires"] > datetime.utcnow() + timedelta(hours=23)

    assert len(sent_emails) == 1
    expected_link = (
        "https://api.example.com/api/customers/verify-email?token=" + stored["verifyToken"]
    )
    assert expected_link in sent_emails[0]["html"]
    assert sent_emails[0]["from"] == "MC Electrobike <loja@example.com>"


def test_register_validation_and_duplicates(client, customer):
    assert client.post(
        "/api/customers/register", json={"email": "a@b.com", "password": "x"}
    ).status_code == 400

    resp = client.post(
        "/api/customers/register",
        json={"name": "Outra Maria", "email": "MARIA@example.com", "password": "x"},
    )
    assert resp.status_code == 409
    assert resp.get_json() == {"error": "E-mail já cadastrado"}


def test_verify_email_with_stored_token_logs_in(client, mongo_db):
    client.post(
        "/api/customers/register",
        json={"name": "Ana", "email": "ana@example.com", "password": "pw"},
    )
    token = mongo_db.customers.find_one({"email": "ana@example.com"})["verifyToken"]

    resp = client.get(f"/api/customers/verify-email?token={token}")
    assert resp.status_code == 302
    assert resp.headers["Location"] == "https://loja.example.com/conta?verificado=1"
    assert client.get_cookie("cust_token") is not None

    stored = mongo_db.customers.find_one({"email": "ana@example.com"})
    assert stored["emailVerified"] is True
    assert "verifyToken" not in stored

    me = client.get("/api/customers/me")
    assert me.status_code == 200
    assert me.get_json()["user"]["emailVerified"] is True


def test_verify_email_with_expired_stored_token(client, mongo_db):
    mongo_db.customers.insert_one(
        {
            "name": "Velho",
            "email": "velho@example.com",
            "verifyToken": "abc",
            "verifyTokenExpires": datetime.utcnow() - timedelta(minutes=1),
        }
    )
    resp = client.get("/api/customers/verify-email?token=abc")
    assert resp.headers["Location"] == "https://loja.example.com/entrar?verificado=0"


def test_verify_email_with_jwt_token(app, client, customer, mongo_db):
    mongo_db.customers.update_one({"_id": customer["_id"]}, {"$set": {"emailVerified": False}})
    with app.app_context():
        token = create_access_token(identity=str(customer["_id"]))

    resp = client.get(f"/api/customers/verify-email?token={token}")
    assert resp.headers["Location"] == "https://loja.example.com/entrar?verificado=1"
    assert mongo_db.customers.find_one({"_id": customer["_id"]})["emailVerified"] is True


def test_verify_email_without_token(client):
    resp = client.get("/api/customers/verify-email")
    assert resp.status_code == 302
    assert resp.headers["Location"].endswith("/entrar?verificado=0")


def test_login_sets_session_cookie(client, customer):
    resp = client.post(
        "/api/customers/login",
        json={"email": "maria@example.com", "password": "segredo123"},
    )
    assert resp.status_code == 200
    assert resp.get_json() == {
        "ok": True,
        "user": {
            "name": "Maria Silva",
            "email": "maria@example.com",
            "marketingOptIn": True,
            "emailVerified": True,
        },
    }
    set_cookie = resp.headers["Set-Cookie"]
    assert "cust_token=" in set_cookie
    assert "HttpOnly" in set_cookie
    assert "SameSite=None" in set_cookie


def test_login_with_wrong_password_is_401(client, customer):
    for password in ("errada", "", "SEGREDO123"):
        resp = client.post(
            "/api/customers/login",
            json={"email": "maria@example.com", "password": password},
        )
        assert resp.status_code == 401
        assert resp.get_json() == {"error": "Credenciais inválidas"}

    resp = client.post(
        "/api/customers/login", json={"email": "ninguem@example.com", "password": "x"}
    )
    assert resp.status_code == 401


def test_me_and_logout(logged_in_client):
    resp = logged_in_client.get("/api/customers/me")
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["user"]["email"] == "maria@example.com"
    assert body["cart"][0]["productId"] == "bike-1"

    resp = logged_in_client.post("/api/customers/logout")
    assert resp.get_json() == {"ok": True}
    assert logged_in_client.get("/api/customers/me").status_code == 401


def test_me_rejects_tampered_or_admin_tokens(app, client, customer):
    client.set_cookie("cust_token", "tampered.token.value")
    resp = client.get("/api/customers/me")
    assert resp.status_code == 401
    assert resp.get_json() == {"error": "Sessão inválida/expirada"}

    with app.app_context():
        admin_token = create_access_token(
            identity=str(customer["_id"]), additional_claims={"role": "admin"}
        )
    client.set_cookie("cust_token", admin_token)
    assert client.get("/api/customers/me").status_code == 401


def test_unsubscribe(client, customer, mongo_db):
    resp = client.get("/api/customers/unsubscribe?token=unsub-token")
    assert resp.status_code == 200
    assert resp.get_data(as_text=True) == "Descadastrado com sucesso."
    assert mongo_db.customers.find_one({"_id": customer["_id"]})["marketingOptIn"] is False

    assert client.get("/api/customers/unsubscribe?token=outro").status_code == 400
    assert client.get("/api/customers/unsubscribe").status_code == 400


def test_login_is_rate_limited(app_factory, customer):
    limited_app = app_factory(AUTH_RATE_LIMIT=2)
    client = limited_app.test_client()
    payload = {"email": "maria@example.com", "password": "errada"}

    assert client.post("/api/customers/login", json=payload).status_code == 401
    assert client.post("/api/customers/login", json=payload).status_code == 401
    resp = client.post("/api/customers/login", json=payload)
    assert resp.status_code == 429
    assert int(resp.headers["Retry-After"]) >= 1

    # Other endpoints share no budget with login.
    assert client.get("/api/customers/me").status_code == 401


def test_verify_email_rejects_session_and_admin_tokens(app, logged_in_client, customer, mongo_db):
    mongo_db.customers.update_one({"_id": customer["_id"]}, {"$set": {"emailVerified": False}})
    session_token = logged_in_client.get_cookie("cust_token").value
    with app.app_context():
        confirm_token = create_access_token(
            identity=str(customer["_id"]), additional_claims={"purpose": "confirm-account"}
        )

    for token in (session_token, confirm_token):
        resp = logged_in_client.get(f"/api/customers/verify-email?token={token}")
        assert resp.headers["Location"] == "https://loja.example.com/entrar?verificado=0"
    assert mongo_db.customers.find_one({"_id": customer["_id"]})["emailVerified"] is False


def test_preflight_requests_do_not_count_against_login_limit(app_factory, customer):
    client = app_factory(AUTH_RATE_LIMIT=1).test_client()
    preflight_headers = {
        "Origin": "https://loja.example.com",
        "Access-Control-Request-Method": "POST",
    }
    for _ in range(3):
        assert client.options("/api/customers/login", headers=preflight_headers).status_code == 200

    resp = client.post(
        "/api/customers/login",
        json={"email": "maria@example.com", "password": "segredo123"},
    )
    assert resp.status_code == 200
