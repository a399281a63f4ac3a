def test_health_ok(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json["ok"] is True


def test_healthz_ok(client):
    r = client.get("/healthz")
    assert r.status_code == 200
    assert r.data == b"ok"


def test_api_requires_login(client):
    r = client.get("/api/rfcs")
    assert r.status_code == 401
    assert r.json["error"] == "unauthenticated"


def test_login_logout(client, login):
    token = login("alice@example.com")
    assert token

    r = client.get("/")
    assert r.json["user"]["email"] == "alice@example.com"

    r = client.get("/api/rfcs")
    assert r.status_code == 200
    assert r.json["rfcs"] == []

    r = client.post("/auth/logout")
    assert r.status_code == 200
    assert client.get("/api/rfcs").status_code == 401


def test_login_rejects_bad_password(client):
    r = client.post("/auth/login", json={"email": "alice@example.com", "password": "nope"})
    assert r.status_code == 401
    assert r.json["error"] == "invalid_credentials"


def test_mutation_without_csrf_token_is_rejected(client, login):
    login("alice@example.com")
    r = client.post("/api/rfcs", json={"title": "t", "description": "d"})
    assert r.status_code == 400
    assert r.json["error"] == "csrf_failed"


def test_unknown_route_is_json_404(client):
    r = client.get("/nope")
    assert r.status_code == 404
    assert r.json["error"] == "not_found"


def test_session_probe_lists_capabilities(client, login):
    login("admin@example.com")
    user = client.get("/").json["user"]
    assert user["is_admin"] is True
    assert "rfc.admin" in user["permissions"]

    login("alice@example.com")
    user = client.get("/").json["user"]
    assert user["is_admin"] is False
    assert user["permissions"] == ["rfc.create", "rfc.view"]


def test_login_is_rate_limited(client):
    for _ in range(5):
        r = client.post("/auth/login", json={"email": "alice@example.com", "password": "nope"})
        assert r.status_code == 401
    r = client.post("/auth/login", json={"email": "alice@example.com", "password": "pw"})
    assert r.status_code == 429
    assert r.json["error"] == "rate_limited"
