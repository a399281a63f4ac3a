from types import SimpleNamespace

import pytest
from werkzeug.security import generate_password_hash

from app.moc import create_app
from app.moc.db import session_scope
from app.moc.models import Base, Permission, Role, User
from app.moc.modules.departments.models import Department
from app.moc.rbac import ALL_PERMISSIONS, PERM_CREATE, PERM_VIEW

# email -> (display name, role key)
USERS = {
    "admin@example.com": ("Ada Admin", "admin"),
    "alice@example.com": ("Alice Submitter", "user"),
    "bob@example.com": ("Bob Assignee", "user"),
    "carol@example.com": ("Carol Ops", "user"),
    "dave@example.com": ("Dave Safety", "user"),
    "tess@example.com": ("Tess Authority", "user"),
    "vic@example.com": ("Vic Viewer", "user"),
    "mallory@example.com": ("Mallory Outsider", "user"),
}


def _seed(s) -> None:
    perms = {key: Permission(key=key, name=name) for key, name in ALL_PERMISSIONS}
    admin = Role(key="admin", name="Administrator")
    admin.permissions.extend(perms.values())
    user = Role(key="user", name="User")
    user.permissions.extend([perms[PERM_VIEW], perms[PERM_CREATE]])
    roles = {"admin": admin, "user": user}
    s.add_all([*perms.values(), admin, user])

    people = {}
    for email, (name, role_key) in USERS.items():
        u = User(email=email, name=name, password_hash=generate_password_hash("pw"), is_active=True)
        u.roles.append(roles[role_key])
        s.add(u)
        people[email] = u
    s.flush()

    s.add_all(
        [
            Department(
                name="Operations",
                approver_user_ids=[people["carol@example.com"].id],
                approver_user_id=people["carol@example.com"].id,
            ),
            Department(
                name="Safety",
                approver_user_ids=[people["dave@example.com"].id],
                approver_user_id=people["dave@example.com"].id,
            ),
        ]
    )


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    for k in (
        "S3_ENDPOINT",
        "S3_REGION",
        "S3_BUCKET",
        "S3_ACCESS_KEY_ID",
        "S3_SECRET_ACCESS_KEY",
        "MOC_ID_PREFIX",
        "STORAGE_ROOT",
        "LOGIN_RATE_LIMIT",
        "LOGIN_RATE_WINDOW",
    ):
        monkeypatch.delenv(k, raising=False)
    # Local attachment storage lives under the working directory.
    monkeypatch.chdir(tmp_path)

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        _seed(s)

    return app


@pytest.fixture()
def s(app):
    with app.app_context():
        sess = app.extensions["sqlalchemy_sessionmaker"]()
        try:
            yield sess
        finally:
            sess.close()


@pytest.fixture()
def ids(app):
    """User ids by first name, department ids by lowercase name."""
    with session_scope(app) as s:
        out = {email.split("@")[0]: s.query(User).filter(User.email == email).one().id for email in USERS}
        out["ops"] = s.query(Department).filter(Department.name == "Operations").one().id
        out["safety"] = s.query(Department).filter(Department.name == "Safety").one().id
    return SimpleNamespace(**out)


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def login(client):
    """Log in as `email`; returns the CSRF token for mutating requests."""

    def _login(email: str) -> str:
        r = client.post("/auth/login", json={"email": email, "password": "pw"})
        assert r.status_code == 200, r.json
        return r.json["csrf_token"]

    return _login
