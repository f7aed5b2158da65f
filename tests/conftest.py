import time
from datetime import timedelta

import pytest
from werkzeug.security import generate_password_hash

from app import Product, SubscriptionPackage, User, UserSubscription, create_app, db, utcnow


PASSWORD = "Correct-Horse-42"
BOOK_BYTES = b"%PDF-1.4 dune test content"


class FakeClock:
    def __init__(self, start=None):
        self.now = float(int(time.time() if start is None else start))

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def app_config(tmp_path):
    return {
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": "sqlite://",
        "SECRET_KEY": "test-secret-key",
        "DOWNLOAD_JWT_SECRET": "test-download-secret",
        "SESSION_COOKIE_SECURE": False,
        "PRIVATE_STORAGE_ROOT": str(tmp_path / "storage"),
    }


@pytest.fixture
def app(app_config, clock):
    app = create_app(app_config, clock=clock)
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def store(app, tmp_path):
    books_dir = tmp_path / "storage" / "books"
    books_dir.mkdir(parents=True)
    (books_dir / "dune.pdf").write_bytes(BOOK_BYTES)

    with app.app_context():
        reader = User(email="reader@example.com", password_hash=generate_password_hash(PASSWORD))
        other = User(email="other@example.com", password_hash=generate_password_hash(PASSWORD))
        lapsed = User(email="lapsed@example.com", password_hash=generate_password_hash(PASSWORD))
        admin = User(email="admin@example.com", password_hash=generate_password_hash(PASSWORD), role="admin")
        dune = Product(title="Dune", author="Frank Herbert", file_location="books/dune.pdf")
        emma = Product(title="Emma", author="Jane Austen", file_location="books/emma.pdf")
        retired = Product(title="Retired", author="Nobody", file_location="books/dune.pdf", is_active=False)
        no_file = Product(title="Coming Soon", author="Someone")
        monthly = SubscriptionPackage(name="Monthly", duration_days=30)
        db.session.add_all([reader, other, lapsed, admin, dune, emma, retired, no_file, monthly])
        db.session.flush()

        subscription = UserSubscription(
            user_id=reader.id,
            package_id=monthly.id,
            start_date=utcnow() - timedelta(days=1),
            end_date=utcnow() + timedelta(days=29),
        )
        expired = UserSubscription(
            user_id=lapsed.id,
            package_id=monthly.id,
            start_date=utcnow() - timedelta(days=40),
            end_date=utcnow() - timedelta(days=10),
        )
        db.session.add_all([subscription, expired])
        db.session.commit()

        return {
            "reader": reader.id,
            "other": other.id,
            "lapsed": lapsed.id,
            "admin": admin.id,
            "dune": dune.id,
            "emma": emma.id,
            "retired": retired.id,
            "no_file": no_file.id,
            "monthly": monthly.id,
            "subscription": subscription.id,
        }


def login(client, email):
    resp = client.post("/auth/login", json={"email": email, "password": PASSWORD})
    assert resp.status_code == 200, resp.get_json()
    return client


@pytest.fixture
def reader_client(app, store):
    return login(app.test_client(), "reader@example.com")


@pytest.fixture
def other_client(app, store):
    return login(app.test_client(), "other@example.com")


@pytest.fixture
def admin_client(app, store):
    return login(app.test_client(), "admin@example.com")
