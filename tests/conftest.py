import mongomock
import pytest
from fastapi.testclient import TestClient

from catalog import create_product
from config import Settings
from payments import build_gateways
from schemas import Product


class FakeResponse:
    def __init__(self, body=None, status_code=200, text=None):
        self._body = body
        self.status_code = status_code
        self.text = text if text is not None else str(body)

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        if self._body is None:
            raise ValueError("No JSON object could be decoded")
        return self._body

    def raise_for_status(self):
        import requests
        if not self.ok:
            raise requests.HTTPError(f"HTTP {self.status_code}")


class FakeSession:
    """Stands in for requests.Session; answers by URL substring."""

    def __init__(self):
        self.routes = []
        self.calls = []

    def on(self, url_part, response):
        self.routes.append((url_part, response))
        return self

    def request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        for part, response in self.routes:
            if part in url:
                if isinstance(response, Exception):
                    raise response
                return response
        raise AssertionError(f"Unexpected {method} {url}")

    def post(self, url, **kwargs):
        return self.request("POST", url, **kwargs)

    def get(self, url, **kwargs):
        return self.request("GET", url, **kwargs)


@pytest.fixture
def db():
    return mongomock.MongoClient()["storefront_test"]


@pytest.fixture
def settings():
    return Settings(
        app_url="http://shop.test",
        sslcommerz_store_id="teststore",
        sslcommerz_store_password="teststore@ssl",
        bkash_app_key="key",
        bkash_app_secret="secret",
        bkash_username="merchant",
        bkash_password="pw",
        rocket_init_url="https://rocket.test/init",
        nagad_init_url="https://nagad.test/init",
    )


@pytest.fixture
def session():
    return FakeSession()


@pytest.fixture
def gateways(settings, session):
    return build_gateways(settings, session)


@pytest.fixture
def catalog(db):
    products = [
        Product(id="P1", name="Cream", brand="Glowlab", category="Skincare", description="Daily cream", price=20, discount=25, stock=10, rating=4.5),
        Product(id="P2", name="Night Cream", brand="Glowlab", category="Skincare", description="Overnight", price=30, stock=5, rating=4.8),
        Product(id="P3", name="Lip Tint", brand="Rouge", category="Makeup", description="Sheer tint", price=12, stock=0, rating=3.9),
    ]
    for p in products:
        create_product(db, p)
    return {p.id: p for p in products}


@pytest.fixture
def shipping():
    return {
        "name": "Rahim Uddin",
        "email": "rahim@example.com",
        "phone": "01700000000",
        "address": "House 12, Road 4",
        "city": "Dhaka",
        "postal_code": "1205",
        "country": "Bangladesh",
    }


@pytest.fixture
def client(db, settings, gateways):
    import main
    from database import get_db

    main.app.dependency_overrides[get_db] = lambda: db
    main.app.dependency_overrides[main.get_settings] = lambda: settings
    main.app.dependency_overrides[main.get_gateways] = lambda: gateways
    with TestClient(main.app) as c:
        yield c
    main.app.dependency_overrides.clear()
