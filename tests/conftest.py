import httpx
import pytest

from sparktrack.app import create_app
from sparktrack.geo import Locator
from sparktrack.store import MemoryStore

CHROME_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
SAFARI_UA = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.1 Safari/605.1.15"
)


def ip_api_handler(request):
    """
    Pretend ip-api.com knows every address; ipapi.co is never needed.
    """
    if request.url.host == "ip-api.com":
        return httpx.Response(200, json={
            "status": "success", "city": "Zurich", "regionName": "Zurich", "country": "Switzerland",
        })
    return httpx.Response(500)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def locator():
    return Locator(timeout=1.0, geoip_db_path=None, transport=httpx.MockTransport(ip_api_handler))


@pytest.fixture
def make_app(store, locator):
    apps = []

    def factory(**overrides):
        cfg = {
            "TESTING": True,
            "ANALYTICS_TRACKING_ENABLED": False,
            "ANALYTICS_DASH_TOKEN": "",
            "GEOIP_DB_PATH": None,
        }
        cfg.update(overrides)
        app = create_app(cfg, store=store, locator=locator)
        apps.append(app)
        return app

    yield factory
    for app in apps:
        app.extensions["visit_tracker"].shutdown()


@pytest.fixture
def client(make_app):
    return make_app().test_client()
