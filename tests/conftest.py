import json
import threading

import fakeredis
import pytest
import requests

from zaptrix_app import create_app
from zaptrix_app.config import TestingConfig
from zaptrix_app.utils import db_utils
from zaptrix_app.utils.lock_utils import KeyedLock

PORTAL = TestingConfig.BITRIX_PORTAL_URL
GRAPH_MESSAGES_URL = (f"{TestingConfig.META_GRAPH_URL}/{TestingConfig.META_API_VERSION}/"
                      f"{TestingConfig.META_PHONE_NUMBER_ID}/messages")


def make_response(status_code=200, body=None, text=None):
    response = requests.Response()
    response.status_code = status_code
    if text is not None:
        response._content = text.encode('utf-8')
    else:
        response._content = json.dumps(body if body is not None else {}).encode('utf-8')
        response.headers['Content-Type'] = 'application/json'
    response.encoding = 'utf-8'
    return response


class FakeHttp:
    """
    Stands in for requests.Session. Routes are matched by method and URL
    substring; each route replays its queued outcomes and then keeps
    repeating the last one. An outcome is a Response, an exception to raise,
    or a callable taking (url, kwargs).
    """

    def __init__(self):
        self.routes = []
        self.calls = []
        self._lock = threading.Lock()

    def add(self, method, url_part, *outcomes):
        self.routes.insert(0, (method.upper(), url_part, list(outcomes)))

    def calls_to(self, url_part, method=None):
        return [call for call in self.calls
                if url_part in call[1] and (method is None or call[0] == method.upper())]

    def _dispatch(self, method, url, kwargs):
        with self._lock:
            self.calls.append((method, url, kwargs))
            for route_method, url_part, outcomes in self.routes:
                if route_method == method and url_part in url:
                    outcome = outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]
                    break
            else:
                raise AssertionError(f"Unexpected HTTP call: {method} {url}")
        if isinstance(outcome, Exception):
            raise outcome
        if callable(outcome):
            return outcome(url, kwargs)
        return outcome

    def get(self, url, **kwargs):
        return self._dispatch('GET', url, kwargs)

    def post(self, url, **kwargs):
        return self._dispatch('POST', url, kwargs)


def crm_method_url(method):
    return f"{PORTAL}/rest/{method}"


@pytest.fixture
def redis_client():
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture
def broker_client():
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture
def http():
    return FakeHttp()


@pytest.fixture
def app(redis_client, broker_client, http):
    app = create_app(TestingConfig, redis_client=redis_client, broker_client=broker_client,
                     lock=KeyedLock(), http_session=http)
    db_utils.create_all_tables()
    yield app
    db_utils.drop_all_tables()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def components(app):
    return app.extensions['zaptrix']


@pytest.fixture
def portal(components):
    return components.portals.create(
        PORTAL,
        TestingConfig.BITRIX_CLIENT_ID,
        TestingConfig.BITRIX_CLIENT_SECRET,
        access_token='access-1',
        refresh_token='refresh-1',
        expires_in=3600,
    )


@pytest.fixture
def api_headers():
    return {'X-API-KEY': TestingConfig.INTERNAL_SERVICE_API_KEY}
