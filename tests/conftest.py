import pytest
import requests

from monitor import Markup, StockPoller


class FakeResponse:
    def __init__(self, status_code=200, chunks=(), headers=None, json_data=None, text=''):
        self.status_code = status_code
        self.chunks = chunks
        self.headers = headers or {}
        self.json_data = json_data
        self.text = text
        self.closed = False

    @property
    def ok(self):
        return 200 <= self.status_code < 400

    def iter_content(self, chunk_size=1):
        for chunk in self.chunks:
            if isinstance(chunk, Exception):
                raise chunk
            yield chunk

    def json(self):
        return self.json_data

    def close(self):
        self.closed = True


class FakeSession:
    """Records every call and answers with queued responses (or raises them)."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def _next(self, method, url, kwargs):
        self.calls.append((method, url, kwargs))
        resp = self.responses.pop(0) if self.responses else FakeResponse(json_data={'ok': True, 'result': []})
        if isinstance(resp, Exception):
            raise resp
        return resp

    def get(self, url, **kwargs):
        return self._next('GET', url, kwargs)

    def post(self, url, **kwargs):
        return self._next('POST', url, kwargs)


class PageFetcher:
    """Stands in for monitor.fetch, serving one scripted page per call."""

    def __init__(self, *pages):
        self.pages = list(pages)
        self.calls = []

    def __call__(self, url, timeout, max_bytes, session=None, early_exit=None):
        self.calls.append({'url': url, 'timeout': timeout, 'max_bytes': max_bytes, 'early_exit': early_exit})
        page = self.pages.pop(0)
        if isinstance(page, Exception):
            raise page
        return Markup(page, len(page), True)


SOLD_OUT_PAGE = b'<html><button disabled>Sold Out</button></html>'
AVAILABLE_PAGE = b'<html><button class="product-form__submit">Add to Cart</button></html>'


@pytest.fixture
def notifications():
    return []


@pytest.fixture
def make_poller(notifications):
    def factory(*pages, **kwargs):
        fetcher = PageFetcher(*pages)
        kwargs.setdefault('notify', lambda: notifications.append(len(fetcher.calls)))
        poller = StockPoller('https://shop.example/products/watch', fetcher=fetcher, **kwargs)
        return poller, fetcher
    return factory


@pytest.fixture
def network_error():
    return requests.ConnectionError('connection refused')
