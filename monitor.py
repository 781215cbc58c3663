import socket
import logging
import threading
from collections import namedtuple
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional, Sequence, Union

import requests
from bs4 import BeautifulSoup
from urllib3.exceptions import ReadTimeoutError

LOGGER = logging.getLogger(__name__)

HEADERS = {
    'User-Agent': ('Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 '
                   '(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36'),
    'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8',
    'Accept-Language': 'en-US,en;q=0.9',
    'Accept-Encoding': 'gzip, deflate',
}
CHUNK_SIZE = 16 * 1024
# bytes re-scanned from the previous chunk so phrases split across reads are seen
SCAN_OVERLAP = 64

OUT_OF_STOCK_PHRASES = [
    'out of stock', 'sold out', 'unavailable', 'notify when available',
    'out-of-stock', 'soldout', 'preorder', 'pre-order',
]
IN_STOCK_PHRASES = [
    'add to cart', 'add to bag', 'buy now', 'in stock', 'available', 'addtocart',
]
BUY_CONTROL_SELECTORS = [
    'button.product-form__submit',
    'button[type="submit"][name="add"]',
    'button[id*="AddToCart"]',
    'button[name="add-to-cart"]',
    'button.add-to-cart',
    'button.btn-addtocart',
    'a[href*="/cart/add"]',
    'form[action*="/cart/add"] input[type="submit"]',
    'form[action*="/cart/add"] button[type="submit"]',
]


class StockStatus(Enum):
    UNKNOWN = 'unknown'
    AVAILABLE = 'available'
    SOLD_OUT = 'sold_out'
    INDETERMINATE = 'indeterminate'


Markup = namedtuple('Markup', ['content', 'size', 'complete'])


# ---- errors ----

class FetchError(Exception):
    kind = 'error'


class FetchTimeoutError(FetchError):
    kind = 'timeout'


class TooLargeError(FetchError):
    kind = 'too_large'


class HTTPStatusError(FetchError):
    kind = 'http_status'

    def __init__(self, code: int):
        super().__init__(f'HTTP {code}')
        self.code = code


class NetworkError(FetchError):
    kind = 'network'


class ParseError(Exception):
    pass


# ---- fetcher ----

def _is_read_timeout(error: requests.RequestException) -> bool:
    # iter_content re-raises urllib3's ReadTimeoutError wrapped in a ConnectionError
    if isinstance(error, requests.Timeout):
        return True
    return any(isinstance(arg, (ReadTimeoutError, socket.timeout)) for arg in error.args)


class _Download:
    """One streamed GET, run on a worker thread so the caller can give up on it."""

    def __init__(self, http, url: str, timeout: float, max_bytes: int, early_exit):
        self.http = http
        self.url = url
        self.timeout = timeout
        self.max_bytes = max_bytes
        self.early_exit = early_exit
        self.resp = None
        self.result = None
        self.error = None
        self.abandoned = False

    def run(self):
        try:
            self.result = self._read()
        except Exception as e:
            self.error = e

    def abandon(self):
        self.abandoned = True
        resp = self.resp
        if resp is not None:
            resp.close()

    def _read(self) -> Markup:
        try:
            self.resp = resp = self.http.get(self.url, headers=HEADERS, timeout=self.timeout, stream=True)
        except requests.Timeout as e:
            raise FetchTimeoutError(f'no response within {self.timeout}s') from e
        except requests.RequestException as e:
            raise NetworkError(str(e)) from e

        try:
            if not 200 <= resp.status_code < 300:
                raise HTTPStatusError(resp.status_code)

            declared = resp.headers.get('Content-Length', '')
            if declared.isdigit() and int(declared) > self.max_bytes:
                raise TooLargeError(f'declared {declared} bytes, limit {self.max_bytes}')

            body = bytearray()
            for chunk in resp.iter_content(chunk_size=CHUNK_SIZE):
                if self.abandoned:
                    raise FetchTimeoutError('abandoned after deadline')
                if not chunk:
                    continue
                body.extend(chunk)
                if len(body) > self.max_bytes:
                    raise TooLargeError(f'body exceeded {self.max_bytes} bytes')
                if self.early_exit is not None:
                    start = max(0, len(body) - len(chunk) - SCAN_OVERLAP)
                    if self.early_exit(bytes(body[start:])) is not StockStatus.INDETERMINATE:
                        LOGGER.debug('Stopped reading %s after %d bytes', self.url, len(body))
                        return Markup(bytes(body), len(body), False)
        except requests.RequestException as e:
            if _is_read_timeout(e):
                raise FetchTimeoutError(f'read stalled: {e}') from e
            raise NetworkError(str(e)) from e
        finally:
            resp.close()

        return Markup(bytes(body), len(body), True)


def fetch(url: str, timeout: float = 10, max_bytes: int = 2 * 1024 * 1024,
          session=None, early_exit: Optional[Callable[[bytes], StockStatus]] = None) -> Markup:
    """GET `url` and return its body, bounded in time and size.

    Raises FetchTimeoutError once `timeout` seconds of wall clock have passed,
    however slowly the server trickles bytes, TooLargeError as soon as more
    than `max_bytes` have been read, and HTTPStatusError for any non-2xx answer.

    The download runs on a daemon thread; past the deadline it is abandoned
    and its response closed, so shutdown never waits on it.

    When `early_exit` is given it is called with every newly read region of the
    body; a verdict other than INDETERMINATE stops the read and the prefix read
    so far is returned with ``complete=False``.
    """
    download = _Download(session or requests, url, timeout, max_bytes, early_exit)
    worker = threading.Thread(target=download.run, name='fetch', daemon=True)
    worker.start()
    worker.join(timeout)
    if worker.is_alive():
        download.abandon()
        raise FetchTimeoutError(f'{url} not read within {timeout}s')
    if download.error is not None:
        raise download.error
    return download.result


# ---- classifiers ----

def _to_text(markup: Union[bytes, str]) -> str:
    if isinstance(markup, bytes):
        return markup.decode('utf-8', errors='replace')
    if isinstance(markup, str):
        return markup
    raise ParseError(f'cannot read markup of type {type(markup).__name__}')


class StockClassifier:
    """Turns a product page into a StockStatus.

    Subclasses implement `_classify`. `classify` never raises: anything that
    goes wrong counts as SOLD_OUT so a broken page can never trigger an alert.
    """

    name = 'base'

    def classify(self, markup: Union[bytes, str]) -> StockStatus:
        try:
            return self._classify(markup)
        except Exception:
            LOGGER.exception('Classifier %s failed, assuming sold out', self.name)
            return StockStatus.SOLD_OUT

    def early_verdict(self, window: bytes) -> StockStatus:
        return StockStatus.INDETERMINATE

    def _classify(self, markup) -> StockStatus:
        raise NotImplementedError


class KeywordClassifier(StockClassifier):
    name = 'keyword'

    def __init__(self, out_of_stock: Optional[Sequence[str]] = None,
                 in_stock: Optional[Sequence[str]] = None):
        self.out_of_stock = [p.lower() for p in (out_of_stock or OUT_OF_STOCK_PHRASES)]
        self.in_stock = [p.lower() for p in (in_stock or IN_STOCK_PHRASES)]
        self._out_bytes = [p.encode('utf-8') for p in self.out_of_stock]

    def _classify(self, markup) -> StockStatus:
        text = _to_text(markup).lower()
        # out-of-stock first: a disabled button often still says "Add to Cart"
        for phrase in self.out_of_stock:
            if phrase in text:
                LOGGER.info('Found out-of-stock indicator: "%s"', phrase)
                return StockStatus.SOLD_OUT
        for phrase in self.in_stock:
            if phrase in text:
                LOGGER.info('Found in-stock indicator: "%s"', phrase)
                return StockStatus.AVAILABLE
        LOGGER.info('No clear stock indicators found, assuming out of stock')
        return StockStatus.SOLD_OUT

    def early_verdict(self, window: bytes) -> StockStatus:
        # only SOLD_OUT is final on a prefix; an out-of-stock phrase may still follow an in-stock one
        lowered = window.lower()
        for phrase in self._out_bytes:
            if phrase in lowered:
                return StockStatus.SOLD_OUT
        return StockStatus.INDETERMINATE


class SelectorClassifier(StockClassifier):
    """Looks at the page's buy control instead of the whole text."""

    name = 'selector'

    def __init__(self, selectors: Optional[Sequence[str]] = None,
                 out_of_stock: Optional[Sequence[str]] = None):
        self.selectors = list(selectors or BUY_CONTROL_SELECTORS)
        self.out_of_stock = [p.lower() for p in (out_of_stock or OUT_OF_STOCK_PHRASES)]

    def find_buy_control(self, soup):
        for selector in self.selectors:
            el = soup.select_one(selector)
            if el is not None:
                LOGGER.debug('Buy control matched %s', selector)
                return el
        return None

    def _classify(self, markup) -> StockStatus:
        soup = BeautifulSoup(_to_text(markup), 'html.parser')
        control = self.find_buy_control(soup)
        if control is None:
            LOGGER.info('No buy control found, assuming out of stock')
            return StockStatus.SOLD_OUT

        classes = control.get('class') or []
        if (control.has_attr('disabled') or control.get('aria-disabled') == 'true'
                or 'disabled' in classes):
            LOGGER.info('Buy control is disabled')
            return StockStatus.SOLD_OUT

        label = ' '.join([control.get_text(' ', strip=True), control.get('value') or '']).lower()
        for phrase in self.out_of_stock:
            if phrase in label:
                LOGGER.info('Buy control reads "%s"', phrase)
                return StockStatus.SOLD_OUT
        return StockStatus.AVAILABLE


CLASSIFIERS = {
    KeywordClassifier.name: KeywordClassifier,
    SelectorClassifier.name: SelectorClassifier,
}


def make_classifier(name: str) -> StockClassifier:
    try:
        return CLASSIFIERS[name]()
    except KeyError:
        raise ValueError(f'unknown classifier {name!r}, expected one of {sorted(CLASSIFIERS)}')


# ---- poller ----

Snapshot = namedtuple('Snapshot', ['status', 'last_check', 'checks'])


class PollerState:
    """Last known stock status, written only by the poll cycle.

    The whole snapshot is swapped in one assignment so readers on other
    threads always see status, timestamp and counter from the same check.
    """

    def __init__(self):
        self.started_at = datetime.now(timezone.utc)
        self.snapshot = Snapshot(StockStatus.UNKNOWN, None, 0)

    @property
    def status(self) -> StockStatus:
        return self.snapshot.status

    def record(self, status: StockStatus):
        if status is StockStatus.INDETERMINATE:
            raise ValueError('indeterminate status is never stored')
        current = self.snapshot
        self.snapshot = Snapshot(status, datetime.now(timezone.utc), current.checks + 1)

    def uptime(self) -> float:
        return (datetime.now(timezone.utc) - self.started_at).total_seconds()


class StockPoller:
    def __init__(self, url: str, notify: Callable[[], None],
                 classifier: Optional[StockClassifier] = None,
                 timeout: float = 10, max_bytes: int = 2 * 1024 * 1024,
                 early_exit: bool = True, session=None, fetcher=fetch):
        self.url = url
        self.notify = notify
        self.classifier = classifier or KeywordClassifier()
        self.timeout = timeout
        self.max_bytes = max_bytes
        self.early_exit = early_exit
        self.session = session
        self.fetcher = fetcher
        self.state = PollerState()
        self._busy = threading.Lock()

    def run_check(self) -> Optional[StockStatus]:
        """Run one fetch/classify/notify cycle.

        Returns the stored status, or None when the cycle was skipped because
        another one is still running or the fetch failed.
        """
        if not self._busy.acquire(blocking=False):
            LOGGER.info('Previous check still running, skipping this one')
            return None
        try:
            return self._check()
        finally:
            self._busy.release()

    def _check(self) -> Optional[StockStatus]:
        LOGGER.info('Checking %s', self.url)
        early = self.classifier.early_verdict if self.early_exit else None
        try:
            markup = self.fetcher(self.url, timeout=self.timeout, max_bytes=self.max_bytes,
                                  session=self.session, early_exit=early)
        except FetchError as e:
            LOGGER.warning('Fetch failed (%s): %s', e.kind, e)
            return None

        LOGGER.info('Page fetched: %d bytes%s', markup.size, '' if markup.complete else ' (stopped early)')
        status = self.classifier.classify(markup.content)
        if status is StockStatus.INDETERMINATE:
            LOGGER.warning('Classifier returned no verdict, keeping %s', self.state.status.value)
            return None
        return self._transition(status)

    def _transition(self, status: StockStatus) -> StockStatus:
        previous = self.state.status
        self.state.record(status)
        if status is StockStatus.AVAILABLE:
            if previous is not StockStatus.AVAILABLE:
                LOGGER.info('Stock is available (was %s)', previous.value)
                self._send_notification()
            else:
                LOGGER.info('Stock still available, already notified')
        else:
            LOGGER.info('Still sold out or unavailable')
        return status

    def _send_notification(self):
        try:
            self.notify()
        except Exception:
            LOGGER.exception('Failed to send stock notification')

    def run_forever(self, interval: float, stop: threading.Event, initial_delay: float = 5):
        """Start a check every `interval` seconds until `stop` is set.

        Each tick gets its own daemon thread; a tick landing while a check is
        still in flight is dropped by `run_check`.
        """
        LOGGER.info('Polling every %ss', interval)
        wait = initial_delay
        while not stop.wait(wait):
            threading.Thread(target=self._tick, name='stock-check', daemon=True).start()
            wait = interval

    def _tick(self):
        try:
            self.run_check()
        except Exception:
            LOGGER.exception('Unexpected error during check')
