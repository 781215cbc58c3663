import html
import signal
import logging
import threading
from datetime import datetime, timezone
from typing import Optional

import requests

import config
import health
from monitor import CLASSIFIERS, StockPoller, StockStatus, make_classifier

LOGGER = logging.getLogger(__name__)

TELEGRAM_API = 'https://api.telegram.org/bot{token}/{method}'
LONG_POLL_TIMEOUT = 30
CONFLICT_BACKOFF = 30
ERROR_BACKOFF = 5

STATUS_LABELS = {
    StockStatus.UNKNOWN: 'unknown',
    StockStatus.AVAILABLE: '✅ available',
    StockStatus.SOLD_OUT: '⏳ sold out',
}


def _now_text(moment: Optional[datetime] = None) -> str:
    return (moment or datetime.now(timezone.utc)).strftime('%Y-%m-%d %H:%M:%S UTC')


def call_telegram(token: str, method: str, payload: dict, timeout: float = 10, session=None):
    http = session or requests
    url = TELEGRAM_API.format(token=token, method=method)
    return http.post(url, json=payload, timeout=timeout)


def send_telegram(token: str, chat_id: str, text: str, preview: bool = False, session=None):
    """Send an HTML message. Failures are logged and never raised."""
    try:
        resp = call_telegram(token, 'sendMessage', {
            'chat_id': chat_id,
            'text': text,
            'parse_mode': 'HTML',
            'disable_web_page_preview': not preview,
        }, session=session)
    except requests.RequestException as e:
        LOGGER.error('Telegram send failed: %s', e)
        return None
    if not resp.ok:
        LOGGER.error('Telegram send failed: %s %s', resp.status_code, resp.text)
    return resp


def format_alert(name: str, url: str) -> str:
    lines = [
        '🎉 <b>STOCK ALERT!</b>\n',
        f'✅ {html.escape(name)} is back in stock!\n',
        f'🛒 <b>Buy now:</b> <a href="{html.escape(url)}">{html.escape(url)}</a>\n',
        '💰 <b>Price:</b> check website for current price',
        f'⏰ <b>Checked at:</b> {_now_text()}\n',
        '⚡ <b>Hurry! Limited stock available</b>',
    ]
    return '\n'.join(lines)


def format_status(poller: StockPoller, name: str, interval: float) -> str:
    snap = poller.state.snapshot
    last = _now_text(snap.last_check) if snap.last_check else 'never'
    return '\n'.join([
        '🤖 <b>Bot Status</b>\n',
        f'✅ Running for {int(poller.state.uptime() // 60)} minutes',
        f'📊 Stock Status: {STATUS_LABELS.get(snap.status, snap.status.value)}',
        f'⏰ Last Check: {last}',
        f'🔢 Checks so far: {snap.checks}',
        f'🎯 Monitoring: {html.escape(name)}',
        f'⚡ Check Interval: every {interval:g} seconds',
    ])


def format_startup(name: str, url: str, interval: float, ping_interval: Optional[float]) -> str:
    lines = [
        '🤖 <b>Stock Bot Started!</b>\n',
        f'✅ Now monitoring: {html.escape(name)}',
        f'🌐 Page: {html.escape(url)}',
        f'⏰ Started at: {_now_text()}',
        f'🔄 Check interval: every {interval:g} seconds',
    ]
    if ping_interval:
        lines.append(f'🏓 Self-ping: every {ping_interval:g} seconds')
    return '\n'.join(lines)


class BotConflict(Exception):
    pass


class TelegramBot:
    """Answers /status and /check through getUpdates long polling."""

    def __init__(self, token: str, poller: StockPoller, name: str, interval: float, session=None):
        self.token = token
        self.poller = poller
        self.name = name
        self.interval = interval
        self.session = session or requests.Session()
        self.offset = None

    def reply(self, chat_id, text: str):
        return send_telegram(self.token, chat_id, text, session=self.session)

    def handle_command(self, chat_id, text: str):
        parts = (text or '').strip().split()
        if not parts:
            return
        # "/status@SomeBot" in groups
        cmd = parts[0].split('@', 1)[0].lower()

        if cmd in ('/start', '/help'):
            self.reply(chat_id, '\n'.join([
                f'👋 Watching <b>{html.escape(self.name)}</b> for restocks.\n',
                '/status - current stock status',
                '/check - check the page right now',
            ]))
        elif cmd == '/status':
            self.reply(chat_id, format_status(self.poller, self.name, self.interval))
        elif cmd == '/check':
            self.reply(chat_id, '🔍 Checking stock now...')
            result = self.poller.run_check()
            if result is None:
                current = self.poller.state.status
                self.reply(chat_id, f'⚠️ No fresh result (check busy or page unreachable). '
                                    f'Stock status: {STATUS_LABELS.get(current, current.value)}')
            else:
                self.reply(chat_id, f'Stock status: {STATUS_LABELS.get(result, result.value)}')

    def drop_webhook(self):
        """Remove any webhook so getUpdates works; queued updates are discarded."""
        try:
            resp = call_telegram(self.token, 'deleteWebhook', {'drop_pending_updates': True},
                                 session=self.session)
            if resp.ok:
                LOGGER.info('Old webhook deleted')
            else:
                LOGGER.error('deleteWebhook failed: %s %s', resp.status_code, resp.text)
        except requests.RequestException as e:
            LOGGER.error('deleteWebhook failed: %s', e)

    def get_updates(self):
        payload = {'timeout': LONG_POLL_TIMEOUT, 'allowed_updates': ['message']}
        if self.offset is not None:
            payload['offset'] = self.offset
        resp = call_telegram(self.token, 'getUpdates', payload,
                             timeout=LONG_POLL_TIMEOUT + 5, session=self.session)
        if resp.status_code == 409:
            raise BotConflict(resp.text)
        if not resp.ok:
            LOGGER.error('getUpdates failed: %s %s', resp.status_code, resp.text)
            return []
        return resp.json().get('result', [])

    def process_updates(self, updates):
        for update in updates:
            self.offset = update['update_id'] + 1
            message = update.get('message') or {}
            text = message.get('text')
            chat_id = (message.get('chat') or {}).get('id')
            if chat_id is None or not text or not text.startswith('/'):
                continue
            try:
                self.handle_command(chat_id, text)
            except Exception:
                LOGGER.exception('Error handling command %r', text)

    def run_forever(self, stop: threading.Event):
        self.drop_webhook()
        while not stop.is_set():
            try:
                self.process_updates(self.get_updates())
            except BotConflict as e:
                LOGGER.error('Another instance is polling this bot token: %s', e)
                stop.wait(CONFLICT_BACKOFF)
            except requests.RequestException as e:
                LOGGER.warning('getUpdates error: %s', e)
                stop.wait(ERROR_BACKOFF)
            except Exception:
                LOGGER.exception('Unexpected error in update loop')
                stop.wait(ERROR_BACKOFF)


def keep_alive(url: str, session=None):
    http = session or requests
    try:
        resp = http.get(url, timeout=10)
        LOGGER.info('Self-ping: %s', resp.status_code)
    except requests.RequestException as e:
        LOGGER.warning('Self-ping failed: %s', e)


def run_keep_alive(url: str, interval: float, stop: threading.Event, initial_delay: float = 10):
    wait = initial_delay
    while not stop.wait(wait):
        keep_alive(url)
        wait = interval


def check_classifier():
    if config.STOCK_CLASSIFIER not in CLASSIFIERS:
        raise SystemExit(f'STOCK_CLASSIFIER must be one of {", ".join(sorted(CLASSIFIERS))}, '
                         f'got {config.STOCK_CLASSIFIER!r}')


def build_poller(token: str, chat_id: str, url: Optional[str] = None, name: Optional[str] = None) -> StockPoller:
    url = url or config.PRODUCT_URL
    name = name or config.PRODUCT_NAME

    def notify():
        resp = send_telegram(token, chat_id, format_alert(name, url), preview=True)
        if resp is not None and resp.ok:
            LOGGER.info('Stock notification sent successfully')

    return StockPoller(
        url,
        notify,
        classifier=make_classifier(config.STOCK_CLASSIFIER),
        timeout=config.FETCH_TIMEOUT,
        max_bytes=config.MAX_RESPONSE_BYTES,
        early_exit=config.EARLY_EXIT,
    )


def _start(target, *args, name=None):
    t = threading.Thread(target=target, args=args, name=name, daemon=True)
    t.start()
    return t


def main():
    logging.basicConfig(level=logging.INFO, format='[%(asctime)s] %(levelname)s %(name)s: %(message)s')

    missing = config.missing_settings()
    if missing:
        raise SystemExit('Missing required environment variables: ' + ', '.join(missing))
    check_classifier()

    token = config.TELEGRAM_BOT_TOKEN
    chat_id = config.TELEGRAM_CHAT_ID
    poller = build_poller(token, chat_id)
    stop = threading.Event()

    def shutdown(signum, _frame):
        LOGGER.info('Received signal %s, shutting down', signum)
        stop.set()

    signal.signal(signal.SIGINT, shutdown)
    signal.signal(signal.SIGTERM, shutdown)

    app = health.create_app(poller, config.HEALTH_SECRET, cooldown=config.HEALTH_COOLDOWN,
                            product=config.PRODUCT_NAME)
    _start(health.serve, app, config.PORT, name='health')
    LOGGER.info('Health endpoint on port %s', config.PORT)

    send_telegram(token, chat_id, format_startup(config.PRODUCT_NAME, poller.url, config.CHECK_INTERVAL,
                                                 config.PING_INTERVAL if config.PUBLIC_URL else None))

    _start(poller.run_forever, config.CHECK_INTERVAL, stop, name='poller')
    if config.PUBLIC_URL:
        _start(run_keep_alive, config.PUBLIC_URL + '/ping', config.PING_INTERVAL, stop, name='keep-alive')
    else:
        LOGGER.info('PUBLIC_URL not set, self-ping disabled')

    bot = TelegramBot(token, poller, config.PRODUCT_NAME, config.CHECK_INTERVAL)
    _start(bot.run_forever, stop, name='telegram')

    LOGGER.info('Monitoring %s every %ss', config.PRODUCT_NAME, config.CHECK_INTERVAL)
    while not stop.wait(1):
        pass
    LOGGER.info('Stopped')


if __name__ == '__main__':
    main()
