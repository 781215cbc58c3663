import threading

import pytest
import requests

import bot
import config
import run_once
from bot import (BotConflict, TelegramBot, format_alert, format_status, keep_alive,
                 send_telegram)
from monitor import FetchTimeoutError, StockPoller, StockStatus

from conftest import AVAILABLE_PAGE, SOLD_OUT_PAGE, FakeResponse, FakeSession, PageFetcher

TOKEN = '123:abc'


def sent_texts(session):
    return [kwargs['json']['text'] for method, url, kwargs in session.calls if url.endswith('/sendMessage')]


@pytest.fixture
def session():
    return FakeSession()


@pytest.fixture
def telegram(make_poller, session):
    def factory(*pages):
        poller, _ = make_poller(*pages)
        return TelegramBot(TOKEN, poller, 'Casio AE-1200', 150, session=session)
    return factory


def test_send_telegram_posts_html(session):
    send_telegram(TOKEN, '42', '<b>hi</b>', session=session)
    method, url, kwargs = session.calls[0]
    assert url == f'https://api.telegram.org/bot{TOKEN}/sendMessage'
    assert kwargs['json'] == {'chat_id': '42', 'text': '<b>hi</b>', 'parse_mode': 'HTML',
                              'disable_web_page_preview': True}


def test_send_telegram_logs_failures(caplog):
    failing = FakeSession(FakeResponse(status_code=400, text='Bad Request: chat not found'))
    resp = send_telegram(TOKEN, '42', 'hi', session=failing)
    assert resp.status_code == 400
    assert 'chat not found' in caplog.text

    assert send_telegram(TOKEN, '42', 'hi', session=FakeSession(requests.ConnectionError('down'))) is None


def test_format_alert_escapes_and_links():
    text = format_alert('Watch <Limited>', 'https://shop.example/p?a=1&b=2')
    assert 'STOCK ALERT' in text
    assert 'Watch &lt;Limited&gt; is back in stock!' in text
    assert '<a href="https://shop.example/p?a=1&amp;b=2">' in text


def test_format_status(make_poller):
    poller, _ = make_poller(SOLD_OUT_PAGE)
    assert 'Last Check: never' in format_status(poller, 'Casio', 150)
    poller.run_check()
    text = format_status(poller, 'Casio', 150)
    assert 'sold out' in text
    assert 'Checks so far: 1' in text
    assert 'every 150 seconds' in text


def test_status_command(telegram, session):
    tg = telegram()
    tg.handle_command(7, '/status')
    assert 'Bot Status' in sent_texts(session)[0]
    assert 'unknown' in sent_texts(session)[0]
    assert session.calls[0][2]['json']['chat_id'] == 7


def test_command_addressed_to_bot_name(telegram, session):
    telegram().handle_command(7, '/status@CasioStockBot')
    assert len(sent_texts(session)) == 1


def test_check_command_runs_a_check(telegram, session, notifications):
    tg = telegram(AVAILABLE_PAGE)
    tg.handle_command(7, '/check')
    assert sent_texts(session) == ['🔍 Checking stock now...', 'Stock status: ✅ available']
    assert notifications == [1]
    assert tg.poller.state.status is StockStatus.AVAILABLE


def test_check_command_reports_failures(telegram, session):
    tg = telegram(FetchTimeoutError('slow'))
    tg.handle_command(7, '/check')
    assert sent_texts(session)[1].startswith('⚠️ No fresh result')
    assert tg.poller.state.status is StockStatus.UNKNOWN


def test_unknown_commands_are_ignored(telegram, session):
    telegram().handle_command(7, '/buy')
    assert session.calls == []


def test_process_updates_advances_offset(telegram, session):
    tg = telegram()
    tg.process_updates([
        {'update_id': 10, 'message': {'chat': {'id': 7}, 'text': 'hello'}},
        {'update_id': 11, 'message': {'chat': {'id': 7}, 'text': '/help'}},
        {'update_id': 12, 'edited_message': {}},
    ])
    assert tg.offset == 13
    assert len(sent_texts(session)) == 1
    assert '/check' in sent_texts(session)[0]


def test_get_updates_uses_offset():
    session = FakeSession(FakeResponse(json_data={'ok': True, 'result': [{'update_id': 5}]}))
    tg = TelegramBot(TOKEN, None, 'Casio', 150, session=session)
    tg.offset = 5
    assert tg.get_updates() == [{'update_id': 5}]
    method, url, kwargs = session.calls[0]
    assert url.endswith('/getUpdates')
    assert kwargs['json']['offset'] == 5
    assert kwargs['timeout'] > kwargs['json']['timeout']


def test_get_updates_conflict():
    session = FakeSession(FakeResponse(status_code=409, text='Conflict: terminated by other getUpdates request'))
    tg = TelegramBot(TOKEN, None, 'Casio', 150, session=session)
    with pytest.raises(BotConflict):
        tg.get_updates()


def test_run_forever_drops_webhook_and_backs_off(monkeypatch, caplog):
    stop = threading.Event()
    session = FakeSession(
        FakeResponse(json_data={'ok': True}),
        FakeResponse(status_code=409, text='Conflict'),
    )
    tg = TelegramBot(TOKEN, None, 'Casio', 150, session=session)
    monkeypatch.setattr(stop, 'wait', lambda timeout=None: stop.set())
    tg.run_forever(stop)
    assert session.calls[0][1].endswith('/deleteWebhook')
    assert session.calls[0][2]['json'] == {'drop_pending_updates': True}
    assert 'Another instance is polling' in caplog.text


def test_keep_alive_never_raises(caplog):
    keep_alive('https://bot.example/ping', session=FakeSession(requests.ConnectionError('asleep')))
    assert 'Self-ping failed' in caplog.text


def test_missing_settings(monkeypatch):
    monkeypatch.setattr(config, 'TELEGRAM_BOT_TOKEN', TOKEN)
    monkeypatch.setattr(config, 'TELEGRAM_CHAT_ID', ' ')
    monkeypatch.setattr(config, 'HEALTH_SECRET', None)
    assert config.missing_settings() == ['TELEGRAM_CHAT_ID', 'HEALTH_SECRET']


def test_main_exits_without_configuration(monkeypatch):
    monkeypatch.setattr(config, 'TELEGRAM_BOT_TOKEN', None)
    monkeypatch.setattr(config, 'TELEGRAM_CHAT_ID', None)
    monkeypatch.setattr(config, 'HEALTH_SECRET', None)
    with pytest.raises(SystemExit) as exc:
        bot.main()
    assert 'TELEGRAM_BOT_TOKEN' in str(exc.value)


def test_build_poller_uses_configuration(monkeypatch):
    monkeypatch.setattr(config, 'STOCK_CLASSIFIER', 'selector')
    monkeypatch.setattr(config, 'FETCH_TIMEOUT', 12.0)
    monkeypatch.setattr(config, 'MAX_RESPONSE_BYTES', 1500000)
    poller = bot.build_poller(TOKEN, '42', url='https://shop.example/p')
    assert poller.url == 'https://shop.example/p'
    assert poller.classifier.name == 'selector'
    assert (poller.timeout, poller.max_bytes) == (12.0, 1500000)


@pytest.mark.parametrize('page, code', [(AVAILABLE_PAGE, 0), (SOLD_OUT_PAGE, 1),
                                        (FetchTimeoutError('slow'), 2)])
def test_run_once_exit_codes(monkeypatch, capsys, page, code):
    def fake_build(token, chat_id, url=None):
        return StockPoller(url, lambda: pytest.fail('notified without --notify'), fetcher=PageFetcher(page))

    monkeypatch.setattr(run_once, 'build_poller', fake_build)
    assert run_once.main(['https://shop.example/p']) == code
    assert capsys.readouterr().out.startswith('https://shop.example/p: ')


def test_run_once_notify_requires_credentials(monkeypatch):
    monkeypatch.setattr(config, 'TELEGRAM_BOT_TOKEN', None)
    with pytest.raises(SystemExit):
        run_once.main(['--notify'])


def test_main_rejects_unknown_classifier(monkeypatch):
    monkeypatch.setattr(config, 'TELEGRAM_BOT_TOKEN', TOKEN)
    monkeypatch.setattr(config, 'TELEGRAM_CHAT_ID', '42')
    monkeypatch.setattr(config, 'HEALTH_SECRET', 's3cret')
    monkeypatch.setattr(config, 'STOCK_CLASSIFIER', 'vision')
    with pytest.raises(SystemExit) as exc:
        bot.main()
    assert 'STOCK_CLASSIFIER' in str(exc.value)
    assert 'keyword, selector' in str(exc.value)


def test_run_once_rejects_unknown_classifier(monkeypatch):
    monkeypatch.setattr(config, 'STOCK_CLASSIFIER', 'vision')
    with pytest.raises(SystemExit) as exc:
        run_once.main(['https://shop.example/p'])
    assert 'STOCK_CLASSIFIER' in str(exc.value)


def test_run_once_arguments(monkeypatch):
    monkeypatch.setattr(config, 'PRODUCT_URL', 'https://shop.example/default')
    args = run_once.parse_args([])
    assert (args.url, args.notify) == ('https://shop.example/default', False)
    args = run_once.parse_args(['--notify', 'https://shop.example/other'])
    assert (args.url, args.notify) == ('https://shop.example/other', True)


def test_run_once_help_and_usage_errors(capsys):
    with pytest.raises(SystemExit) as exc:
        run_once.parse_args(['--help'])
    assert exc.value.code == 0
    assert '--notify' in capsys.readouterr().out

    with pytest.raises(SystemExit) as exc:
        run_once.parse_args(['--bogus'])
    assert exc.value.code == 2
