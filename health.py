import hmac
import time
import logging
import threading

from flask import Flask, jsonify, request

LOGGER = logging.getLogger(__name__)


class Cooldown:
    """Fixed-window limiter: one accepted call per `seconds`."""

    def __init__(self, seconds: float, clock=time.monotonic):
        self.seconds = seconds
        self.clock = clock
        self._last = None
        self._lock = threading.Lock()

    def allow(self) -> bool:
        with self._lock:
            now = self.clock()
            if self._last is not None and now - self._last < self.seconds:
                return False
            self._last = now
            return True

    def retry_after(self) -> int:
        with self._lock:
            if self._last is None:
                return 0
            return max(0, int(self.seconds - (self.clock() - self._last)) + 1)


def create_app(poller, secret: str, cooldown: float = 10, product: str = '', clock=time.monotonic) -> Flask:
    app = Flask(__name__)
    limiter = Cooldown(cooldown, clock=clock)

    @app.route('/ping')
    def ping():
        return 'OK'

    @app.route('/')
    @app.route('/status')
    def status():
        key = request.args.get('key', '')
        if not secret or not hmac.compare_digest(key.encode('utf-8'), secret.encode('utf-8')):
            LOGGER.warning('Rejected status request from %s', request.remote_addr)
            return jsonify({'error': 'unauthorized'}), 401
        if not limiter.allow():
            resp = jsonify({'error': 'too many requests'})
            resp.headers['Retry-After'] = str(limiter.retry_after())
            return resp, 429

        snap = poller.state.snapshot
        return jsonify({
            'status': 'Bot is running!',
            'product': product,
            'stockStatus': snap.status.value,
            'lastCheck': snap.last_check.isoformat() if snap.last_check else None,
            'checks': snap.checks,
            'uptime': round(poller.state.uptime(), 1),
        })

    return app


def serve(app: Flask, port: int):
    app.run(host='0.0.0.0', port=port, threaded=True, use_reloader=False)
