import sys
import logging
import argparse

import config
from bot import build_poller, check_classifier
from monitor import StockStatus

logging.basicConfig(level=logging.INFO, format='[%(asctime)s] %(levelname)s %(name)s: %(message)s')


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description='Check the product page once and print the verdict.',
        epilog='Exit status: 0 available, 1 sold out, 2 page could not be fetched.',
    )
    parser.add_argument('url', nargs='?', default=config.PRODUCT_URL,
                        help='page to check (default: PRODUCT_URL)')
    parser.add_argument('--notify', action='store_true',
                        help='send the Telegram alert if the page is available '
                             '(needs TELEGRAM_BOT_TOKEN and TELEGRAM_CHAT_ID)')
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    check_classifier()

    token = config.TELEGRAM_BOT_TOKEN
    chat_id = config.TELEGRAM_CHAT_ID
    if args.notify and (not token or not chat_id):
        raise SystemExit('Set TELEGRAM_BOT_TOKEN and TELEGRAM_CHAT_ID environment variables')

    poller = build_poller(token, chat_id, url=args.url)
    if not args.notify:
        poller.notify = lambda: None

    status = poller.run_check()
    if status is None:
        print(f'{args.url}: could not be checked')
        return 2
    print(f'{args.url}: {status.value}')
    return 0 if status is StockStatus.AVAILABLE else 1


if __name__ == '__main__':
    sys.exit(main())
