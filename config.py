import os

from dotenv import load_dotenv

load_dotenv()

# Place any site-specific urls or overrides here.
# PRODUCT_URL / PRODUCT_NAME pick the single page being watched.

TELEGRAM_BOT_TOKEN = os.getenv('TELEGRAM_BOT_TOKEN')
TELEGRAM_CHAT_ID = os.getenv('TELEGRAM_CHAT_ID')
HEALTH_SECRET = os.getenv('HEALTH_SECRET')

PRODUCT_URL = os.getenv(
    'PRODUCT_URL',
    'https://casiostore.bhawar.com/products/casio-youth-ae-1200whl-5avdf-black-digital-dial-brown-leather-band-d383',
)
PRODUCT_NAME = os.getenv('PRODUCT_NAME', 'Casio AE-1200WHL-5AVDF')

CHECK_INTERVAL = int(os.getenv('CHECK_INTERVAL', '150'))
FETCH_TIMEOUT = float(os.getenv('FETCH_TIMEOUT', '10'))
MAX_RESPONSE_BYTES = int(os.getenv('MAX_RESPONSE_BYTES', str(2 * 1024 * 1024)))
STOCK_CLASSIFIER = os.getenv('STOCK_CLASSIFIER', 'keyword').strip().lower()
EARLY_EXIT = os.getenv('EARLY_EXIT', '1').strip().lower() not in ('0', 'false', 'no', 'off')

HEALTH_COOLDOWN = float(os.getenv('HEALTH_COOLDOWN', '10'))
PORT = int(os.getenv('PORT', '3000'))

PUBLIC_URL = os.getenv('PUBLIC_URL')
if PUBLIC_URL:
    PUBLIC_URL = PUBLIC_URL.strip().rstrip('/') or None
PING_INTERVAL = int(os.getenv('PING_INTERVAL', '600'))

REQUIRED = ('TELEGRAM_BOT_TOKEN', 'TELEGRAM_CHAT_ID', 'HEALTH_SECRET')


def missing_settings():
    """Names of required settings that are unset or blank."""
    return [name for name in REQUIRED if not (globals().get(name) or '').strip()]
