from .base import *

DEBUG = False

SECRET_KEY = 'test-secret-key'

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': ':memory:',
    }
}

CACHES = {
    'default': {
        'BACKEND': 'django.core.cache.backends.locmem.LocMemCache',
        'LOCATION': 'storefront-test',
    }
}

ALLOWED_HOSTS = ['testserver']

EMAIL_BACKEND = 'django.core.mail.backends.locmem.EmailBackend'
DEFAULT_FROM_EMAIL = 'shop@example.com'
PAYMENTS_ADMIN_EMAILS = 'admin@example.com'

MPESA = {
    'ENVIRONMENT': 'sandbox',
    'BASE_URL': '',
    'CONSUMER_KEY': 'key',
    'CONSUMER_SECRET': 'secret',
    'SHORTCODE': '174379',
    'PASSKEY': 'passkey',
    'CALLBACK_URL': 'https://shop.example.com/payments/callback',
    'CALLBACK_TOKEN': '',
    'TRANSACTION_TYPE': 'CustomerPayBillOnline',
    'COUNTRY_CODE': '254',
    'VALID_PREFIXES': '17',
    'MIN_AMOUNT': '1',
    'MAX_AMOUNT': '300000',
    'TIMEOUT': 5,
    'TOKEN_CACHE_SECONDS': 3000,
}
