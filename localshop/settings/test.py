from .base import *

DEBUG = False

SECRET_KEY = 'test-secret-key'

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': ':memory:',
    }
}

ALLOWED_HOSTS = ['testserver']

EMAIL_BACKEND = 'django.core.mail.backends.locmem.EmailBackend'

PASSWORD_HASHERS = ['django.contrib.auth.hashers.MD5PasswordHasher']

VNPAY = {
    **VNPAY,
    'TMN_CODE': 'TESTTMN1',
    'HASH_SECRET': 'TESTSECRETKEY0123456789ABCDEFGHI',
    'PAYMENT_URL': 'https://sandbox.vnpayment.vn/paymentv2/vpcpay.html',
    'API_URL': 'https://sandbox.vnpayment.vn/merchant_webapi/api/transaction',
    'RETURN_URL': 'https://shop.example.com/payments/vnpay/return',
}
