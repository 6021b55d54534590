import os

DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./eventtribe.db")
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/0")

SESSION_SIGNING_SECRET = os.environ.get("SESSION_SIGNING_SECRET", "dev_secret_change_me")

# Daraja (M-Pesa) credentials
MPESA_BASE_URL = os.environ.get("MPESA_BASE_URL", "https://sandbox.safaricom.co.ke")
MPESA_CONSUMER_KEY = os.environ.get("MPESA_CONSUMER_KEY", "")
MPESA_CONSUMER_SECRET = os.environ.get("MPESA_CONSUMER_SECRET", "")
MPESA_BUSINESS_SHORTCODE = os.environ.get("MPESA_BUSINESS_SHORTCODE", "174379")
MPESA_PASSKEY = os.environ.get("MPESA_PASSKEY", "")
MPESA_TIMEOUT_SECONDS = float(os.environ.get("MPESA_TIMEOUT_SECONDS", "10"))

# Callback authentication
PUBLIC_BASE_URL = os.environ.get("PUBLIC_BASE_URL", "http://127.0.0.1:8000")
MPESA_CALLBACK_TOKEN = os.environ.get("MPESA_CALLBACK_TOKEN", "dev_callback_token_change_me")
MPESA_CALLBACK_ALLOWED_IPS = [
    ip.strip() for ip in os.environ.get("MPESA_CALLBACK_ALLOWED_IPS", "").split(",") if ip.strip()
]

PAYMENT_LOCK_SECONDS = int(os.environ.get("PAYMENT_LOCK_SECONDS", "120"))

CHECKIN_RATE_CAPACITY = int(os.environ.get("CHECKIN_RATE_CAPACITY", "60"))
CHECKIN_RATE_REFILL_PER_SEC = float(os.environ.get("CHECKIN_RATE_REFILL_PER_SEC", "1.0"))

RECONCILE_INTERVAL_SECONDS = float(os.environ.get("RECONCILE_INTERVAL_SECONDS", "60"))
RECONCILE_GRACE_SECONDS = int(os.environ.get("RECONCILE_GRACE_SECONDS", "180"))
