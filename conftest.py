import os

# Settings are read at import time, so they must exist before any app module loads
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("PAYSTACK_SECRET_KEY", "sk_test_webhook_secret")
os.environ.setdefault("AUTH_JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("ENTITLEMENT_CACHE_TTL", "0")
