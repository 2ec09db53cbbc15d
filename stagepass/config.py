import os

# ----------------------------
# Config & Constants
# ----------------------------
DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./stagepass.db")
REDIS_URL = os.environ.get("REDIS_URL", "redis://127.0.0.1:6379")

APP_URL = os.environ.get("APP_URL", "http://localhost:8000").rstrip("/")
CURRENCY = os.environ.get("CURRENCY", "NGN")

PAYMENT_BACKEND = os.environ.get("PAYMENT_BACKEND", "mock").lower()
PAYSTACK_SECRET_KEY = os.environ.get("PAYSTACK_SECRET_KEY", "sk_test_dev")
PAYSTACK_BASE_URL = os.environ.get(
    "PAYSTACK_BASE_URL", "https://api.paystack.co"
).rstrip("/")
MOCK_WEBHOOK_URL = os.environ.get(
    "MOCK_WEBHOOK_URL", f"{APP_URL}/api/webhooks/paystack"
)

SESSION_SECRET = os.environ.get("SESSION_SECRET", "dev-secret-change-me")
ADMIN_USERNAME = os.environ.get("ADMIN_USERNAME", "admin")
ADMIN_PASSWORD = os.environ.get("ADMIN_PASSWORD", "supasecret")
JWT_SECRET = os.environ.get("JWT_SECRET", "dev-jwt-secret-change-me")

RESEND_API_KEY = os.environ.get("RESEND_API_KEY")
MAIL_FROM = os.environ.get("MAIL_FROM", "StagePass <noreply@stagepass.local>")
CONTACT_EMAIL = os.environ.get("CONTACT_EMAIL", "hello@stagepass.local")
TERMII_API_KEY = os.environ.get("TERMII_API_KEY")
TERMII_SENDER_ID = os.environ.get("TERMII_SENDER_ID", "StagePass")

# bookings
BOOKING_HOLD_SECONDS = 15 * 60
MAX_TICKETS_PER_TYPE = 10

# voting
MAX_PACKAGES_PER_LINE = 100
LEADERBOARD_TTL_SECONDS = 60

# otp
OTP_LENGTH = 6
OTP_TTL_SECONDS = 10 * 60
OTP_MAX_ATTEMPTS = 3
OTP_RESEND_COOLDOWN_SECONDS = 5 * 60
OTP_TOKEN_TTL_SECONDS = 3600

# listings
EVENTS_PER_PAGE = 12
MAX_PAGE_SIZE = 100

# rate limits (per client ip)
CHECKOUT_BURST = int(os.environ.get("CHECKOUT_BURST", "10"))
CHECKOUT_PER_MINUTE = int(os.environ.get("CHECKOUT_PER_MINUTE", "10"))
OTP_BURST = int(os.environ.get("OTP_BURST", "3"))
OTP_PER_HOUR = 3
CONTACT_BURST = int(os.environ.get("CONTACT_BURST", "5"))
CONTACT_PER_HOUR = 10

# prices in kobo
DEFAULT_VOTE_PACKAGES = [
    {"name": "Starter", "votes": 10, "price": 100_000,
     "discount": 0, "popular": False},
    {"name": "Supporter", "votes": 50, "price": 450_000,
     "discount": 10, "popular": True},
    {"name": "Super Fan", "votes": 100, "price": 800_000,
     "discount": 20, "popular": False},
    {"name": "Mega Supporter", "votes": 250, "price": 1_875_000,
     "discount": 25, "popular": False},
]
