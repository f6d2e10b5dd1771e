"""
Configuration module for the hotspot billing service
Loads and validates environment variables
"""
import os
import urllib.parse
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _float_env(name, default):
    return float(os.getenv(name, str(default)))


class Config:
    """Application configuration from environment variables"""

    # ============== APPLICATION SETTINGS ==============
    FLASK_ENV = os.getenv('FLASK_ENV', 'development')
    DEBUG = FLASK_ENV == 'development'
    SECRET_KEY = os.getenv('FLASK_SECRET_KEY', 'dev-secret-key-change-in-production')
    FORCE_HTTPS = os.getenv('FORCE_HTTPS', 'false').lower() == 'true'

    # ============== DATABASE CONFIGURATION ==============
    MONGODB_USERNAME = os.getenv('MONGODB_USERNAME')
    MONGODB_PASSWORD = os.getenv('MONGODB_PASSWORD')
    MONGODB_CLUSTER = os.getenv('MONGODB_CLUSTER')
    MONGODB_DB_NAME = os.getenv('MONGODB_DB_NAME', 'mikrotik_billing')

    @property
    def MONGODB_URI(self):
        """Build MongoDB connection URI with URL encoding"""
        uri = os.getenv('MONGODB_URI')
        if uri:
            return uri

        if not self.MONGODB_USERNAME or not self.MONGODB_PASSWORD or not self.MONGODB_CLUSTER:
            # Local development database
            return "mongodb://127.0.0.1:27017/"

        username = urllib.parse.quote_plus(self.MONGODB_USERNAME)
        password = urllib.parse.quote_plus(self.MONGODB_PASSWORD)

        return f"mongodb+srv://{username}:{password}@{self.MONGODB_CLUSTER}/?retryWrites=true&w=majority"

    # ============== CORS SETTINGS ==============
    # Captive portal pages are served from the routers themselves
    CORS_ORIGINS = os.getenv('CORS_ORIGINS', '*').split(',')

    # ============== RATE LIMITING ==============
    RATELIMIT_ENABLED = os.getenv('RATELIMIT_ENABLED', 'true').lower() == 'true'
    PURCHASE_RATE_LIMIT = os.getenv('PURCHASE_RATE_LIMIT', '3 per 5 minutes')
    VERIFY_RATE_LIMIT = os.getenv('VERIFY_RATE_LIMIT', '10 per minute')
    POLL_RATE_LIMIT = os.getenv('POLL_RATE_LIMIT', '60 per minute')

    # ============== M-PESA CONFIGURATION ==============
    MPESA_ENV = os.getenv('MPESA_ENV', 'sandbox')  # sandbox | production
    MPESA_CONSUMER_KEY = os.getenv('MPESA_CONSUMER_KEY')
    MPESA_CONSUMER_SECRET = os.getenv('MPESA_CONSUMER_SECRET')
    MPESA_SHORTCODE = os.getenv('MPESA_SHORTCODE', '174379')  # Sandbox default
    MPESA_PASSKEY = os.getenv('MPESA_PASSKEY', 'bfb279f9aa9bdbcf158e97dd71a467cd2e0c893059b10f78e6b72ada1ed2c919')  # Sandbox default
    MPESA_CALLBACK_URL = os.getenv('MPESA_CALLBACK_URL', 'https://your-domain.com/api/webhooks/mpesa/callback')
    MPESA_WEBHOOK_SECRET = os.getenv('MPESA_WEBHOOK_SECRET')

    @property
    def MPESA_BASE_URL(self):
        if self.MPESA_ENV == 'production':
            return 'https://api.safaricom.co.ke'
        return 'https://sandbox.safaricom.co.ke'

    # ============== RECONCILIATION ==============
    # Percent of the sale kept by the platform, per account type
    COMMISSION_RATES = {
        'homeowner': _float_env('COMMISSION_RATE_HOMEOWNER', 20.0),
        'personal': _float_env('COMMISSION_RATE_PERSONAL', 20.0),
        'isp': _float_env('COMMISSION_RATE_ISP', 0.0),
        'enterprise': _float_env('COMMISSION_RATE_ENTERPRISE', 0.0),
    }
    DEFAULT_COMMISSION_RATE = _float_env('DEFAULT_COMMISSION_RATE', 20.0)
    AMOUNT_EPSILON = _float_env('AMOUNT_EPSILON', 0.01)
    PAYMENT_TIMEOUT_SECONDS = int(os.getenv('PAYMENT_TIMEOUT_SECONDS', '600'))
    DUPLICATE_PURCHASE_WINDOW_SECONDS = int(os.getenv('DUPLICATE_PURCHASE_WINDOW_SECONDS', '300'))

    @classmethod
    def validate(cls):
        """Validate that all required configuration is present"""
        errors = []

        if not cls.MPESA_CONSUMER_KEY:
            errors.append("MPESA_CONSUMER_KEY is not set")
        if not cls.MPESA_CONSUMER_SECRET:
            errors.append("MPESA_CONSUMER_SECRET is not set")
        if not cls.MPESA_WEBHOOK_SECRET:
            errors.append("MPESA_WEBHOOK_SECRET is not set (webhooks will be rejected)")
        if cls.MPESA_ENV not in ('sandbox', 'production'):
            errors.append(f"MPESA_ENV must be 'sandbox' or 'production', got {cls.MPESA_ENV!r}")

        if cls.FLASK_ENV == 'production':
            if cls.SECRET_KEY == 'dev-secret-key-change-in-production':
                errors.append("FLASK_SECRET_KEY must be set for production")
            if cls.DEBUG:
                errors.append("DEBUG mode should be disabled in production")
            if not os.getenv('MONGODB_URI') and not cls.MONGODB_CLUSTER:
                errors.append("MONGODB_URI or MONGODB_CLUSTER must be set for production")

        if errors:
            raise ValueError(
                "Configuration errors:\n" + "\n".join(f"  - {e}" for e in errors)
            )

        return True


# Create a singleton config instance
config = Config()

if __name__ == "__main__":
    # Test configuration
    try:
        config.validate()
        print("[OK] Configuration is valid!")
        print(f"\nEnvironment: {config.FLASK_ENV}")
        print(f"Debug Mode: {config.DEBUG}")
        print(f"Database: {config.MONGODB_DB_NAME}")
        print(f"M-Pesa: {config.MPESA_ENV} ({config.MPESA_BASE_URL})")
        print(f"CORS Origins: {config.CORS_ORIGINS}")
        print(f"Rate Limiting: {'Enabled' if config.RATELIMIT_ENABLED else 'Disabled'}")
    except ValueError as e:
        print(f"[ERROR] Configuration Error:\n{e}")
        print("\nPlease create a .env file based on .env.example")
