import os
from dotenv import load_dotenv

from ..models.khqr_model import MerchantIdentity

# Load environment variables
load_dotenv()

class Settings:
    """Application settings configuration"""

    # Bakong merchant identity
    BAKONG_ACCOUNT_ID: str = os.getenv("BAKONG_ACCOUNT_ID", "")
    BAKONG_MERCHANT_NAME: str = os.getenv("BAKONG_MERCHANT_NAME", "")
    BAKONG_MERCHANT_CITY: str = os.getenv("BAKONG_MERCHANT_CITY", "")
    BAKONG_MOBILE_NUMBER: str = os.getenv("BAKONG_MOBILE_NUMBER", "")
    BAKONG_ACQUIRING_BANK: str = os.getenv("BAKONG_ACQUIRING_BANK", "National Bank of Cambodia")
    BAKONG_STORE_LABEL: str = os.getenv("BAKONG_STORE_LABEL", "Rattanak Coffee")
    BAKONG_TERMINAL_LABEL: str = os.getenv("BAKONG_TERMINAL_LABEL", "Online_Store")

    # Bakong verification API
    BAKONG_PROD_BASE_API_URL_MD5: str = os.getenv("BAKONG_PROD_BASE_API_URL_MD5", "")
    BAKONG_TOKEN: str = os.getenv("BAKONG_TOKEN", "")
    BAKONG_VERIFY_TIMEOUT: float = float(os.getenv("BAKONG_VERIFY_TIMEOUT", "30"))

    # Payment session timing
    KHQR_EXPIRY_SECONDS: int = int(os.getenv("KHQR_EXPIRY_SECONDS", "300"))
    KHQR_POLL_INTERVAL: float = float(os.getenv("KHQR_POLL_INTERVAL", "3"))
    KHQR_INITIAL_POLL_DELAY: float = float(os.getenv("KHQR_INITIAL_POLL_DELAY", "2"))

    # Approximate exchange rate used for KHR display and conversion
    USD_TO_KHR_RATE: int = int(os.getenv("USD_TO_KHR_RATE", "4100"))

    # Database
    DATABASE_URL: str = os.getenv("DATABASE_URL", "storefront.db")

    # Application
    ENVIRONMENT: str = os.getenv("ENVIRONMENT", "development")
    DEBUG: bool = ENVIRONMENT == "development"
    API_HOST: str = os.getenv("API_HOST", "0.0.0.0")
    API_PORT: int = int(os.getenv("API_PORT", "8000"))

    # CORS
    CORS_ORIGINS: list = [origin for origin in os.getenv("CORS_ORIGINS", "").split(",") if origin] or ["*"]

    def merchant_identity(self) -> MerchantIdentity:
        """Build the immutable merchant identity used by the KHQR encoder"""
        return MerchantIdentity(
            account_id=self.BAKONG_ACCOUNT_ID,
            merchant_name=self.BAKONG_MERCHANT_NAME,
            merchant_city=self.BAKONG_MERCHANT_CITY,
            acquiring_bank=self.BAKONG_ACQUIRING_BANK,
            mobile_number=self.BAKONG_MOBILE_NUMBER or None,
            store_label=self.BAKONG_STORE_LABEL or None,
            terminal_label=self.BAKONG_TERMINAL_LABEL or None,
        )

    # Validation methods
    def validate_bakong_config(self) -> bool:
        """Validate merchant identity needed to generate KHQR codes"""
        return all([self.BAKONG_ACCOUNT_ID, self.BAKONG_MERCHANT_NAME, self.BAKONG_MERCHANT_CITY])

    def validate_verification_config(self) -> bool:
        """Validate Bakong API configuration needed to verify payments"""
        return all([self.BAKONG_PROD_BASE_API_URL_MD5, self.BAKONG_TOKEN])

# Global settings instance
settings = Settings()
