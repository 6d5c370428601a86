"""
Brand configuration utility for white-label customization
Platform name and contact details shown on checkout pages, payment links and emails
"""

import os
import logging

logger = logging.getLogger(__name__)

DEFAULT_PLATFORM_NAME = 'AquaHost'
DEFAULT_SUPPORT_EMAIL = 'support@aquahost.example'

class BrandConfig:
    """Configuration class for white-label branding settings"""

    _instance = None
    _initialized = False

    def __new__(cls):
        """Singleton pattern to ensure consistent configuration"""
        if cls._instance is None:
            cls._instance = super(BrandConfig, cls).__new__(cls)
        return cls._instance

    def __init__(self):
        # Only initialize once to prevent inconsistent environment variable loading
        if BrandConfig._initialized:
            return

        self.platform_name = self._sanitize_config_value(os.getenv('PLATFORM_NAME'), DEFAULT_PLATFORM_NAME)
        self.support_email = self._sanitize_config_value(os.getenv('SUPPORT_EMAIL'), DEFAULT_SUPPORT_EMAIL)

        BrandConfig._initialized = True
        logger.debug(f"🔧 Brand configuration initialized: platform='{self.platform_name}'")

    def _sanitize_config_value(self, value, fallback: str) -> str:
        """Reject empty, markup-contaminated or oversized values"""
        if not value or not isinstance(value, str):
            return fallback

        value = value.strip()
        if value.startswith('<?xml') or '<Error>' in value or len(value) > 50:
            logger.warning(f"⚠️ Rejected suspicious configuration value, using fallback: '{fallback}'")
            return fallback

        return value or fallback

    @classmethod
    def reset(cls) -> None:
        """Forget the cached configuration so the environment is re-read"""
        cls._instance = None
        cls._initialized = False

def get_platform_name() -> str:
    """Get the configured platform name"""
    return BrandConfig().platform_name

def get_support_email() -> str:
    """Get the configured support email address"""
    return BrandConfig().support_email

def get_plan_product_description(plan_name: str) -> str:
    """Product description shown on hosted checkout pages"""
    return f"{get_platform_name()} - {plan_name} Plan"

def get_startup_message() -> str:
    """Get branded startup message for logging"""
    return f"🚀 Starting {get_platform_name()} order and provisioning service..."
