"""Environment detection utilities for production vs development"""

import os
import logging

logger = logging.getLogger(__name__)

DEFAULT_EXTERNAL_API_TIMEOUT = 10.0

def get_public_base_url() -> str:
    """
    Get the externally reachable base URL of this deployment

    Returns:
        str: Base URL without a trailing slash, e.g. https://panel.example.com
    """
    base_url = os.getenv('PUBLIC_BASE_URL', '').strip().rstrip('/')
    if base_url:
        return base_url

    port = os.getenv('PORT', '8000')
    logger.warning(f"⚠️ PUBLIC_BASE_URL not set, using localhost fallback on port {port}")
    return f"http://localhost:{port}"

def get_webhook_url(endpoint: str) -> str:
    """
    Get the complete webhook URL for a specific endpoint

    Args:
        endpoint: The endpoint path (e.g., 'stripe')

    Returns:
        str: Complete webhook URL
    """
    return f"{get_public_base_url()}/webhook/{endpoint}"

def get_external_api_timeout() -> float:
    """Timeout in seconds applied to every outbound gateway, provisioning and SMTP call"""
    raw_value = os.getenv('EXTERNAL_API_TIMEOUT')
    if not raw_value:
        return DEFAULT_EXTERNAL_API_TIMEOUT
    try:
        timeout = float(raw_value)
    except ValueError:
        logger.warning(f"⚠️ Invalid EXTERNAL_API_TIMEOUT '{raw_value}', using {DEFAULT_EXTERNAL_API_TIMEOUT}s")
        return DEFAULT_EXTERNAL_API_TIMEOUT
    return timeout if timeout > 0 else DEFAULT_EXTERNAL_API_TIMEOUT

def is_test_mode() -> bool:
    """TEST_MODE=1 disables real outbound email and relaxes startup checks"""
    return os.getenv('TEST_MODE', '').lower() in ('1', 'true', 'yes')

def is_production_environment() -> bool:
    """
    Check if we're running in production

    Returns:
        bool: True if in production, False if in development
    """
    return os.getenv('ENVIRONMENT', '').lower() == 'production'
