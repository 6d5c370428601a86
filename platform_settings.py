"""
Live platform settings

Settings live in the document store under settings/* and are read at call time
through a short TTL cache, so admin changes take effect without a redeploy.
Writers invalidate the cache immediately.
"""

import os
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from database import get_document_store
from performance_cache import get_cached, set_cached, cache_invalidate_category
from services.errors import InvalidRequest

logger = logging.getLogger(__name__)

CACHE_PREFIX = 'settings:'

DOMAIN_PATH = 'settings/domain'
RESTRICTIONS_PATH = 'settings/restrictions'
STRIPE_PATH = 'settings/gateways/stripe'
UPI_PATH = 'settings/gateways/upi'
INVOICE_PATH = 'settings/invoice'
SMTP_PATH = 'settings/smtp'
PROVISIONING_PATH = 'settings/provisioning'

DEFAULT_CURRENCY = 'inr'
DEFAULT_UPI_NAME = 'AquaHost'
DEFAULT_TARGET_DIRECTORY = '{fqdn}'

INVOICE_REQUIRED_FIELDS = {
    'companyName': 'Company Name is required',
    'address': 'Address is required',
    'city': 'City is required',
    'postalCode': 'Postal Code is required',
    'country': 'Country is required',
}


def get_settings_cache_ttl() -> float:
    try:
        return float(os.getenv('SETTINGS_CACHE_TTL', '15'))
    except ValueError:
        return 15.0


async def read_settings(path: str) -> Dict[str, Any]:
    """Read one settings document, empty dict when absent"""
    cache_key = f"{CACHE_PREFIX}{path}"
    cached = get_cached(cache_key)
    if cached is not None:
        return dict(cached)

    data = await get_document_store().get(path) or {}
    set_cached(cache_key, data, get_settings_cache_ttl())
    return dict(data)


def invalidate_settings_cache(path: Optional[str] = None) -> None:
    cache_invalidate_category(f"{CACHE_PREFIX}{path}" if path else CACHE_PREFIX)


async def _write_settings(path: str, data: Dict[str, Any]) -> None:
    await get_document_store().set(path, data)
    invalidate_settings_cache(path)
    logger.info(f"⚙️ Settings saved: {path}")


# ====================================================================
# TYPED VIEWS
# ====================================================================

@dataclass
class StripeSettings:
    enabled: bool = False
    publishable_key: str = ''
    secret_key: str = ''
    webhook_secret: str = ''
    currency: str = DEFAULT_CURRENCY

    @property
    def can_create_sessions(self) -> bool:
        return self.enabled and bool(self.secret_key)

    def public_dict(self) -> Dict[str, Any]:
        return {'enabled': self.enabled, 'publishableKey': self.publishable_key, 'currency': self.currency}


@dataclass
class UpiSettings:
    enabled: bool = False
    upi_id: str = ''
    upi_name: str = DEFAULT_UPI_NAME

    @property
    def can_create_links(self) -> bool:
        return self.enabled and bool(self.upi_id)


@dataclass
class SmtpSettings:
    host: str = ''
    port: int = 587
    user: str = ''
    password: str = ''
    from_address: str = ''

    @property
    def is_configured(self) -> bool:
        return bool(self.host)

    @property
    def sender(self) -> str:
        return self.from_address or self.user


@dataclass
class ProvisioningSettings:
    api_url: str = ''
    api_token: str = ''
    target_directory_template: str = DEFAULT_TARGET_DIRECTORY

    @property
    def is_configured(self) -> bool:
        return bool(self.api_url)

    def target_directory(self, fqdn: str, label: str) -> str:
        return self.target_directory_template.format(fqdn=fqdn, label=label)


# ====================================================================
# READERS
# ====================================================================

async def get_root_domain() -> Optional[str]:
    """Configured root domain, lower-cased, or None when the admin has not set one"""
    data = await read_settings(DOMAIN_PATH)
    domain = str(data.get('domain') or '').strip().strip('.').lower()
    return domain or None


async def is_free_user_limit_enabled() -> bool:
    data = await read_settings(RESTRICTIONS_PATH)
    return bool(data.get('freeUserLimitEnabled', False))


async def get_stripe_settings() -> StripeSettings:
    data = await read_settings(STRIPE_PATH)
    return StripeSettings(
        enabled=bool(data.get('enabled', False)),
        publishable_key=str(data.get('publishableKey') or ''),
        secret_key=str(data.get('secretKey') or ''),
        webhook_secret=str(data.get('webhookSecret') or ''),
        currency=str(data.get('currency') or DEFAULT_CURRENCY).lower(),
    )


async def get_upi_settings() -> UpiSettings:
    data = await read_settings(UPI_PATH)
    return UpiSettings(
        enabled=bool(data.get('enabled', False)),
        upi_id=str(data.get('upiId') or ''),
        upi_name=str(data.get('upiName') or DEFAULT_UPI_NAME),
    )


async def get_company_details() -> Dict[str, Any]:
    """Billing company block denormalized into each new invoice"""
    return await read_settings(INVOICE_PATH)


async def get_smtp_settings() -> SmtpSettings:
    data = await read_settings(SMTP_PATH)
    try:
        port = int(data.get('smtpPort') or 587)
    except (TypeError, ValueError):
        logger.warning(f"⚠️ Invalid SMTP port in settings: {data.get('smtpPort')!r}, using 587")
        port = 587
    return SmtpSettings(
        host=str(data.get('smtpHost') or ''),
        port=port,
        user=str(data.get('smtpUser') or ''),
        password=str(data.get('smtpPass') or ''),
        from_address=str(data.get('fromAddress') or ''),
    )


async def get_provisioning_settings() -> ProvisioningSettings:
    data = await read_settings(PROVISIONING_PATH)
    return ProvisioningSettings(
        api_url=str(data.get('apiUrl') or os.getenv('PROVISIONING_API_URL', '')).strip(),
        api_token=str(data.get('apiToken') or os.getenv('PROVISIONING_API_TOKEN', '')),
        target_directory_template=str(data.get('targetDirectoryTemplate') or DEFAULT_TARGET_DIRECTORY),
    )


# ====================================================================
# WRITERS
# ====================================================================

async def save_domain_settings(domain: str) -> None:
    domain = (domain or '').strip().strip('.').lower()
    if not domain:
        raise InvalidRequest("Domain name is required.", fields={'domain': 'Domain name is required.'})
    await _write_settings(DOMAIN_PATH, {'domain': domain})


async def save_restriction_settings(free_user_limit_enabled: bool) -> None:
    await _write_settings(RESTRICTIONS_PATH, {'freeUserLimitEnabled': bool(free_user_limit_enabled)})


async def save_stripe_settings(enabled: bool, publishable_key: str = '', secret_key: str = '',
                               webhook_secret: str = '', currency: str = DEFAULT_CURRENCY) -> None:
    """Save Stripe settings; blank secrets keep the stored values"""
    existing = await get_document_store().get(STRIPE_PATH) or {}
    await _write_settings(STRIPE_PATH, {
        'enabled': bool(enabled),
        'publishableKey': publishable_key or '',
        'secretKey': secret_key or existing.get('secretKey', ''),
        'webhookSecret': webhook_secret or existing.get('webhookSecret', ''),
        'currency': (currency or DEFAULT_CURRENCY).lower(),
    })


async def save_upi_settings(enabled: bool, upi_id: str = '', upi_name: str = '') -> None:
    await _write_settings(UPI_PATH, {'enabled': bool(enabled), 'upiId': upi_id or '', 'upiName': upi_name or ''})


async def save_invoice_settings(details: Dict[str, Any]) -> None:
    errors = {
        name: message for name, message in INVOICE_REQUIRED_FIELDS.items()
        if not str(details.get(name) or '').strip()
    }
    if errors:
        raise InvalidRequest("Validation failed. Please check the form.", fields=errors)
    data = {name: str(details[name]).strip() for name in INVOICE_REQUIRED_FIELDS}
    if details.get('taxId'):
        data['taxId'] = str(details['taxId']).strip()
    await _write_settings(INVOICE_PATH, data)


async def save_provisioning_settings(api_url: str, api_token: str = '',
                                     target_directory_template: str = DEFAULT_TARGET_DIRECTORY) -> None:
    """Save provisioning API settings; a blank token keeps the stored one"""
    if not (api_url or '').strip():
        raise InvalidRequest("Provisioning API URL is required.", fields={'apiUrl': 'API URL is required.'})
    existing = await get_document_store().get(PROVISIONING_PATH) or {}
    await _write_settings(PROVISIONING_PATH, {
        'apiUrl': api_url.strip(),
        'apiToken': api_token or existing.get('apiToken', ''),
        'targetDirectoryTemplate': target_directory_template or DEFAULT_TARGET_DIRECTORY,
    })
