"""
Platform settings tests
Typed readers, admin writers and cache invalidation
"""

import pytest

from conftest import CompanyDetailsFactory
from performance_cache import SimpleCache
from platform_settings import (
    get_company_details, get_provisioning_settings, get_root_domain, get_stripe_settings,
    get_upi_settings, is_free_user_limit_enabled, save_domain_settings, save_invoice_settings,
    save_provisioning_settings, save_stripe_settings
)
from services.errors import InvalidRequest


@pytest.mark.asyncio
class TestSettingsReaders:

    async def test_defaults_on_empty_store(self, monkeypatch):
        monkeypatch.delenv('PROVISIONING_API_URL', raising=False)

        assert await get_root_domain() is None
        assert await is_free_user_limit_enabled() is False
        assert (await get_stripe_settings()).can_create_sessions is False
        upi = await get_upi_settings()
        assert upi.can_create_links is False
        assert upi.upi_name == 'AquaHost'
        assert (await get_provisioning_settings()).is_configured is False

    async def test_root_domain_is_normalized(self, store):
        await store.set('settings/domain', {'domain': ' Example.COM. '})
        assert await get_root_domain() == 'example.com'

    async def test_provisioning_falls_back_to_environment(self, monkeypatch):
        monkeypatch.setenv('PROVISIONING_API_URL', 'https://env-host.example/api')
        settings = await get_provisioning_settings()
        assert settings.api_url == 'https://env-host.example/api'
        assert settings.target_directory('shop.example.com', 'shop') == 'shop.example.com'

    async def test_reads_are_cached_until_ttl(self, store):
        await store.set('settings/domain', {'domain': 'old.example'})
        assert await get_root_domain() == 'old.example'

        # Direct store write bypasses the writers, so the cached value remains
        await store.set('settings/domain', {'domain': 'new.example'})
        assert await get_root_domain() == 'old.example'

    async def test_zero_ttl_disables_cache(self, store, monkeypatch):
        monkeypatch.setenv('SETTINGS_CACHE_TTL', '0')
        await store.set('settings/domain', {'domain': 'old.example'})
        assert await get_root_domain() == 'old.example'

        await store.set('settings/domain', {'domain': 'new.example'})
        assert await get_root_domain() == 'new.example'


@pytest.mark.asyncio
class TestSettingsWriters:

    async def test_writer_invalidates_cache(self, store):
        await save_domain_settings('old.example')
        assert await get_root_domain() == 'old.example'

        await save_domain_settings('New.Example')

        assert await get_root_domain() == 'new.example'

    async def test_domain_required(self):
        with pytest.raises(InvalidRequest) as exc_info:
            await save_domain_settings('  ')
        assert 'domain' in exc_info.value.fields

    async def test_blank_stripe_secrets_keep_stored_values(self, store):
        await save_stripe_settings(True, 'pk_1', 'sk_1', 'whsec_1')
        await save_stripe_settings(True, 'pk_2', '', '', currency='USD')

        settings = await get_stripe_settings()
        assert settings.publishable_key == 'pk_2'
        assert settings.secret_key == 'sk_1'
        assert settings.webhook_secret == 'whsec_1'
        assert settings.currency == 'usd'
        assert 'secretKey' not in settings.public_dict()

    async def test_invoice_settings_validation_lists_every_missing_field(self):
        with pytest.raises(InvalidRequest) as exc_info:
            await save_invoice_settings({'companyName': 'AquaHost', 'city': ''})

        assert set(exc_info.value.fields) == {'address', 'city', 'postalCode', 'country'}

    async def test_invoice_settings_saved(self, store):
        details = dict(CompanyDetailsFactory(), taxId='GST123')
        await save_invoice_settings(details)

        company = await get_company_details()
        assert company['companyName'] == 'AquaHost Pvt Ltd'
        assert company['taxId'] == 'GST123'

    async def test_blank_provisioning_token_keeps_stored_token(self):
        await save_provisioning_settings('https://host.example/api', 'secret-token')
        await save_provisioning_settings('https://host.example/v2', '')

        settings = await get_provisioning_settings()
        assert settings.api_url == 'https://host.example/v2'
        assert settings.api_token == 'secret-token'


class TestSimpleCache:

    def test_set_get_and_prefix_delete(self):
        cache = SimpleCache(default_ttl=60)
        cache.set('settings:a', 1)
        cache.set('settings:b', 2)
        cache.set('other', 3)

        assert cache.get('settings:a') == 1
        assert cache.delete_prefix('settings:') == 2
        assert cache.get('settings:b') is None
        assert cache.get('other') == 3

    def test_zero_ttl_is_not_stored(self):
        cache = SimpleCache()
        cache.set('k', 'v', ttl=0)
        assert cache.get('k') is None
