"""
Subdomain provisioning tests
Label validation, name claims, provisioning API handling and the user-facing trigger
"""

import asyncio
import pytest

import httpx

from conftest import PROVISIONING_API_URL
from services import email_dispatch
from services.errors import (
    AlreadyTaken, DependencyTimeout, InvalidLabel, NotConfigured, ProvisioningFailed
)
from services.order_orchestrator import load_plan, place_order
from services.panel_sessions import panel_session_path
from services.provisioning_trigger import handle_subdomain_creation
from services.subdomain_provisioner import (
    ProvisioningApiClient, SubdomainProvisioner, list_user_subdomains, set_subdomain_provisioner,
    validate_label
)


class RecordingHost:
    """httpx MockTransport handler standing in for the hosting provider"""

    def __init__(self, status_code=200, body=None, delay=0.0, timeout=False):
        self.status_code = status_code
        self.body = {'status': 1} if body is None else body
        self.delay = delay
        self.timeout = timeout
        self.requests = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.timeout:
            raise httpx.ReadTimeout("Timed out", request=request)
        if isinstance(self.body, (dict, list)):
            return httpx.Response(self.status_code, json=self.body)
        return httpx.Response(self.status_code, text=self.body)

    def form(self, index=0):
        return dict(httpx.QueryParams(self.requests[index].content.decode()))


def _provisioner(host: RecordingHost, timeout=2.0) -> SubdomainProvisioner:
    client = ProvisioningApiClient(PROVISIONING_API_URL, 'host-token', timeout=timeout,
                                   transport=httpx.MockTransport(host))
    provisioner = SubdomainProvisioner(api_client=client)
    set_subdomain_provisioner(provisioner)
    return provisioner


class TestValidateLabel:

    @pytest.mark.parametrize('label', ['shop', 'my-site', 'a1b', 'x' * 30, 'abc-123-def'])
    def test_accepts_valid_labels(self, label):
        assert validate_label(label) == label

    @pytest.mark.parametrize('label,message', [
        ('ab', 'at least 3'),
        ('x' * 31, 'no more than 30'),
        ('My Site', 'lowercase letters'),
        ('-shop', 'lowercase letters'),
        ('shop-', 'lowercase letters'),
        ('sh--op', 'lowercase letters'),
        ('shop.example', 'lowercase letters'),
        ('', 'required'),
        (None, 'required'),
    ])
    def test_rejects_invalid_labels(self, label, message):
        with pytest.raises(InvalidLabel) as exc_info:
            validate_label(label)
        assert message in exc_info.value.user_message
        assert 'subdomain' in exc_info.value.fields


@pytest.mark.asyncio
class TestSubdomainProvisioner:

    async def test_provision_records_subdomain(self, seeded_platform):
        host = RecordingHost()
        provisioner = _provisioner(host)

        fqdn = await provisioner.provision('shop', 'u1')

        assert fqdn == 'shop.example.com'
        assert host.form() == {'subdomain': 'shop', 'rootdomain': 'example.com', 'dir': 'shop.example.com'}
        assert host.requests[0].headers['Authorization'] == 'Bearer host-token'
        records = await list_user_subdomains('u1')
        assert [r.name for r in records] == ['shop.example.com']
        claim = await seeded_platform.get('subdomain_names/shop,example,com')
        assert claim['state'] == 'active'

    async def test_invalid_label_never_calls_api(self, seeded_platform):
        host = RecordingHost()
        provisioner = _provisioner(host)

        with pytest.raises(InvalidLabel):
            await provisioner.provision('My Site', 'u1')

        assert host.requests == []

    async def test_taken_name_never_calls_api(self, seeded_platform):
        await seeded_platform.set('subdomains/existing', {'userId': 'u2', 'subdomain': 'shop.example.com'})
        host = RecordingHost()
        provisioner = _provisioner(host)

        with pytest.raises(AlreadyTaken) as exc_info:
            await provisioner.provision('shop', 'u1')

        assert exc_info.value.user_message == (
            "The subdomain 'shop.example.com' is already taken. Please choose another one."
        )
        assert host.requests == []

    async def test_concurrent_requests_for_same_label_have_one_winner(self, seeded_platform):
        host = RecordingHost(delay=0.05)
        provisioner = _provisioner(host)

        results = await asyncio.gather(
            provisioner.provision('shop', 'u1'),
            provisioner.provision('shop', 'u2'),
            return_exceptions=True,
        )

        assert results.count('shop.example.com') == 1
        assert sum(isinstance(r, AlreadyTaken) for r in results) == 1
        assert len(host.requests) == 1
        assert len(await seeded_platform.list_children('subdomains')) == 1

    async def test_missing_root_domain_is_not_configured(self, store):
        provisioner = _provisioner(RecordingHost())
        with pytest.raises(NotConfigured):
            await provisioner.provision('shop', 'u1')

    @pytest.mark.parametrize('status_code,body,message', [
        (500, {'status': 0}, 'API call failed with status 500.'),
        (200, 'not json', 'Failed to parse API response.'),
        (200, {'status': 0, 'errors': ['Subdomain exists on server']}, 'API Error: Subdomain exists on server'),
        (200, {'status': 0}, 'API Error: Unknown API error during creation.'),
    ])
    async def test_api_failure_releases_claim(self, seeded_platform, status_code, body, message):
        provisioner = _provisioner(RecordingHost(status_code=status_code, body=body))

        with pytest.raises(ProvisioningFailed) as exc_info:
            await provisioner.provision('shop', 'u1')

        assert exc_info.value.user_message == message
        assert await seeded_platform.get('subdomain_names/shop,example,com') is None
        assert await seeded_platform.list_children('subdomains') == {}

    async def test_api_timeout(self, seeded_platform):
        provisioner = _provisioner(RecordingHost(timeout=True))

        with pytest.raises(DependencyTimeout):
            await provisioner.provision('shop', 'u1')

        assert await seeded_platform.get('subdomain_names/shop,example,com') is None

    async def test_client_requires_url(self):
        with pytest.raises(NotConfigured):
            ProvisioningApiClient('')


@pytest.mark.asyncio
class TestSubdomainCreationTrigger:

    async def test_active_service_gets_subdomain_and_panel_credentials(self, seeded_platform):
        host = RecordingHost()
        _provisioner(host)
        service = await place_order('u1', await load_plan('free'), None)

        result = await handle_subdomain_creation('shop', 'u1', service.id)
        await email_dispatch.wait_for_pending_emails(timeout=5)

        assert result.is_error is False
        assert result.message == "Subdomain 'shop.example.com' has been successfully created and is now active."
        stored = await seeded_platform.get(f"users/u1/services/{service.id}")
        assert stored['subdomain'] == 'shop.example.com'
        assert stored['status'] == 'Active'
        assert stored['panelUsername'] == 'shop'
        assert 'password' not in stored
        assert (await seeded_platform.get(panel_session_path('shop')))['serviceId'] == service.id
        assert any(m.type == 'subdomain_created' for m in email_dispatch.sent_test_messages)

    async def test_unpaid_service_is_not_eligible(self, seeded_platform):
        host = RecordingHost()
        _provisioner(host)
        service = await place_order('u1', await load_plan('basic'), 'upi')

        result = await handle_subdomain_creation('shop', 'u1', service.id)

        assert result.is_error is True
        assert result.code == 'not_eligible'
        assert host.requests == []

    async def test_service_with_subdomain_cannot_get_another(self, seeded_platform):
        host = RecordingHost()
        _provisioner(host)
        service = await place_order('u1', await load_plan('free'), None)
        await handle_subdomain_creation('shop', 'u1', service.id)

        result = await handle_subdomain_creation('blog', 'u1', service.id)

        assert result.is_error is True
        assert result.code == 'not_eligible'
        assert len(host.requests) == 1

    async def test_invalid_label_result_has_field_error(self, seeded_platform):
        result = await handle_subdomain_creation('My Site', 'u1')

        assert result.is_error is True
        assert result.code == 'invalid_label'
        assert 'subdomain' in result.fields
