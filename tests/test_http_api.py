"""
HTTP surface tests
Stripe webhook endpoint, health checks, customer API and admin API
"""

import json
import pytest

import httpx
from aiohttp.test_utils import TestClient, TestServer

from conftest import PROVISIONING_API_URL, checkout_completed_event, sign_stripe_payload
from services.order_orchestrator import load_plan, place_order
from services.subdomain_provisioner import ProvisioningApiClient, SubdomainProvisioner, set_subdomain_provisioner
from webhook_handler import create_app

ADMIN_HEADERS = {'X-Admin-Token': 'test-admin-token'}


def _client() -> TestClient:
    return TestClient(TestServer(create_app()))


def _user(user_id='u1'):
    return {'X-User-Id': user_id}


@pytest.mark.asyncio
class TestStripeWebhookEndpoint:

    async def test_signed_event_activates_service(self, seeded_platform):
        service = await place_order('u1', await load_plan('basic'), 'stripe')
        payload = checkout_completed_event('u1', service.id)

        async with _client() as client:
            response = await client.post('/webhook/stripe', data=payload,
                                         headers={'Stripe-Signature': sign_stripe_payload(payload)})
            body = await response.json()

        assert response.status == 200
        assert body == {'received': True, 'status': 'processed', 'eventType': 'checkout.session.completed',
                        'serviceId': service.id, 'changed': True}
        stored = await seeded_platform.get(f"users/u1/services/{service.id}")
        assert stored['status'] == 'Active'

    async def test_bad_signature_is_400_with_generic_body(self, seeded_platform):
        payload = checkout_completed_event('u1', 'svc')

        async with _client() as client:
            response = await client.post('/webhook/stripe', data=payload,
                                         headers={'Stripe-Signature': 't=1,v1=00'})
            body = await response.json()

        assert response.status == 400
        assert body == {'error': 'Invalid signature'}

    async def test_missing_secret_is_503(self, store):
        payload = checkout_completed_event('u1', 'svc')

        async with _client() as client:
            response = await client.post('/webhook/stripe', data=payload,
                                         headers={'Stripe-Signature': sign_stripe_payload(payload)})

        assert response.status == 503

    async def test_unhandled_event_is_acknowledged(self, seeded_platform):
        payload = json.dumps({'id': 'evt_9', 'type': 'invoice.created', 'data': {'object': {}}}).encode()

        async with _client() as client:
            response = await client.post('/webhook/stripe', data=payload,
                                         headers={'Stripe-Signature': sign_stripe_payload(payload)})
            body = await response.json()

        assert response.status == 200
        assert body['status'] == 'ignored'


@pytest.mark.asyncio
class TestHealthEndpoint:

    async def test_health_reports_store(self, store):
        async with _client() as client:
            response = await client.get('/health')
            body = await response.json()

        assert response.status == 200
        assert body['status'] == 'healthy'
        assert body['checks']['document_store']['backend'] == 'memory'
        assert 'memory_mb' in body['checks']['performance']


@pytest.mark.asyncio
class TestCustomerApi:

    async def test_order_requires_user(self, seeded_platform):
        async with _client() as client:
            response = await client.post('/api/orders', json={'planId': 'free'})

        assert response.status == 401

    async def test_free_order_is_created(self, seeded_platform):
        async with _client() as client:
            response = await client.post('/api/orders', json={'planId': 'free'}, headers=_user())
            body = await response.json()

        assert response.status == 201
        assert body['isError'] is False
        assert body['service']['status'] == 'Active'

    async def test_limit_exceeded_maps_to_409(self, seeded_platform):
        async with _client() as client:
            await client.post('/api/orders', json={'planId': 'free'}, headers=_user())
            response = await client.post('/api/orders', json={'planId': 'free'}, headers=_user())
            body = await response.json()

        assert response.status == 409
        assert body['code'] == 'limit_exceeded'

    async def test_unknown_plan_maps_to_404(self, seeded_platform):
        async with _client() as client:
            response = await client.post('/api/orders', json={'planId': 'gold', 'paymentMethod': 'upi'},
                                         headers=_user())

        assert response.status == 404

    async def test_invalid_json_body(self, seeded_platform):
        async with _client() as client:
            response = await client.post('/api/orders', data=b'{not json',
                                         headers=dict(_user(), **{'Content-Type': 'application/json'}))

        assert response.status == 400

    async def test_gateways_listed(self, seeded_platform):
        async with _client() as client:
            response = await client.get('/api/gateways', headers=_user())
            body = await response.json()

        assert [g['name'] for g in body['gateways']] == ['stripe', 'upi']

    async def test_subdomain_then_panel_session_then_redeem(self, seeded_platform):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, json={'status': 1}))
        set_subdomain_provisioner(SubdomainProvisioner(
            ProvisioningApiClient(PROVISIONING_API_URL, transport=transport)
        ))
        service = await place_order('u1', await load_plan('free'), None)

        async with _client() as client:
            created = await client.post(f"/api/services/{service.id}/subdomain",
                                        json={'subdomain': 'shop'}, headers=_user())
            listed = await (await client.get('/api/subdomains', headers=_user())).json()
            session = await client.post(f"/api/services/{service.id}/panel-session", headers=_user())
            credentials = (await session.json())['credentials']
            redeemed = await client.post('/api/panel/redeem',
                                         json={'username': 'shop', 'token': credentials['token']})
            replay = await client.post('/api/panel/redeem',
                                       json={'username': 'shop', 'token': credentials['token']})
            redeemed_body = await redeemed.json()

        assert created.status == 201
        assert [s['subdomain'] for s in listed['subdomains']] == ['shop.example.com']
        assert session.status == 200
        assert redeemed.status == 200
        assert redeemed_body == {'valid': True, 'username': 'shop', 'userId': 'u1', 'serviceId': service.id}
        assert replay.status == 401

    async def test_invalid_label_is_400(self, seeded_platform):
        service = await place_order('u1', await load_plan('free'), None)

        async with _client() as client:
            response = await client.post(f"/api/services/{service.id}/subdomain",
                                         json={'subdomain': 'My Site'}, headers=_user())
            body = await response.json()

        assert response.status == 400
        assert body['code'] == 'invalid_label'

    async def test_checkout_for_other_users_service_is_404(self, seeded_platform):
        service = await place_order('u1', await load_plan('basic'), 'upi')

        async with _client() as client:
            response = await client.post(f"/api/services/{service.id}/checkout", headers=_user('u2'))

        assert response.status == 404


@pytest.mark.asyncio
class TestAdminApi:

    async def test_admin_token_required(self, seeded_platform):
        async with _client() as client:
            response = await client.post('/api/admin/reconcile-orphans', headers={'X-Admin-Token': 'wrong'})

        assert response.status == 403

    async def test_admin_api_disabled_without_token(self, seeded_platform, monkeypatch):
        monkeypatch.delenv('ADMIN_API_TOKEN')

        async with _client() as client:
            response = await client.post('/api/admin/reconcile-orphans', headers=ADMIN_HEADERS)

        assert response.status == 503

    async def test_manual_payment_confirmation(self, seeded_platform):
        service = await place_order('u1', await load_plan('basic'), 'upi')

        async with _client() as client:
            first = await client.post(f"/api/admin/services/{service.id}/confirm-payment", headers=ADMIN_HEADERS)
            second = await client.post(f"/api/admin/services/{service.id}/confirm-payment", headers=ADMIN_HEADERS)
            first_body, second_body = await first.json(), await second.json()

        assert first_body['message'] == 'Payment confirmed.'
        assert second_body['message'] == 'Payment was already confirmed.'
        stored = await seeded_platform.get(f"users/u1/services/{service.id}")
        assert stored['status'] == 'Active'

    async def test_status_change(self, seeded_platform):
        service = await place_order('u1', await load_plan('basic'), 'upi')

        async with _client() as client:
            response = await client.post(f"/api/admin/services/u1/{service.id}/status",
                                         json={'status': 'Suspended'}, headers=ADMIN_HEADERS)
            body = await response.json()

        assert response.status == 200
        assert body['status'] == 'Suspended'

    async def test_reconcile_orphans(self, seeded_platform):
        await seeded_platform.set('users/u1/services/orphan', {
            'planId': 'basic', 'name': 'Basic', 'price': '499.00', 'status': 'Pending',
        })

        async with _client() as client:
            response = await client.post('/api/admin/reconcile-orphans', headers=ADMIN_HEADERS)
            body = await response.json()

        assert body['repairedServiceIds'] == ['orphan']
