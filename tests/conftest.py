"""
Shared test fixtures and configuration for the AquaHost workflow test suite
Provides an isolated in-memory document store, seeded settings and data factories
"""

import os
import hashlib
import hmac
import json
import time
import pytest
import factory
from factory.faker import Faker
from factory.declarations import Sequence
from typing import Any, Dict, Optional
import logging

# Configure test logging
logging.basicConfig(level=logging.DEBUG)
logger = logging.getLogger(__name__)

# Test environment configuration
test_env_vars = {
    'TEST_MODE': '1',  # Record emails instead of sending them
    'DOCUMENT_STORE_BACKEND': 'memory',
    'SETTINGS_CACHE_TTL': '15',
    'ADMIN_API_TOKEN': 'test-admin-token',
    'ADMIN_ALERT_EMAILS': 'ops@aquahost.example',
    'PUBLIC_BASE_URL': 'https://panel.aquahost.example',
    'EXTERNAL_API_TIMEOUT': '2',
}
for key, value in test_env_vars.items():
    os.environ[key] = value
os.environ.pop('DATABASE_URL', None)

import database
from admin_alerts import reset_admin_alert_system
from brand_config import BrandConfig
from performance_cache import clear_cache
from performance_monitor import reset_operation_stats
from services import email_dispatch, payment_reconciler
from services.subdomain_provisioner import set_subdomain_provisioner

ROOT_DOMAIN = 'example.com'
STRIPE_WEBHOOK_SECRET = 'whsec_test_secret'
PROVISIONING_API_URL = 'https://host.example.net/api/subdomains'


@pytest.fixture(autouse=True)
def isolated_workflow():
    """Fresh store, cache, alert system and outbox for every test"""
    store = database.MemoryDocumentStore()
    database.set_document_store(store)
    clear_cache()
    reset_admin_alert_system()
    reset_operation_stats()
    BrandConfig.reset()
    set_subdomain_provisioner(None)
    payment_reconciler._signature_failures.clear()
    email_dispatch.sent_test_messages.clear()
    yield store
    database.set_document_store(None)
    set_subdomain_provisioner(None)
    clear_cache()


@pytest.fixture
def store(isolated_workflow):
    return isolated_workflow


# Test data factories
class PlanFactory(factory.Factory):  # type: ignore[misc]
    """Factory for catalog plan documents"""
    class Meta:  # type: ignore[misc]
        model = dict

    name = Sequence(lambda n: f"Plan {n}")
    price = '499.00'
    features = factory.LazyFunction(lambda: ['10 GB SSD', 'Free SSL'])
    storage = '10 GB'


class UserProfileFactory(factory.Factory):  # type: ignore[misc]
    """Factory for user profile documents"""
    class Meta:  # type: ignore[misc]
        model = dict

    email = Faker('email')
    name = Faker('name')


class CompanyDetailsFactory(factory.Factory):  # type: ignore[misc]
    """Factory for invoice company settings"""
    class Meta:  # type: ignore[misc]
        model = dict

    companyName = 'AquaHost Pvt Ltd'
    address = '1 Harbour Road'
    city = 'Kochi'
    postalCode = '682001'
    country = 'India'


async def seed_documents(store, documents: Dict[str, Dict[str, Any]]) -> None:
    for path, data in documents.items():
        await store.set(path, data)


@pytest.fixture
def seeded_platform(store):
    """Plans, users and admin settings for a typical deployment"""
    documents = {
        'plans/basic': PlanFactory(name='Basic', price='499.00'),
        'plans/free': PlanFactory(name='Starter', price='0', features=['1 GB SSD'], storage='1 GB'),
        'users/u1': UserProfileFactory(email='u1@example.org', name='Asha'),
        'users/u2': UserProfileFactory(email='u2@example.org', name='Ravi'),
        'settings/domain': {'domain': ROOT_DOMAIN},
        'settings/restrictions': {'freeUserLimitEnabled': True},
        'settings/invoice': CompanyDetailsFactory(),
        'settings/gateways/stripe': {
            'enabled': True,
            'publishableKey': 'pk_test_123',
            'secretKey': 'sk_test_123',
            'webhookSecret': STRIPE_WEBHOOK_SECRET,
            'currency': 'inr',
        },
        'settings/gateways/upi': {'enabled': True, 'upiId': 'aquahost@upi', 'upiName': 'AquaHost'},
        'settings/provisioning': {'apiUrl': PROVISIONING_API_URL, 'apiToken': 'host-token'},
    }
    store._documents.update({database.normalize_path(path): data for path, data in documents.items()})
    return store


def sign_stripe_payload(payload: bytes, secret: str = STRIPE_WEBHOOK_SECRET,
                        timestamp: Optional[int] = None) -> str:
    """Build a Stripe-Signature header for a raw payload"""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode('utf-8')
    signature = hmac.new(secret.encode('utf-8'), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def checkout_completed_event(user_id: str, service_id: str, plan_id: str = 'basic',
                             event_type: str = 'checkout.session.completed',
                             payment_status: str = 'paid') -> bytes:
    event = {
        'id': f"evt_{service_id}",
        'type': event_type,
        'data': {
            'object': {
                'id': f"cs_test_{service_id}",
                'payment_status': payment_status,
                'metadata': {'userId': user_id, 'planId': plan_id, 'serviceId': service_id},
            }
        },
    }
    return json.dumps(event).encode('utf-8')
