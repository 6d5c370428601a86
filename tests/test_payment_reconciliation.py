"""
Payment reconciliation tests
Signed Stripe webhooks, idempotent replays and manual confirmation
"""

import asyncio
import json
import pytest
from unittest.mock import AsyncMock, patch

from admin_alerts import get_admin_alert_system
from conftest import checkout_completed_event, sign_stripe_payload
from services import email_dispatch
from services.errors import InvalidRequest, NotConfigured, NotFound, SignatureInvalid, StoreUnavailable
from services.models import InvoiceStatus
from services.order_orchestrator import load_plan, place_order, update_service_status
from services.payment_reconciler import (
    confirm_manual_payment, confirm_payment, find_invoice_for_service, on_gateway_event
)


async def _pending_service(user_id='u1', method='stripe'):
    return await place_order(user_id, await load_plan('basic'), method)


async def _service_status(store, user_id, service_id):
    return (await store.get(f"users/{user_id}/services/{service_id}"))['status']


def _activation_emails():
    return [m for m in email_dispatch.sent_test_messages if m.type == 'service_active']


@pytest.mark.asyncio
class TestStripeWebhook:

    async def test_completed_checkout_activates_service(self, seeded_platform):
        service = await _pending_service()
        payload = checkout_completed_event('u1', service.id)

        ack = await on_gateway_event(payload, sign_stripe_payload(payload))
        await email_dispatch.wait_for_pending_emails(timeout=5)

        assert ack.status == 'processed'
        assert ack.outcome.changed is True
        assert await _service_status(seeded_platform, 'u1', service.id) == 'Active'
        invoice = await find_invoice_for_service(service.id)
        assert invoice.status == InvoiceStatus.PAID
        assert invoice.payment_source == 'stripe'
        stored = await seeded_platform.get(f"invoices/{invoice.id}")
        assert stored['paymentReference'] == f"cs_test_{service.id}"
        assert stored['paidAt']
        assert [m.to for m in _activation_emails()] == ['u1@example.org']

    async def test_replayed_event_is_a_no_op(self, seeded_platform):
        service = await _pending_service()
        payload = checkout_completed_event('u1', service.id)
        signature = sign_stripe_payload(payload)

        await on_gateway_event(payload, signature)
        invoice = await find_invoice_for_service(service.id)
        paid_at = (await seeded_platform.get(f"invoices/{invoice.id}"))['paidAt']

        ack = await on_gateway_event(payload, signature)
        await email_dispatch.wait_for_pending_emails(timeout=5)

        assert ack.status == 'processed'
        assert ack.outcome.changed is False
        assert (await seeded_platform.get(f"invoices/{invoice.id}"))['paidAt'] == paid_at
        assert len(_activation_emails()) == 1

    async def test_bad_signature_changes_nothing(self, seeded_platform):
        service = await _pending_service()
        payload = checkout_completed_event('u1', service.id)
        before = seeded_platform.dump()

        with pytest.raises(SignatureInvalid):
            await on_gateway_event(payload, sign_stripe_payload(payload, secret='whsec_wrong'))
        with pytest.raises(SignatureInvalid):
            await on_gateway_event(payload, None)

        assert seeded_platform.dump() == before

    async def test_tampered_payload_is_rejected(self, seeded_platform):
        service = await _pending_service()
        payload = checkout_completed_event('u1', service.id)
        signature = sign_stripe_payload(payload)
        tampered = payload.replace(b'u1', b'u2')

        with pytest.raises(SignatureInvalid):
            await on_gateway_event(tampered, signature)

    async def test_missing_webhook_secret_is_not_configured(self, seeded_platform):
        await seeded_platform.set('settings/gateways/stripe', {'enabled': True, 'secretKey': 'sk_test'})
        payload = checkout_completed_event('u1', 'svc')

        with pytest.raises(NotConfigured):
            await on_gateway_event(payload, sign_stripe_payload(payload))

    async def test_signed_non_json_payload_is_invalid(self, seeded_platform):
        payload = b'not json'
        with pytest.raises(InvalidRequest):
            await on_gateway_event(payload, sign_stripe_payload(payload))

    async def test_unrelated_event_is_ignored(self, seeded_platform):
        payload = json.dumps({'id': 'evt_1', 'type': 'customer.created', 'data': {'object': {}}}).encode()

        ack = await on_gateway_event(payload, sign_stripe_payload(payload))

        assert ack.status == 'ignored'
        assert ack.to_dict()['received'] is True

    async def test_unsettled_checkout_is_ignored(self, seeded_platform):
        service = await _pending_service()
        payload = checkout_completed_event('u1', service.id, payment_status='unpaid')

        ack = await on_gateway_event(payload, sign_stripe_payload(payload))

        assert ack.status == 'ignored'
        assert await _service_status(seeded_platform, 'u1', service.id) == 'Pending'

    async def test_async_payment_success_activates(self, seeded_platform):
        service = await _pending_service()
        payload = checkout_completed_event('u1', service.id,
                                           event_type='checkout.session.async_payment_succeeded')

        ack = await on_gateway_event(payload, sign_stripe_payload(payload))

        assert ack.status == 'processed'
        assert await _service_status(seeded_platform, 'u1', service.id) == 'Active'

    async def test_missing_metadata_is_skipped(self, seeded_platform):
        event = {'id': 'evt_2', 'type': 'checkout.session.completed',
                 'data': {'object': {'id': 'cs_2', 'payment_status': 'paid', 'metadata': {'userId': 'u1'}}}}
        payload = json.dumps(event).encode()
        before = seeded_platform.dump()

        ack = await on_gateway_event(payload, sign_stripe_payload(payload))

        assert ack.status == 'skipped'
        assert seeded_platform.dump() == before

    async def test_store_failure_propagates_for_retry(self, seeded_platform):
        service = await _pending_service()
        payload = checkout_completed_event('u1', service.id)

        with patch.object(seeded_platform, 'update', new_callable=AsyncMock, side_effect=StoreUnavailable()), \
             patch('services.payment_reconciler.send_error_alert', new_callable=AsyncMock) as mock_alert:
            with pytest.raises(StoreUnavailable):
                await on_gateway_event(payload, sign_stripe_payload(payload))

        mock_alert.assert_awaited_once()

    async def test_repeated_signature_failures_alert_admins(self, seeded_platform):
        payload = b'{}'
        with patch('services.payment_reconciler.send_warning_alert', new_callable=AsyncMock) as mock_alert:
            for _ in range(5):
                with pytest.raises(SignatureInvalid):
                    await on_gateway_event(payload, 't=1,v1=deadbeef')

        mock_alert.assert_awaited_once()
        assert mock_alert.await_args.args[2] == 'security'


@pytest.mark.asyncio
class TestConfirmPayment:

    async def test_manual_confirmation_finds_owner_via_invoice(self, seeded_platform):
        service = await _pending_service(method='upi')

        outcome = await confirm_manual_payment(service.id)

        assert outcome.service_activated and outcome.invoice_marked_paid
        assert (await find_invoice_for_service(service.id)).payment_source == 'manual'

    async def test_manual_confirmation_for_unknown_service(self, seeded_platform):
        with pytest.raises(NotFound):
            await confirm_manual_payment('nope')

    async def test_webhook_and_manual_confirmation_converge(self, seeded_platform):
        service = await _pending_service()
        payload = checkout_completed_event('u1', service.id)

        await confirm_manual_payment(service.id)
        ack = await on_gateway_event(payload, sign_stripe_payload(payload))

        assert ack.outcome.changed is False
        assert await _service_status(seeded_platform, 'u1', service.id) == 'Active'
        assert (await find_invoice_for_service(service.id)).payment_source == 'manual'

    async def test_suspended_service_is_not_revived_by_payment(self, seeded_platform):
        service = await _pending_service()
        await update_service_status('u1', service.id, 'Suspended')

        outcome = await confirm_payment('u1', service.id, source='stripe')

        assert outcome.invoice_marked_paid is True
        assert outcome.service_activated is False
        assert await _service_status(seeded_platform, 'u1', service.id) == 'Suspended'

    async def test_alert_for_suspended_service_does_not_delay_webhook_ack(self, seeded_platform):
        service = await _pending_service()
        await update_service_status('u1', service.id, 'Suspended')
        payload = checkout_completed_event('u1', service.id)

        async def slow_smtp(message):
            await asyncio.sleep(1)
            return True

        with patch('services.email_dispatch.send_email', side_effect=slow_smtp) as mock_send:
            ack = await asyncio.wait_for(on_gateway_event(payload, sign_stripe_payload(payload)), timeout=0.5)
            await email_dispatch.wait_for_pending_emails(timeout=5)

        assert ack.status == 'processed'
        assert await _service_status(seeded_platform, 'u1', service.id) == 'Suspended'
        assert [call.args[0].type for call in mock_send.call_args_list] == ['admin_alert']
        recent = await get_admin_alert_system().get_recent_alerts()
        assert recent[0]['delivery'] == 'queued'

    async def test_missing_service_still_marks_invoice(self, seeded_platform):
        service = await _pending_service()
        await seeded_platform.remove(f"users/u1/services/{service.id}")

        outcome = await confirm_payment('u1', service.id, source='stripe')

        assert outcome.service_found is False
        assert outcome.invoice_marked_paid is True

    async def test_missing_invoice_still_activates(self, seeded_platform):
        await seeded_platform.set('users/u1/services/bare', {
            'planId': 'basic', 'name': 'Basic', 'price': '499.00', 'status': 'Pending Activation',
        })

        outcome = await confirm_payment('u1', 'bare', source='admin')

        assert outcome.invoice_found is False
        assert outcome.service_activated is True
