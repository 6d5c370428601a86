"""
Payment reconciliation
Applies confirmed payments to Invoice and Service state, whether the confirmation
comes from a signed Stripe webhook or from an administrator.

Every transition checks the current state first, so replaying the same
confirmation is a no-op: Unpaid -> Paid and Pending -> Active happen at most once.
"""

import json
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, Optional, Tuple

import stripe

from admin_alerts import send_error_alert, send_warning_alert
from database import get_document_store
from performance_monitor import monitor_performance
from platform_settings import get_stripe_settings
from services.email_dispatch import dispatch_email
from services.errors import InvalidRequest, NotConfigured, NotFound, SignatureInvalid
from services.models import (
    PAYABLE_SERVICE_STATUSES, Invoice, InvoiceStatus, Service, ServiceStatus, iso_now
)

logger = logging.getLogger(__name__)

PAYMENT_SUCCESS_EVENTS = ('checkout.session.completed', 'checkout.session.async_payment_succeeded')
SETTLED_PAYMENT_STATUSES = ('paid', 'no_payment_required')
REQUIRED_METADATA = ('userId', 'planId', 'serviceId')

SIGNATURE_FAILURE_WINDOW = 300
SIGNATURE_FAILURE_ALERT_THRESHOLD = 5
_signature_failures: Deque[float] = deque()


@dataclass
class ReconciliationOutcome:
    """Which records a confirmation actually changed"""
    service_id: str
    invoice_id: Optional[str] = None
    invoice_found: bool = False
    invoice_marked_paid: bool = False
    service_found: bool = False
    service_activated: bool = False
    previous_status: Optional[str] = None

    @property
    def changed(self) -> bool:
        return self.invoice_marked_paid or self.service_activated

    def to_dict(self) -> Dict[str, Any]:
        return {
            'serviceId': self.service_id,
            'invoiceId': self.invoice_id,
            'invoiceMarkedPaid': self.invoice_marked_paid,
            'serviceActivated': self.service_activated,
            'previousStatus': self.previous_status,
        }


@dataclass
class Ack:
    """Acknowledgement returned to the gateway for one webhook delivery"""
    status: str
    event_type: Optional[str] = None
    event_id: Optional[str] = None
    service_id: Optional[str] = None
    outcome: Optional[ReconciliationOutcome] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {'received': True, 'status': self.status}
        if self.event_type:
            data['eventType'] = self.event_type
        if self.service_id:
            data['serviceId'] = self.service_id
        if self.outcome:
            data['changed'] = self.outcome.changed
        data.update(self.details)
        return data


def service_path(user_id: str, service_id: str) -> str:
    return f"users/{user_id}/services/{service_id}"


async def find_invoice_for_service(service_id: str) -> Optional[Invoice]:
    """The invoice issued for a service, or None"""
    matches = await get_document_store().query_by_child('invoices', 'serviceId', service_id)
    if not matches:
        return None
    if len(matches) > 1:
        logger.warning(f"⚠️ Service {service_id} has {len(matches)} invoices; using the oldest")
    invoice_id = sorted(matches)[0]
    return Invoice.from_dict(matches[invoice_id], invoice_id)


async def _load_service(user_id: str, service_id: str) -> Optional[Service]:
    data = await get_document_store().get(service_path(user_id, service_id))
    if data is None:
        return None
    return Service.from_dict(data, owner_user_id=user_id, service_id=service_id)


async def _notify_activation(service: Service, invoice: Optional[Invoice]) -> None:
    """Queue the 'service active' email once per service"""
    store = get_document_store()
    claimed = await store.create_if_absent(
        f"notifications/service_active/{service.id}", {'sentAt': iso_now(), 'userId': service.owner_user_id}
    )
    if not claimed:
        return

    email = invoice.user_email if invoice else None
    if not email or email == 'N/A':
        profile = await store.get(f"users/{service.owner_user_id}") or {}
        email = profile.get('email')
    if not email:
        logger.warning(f"📧 No email address for user {service.owner_user_id}; activation notice not sent")
        return

    dispatch_email(
        to=email,
        subject=f"Your {service.name} service is now active",
        type='service_active',
        payload={'Service': service.name, 'Service ID': service.id},
    )


async def confirm_payment(user_id: str, service_id: str, source: str,
                          reference: Optional[str] = None, revive: bool = False) -> ReconciliationOutcome:
    """
    Mark a service's invoice Paid and the service Active.

    Args:
        user_id: Owner of the service
        service_id: Service being paid for
        source: Confirmation source recorded on the invoice ('stripe', 'manual', 'admin')
        reference: Gateway reference such as a checkout session id
        revive: Allow activating a Suspended/Terminated/Banned service (admin override only)

    Store failures propagate to the caller.
    """
    store = get_document_store()
    outcome = ReconciliationOutcome(service_id=service_id)

    invoice = await find_invoice_for_service(service_id)
    if invoice is None:
        logger.warning(f"⚠️ No invoice found for service {service_id}; continuing with service activation")
    else:
        outcome.invoice_found = True
        outcome.invoice_id = invoice.id
        if invoice.owner_user_id and invoice.owner_user_id != user_id:
            logger.warning(f"⚠️ Invoice {invoice.id} belongs to {invoice.owner_user_id}, confirmation names {user_id}")
        if not invoice.is_paid:
            changes: Dict[str, Any] = {
                'status': InvoiceStatus.PAID.value,
                'paidAt': iso_now(),
                'paymentSource': source,
            }
            if reference:
                changes['paymentReference'] = reference
            await store.update(f"invoices/{invoice.id}", changes)
            outcome.invoice_marked_paid = True
            logger.info(f"💰 Invoice {invoice.id} marked Paid (source={source})")
        else:
            logger.info(f"🔁 Invoice {invoice.id} already Paid - no change")

    service = await _load_service(user_id, service_id)
    if service is None:
        logger.warning(f"⚠️ Service {service_id} for user {user_id} not found during payment confirmation")
        await send_warning_alert(
            "PaymentReconciler",
            "Payment confirmed for a service that does not exist",
            "payment_processing",
            {'service_id': service_id, 'user_id': user_id, 'source': source}
        )
        return outcome

    outcome.service_found = True
    outcome.previous_status = service.status.value

    if service.status == ServiceStatus.ACTIVE:
        logger.info(f"🔁 Service {service_id} already Active - no change")
    elif service.status in PAYABLE_SERVICE_STATUSES or revive:
        await store.update(service_path(user_id, service_id), {'status': ServiceStatus.ACTIVE.value})
        outcome.service_activated = True
        logger.info(f"✅ Service {service_id} activated ({service.status.value} -> Active, source={source})")
        await _notify_activation(service, invoice)
    else:
        logger.warning(f"⚠️ Service {service_id} is {service.status.value}; payment recorded but service not reactivated")
        await send_warning_alert(
            "PaymentReconciler",
            f"Payment received for {service.status.value} service",
            "payment_processing",
            {'service_id': service_id, 'user_id': user_id, 'source': source}
        )

    return outcome


async def confirm_manual_payment(service_id: str) -> ReconciliationOutcome:
    """Admin confirmation for gateways without an automatic callback"""
    invoice = await find_invoice_for_service(service_id)
    if invoice is None or not invoice.owner_user_id:
        raise NotFound(f"No invoice found for service {service_id}.")
    logger.info(f"🧾 Manual payment confirmation for service {service_id}")
    return await confirm_payment(invoice.owner_user_id, service_id, source='manual')


async def _record_signature_failure() -> None:
    now = time.monotonic()
    _signature_failures.append(now)
    while _signature_failures and now - _signature_failures[0] > SIGNATURE_FAILURE_WINDOW:
        _signature_failures.popleft()
    if len(_signature_failures) >= SIGNATURE_FAILURE_ALERT_THRESHOLD:
        await send_warning_alert(
            "StripeWebhook",
            "Repeated webhook signature failures",
            "security",
            {'failures': len(_signature_failures), 'window_seconds': SIGNATURE_FAILURE_WINDOW}
        )


async def verify_event(raw_payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
    """Verify the Stripe-Signature header and return the parsed event"""
    settings = await get_stripe_settings()
    if not settings.webhook_secret:
        logger.error("❌ Stripe webhook secret is not configured")
        raise NotConfigured("Stripe webhook secret is not configured.")

    if not signature:
        logger.warning("🔒 Stripe webhook rejected: missing signature header")
        await _record_signature_failure()
        raise SignatureInvalid()

    try:
        payload = raw_payload.decode('utf-8')
        stripe.WebhookSignature.verify_header(
            payload, signature, settings.webhook_secret, stripe.Webhook.DEFAULT_TOLERANCE
        )
    except (UnicodeDecodeError, stripe.SignatureVerificationError) as e:
        logger.warning(f"🔒 Stripe webhook rejected: signature verification failed ({type(e).__name__})")
        await _record_signature_failure()
        raise SignatureInvalid()

    try:
        event = json.loads(payload)
    except ValueError:
        logger.warning("🔒 Stripe webhook rejected: signed payload is not valid JSON")
        raise InvalidRequest("Invalid payload.")
    if not isinstance(event, dict):
        raise InvalidRequest("Invalid payload.")
    return event


def _extract_session(event: Dict[str, Any]) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    session = (event.get('data') or {}).get('object') or {}
    metadata = session.get('metadata') or {}
    return session, metadata


@monitor_performance("stripe_webhook")
async def on_gateway_event(raw_payload: bytes, signature: Optional[str]) -> Ack:
    """
    Handle one Stripe webhook delivery.

    Raises SignatureInvalid/InvalidRequest for untrusted input, NotConfigured when
    the webhook secret is missing, and lets store failures propagate so the
    gateway retries delivery.
    """
    event = await verify_event(raw_payload, signature)
    event_type = event.get('type')
    event_id = event.get('id')

    if event_type not in PAYMENT_SUCCESS_EVENTS:
        logger.info(f"📡 Stripe event {event_type} ({event_id}) acknowledged and ignored")
        return Ack(status='ignored', event_type=event_type, event_id=event_id)

    session, metadata = _extract_session(event)
    payment_status = session.get('payment_status')
    if event_type == 'checkout.session.completed' and payment_status not in SETTLED_PAYMENT_STATUSES + (None,):
        logger.info(f"📡 Checkout session {session.get('id')} completed with payment_status={payment_status}; awaiting settlement")
        return Ack(status='ignored', event_type=event_type, event_id=event_id,
                   details={'paymentStatus': payment_status})

    missing = [name for name in REQUIRED_METADATA if not metadata.get(name)]
    if missing:
        logger.error(f"❌ Stripe event {event_id} missing metadata {missing}; skipping")
        return Ack(status='skipped', event_type=event_type, event_id=event_id,
                   details={'error': 'Missing metadata'})

    user_id = str(metadata['userId'])
    service_id = str(metadata['serviceId'])
    logger.info(f"💳 Payment confirmed by Stripe for service {service_id} (event {event_id})")

    try:
        outcome = await confirm_payment(user_id, service_id, source='stripe', reference=session.get('id'))
    except Exception as e:
        await send_error_alert(
            "StripeWebhook",
            "Failed to apply confirmed payment; Stripe will retry",
            "webhook",
            {'service_id': service_id, 'event_id': event_id, 'error': type(e).__name__}
        )
        raise

    return Ack(status='processed', event_type=event_type, event_id=event_id,
               service_id=service_id, outcome=outcome)
