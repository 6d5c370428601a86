"""
Order Orchestrator - Service + Invoice creation for hosting plan orders

Flow:
- Validate the request and apply the free-plan restriction policy
- Allocate a service id from the store (never from user input)
- Write the Service (plan fields snapshotted) then its Invoice
- Hand paid orders to the selected payment gateway

The store has no multi-key transactions: Service and Invoice are two
sequential writes. A crash between them leaves an orphan Service, which
reconcile_orphan_services() repairs.

Every invoice writer first claims service_invoices/{serviceId}, which
reserves the invoice id for that service. Writers never issue a second id
for a claimed service, so each service ends up with at most one invoice.
"""

import logging
import os
import time
from typing import Any, Dict, List, Optional, Union

from admin_alerts import send_critical_alert, send_warning_alert
from database import get_document_store, is_valid_key
from performance_monitor import monitor_performance
from platform_settings import get_company_details
from services.errors import (
    ActionResult, InvalidRequest, NotEligible, NotFound, WorkflowError, error_to_result
)
from services.models import (
    PAYABLE_SERVICE_STATUSES, Invoice, InvoiceStatus, Plan, Service, ServiceStatus, iso_now
)
from services.payment_gateways import CheckoutHandle, get_gateway, is_known_gateway
from services.payment_reconciler import ReconciliationOutcome, confirm_payment, find_invoice_for_service, service_path
from services.restriction_policy import enforce_free_order_limit, user_services_path

logger = logging.getLogger(__name__)

DEFAULT_CUSTOMER_NAME = 'Valued Customer'
DEFAULT_ORPHAN_GRACE_SECONDS = 300


def _require_key(value: Any, field_name: str, label: str) -> str:
    if not is_valid_key(value):
        raise InvalidRequest(f"{label} is required.", fields={field_name: f"{label} is required."})
    return value


def service_invoice_claim_path(service_id: str) -> str:
    return f"service_invoices/{service_id}"


def get_orphan_grace_seconds() -> int:
    """How long a fresh invoice claim counts as an order still in flight"""
    try:
        return max(0, int(os.getenv('ORPHAN_INVOICE_GRACE_SECONDS', str(DEFAULT_ORPHAN_GRACE_SECONDS))))
    except ValueError:
        return DEFAULT_ORPHAN_GRACE_SECONDS


async def claim_invoice_id(service: Service, invoice_id: str) -> bool:
    """Reserve invoice_id as the only invoice id for this service"""
    return await get_document_store().create_if_absent(service_invoice_claim_path(service.id), {
        'invoiceId': invoice_id,
        'userId': service.owner_user_id,
        'claimedAt': int(time.time()),
    })


async def load_plan(plan_id: str) -> Plan:
    """Read a plan from the catalog"""
    _require_key(plan_id, 'planId', 'Plan ID')
    data = await get_document_store().get(f"plans/{plan_id}")
    if data is None:
        raise NotFound("Plan not found.")
    try:
        return Plan.from_dict(data, plan_id=plan_id)
    except ValueError as e:
        logger.error(f"❌ Plan {plan_id} has invalid catalog data: {e}")
        raise InvalidRequest("This plan is not available for ordering.")


async def load_service(user_id: str, service_id: str) -> Service:
    """Read a service owned by user_id"""
    _require_key(user_id, 'userId', 'User ID')
    _require_key(service_id, 'serviceId', 'Service ID')
    data = await get_document_store().get(service_path(user_id, service_id))
    if data is None:
        raise NotFound("Service not found.")
    return Service.from_dict(data, owner_user_id=user_id, service_id=service_id)


async def _build_invoice(service: Service, invoice_id: str, status: InvoiceStatus) -> Invoice:
    """Invoice for a service with company and customer details frozen at this instant"""
    profile = await get_document_store().get(f"users/{service.owner_user_id}") or {}
    email = profile.get('email') or 'N/A'
    now = iso_now()
    return Invoice(
        id=invoice_id,
        service_id=service.id,
        owner_user_id=service.owner_user_id,
        service_name=service.name,
        amount=service.price,
        status=status,
        invoice_date=now,
        due_date=now,
        user_email=email,
        company_details=await get_company_details(),
        user_details={'email': email, 'name': profile.get('name') or DEFAULT_CUSTOMER_NAME},
    )


@monitor_performance("place_order")
async def place_order(user_id: str, plan: Plan, payment_method: Optional[str]) -> Service:
    """
    Create a Service and its Invoice for a plan.

    Zero-price plans are Active with a Paid invoice immediately; paid plans
    start Pending with an Unpaid invoice until payment is confirmed.
    """
    # Step 1: validate
    _require_key(user_id, 'userId', 'User ID')
    if plan is None or not is_valid_key(plan.id):
        raise InvalidRequest("Plan ID is required.", fields={'planId': 'Plan ID is required.'})
    if not plan.is_free and not is_known_gateway(payment_method):
        raise InvalidRequest("Please choose a payment method.",
                             fields={'paymentMethod': 'Unsupported payment method.'})
    if not plan.is_free:
        # Disabled or unconfigured gateways raise NotConfigured before any write
        await get_gateway(payment_method)

    # Step 2: restriction policy, before any write
    if plan.is_free:
        await enforce_free_order_limit(user_id, plan.price)

    store = get_document_store()

    # Step 3: opaque id from the store
    service_id = await store.push_key(user_services_path(user_id))

    # Steps 4-5: status and plan snapshot
    service = Service(
        id=service_id,
        owner_user_id=user_id,
        plan_id=plan.id,
        name=plan.name,
        price=plan.price,
        order_date=iso_now(),
        status=ServiceStatus.ACTIVE if plan.is_free else ServiceStatus.PENDING,
        payment_method=None if plan.is_free else payment_method.lower(),
        features=list(plan.features),
        storage=plan.storage,
    )
    await store.set(service_path(user_id, service_id), service.to_dict())
    logger.info(f"🛒 Service {service_id} created for user {user_id}: plan {plan.id} ({service.status.value})")

    # Step 6: invoice snapshot
    try:
        invoice_id = await store.push_key('invoices')
        if not await claim_invoice_id(service, invoice_id):
            logger.warning(f"⚠️ Invoice for service {service_id} is already being issued by reconciliation")
            return service
        invoice = await _build_invoice(
            service, invoice_id, InvoiceStatus.PAID if plan.is_free else InvoiceStatus.UNPAID
        )
        await store.set(f"invoices/{invoice_id}", invoice.to_dict())
    except WorkflowError:
        logger.critical(f"🚨 Service {service_id} for user {user_id} was created without an invoice")
        await send_critical_alert(
            "OrderOrchestrator",
            "Service created without invoice - run orphan reconciliation",
            "orders",
            {'service_id': service_id, 'user_id': user_id}
        )
        raise

    logger.info(f"🧾 Invoice {invoice_id} issued for service {service_id}: {invoice.amount} ({invoice.status.value})")

    # Step 7
    return service


@monitor_performance("start_checkout")
async def start_checkout(user_id: str, service_id: str, origin: Optional[str] = None) -> CheckoutHandle:
    """Ask the service's gateway for a checkout handle; never changes stored state"""
    service = await load_service(user_id, service_id)
    if service.status not in PAYABLE_SERVICE_STATUSES:
        raise NotEligible("This service does not need payment.")

    invoice = await find_invoice_for_service(service_id)
    if invoice is None:
        raise NotFound("No invoice found for this service.")
    if invoice.is_paid:
        raise NotEligible("This invoice has already been paid.")

    if not service.payment_method:
        raise InvalidRequest("This service has no payment method.", fields={'paymentMethod': 'Missing.'})

    gateway = await get_gateway(service.payment_method)
    return await gateway.create_checkout(service, invoice, customer_email=invoice.user_email, origin=origin)


async def update_service_status(user_id: str, service_id: str,
                                status: Union[ServiceStatus, str]) -> Union[Service, ReconciliationOutcome]:
    """
    Administrative status change.

    Active goes through the payment reconciler so the invoice flip keeps a
    single writer; other statuses are written directly.
    """
    if not isinstance(status, ServiceStatus):
        try:
            status = ServiceStatus.parse(status)
        except ValueError:
            raise InvalidRequest("Invalid status.", fields={'status': f"Unknown status: {status}"})

    service = await load_service(user_id, service_id)

    if status == ServiceStatus.ACTIVE:
        logger.info(f"🔧 Admin activating service {service_id} (was {service.status.value})")
        return await confirm_payment(user_id, service_id, source='admin', revive=True)

    await get_document_store().update(service_path(user_id, service_id), {'status': status.value})
    logger.info(f"🔧 Admin changed service {service_id} status: {service.status.value} -> {status.value}")
    service.status = status
    return service


async def reconcile_orphan_services() -> List[str]:
    """
    Issue the missing invoice for every Service that has none.

    The invoice amount comes from the service's own price snapshot. It is
    issued Paid when the service is free or already Active. Services whose
    invoice claim is younger than the grace period belong to an order still
    in flight and are left alone.
    """
    store = get_document_store()
    grace_seconds = get_orphan_grace_seconds()
    invoiced_services = {
        data.get('serviceId') for data in (await store.list_children('invoices')).values()
    }

    repaired = []
    for user_id in await store.list_child_keys('users'):
        services = await store.list_children(user_services_path(user_id))
        for service_id, data in services.items():
            if service_id in invoiced_services:
                continue
            try:
                service = Service.from_dict(data, owner_user_id=user_id, service_id=service_id)
            except ValueError as e:
                logger.error(f"❌ Orphan service {service_id} of user {user_id} is unreadable: {e}")
                continue

            invoice_id = await store.push_key('invoices')
            if not await claim_invoice_id(service, invoice_id):
                claim = await store.get(service_invoice_claim_path(service_id)) or {}
                if time.time() - int(claim.get('claimedAt', 0)) < grace_seconds:
                    logger.info(f"⏳ Service {service_id} has an invoice in flight, skipping")
                    continue
                # Stale claim from an order that never wrote its invoice: reuse its id
                if is_valid_key(claim.get('invoiceId')):
                    invoice_id = claim['invoiceId']
                if await store.get(f"invoices/{invoice_id}") is not None:
                    continue

            paid = service.is_free or service.status == ServiceStatus.ACTIVE
            invoice = await _build_invoice(service, invoice_id, InvoiceStatus.PAID if paid else InvoiceStatus.UNPAID)
            invoice.payment_source = 'reconciliation' if paid and not service.is_free else None
            await store.set(f"invoices/{invoice_id}", invoice.to_dict())
            invoiced_services.add(service_id)
            repaired.append(service_id)
            logger.warning(f"🩹 Issued missing invoice {invoice_id} for orphan service {service_id}")

    if repaired:
        await send_warning_alert(
            "OrderOrchestrator",
            f"Repaired {len(repaired)} service(s) without invoice",
            "orders",
            {'service_ids': repaired}
        )
    else:
        logger.info("✅ Orphan reconciliation found no services without invoice")
    return repaired


# ====================================================================
# USER-FACING ACTIONS
# ====================================================================

async def order_service(user_id: str, plan_id: str, payment_method: Optional[str],
                        origin: Optional[str] = None) -> ActionResult:
    """Place an order and, for paid plans, start checkout"""
    try:
        plan = await load_plan(plan_id)
        service = await place_order(user_id, plan, payment_method)
    except Exception as e:
        return error_to_result(e, 'order_service')

    if service.is_free:
        return ActionResult.ok("Your free service is now active!", service=service.to_dict())

    try:
        handle = await start_checkout(user_id, service.id, origin=origin)
    except Exception as e:
        # Order stands; the client can retry checkout for this service
        result = error_to_result(e, 'order_service.checkout')
        result.data = {'service': service.to_dict()}
        return result

    return ActionResult.ok(
        "Order placed. Complete payment to activate your service.",
        service=service.to_dict(),
        checkout=handle.to_dict(),
    )


async def checkout_service(user_id: str, service_id: str, origin: Optional[str] = None) -> ActionResult:
    """Retry or resume checkout for a pending service"""
    try:
        handle = await start_checkout(user_id, service_id, origin=origin)
    except Exception as e:
        return error_to_result(e, 'checkout_service')
    return ActionResult.ok("Checkout ready.", checkout=handle.to_dict())


def describe_status_change(result: Union[Service, ReconciliationOutcome]) -> Dict[str, Any]:
    if isinstance(result, ReconciliationOutcome):
        return dict(result.to_dict(), status=ServiceStatus.ACTIVE.value)
    return {'serviceId': result.id, 'status': result.status.value}
