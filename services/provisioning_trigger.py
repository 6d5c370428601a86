"""
Provisioning trigger: the user-facing "create subdomain for my service" action
"""

import logging
from typing import Optional

from database import get_document_store
from services.email_dispatch import dispatch_email
from services.errors import ActionResult, NotEligible, error_to_result
from services.models import ServiceStatus
from services.order_orchestrator import load_service
from services.subdomain_provisioner import get_subdomain_provisioner, validate_label

logger = logging.getLogger(__name__)

# Paid (or free) services waiting for, or already holding, their hosting
PROVISIONABLE_STATUSES = (ServiceStatus.ACTIVE, ServiceStatus.PENDING_ACTIVATION)


async def _check_service(user_id: str, service_id: str) -> None:
    service = await load_service(user_id, service_id)
    if service.subdomain:
        raise NotEligible(f"This service already uses {service.subdomain}.")
    if service.status == ServiceStatus.PENDING:
        raise NotEligible("Complete payment before creating a subdomain.")
    if service.status not in PROVISIONABLE_STATUSES:
        raise NotEligible(f"This service is {service.status.value} and cannot be provisioned.")


async def _notify_owner(user_id: str, fqdn: str) -> None:
    profile = await get_document_store().get(f"users/{user_id}") or {}
    email = profile.get('email')
    if not email:
        logger.info(f"📧 No email on file for user {user_id}; skipping subdomain notice")
        return
    dispatch_email(
        to=email,
        subject=f"Your subdomain {fqdn} is ready",
        type='subdomain_created',
        payload={'Subdomain': fqdn},
    )


async def handle_subdomain_creation(label: str, user_id: str, service_id: Optional[str] = None) -> ActionResult:
    """Validate, check the service, provision and notify"""
    try:
        validate_label(label)
        if service_id:
            await _check_service(user_id, service_id)
        fqdn = await get_subdomain_provisioner().provision(label, user_id, service_id)
    except Exception as e:
        return error_to_result(e, 'handle_subdomain_creation')

    try:
        await _notify_owner(user_id, fqdn)
    except Exception as e:
        logger.error(f"❌ Could not queue subdomain notice for {fqdn}: {e}")

    return ActionResult.ok(
        f"Subdomain '{fqdn}' has been successfully created and is now active.",
        subdomain=fqdn,
    )
