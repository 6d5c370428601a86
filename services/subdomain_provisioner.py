"""
Subdomain provisioning on the external hosting API
Creates <label>.<root domain> on the host, records it, links it to a service
and issues the first panel credentials
"""

import logging
import re
from typing import List, Optional

import httpx

from admin_alerts import send_critical_alert, send_error_alert
from database import encode_key, get_document_store, is_valid_key
from performance_monitor import monitor_performance
from platform_settings import get_provisioning_settings, get_root_domain
from services.errors import (
    AlreadyTaken, DependencyTimeout, InvalidLabel, InvalidRequest, NotConfigured,
    ProvisioningFailed, WorkflowError
)
from services.models import ServiceStatus, Subdomain, iso_now
from services.panel_sessions import generate_panel_credential, store_panel_credential
from services.payment_reconciler import service_path
from utils.environment import get_external_api_timeout

logger = logging.getLogger(__name__)

LABEL_PATTERN = re.compile(r'^[a-z0-9]+(?:-[a-z0-9]+)*$')
LABEL_MIN_LENGTH = 3
LABEL_MAX_LENGTH = 30


def validate_label(label) -> str:
    """Return the label unchanged or raise InvalidLabel"""
    if not isinstance(label, str) or not label:
        raise InvalidLabel("Subdomain is required.", fields={'subdomain': 'Subdomain is required.'})
    if len(label) < LABEL_MIN_LENGTH:
        message = f"Subdomain must be at least {LABEL_MIN_LENGTH} characters long."
        raise InvalidLabel(message, fields={'subdomain': message})
    if len(label) > LABEL_MAX_LENGTH:
        message = f"Subdomain must be no more than {LABEL_MAX_LENGTH} characters long."
        raise InvalidLabel(message, fields={'subdomain': message})
    if not LABEL_PATTERN.match(label):
        raise InvalidLabel(fields={'subdomain': InvalidLabel.default_message})
    return label


class ProvisioningApiClient:
    """Client for the hosting provider's subdomain creation endpoint"""

    def __init__(self, api_url: str, api_token: str = '', timeout: Optional[float] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        if not api_url:
            raise NotConfigured("The provisioning API is not configured by the administrator.")
        self.api_url = api_url
        self.api_token = api_token
        self.timeout = timeout or get_external_api_timeout()
        self.transport = transport

    async def create_subdomain(self, label: str, root_domain: str, target_directory: str) -> None:
        """POST the form and require a JSON body with status == 1"""
        form = {'subdomain': label, 'rootdomain': root_domain, 'dir': target_directory}
        headers = {'Accept': 'application/json'}
        if self.api_token:
            headers['Authorization'] = f"Bearer {self.api_token}"

        try:
            async with httpx.AsyncClient(timeout=httpx.Timeout(self.timeout), transport=self.transport) as client:
                response = await client.post(self.api_url, data=form, headers=headers)
        except httpx.TimeoutException:
            logger.error(f"⏱️ Provisioning API timed out after {self.timeout}s creating {label}.{root_domain}")
            raise DependencyTimeout(details={'label': label, 'root_domain': root_domain})
        except httpx.HTTPError as e:
            logger.error(f"❌ Provisioning API request failed for {label}.{root_domain}: {e}")
            raise ProvisioningFailed(f"An exception occurred while calling the API: {type(e).__name__}",
                                     details={'error': str(e)})

        if not response.is_success:
            logger.error(f"❌ Provisioning API returned HTTP {response.status_code} for {label}.{root_domain}: {response.text[:500]}")
            raise ProvisioningFailed(f"API call failed with status {response.status_code}.",
                                     details={'status_code': response.status_code})

        try:
            data = response.json()
        except ValueError:
            logger.error(f"❌ Unparseable provisioning API response for {label}.{root_domain}: {response.text[:500]}")
            raise ProvisioningFailed("Failed to parse API response.", details={'body': response.text[:500]})

        if isinstance(data, dict) and data.get('status') == 1:
            logger.info(f"🌐 Provisioning API created {label}.{root_domain}")
            return

        errors = data.get('errors') if isinstance(data, dict) else None
        error_message = errors[0] if isinstance(errors, list) and errors else 'Unknown API error during creation.'
        logger.error(f"❌ Provisioning API refused {label}.{root_domain}: {error_message}")
        raise ProvisioningFailed(f"API Error: {error_message}", details={'response': data})


class SubdomainProvisioner:
    """
    Provision a subdomain and bind it to a service.

    The fully-qualified name is claimed with a single-key create-if-absent
    before the external call, so two concurrent requests for the same label
    cannot both reach the API. The claim is released if provisioning fails.
    """

    def __init__(self, api_client: Optional[ProvisioningApiClient] = None):
        self.api_client = api_client

    async def _get_api_client(self) -> ProvisioningApiClient:
        if self.api_client is not None:
            return self.api_client
        settings = await get_provisioning_settings()
        return ProvisioningApiClient(settings.api_url, settings.api_token)

    async def _target_directory(self, fqdn: str, label: str) -> str:
        settings = await get_provisioning_settings()
        return settings.target_directory(fqdn, label)

    async def _claim(self, path: str, user_id: str, service_id: Optional[str], fqdn: str) -> bool:
        return await get_document_store().create_if_absent(path, {
            'userId': user_id,
            'serviceId': service_id,
            'subdomain': fqdn,
            'claimedAt': iso_now(),
            'state': 'pending',
        })

    async def _release(self, *paths: str) -> None:
        store = get_document_store()
        for path in paths:
            try:
                await store.remove(path)
            except WorkflowError as e:
                logger.error(f"❌ Failed to release subdomain claim {path}: {e}")

    @monitor_performance("provision_subdomain")
    async def provision(self, label: str, user_id: str, service_id: Optional[str] = None) -> str:
        """Create label.<root domain>; returns the fully-qualified name"""
        validate_label(label)
        if not is_valid_key(user_id):
            raise InvalidRequest("User ID is required.", fields={'userId': 'User ID is required.'})
        if service_id is not None and not is_valid_key(service_id):
            raise InvalidRequest("Invalid service ID.", fields={'serviceId': 'Invalid service ID.'})

        root_domain = await get_root_domain()
        if not root_domain:
            raise NotConfigured("The main domain is not configured by the administrator.")
        fqdn = f"{label}.{root_domain}"
        taken_message = f"The subdomain '{fqdn}' is already taken. Please choose another one."

        store = get_document_store()
        if await store.query_by_child('subdomains', 'subdomain', fqdn):
            raise AlreadyTaken(taken_message)
        if service_id and await store.query_by_child('subdomains', 'serviceId', service_id):
            raise AlreadyTaken("This service already has a subdomain.")

        name_claim = f"subdomain_names/{encode_key(fqdn)}"
        if not await self._claim(name_claim, user_id, service_id, fqdn):
            logger.info(f"🚫 Subdomain {fqdn} already claimed by a concurrent request")
            raise AlreadyTaken(taken_message)
        claims = [name_claim]
        if service_id:
            service_claim = f"subdomain_services/{service_id}"
            if not await self._claim(service_claim, user_id, service_id, fqdn):
                await self._release(name_claim)
                raise AlreadyTaken("This service already has a subdomain.")
            claims.append(service_claim)

        try:
            api_client = await self._get_api_client()
            await api_client.create_subdomain(label, root_domain, await self._target_directory(fqdn, label))
        except (ProvisioningFailed, DependencyTimeout) as e:
            await self._release(*claims)
            await send_error_alert(
                "SubdomainProvisioner",
                f"Provisioning API failed for {fqdn}",
                "provisioning",
                {'fqdn': fqdn, 'user_id': user_id, 'error_code': e.code, 'error': e.user_message}
            )
            raise
        except Exception:
            await self._release(*claims)
            raise

        subdomain_id = await store.push_key('subdomains')
        record = Subdomain(id=subdomain_id, name=fqdn, owner_user_id=user_id,
                           created_at=iso_now(), service_id=service_id)
        try:
            await store.set(f"subdomains/{subdomain_id}", record.to_dict())
            await store.update(name_claim, {'state': 'active', 'subdomainId': subdomain_id})
            logger.info(f"✅ Subdomain {fqdn} recorded as {subdomain_id} for user {user_id}")

            if service_id:
                credential = generate_panel_credential(label, user_id, service_id)
                await store.update(service_path(user_id, service_id), {
                    'subdomain': fqdn,
                    'status': ServiceStatus.ACTIVE.value,
                    'panelUsername': label,
                })
                await store_panel_credential(credential)
                logger.info(f"🔗 Service {service_id} linked to {fqdn} and activated")
        except WorkflowError:
            # Host already has the subdomain; the claim stays so the name is not reissued
            await send_critical_alert(
                "SubdomainProvisioner",
                f"Subdomain {fqdn} created on host but local records are incomplete",
                "provisioning",
                {'fqdn': fqdn, 'user_id': user_id, 'service_id': service_id}
            )
            raise

        return fqdn


_provisioner: Optional[SubdomainProvisioner] = None


def get_subdomain_provisioner() -> SubdomainProvisioner:
    global _provisioner
    if _provisioner is None:
        _provisioner = SubdomainProvisioner()
    return _provisioner


def set_subdomain_provisioner(provisioner: Optional[SubdomainProvisioner]) -> None:
    global _provisioner
    _provisioner = provisioner


async def list_user_subdomains(user_id: str) -> List[Subdomain]:
    if not is_valid_key(user_id):
        raise InvalidRequest("User ID is required.")
    records = await get_document_store().query_by_child('subdomains', 'userId', user_id)
    return [Subdomain.from_dict(data, subdomain_id) for subdomain_id, data in records.items()]
