"""
Panel login issuance

Each login mints a fresh password and bearer token for the service's panel
username and overwrites pannelneed/{username}, so only the latest session
is valid. The external panel reads that path, redeems the token and enforces
the expiry. PANEL_SESSION_ROOT overrides the root for panels that read elsewhere.
"""

import hmac
import logging
import os
import secrets
import time
from typing import Optional

from database import get_document_store, is_valid_key
from services.errors import ActionResult, InvalidRequest, NotEligible, error_to_result
from services.models import PanelCredential, ServiceStatus, Service
from services.payment_reconciler import service_path

logger = logging.getLogger(__name__)

PANEL_SESSION_TTL = 3600
DEFAULT_PANEL_SESSION_ROOT = 'pannelneed'
PASSWORD_BYTES = 12
TOKEN_BYTES = 32


def panel_session_path(username: str) -> str:
    root = os.getenv('PANEL_SESSION_ROOT', DEFAULT_PANEL_SESSION_ROOT).strip('/') or DEFAULT_PANEL_SESSION_ROOT
    return f"{root}/{username}"


def panel_username_for(subdomain: str) -> str:
    """Panel username is the subdomain's first label"""
    return subdomain.split('.')[0]


def generate_panel_credential(username: str, user_id: str, service_id: Optional[str] = None,
                              now: Optional[float] = None) -> PanelCredential:
    issued_at = int(time.time() if now is None else now)
    return PanelCredential(
        username=username,
        password=secrets.token_hex(PASSWORD_BYTES),
        token=secrets.token_hex(TOKEN_BYTES),
        expires_at=issued_at + PANEL_SESSION_TTL,
        user_id=user_id,
        service_id=service_id,
    )


async def store_panel_credential(credential: PanelCredential) -> None:
    await get_document_store().set(panel_session_path(credential.username), credential.to_dict())


async def issue_panel_session(user_id: str, service_id: str) -> PanelCredential:
    """Mint new panel credentials for an owned, Active service with a subdomain"""
    if not is_valid_key(user_id) or not is_valid_key(service_id):
        raise InvalidRequest("User ID and Service ID are required.")

    data = await get_document_store().get(service_path(user_id, service_id))
    if data is None:
        raise NotEligible("Service not found.")
    service = Service.from_dict(data, owner_user_id=user_id, service_id=service_id)

    if service.status != ServiceStatus.ACTIVE:
        raise NotEligible("This service is not active.")
    if not service.subdomain:
        raise NotEligible("Subdomain not found for this service.")

    credential = generate_panel_credential(panel_username_for(service.subdomain), user_id, service_id)
    await store_panel_credential(credential)
    logger.info(f"🔑 Panel session issued for {credential.username} (service {service_id}), expires {credential.expires_at}")
    return credential


async def handle_panel_login(user_id: str, service_id: str) -> ActionResult:
    try:
        credential = await issue_panel_session(user_id, service_id)
    except Exception as e:
        return error_to_result(e, 'handle_panel_login')
    return ActionResult.ok("Panel session created.", credentials=credential.to_public_dict())


async def _load_live_credential(username: str, token: str, now: Optional[float]) -> Optional[PanelCredential]:
    if not is_valid_key(username) or not token:
        return None
    data = await get_document_store().get(panel_session_path(username))
    if data is None:
        return None
    credential = PanelCredential.from_dict(data, username)
    if credential.is_expired(now):
        logger.info(f"⌛ Panel token for {username} expired at {credential.expires_at}")
        return None
    if not hmac.compare_digest(credential.token.encode(), token.encode()):
        return None
    return credential


async def validate_panel_token(username: str, token: str, now: Optional[float] = None) -> bool:
    """Check a presented token against the stored session, including its expiry"""
    return await _load_live_credential(username, token, now) is not None


async def redeem_panel_token(username: str, token: str, now: Optional[float] = None) -> Optional[PanelCredential]:
    """
    Validate a token and consume it; returns the credential on success.

    Consumption is a conditional delete on the stored token, so of several
    concurrent redeems only the one that removes the session succeeds. A login
    that replaced the session in the meantime also makes the delete miss.
    """
    credential = await _load_live_credential(username, token, now)
    if credential is None:
        logger.warning(f"🔒 Rejected panel token for {username}")
        return None
    consumed = await get_document_store().remove_if_match(panel_session_path(username), 'access_token', token)
    if not consumed:
        logger.warning(f"🔒 Panel token for {username} was already redeemed or replaced")
        return None
    logger.info(f"🔓 Panel token redeemed for {username}")
    return credential
