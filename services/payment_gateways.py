"""
Payment gateway adapters
Uniform checkout interface over the automatic card gateway (Stripe) and the
manual peer-to-peer gateway (UPI deep link)

Adapters only describe how the customer pays. They never change Service or
Invoice state; confirmation belongs to the payment reconciler or an admin.
"""

import asyncio
import base64
import logging
from dataclasses import dataclass
from io import BytesIO
from typing import Any, Dict, List, Optional
from urllib.parse import quote, urlencode

import stripe
from qrcode import QRCode

from brand_config import get_plan_product_description
from platform_settings import StripeSettings, UpiSettings, get_stripe_settings, get_upi_settings
from services.errors import DependencyTimeout, GatewayError, NotConfigured
from services.models import Invoice, Service
from utils.environment import get_external_api_timeout, get_public_base_url

logger = logging.getLogger(__name__)

STRIPE = 'stripe'
UPI = 'upi'
GATEWAY_NAMES = (STRIPE, UPI)


@dataclass
class CheckoutHandle:
    """What the client needs to continue payment: a hosted page redirect or a deep link"""
    kind: str
    gateway: str
    service_id: str
    session_id: Optional[str] = None
    url: Optional[str] = None
    link: Optional[str] = None
    qr_code: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {'kind': self.kind, 'gateway': self.gateway, 'serviceId': self.service_id}
        if self.session_id:
            data['sessionId'] = self.session_id
        if self.url:
            data['url'] = self.url
        if self.link:
            data['link'] = self.link
        if self.qr_code:
            data['qrCode'] = self.qr_code
        return data


def render_qr_data_uri(payload: str) -> str:
    """PNG QR code for a payment link, as a data: URI for checkout pages"""
    qr = QRCode(version=1, box_size=10, border=5)
    qr.add_data(payload)
    qr.make(fit=True)

    qr_image = qr.make_image(fill_color="black", back_color="white")
    bio = BytesIO()
    qr_image.save(bio, format='PNG')
    return "data:image/png;base64," + base64.b64encode(bio.getvalue()).decode('ascii')


class PaymentGateway:
    """Base class for payment gateway adapters"""

    name = 'abstract'
    is_automatic = False

    async def create_checkout(self, service: Service, invoice: Invoice,
                              customer_email: Optional[str] = None,
                              origin: Optional[str] = None) -> CheckoutHandle:
        raise NotImplementedError


class StripeCheckoutGateway(PaymentGateway):
    """Hosted Stripe Checkout; payment is confirmed later by webhook"""

    name = STRIPE
    is_automatic = True

    def __init__(self, settings: StripeSettings):
        if not settings.can_create_sessions:
            raise NotConfigured("Stripe is not enabled or its secret key is not configured.")
        self.settings = settings

    def build_session_params(self, service: Service, invoice: Invoice,
                             customer_email: Optional[str], origin: str) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            'payment_method_types': ['card'],
            'line_items': [{
                'price_data': {
                    'currency': self.settings.currency,
                    'product_data': {
                        'name': service.name,
                        'description': get_plan_product_description(service.name),
                    },
                    # Minor units; amount comes from the invoice snapshot, not the live plan
                    'unit_amount': int(invoice.amount * 100),
                },
                'quantity': 1,
            }],
            'mode': 'payment',
            'success_url': f"{origin}/dashboard/services?payment_success=true",
            'cancel_url': f"{origin}/dashboard/order/{service.plan_id}?payment_canceled=true",
            'metadata': {
                'userId': service.owner_user_id,
                'planId': service.plan_id,
                'serviceId': service.id,
            },
        }
        if customer_email and customer_email != 'N/A':
            params['customer_email'] = customer_email
        return params

    async def create_checkout(self, service: Service, invoice: Invoice,
                              customer_email: Optional[str] = None,
                              origin: Optional[str] = None) -> CheckoutHandle:
        origin = (origin or get_public_base_url()).rstrip('/')
        params = self.build_session_params(service, invoice, customer_email, origin)
        timeout = get_external_api_timeout()

        logger.info(f"💳 Creating Stripe checkout session for service {service.id} ({invoice.amount} {self.settings.currency.upper()})")
        try:
            session = await asyncio.wait_for(
                stripe.checkout.Session.create_async(api_key=self.settings.secret_key, **params),
                timeout=timeout
            )
        except asyncio.TimeoutError:
            logger.error(f"⏱️ Stripe checkout session creation timed out after {timeout}s for service {service.id}")
            raise DependencyTimeout(details={'gateway': STRIPE, 'service_id': service.id})
        except stripe.StripeError as e:
            logger.error(f"❌ Stripe refused checkout session for service {service.id}: {e.user_message or e}")
            raise GatewayError(details={'gateway': STRIPE, 'service_id': service.id, 'error': str(e)})

        logger.info(f"✅ Stripe checkout session {session.id} created for service {service.id}")
        return CheckoutHandle(kind='redirect', gateway=STRIPE, service_id=service.id,
                              session_id=session.id, url=getattr(session, 'url', None))


class UpiGateway(PaymentGateway):
    """UPI deep link; an admin confirms the transfer manually"""

    name = UPI
    is_automatic = False

    def __init__(self, settings: UpiSettings):
        if not settings.can_create_links:
            raise NotConfigured("UPI payments are not enabled or the UPI ID is not configured.")
        self.settings = settings

    def build_link(self, service: Service, invoice: Invoice) -> str:
        query = urlencode({
            'pa': self.settings.upi_id,
            'pn': self.settings.upi_name,
            'am': f"{invoice.amount:.2f}",
            'cu': 'INR',
            'tn': f"Order #{service.id} for {service.name}",
        }, quote_via=quote)
        return f"upi://pay?{query}"

    async def create_checkout(self, service: Service, invoice: Invoice,
                              customer_email: Optional[str] = None,
                              origin: Optional[str] = None) -> CheckoutHandle:
        link = self.build_link(service, invoice)
        logger.info(f"📱 UPI payment link issued for service {service.id}")
        return CheckoutHandle(kind='link', gateway=UPI, service_id=service.id, link=link,
                              qr_code=render_qr_data_uri(link))


async def _build_stripe() -> PaymentGateway:
    return StripeCheckoutGateway(await get_stripe_settings())


async def _build_upi() -> PaymentGateway:
    return UpiGateway(await get_upi_settings())


# Explicit registry: gateway name -> adapter builder reading live settings
_GATEWAY_BUILDERS = {
    STRIPE: _build_stripe,
    UPI: _build_upi,
}


def is_known_gateway(name: Optional[str]) -> bool:
    return (name or '').lower() in _GATEWAY_BUILDERS


async def get_gateway(name: str) -> PaymentGateway:
    """Build the adapter for a gateway name from current settings"""
    builder = _GATEWAY_BUILDERS.get((name or '').lower())
    if builder is None:
        raise NotConfigured(f"Unknown payment method: {name}")
    return await builder()


async def list_enabled_gateways() -> List[Dict[str, Any]]:
    """Gateways a checkout screen may offer right now"""
    enabled = []
    for name in GATEWAY_NAMES:
        try:
            gateway = await get_gateway(name)
        except NotConfigured:
            continue
        entry: Dict[str, Any] = {'name': gateway.name, 'automatic': gateway.is_automatic}
        if isinstance(gateway, StripeCheckoutGateway):
            entry.update(gateway.settings.public_dict())
        enabled.append(entry)
    return enabled
