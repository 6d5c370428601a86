"""
Workflow records: plans, services, invoices, subdomains, panel credentials

Records are stored as JSON documents with camelCase keys; these dataclasses are
the Python view of them. Money is Decimal and serialized as a 2-place string.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, List, Optional


class ServiceStatus(Enum):
    PENDING = "Pending"
    PENDING_ACTIVATION = "Pending Activation"
    ACTIVE = "Active"
    SUSPENDED = "Suspended"
    TERMINATED = "Terminated"
    BANNED = "Banned"

    @classmethod
    def parse(cls, value: str) -> 'ServiceStatus':
        for status in cls:
            if status.value.lower() == str(value).strip().lower():
                return status
        raise ValueError(f"Unknown service status: {value}")


# Statuses a confirmed payment may move to Active
PAYABLE_SERVICE_STATUSES = (ServiceStatus.PENDING, ServiceStatus.PENDING_ACTIVATION)


class InvoiceStatus(Enum):
    UNPAID = "Unpaid"
    PAID = "Paid"


def to_money(value: Any) -> Decimal:
    """Parse a stored or submitted price into a 2-place Decimal"""
    if isinstance(value, bool) or value is None:
        raise ValueError(f"Invalid money value: {value!r}")
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValueError(f"Invalid money value: {value!r}")
    if not amount.is_finite():
        raise ValueError(f"Invalid money value: {value!r}")
    return amount.quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)


def money_str(amount: Decimal) -> str:
    return str(to_money(amount))


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def iso_now() -> str:
    return utc_now().isoformat()


@dataclass(frozen=True)
class Plan:
    """Immutable catalog entry"""
    id: str
    name: str
    price: Decimal
    features: List[str] = field(default_factory=list)
    storage: str = ''

    @property
    def is_free(self) -> bool:
        return self.price == 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any], plan_id: Optional[str] = None) -> 'Plan':
        price = to_money(data.get('price', 0))
        if price < 0:
            raise ValueError("Plan price must not be negative")
        return cls(
            id=str(plan_id or data.get('id') or ''),
            name=str(data.get('name', '')),
            price=price,
            features=list(data.get('features') or []),
            storage=str(data.get('storage', '')),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'price': money_str(self.price),
            'features': list(self.features),
            'storage': self.storage,
        }


@dataclass
class Service:
    """A user's instance of a plan, with the plan fields snapshotted at order time"""
    id: str
    owner_user_id: str
    plan_id: str
    name: str
    price: Decimal
    order_date: str
    status: ServiceStatus
    payment_method: Optional[str] = None
    features: List[str] = field(default_factory=list)
    storage: str = ''
    subdomain: Optional[str] = None
    panel_username: Optional[str] = None

    @property
    def is_free(self) -> bool:
        return self.price == 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any], owner_user_id: str, service_id: Optional[str] = None) -> 'Service':
        return cls(
            id=str(service_id or data.get('id')),
            owner_user_id=owner_user_id,
            plan_id=str(data.get('planId', '')),
            name=str(data.get('name', '')),
            price=to_money(data.get('price', 0)),
            order_date=str(data.get('orderDate', '')),
            status=ServiceStatus.parse(data.get('status', ServiceStatus.PENDING.value)),
            payment_method=data.get('paymentMethod'),
            features=list(data.get('features') or []),
            storage=str(data.get('storage', '')),
            subdomain=data.get('subdomain'),
            panel_username=data.get('panelUsername'),
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            'id': self.id,
            'planId': self.plan_id,
            'name': self.name,
            'price': money_str(self.price),
            'features': list(self.features),
            'storage': self.storage,
            'orderDate': self.order_date,
            'status': self.status.value,
            'paymentMethod': self.payment_method,
        }
        if self.subdomain:
            data['subdomain'] = self.subdomain
        if self.panel_username:
            data['panelUsername'] = self.panel_username
        return data


@dataclass
class Invoice:
    """Billing record for one service; amount and snapshots never change after issue"""
    id: str
    service_id: str
    owner_user_id: str
    service_name: str
    amount: Decimal
    status: InvoiceStatus
    invoice_date: str
    due_date: str
    user_email: str = 'N/A'
    company_details: Dict[str, Any] = field(default_factory=dict)
    user_details: Dict[str, Any] = field(default_factory=dict)
    paid_at: Optional[str] = None
    payment_source: Optional[str] = None

    @property
    def is_paid(self) -> bool:
        return self.status == InvoiceStatus.PAID

    @classmethod
    def from_dict(cls, data: Dict[str, Any], invoice_id: str) -> 'Invoice':
        return cls(
            id=invoice_id,
            service_id=str(data.get('serviceId', '')),
            owner_user_id=str(data.get('userId', '')),
            service_name=str(data.get('serviceName', '')),
            amount=to_money(data.get('amount', 0)),
            status=InvoiceStatus(data.get('status', InvoiceStatus.UNPAID.value)),
            invoice_date=str(data.get('invoiceDate', '')),
            due_date=str(data.get('dueDate', '')),
            user_email=str(data.get('userEmail', 'N/A')),
            company_details=dict(data.get('companyDetails') or {}),
            user_details=dict(data.get('userDetails') or {}),
            paid_at=data.get('paidAt'),
            payment_source=data.get('paymentSource'),
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            'userId': self.owner_user_id,
            'serviceId': self.service_id,
            'serviceName': self.service_name,
            'amount': money_str(self.amount),
            'status': self.status.value,
            'invoiceDate': self.invoice_date,
            'dueDate': self.due_date,
            'userEmail': self.user_email,
            'companyDetails': dict(self.company_details),
            'userDetails': dict(self.user_details),
        }
        if self.paid_at:
            data['paidAt'] = self.paid_at
        if self.payment_source:
            data['paymentSource'] = self.payment_source
        return data


@dataclass
class Subdomain:
    id: str
    name: str
    owner_user_id: str
    created_at: str
    service_id: Optional[str] = None
    status: str = 'Active'

    @property
    def label(self) -> str:
        return self.name.split('.')[0]

    @classmethod
    def from_dict(cls, data: Dict[str, Any], subdomain_id: str) -> 'Subdomain':
        return cls(
            id=subdomain_id,
            name=str(data.get('subdomain', '')),
            owner_user_id=str(data.get('userId', '')),
            created_at=str(data.get('createdAt', '')),
            service_id=data.get('serviceId'),
            status=str(data.get('status', 'Active')),
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            'userId': self.owner_user_id,
            'subdomain': self.name,
            'createdAt': self.created_at,
            'status': self.status,
        }
        if self.service_id:
            data['serviceId'] = self.service_id
        return data


@dataclass
class PanelCredential:
    """Short-lived panel login bundle, stored in the side channel keyed by username"""
    username: str
    password: str
    token: str
    expires_at: int
    user_id: str
    service_id: Optional[str] = None

    def is_expired(self, now: Optional[float] = None) -> bool:
        current = utc_now().timestamp() if now is None else now
        return current >= self.expires_at

    @classmethod
    def from_dict(cls, data: Dict[str, Any], username: str) -> 'PanelCredential':
        return cls(
            username=username,
            password=str(data.get('password', '')),
            token=str(data.get('access_token', '')),
            expires_at=int(data.get('expires_at', 0)),
            user_id=str(data.get('userId', '')),
            service_id=data.get('serviceId'),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'password': self.password,
            'access_token': self.token,
            'expires_at': self.expires_at,
            'userId': self.user_id,
            'serviceId': self.service_id,
        }

    def to_public_dict(self) -> Dict[str, Any]:
        return {
            'username': self.username,
            'password': self.password,
            'token': self.token,
            'expiresAt': self.expires_at,
        }
