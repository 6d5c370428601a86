"""
Free-plan restriction policy

When the admin enables freeUserLimitEnabled, a user may own at most one
zero-price service in any status. The check reads current state only and is
best-effort: two concurrent free orders can both pass it.
"""

import logging
from decimal import Decimal

from database import get_document_store
from platform_settings import is_free_user_limit_enabled
from services.errors import LimitExceeded
from services.models import to_money

logger = logging.getLogger(__name__)


def user_services_path(user_id: str) -> str:
    return f"users/{user_id}/services"


async def owns_free_service(user_id: str) -> bool:
    """True when the user has any zero-price service, whatever its status"""
    services = await get_document_store().list_children(user_services_path(user_id))
    for service_id, data in services.items():
        try:
            if to_money(data.get('price', 0)) == 0:
                return True
        except ValueError:
            logger.warning(f"⚠️ Service {service_id} of user {user_id} has an unreadable price: {data.get('price')!r}")
    return False


async def allow_free_order(user_id: str, plan_price: Decimal) -> bool:
    if to_money(plan_price) != 0:
        return True
    if not await is_free_user_limit_enabled():
        return True
    return not await owns_free_service(user_id)


async def enforce_free_order_limit(user_id: str, plan_price: Decimal) -> None:
    if not await allow_free_order(user_id, plan_price):
        logger.info(f"🚫 Free service limit reached for user {user_id}")
        raise LimitExceeded()
