"""
JSON API routes for ordering, checkout, subdomains, panel sessions and admin actions

Authentication happens upstream: the auth proxy sets X-User-Id for customers.
Admin routes require X-Admin-Token to match ADMIN_API_TOKEN.
"""

import hmac
import json
import logging
import os
from typing import Any, Dict, Optional

from aiohttp import web
from aiohttp.web_request import Request
from aiohttp.web_response import Response

from database import is_valid_key
from services.errors import ActionResult, error_to_result, http_status_for
from services.order_orchestrator import (
    checkout_service, describe_status_change, order_service, reconcile_orphan_services,
    update_service_status
)
from services.panel_sessions import handle_panel_login, redeem_panel_token
from services.payment_gateways import list_enabled_gateways
from services.payment_reconciler import confirm_manual_payment
from services.provisioning_trigger import handle_subdomain_creation
from services.subdomain_provisioner import list_user_subdomains

logger = logging.getLogger(__name__)


def _json_error(message: str, status: int) -> web.HTTPException:
    error_class = {
        400: web.HTTPBadRequest,
        401: web.HTTPUnauthorized,
        403: web.HTTPForbidden,
        503: web.HTTPServiceUnavailable,
    }[status]
    return error_class(text=json.dumps({'isError': True, 'message': message}),
                       content_type='application/json')


def _require_user(request: Request) -> str:
    user_id = request.headers.get('X-User-Id', '')
    if not is_valid_key(user_id):
        raise _json_error('Authentication required.', 401)
    return user_id


def _require_admin(request: Request) -> None:
    expected = os.getenv('ADMIN_API_TOKEN', '')
    if not expected:
        logger.warning("🔒 Admin API called but ADMIN_API_TOKEN is not configured")
        raise _json_error('Admin API is disabled.', 503)
    presented = request.headers.get('X-Admin-Token', '')
    if not hmac.compare_digest(presented.encode(), expected.encode()):
        logger.warning(f"🔒 Rejected admin API call to {request.path}")
        raise _json_error('Forbidden.', 403)


async def _read_json(request: Request) -> Dict[str, Any]:
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except ValueError:
        raise _json_error('Request body must be valid JSON.', 400)
    if not isinstance(body, dict):
        raise _json_error('Request body must be a JSON object.', 400)
    return body


def _result_response(result: ActionResult, success_status: int = 200) -> Response:
    status = http_status_for(result.code) if result.is_error else success_status
    return web.json_response(result.to_dict(), status=status)


def _optional_str(value: Any) -> Optional[str]:
    return value if isinstance(value, str) and value else None


# ====================================================================
# CUSTOMER ROUTES
# ====================================================================

async def create_order_handler(request: Request) -> Response:
    user_id = _require_user(request)
    body = await _read_json(request)
    result = await order_service(user_id, body.get('planId'), _optional_str(body.get('paymentMethod')))
    return _result_response(result, success_status=201)


async def list_gateways_handler(request: Request) -> Response:
    _require_user(request)
    try:
        gateways = await list_enabled_gateways()
    except Exception as e:
        return _result_response(error_to_result(e, 'list_gateways'))
    return web.json_response({'isError': False, 'gateways': gateways})


async def checkout_handler(request: Request) -> Response:
    user_id = _require_user(request)
    result = await checkout_service(user_id, request.match_info['service_id'])
    return _result_response(result)


async def create_subdomain_handler(request: Request) -> Response:
    user_id = _require_user(request)
    body = await _read_json(request)
    result = await handle_subdomain_creation(body.get('subdomain'), user_id, request.match_info['service_id'])
    return _result_response(result, success_status=201)


async def list_subdomains_handler(request: Request) -> Response:
    user_id = _require_user(request)
    try:
        subdomains = await list_user_subdomains(user_id)
    except Exception as e:
        return _result_response(error_to_result(e, 'list_subdomains'))
    return web.json_response({
        'isError': False,
        'subdomains': [dict(record.to_dict(), id=record.id) for record in subdomains],
    })


async def panel_session_handler(request: Request) -> Response:
    user_id = _require_user(request)
    result = await handle_panel_login(user_id, request.match_info['service_id'])
    return _result_response(result)


# ====================================================================
# PANEL CONSUMER ROUTE
# ====================================================================

async def panel_redeem_handler(request: Request) -> Response:
    """Called by the external panel to exchange a login token"""
    body = await _read_json(request)
    username = body.get('username')
    token = body.get('token')
    if not isinstance(username, str) or not isinstance(token, str):
        return web.json_response({'valid': False}, status=400)
    try:
        credential = await redeem_panel_token(username, token)
    except Exception as e:
        return _result_response(error_to_result(e, 'panel_redeem'))
    if credential is None:
        return web.json_response({'valid': False}, status=401)
    return web.json_response({
        'valid': True,
        'username': credential.username,
        'userId': credential.user_id,
        'serviceId': credential.service_id,
    })


# ====================================================================
# ADMIN ROUTES
# ====================================================================

async def admin_status_handler(request: Request) -> Response:
    _require_admin(request)
    body = await _read_json(request)
    user_id = request.match_info['user_id']
    service_id = request.match_info['service_id']
    try:
        change = await update_service_status(user_id, service_id, body.get('status') or '')
    except Exception as e:
        return _result_response(error_to_result(e, 'update_service_status'))
    return _result_response(ActionResult.ok("Service status updated.", **describe_status_change(change)))


async def admin_confirm_payment_handler(request: Request) -> Response:
    _require_admin(request)
    try:
        outcome = await confirm_manual_payment(request.match_info['service_id'])
    except Exception as e:
        return _result_response(error_to_result(e, 'confirm_manual_payment'))
    message = "Payment confirmed." if outcome.changed else "Payment was already confirmed."
    return _result_response(ActionResult.ok(message, **outcome.to_dict()))


async def admin_reconcile_handler(request: Request) -> Response:
    _require_admin(request)
    try:
        repaired = await reconcile_orphan_services()
    except Exception as e:
        return _result_response(error_to_result(e, 'reconcile_orphan_services'))
    return _result_response(ActionResult.ok(f"Repaired {len(repaired)} service(s).", repairedServiceIds=repaired))


def setup_api_routes(app: web.Application) -> None:
    app.router.add_post('/api/orders', create_order_handler)
    app.router.add_get('/api/gateways', list_gateways_handler)
    app.router.add_get('/api/subdomains', list_subdomains_handler)
    app.router.add_post('/api/services/{service_id}/checkout', checkout_handler)
    app.router.add_post('/api/services/{service_id}/subdomain', create_subdomain_handler)
    app.router.add_post('/api/services/{service_id}/panel-session', panel_session_handler)
    app.router.add_post('/api/panel/redeem', panel_redeem_handler)
    app.router.add_post('/api/admin/services/{user_id}/{service_id}/status', admin_status_handler)
    app.router.add_post('/api/admin/services/{service_id}/confirm-payment', admin_confirm_payment_handler)
    app.router.add_post('/api/admin/reconcile-orphans', admin_reconcile_handler)
