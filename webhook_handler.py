"""
Webhook handler for Stripe payment confirmation
aiohttp server hosting the Stripe webhook, health checks and the JSON API
"""

import logging
import time
from typing import Optional

from aiohttp import web
from aiohttp.web_request import Request
from aiohttp.web_response import Response

from api_handlers import setup_api_routes
from database import get_document_store
from performance_cache import cache_stats
from performance_monitor import get_performance_stats
from services.errors import InvalidRequest, NotConfigured, SignatureInvalid, WorkflowError
from services.payment_reconciler import on_gateway_event

logger = logging.getLogger(__name__)

# Suppress aiohttp access logs for successful requests but keep errors
logging.getLogger("aiohttp.access").setLevel(logging.WARNING)

# Webhook tracking for the health endpoint
_webhook_failure_count = 0
_last_successful_webhook = 0.0

_webhook_server: Optional[web.AppRunner] = None


def record_successful_webhook():
    global _webhook_failure_count, _last_successful_webhook
    _webhook_failure_count = 0
    _last_successful_webhook = time.time()


def record_failed_webhook():
    global _webhook_failure_count
    _webhook_failure_count += 1


async def health_handler(request: Request) -> Response:
    """Health check including a document store ping"""
    store = get_document_store()
    store_healthy = await store.ping()

    response_data = {
        'status': 'healthy' if store_healthy else 'degraded',
        'service': 'aquahost_workflow',
        'timestamp': time.time(),
        'checks': {
            'document_store': {'backend': store.backend_name, 'healthy': store_healthy},
            'stripe_webhook': {
                'consecutive_failures': _webhook_failure_count,
                'last_success': _last_successful_webhook or None,
            },
            'performance': get_performance_stats(),
            'cache': cache_stats(),
        }
    }
    return web.json_response(response_data, status=200 if store_healthy else 503)


async def stripe_webhook_handler(request: Request) -> Response:
    """
    Handle a Stripe webhook delivery

    2xx: processed or safely ignored
    400: signature or payload rejected (generic body, no detail)
    500: internal dependency failure, Stripe retries
    503: webhook secret not configured
    """
    raw_payload = await request.read()
    signature = request.headers.get('Stripe-Signature')

    try:
        ack = await on_gateway_event(raw_payload, signature)
    except SignatureInvalid:
        record_failed_webhook()
        return web.json_response({'error': 'Invalid signature'}, status=400)
    except InvalidRequest:
        record_failed_webhook()
        return web.json_response({'error': 'Invalid payload'}, status=400)
    except NotConfigured:
        record_failed_webhook()
        return web.json_response({'error': 'Webhook not configured'}, status=503)
    except WorkflowError as e:
        record_failed_webhook()
        logger.error(f"❌ Stripe webhook failed ({e.code}): {e} | details={e.details}")
        return web.json_response({'error': 'Internal server error'}, status=500)
    except Exception as e:
        record_failed_webhook()
        logger.error(f"❌ Unexpected error handling Stripe webhook: {e}", exc_info=True)
        return web.json_response({'error': 'Internal server error'}, status=500)

    record_successful_webhook()
    logger.info(f"📡 Stripe webhook acknowledged: {ack.status} ({ack.event_type})")
    return web.json_response(ack.to_dict())


def create_app() -> web.Application:
    """Build the aiohttp application with every route"""
    app = web.Application()

    # Health checks (GET also answers HEAD)
    app.router.add_get('/', health_handler)
    app.router.add_get('/health', health_handler)
    app.router.add_get('/healthz', health_handler)

    # Payment webhook routes
    app.router.add_post('/webhook/stripe', stripe_webhook_handler)

    setup_api_routes(app)
    return app


async def start_webhook_server(port: int = 8000, host: str = '0.0.0.0') -> web.AppRunner:
    """Start the aiohttp server in the current event loop"""
    global _webhook_server

    runner = web.AppRunner(create_app())
    await runner.setup()

    site = web.TCPSite(runner, host, port)
    await site.start()

    _webhook_server = runner

    logger.info(f"✅ Webhook server started on http://{host}:{port}")
    logger.info("🔗 Health check endpoint: /, /health, /healthz")
    logger.info("💳 Stripe webhook endpoint: /webhook/stripe")
    return runner


async def stop_webhook_server():
    """Stop the webhook server and cleanup"""
    global _webhook_server

    if _webhook_server:
        await _webhook_server.cleanup()
        _webhook_server = None

    logger.info("✅ Webhook server stopped")
