#!/usr/bin/env python3
"""
AquaHost order, payment and provisioning service
Runs the aiohttp webhook/API server in a single asyncio event loop
"""

import os
import logging
import asyncio
import sys
import signal

# Configure logging
logging.basicConfig(
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    level=os.getenv('LOG_LEVEL', 'INFO').upper()
)

# Prevent httpx from logging full request URLs
logging.getLogger("httpx").setLevel(logging.WARNING)

# Suppress aiohttp access logs for successful requests but keep errors
logging.getLogger("aiohttp.access").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)

from brand_config import get_startup_message
from database import init_database
from services.email_dispatch import wait_for_pending_emails
from utils.environment import get_public_base_url, get_webhook_url, is_production_environment
from webhook_handler import start_webhook_server, stop_webhook_server

# Global shutdown flag
shutdown_requested = False

def signal_handler(signum, frame):
    """Handle shutdown signals gracefully"""
    global shutdown_requested
    shutdown_requested = True
    logger.info(f"🛑 Shutdown signal received ({signum}), initiating graceful shutdown...")

def check_configuration() -> None:
    """Log configuration problems at startup; fail fast on the fatal ones in production"""
    if is_production_environment():
        missing = [name for name in ('DATABASE_URL', 'PUBLIC_BASE_URL', 'ADMIN_API_TOKEN') if not os.getenv(name)]
        if missing:
            logger.error(f"❌ Missing required environment variables: {', '.join(missing)}")
            sys.exit(1)
    if not os.getenv('ADMIN_API_TOKEN'):
        logger.warning("⚠️ ADMIN_API_TOKEN not set - admin API disabled")
    logger.info(f"🌐 Public base URL: {get_public_base_url()}")
    logger.info(f"💳 Configure the Stripe webhook endpoint as {get_webhook_url('stripe')}")

async def main_loop() -> bool:
    """Initialize storage, serve until a shutdown signal arrives, then clean up"""
    webhook_runner = None

    try:
        logger.info("🔄 Initializing document store...")
        store = await init_database()
        logger.info(f"✅ Document store ready ({store.backend_name})")

        port = int(os.getenv('PORT', '8000'))
        webhook_runner = await start_webhook_server(port=port)

        while not shutdown_requested:
            await asyncio.sleep(1)
        return True

    except Exception as runtime_error:
        logger.error(f"❌ Application runtime error: {runtime_error}", exc_info=True)
        logger.error("💥 FAIL FAST: Exiting for supervisor restart")
        return False
    finally:
        if webhook_runner is not None:
            await stop_webhook_server()
        await wait_for_pending_emails(timeout=10)
        logger.info("✅ Cleanup completed")

def main():
    """Main entry point"""
    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    logger.info(get_startup_message())
    check_configuration()

    result = asyncio.run(main_loop())
    logger.info("✅ Server stopped normally" if result else "⚠️ Server stopped with error")
    if not result:
        sys.exit(1)

if __name__ == '__main__':
    main()
