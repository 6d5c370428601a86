"""
Admin Alert System for the AquaHost order and provisioning service

Centralized admin notification for critical issues, with rate limiting,
severity levels and duplicate suppression.

Features:
- Multiple severity levels (CRITICAL, ERROR, WARNING, INFO)
- Rate limiting to prevent alert spam
- Alert suppression for duplicate alerts
- Background email to every address in ADMIN_ALERT_EMAILS, never awaited by the caller
- Every alert persisted under admin_alerts/ in the document store
"""

import os
import logging
import hashlib
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Any, Union
from enum import Enum
from dataclasses import dataclass, asdict

from database import get_document_store
from services.email_dispatch import EmailMessage, dispatch_email
from services.errors import WorkflowError
from services.models import utc_now

logger = logging.getLogger(__name__)

# ====================================================================
# ALERT SEVERITY LEVELS AND CONFIGURATION
# ====================================================================

class AlertSeverity(Enum):
    """Alert severity levels"""
    CRITICAL = "CRITICAL"
    ERROR = "ERROR"
    WARNING = "WARNING"
    INFO = "INFO"

SEVERITY_ORDER = [AlertSeverity.INFO, AlertSeverity.WARNING, AlertSeverity.ERROR, AlertSeverity.CRITICAL]

class AlertCategory(Enum):
    """Alert categories for filtering and organization"""
    ORDERS = "orders"
    PAYMENT_PROCESSING = "payment_processing"
    PROVISIONING = "provisioning"
    SYSTEM_HEALTH = "system_health"
    SECURITY = "security"
    EXTERNAL_API = "external_api"
    DATABASE = "database"
    WEBHOOK = "webhook"

@dataclass
class Alert:
    """Structured alert data"""
    severity: AlertSeverity
    category: AlertCategory
    component: str
    message: str
    details: Optional[Dict[str, Any]] = None
    timestamp: Optional[datetime] = None
    fingerprint: Optional[str] = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = utc_now()
        if self.fingerprint is None:
            self.fingerprint = self._generate_fingerprint()

    def _generate_fingerprint(self) -> str:
        """Generate a unique fingerprint for alert deduplication"""
        content = f"{self.severity.value}:{self.category.value}:{self.component}:{self.message}"
        return hashlib.md5(content.encode()).hexdigest()

    def to_dict(self) -> Dict[str, Any]:
        """Convert alert to dictionary for storage"""
        data = asdict(self)
        data['severity'] = self.severity.value
        data['category'] = self.category.value
        data['timestamp'] = self.timestamp.isoformat() if self.timestamp else None
        data['details'] = {key: str(value) for key, value in (self.details or {}).items()}
        return data

# ====================================================================
# ADMIN ALERT CONFIGURATION
# ====================================================================

class AdminAlertConfig:
    """Configuration for admin alert system"""

    def __init__(self):
        # Rate limiting settings
        self.rate_limit_window = int(os.getenv('ALERT_RATE_LIMIT_WINDOW', '300'))  # 5 minutes
        self.max_alerts_per_window = int(os.getenv('ALERT_MAX_PER_WINDOW', '10'))

        # Alert suppression settings
        self.suppression_window = int(os.getenv('ALERT_SUPPRESSION_WINDOW', '3600'))  # 1 hour

        self.admin_emails = self._parse_admin_emails()

        # Alert level filtering
        self.min_severity = AlertSeverity(os.getenv('ALERT_MIN_SEVERITY', 'WARNING').upper())

        self.alerts_enabled = os.getenv('ADMIN_ALERTS_ENABLED', 'true').lower() == 'true'

        logger.info(f"✅ Admin Alert Config: enabled={self.alerts_enabled}, "
                    f"admins={len(self.admin_emails)}, min_severity={self.min_severity.value}")

    def _parse_admin_emails(self) -> List[str]:
        """Parse comma-separated admin addresses from ADMIN_ALERT_EMAILS"""
        emails = [
            address.strip() for address in os.getenv('ADMIN_ALERT_EMAILS', '').split(',')
            if address.strip()
        ]
        invalid = [address for address in emails if '@' not in address]
        for address in invalid:
            logger.warning(f"Invalid admin alert email: {address}")
        emails = [address for address in emails if '@' in address]

        if not emails:
            logger.warning("⚠️ No admin alert emails configured - alerts will be stored and logged only")
        return emails

# ====================================================================
# ADMIN ALERT SYSTEM - MAIN CLASS
# ====================================================================

class AdminAlertSystem:
    """Main admin alert system with rate limiting and deduplication"""

    def __init__(self, config: Optional[AdminAlertConfig] = None):
        self.config = config or AdminAlertConfig()
        self._suppressed_alerts: Dict[str, datetime] = {}
        self._rate_limit_tracker: List[datetime] = []

    def _is_rate_limited(self) -> bool:
        """Check if we're currently rate limited"""
        cutoff = utc_now() - timedelta(seconds=self.config.rate_limit_window)
        self._rate_limit_tracker = [ts for ts in self._rate_limit_tracker if ts > cutoff]
        return len(self._rate_limit_tracker) >= self.config.max_alerts_per_window

    def _is_suppressed(self, fingerprint: str) -> bool:
        """Check if an alert is currently suppressed"""
        suppressed_until = self._suppressed_alerts.get(fingerprint)
        if suppressed_until is None:
            return False
        if utc_now() > suppressed_until:
            del self._suppressed_alerts[fingerprint]
            return False
        return True

    def _suppress_alert(self, fingerprint: str):
        self._suppressed_alerts[fingerprint] = utc_now() + timedelta(seconds=self.config.suppression_window)

    def _build_email(self, admin_email: str, alert: Alert) -> EmailMessage:
        payload: Dict[str, Any] = {
            'Category': alert.category.value.replace('_', ' ').title(),
            'Component': alert.component,
            'Message': alert.message,
            'Time': alert.timestamp.strftime("%Y-%m-%d %H:%M:%S UTC") if alert.timestamp else "Unknown",
        }
        for key, value in (alert.details or {}).items():
            payload[key] = ", ".join(str(v) for v in value) if isinstance(value, (list, tuple)) else value
        return EmailMessage(
            to=admin_email,
            subject=f"[{alert.severity.value}] {alert.component}: {alert.message}"[:200],
            type='admin_alert',
            payload=payload,
        )

    async def _store_alert(self, alert: Alert, delivery: str) -> bool:
        """Persist alert in the document store with how it was handed to delivery"""
        store = get_document_store()
        try:
            key = await store.push_key('admin_alerts')
            record = alert.to_dict()
            record['delivery'] = delivery
            record['sent'] = delivery == 'queued'
            await store.set(f"admin_alerts/{key}", record)
            return True
        except WorkflowError as e:
            logger.error(f"❌ Failed to store admin alert: {e}")
            return False

    async def send_alert(
        self,
        severity: Union[AlertSeverity, str],
        category: Union[AlertCategory, str],
        component: str,
        message: str,
        details: Optional[Dict[str, Any]] = None
    ) -> bool:
        """
        Send an admin alert with rate limiting and deduplication

        Args:
            severity: Alert severity level
            category: Alert category
            component: Component that generated the alert
            message: Human-readable alert message
            details: Additional structured data (never secrets)

        Returns:
            bool: True if the alert email was queued for at least one admin
        """
        if not self.config.alerts_enabled:
            logger.debug(f"Admin alerts disabled - skipping: {component}: {message}")
            return False

        if isinstance(severity, str):
            severity = AlertSeverity(severity.upper())
        if isinstance(category, str):
            category = AlertCategory(category.lower())

        if SEVERITY_ORDER.index(severity) < SEVERITY_ORDER.index(self.config.min_severity):
            logger.debug(f"Alert below minimum severity ({self.config.min_severity.value}) - skipping: {message}")
            return False

        alert = Alert(severity=severity, category=category, component=component,
                      message=message, details=details)

        if alert.fingerprint and self._is_suppressed(alert.fingerprint):
            logger.debug(f"Alert suppressed (duplicate): {component}: {message}")
            await self._store_alert(alert, delivery='suppressed')
            return False

        if self._is_rate_limited():
            logger.warning(f"⚠️ Admin alerts rate limited - dropping: {component}: {message}")
            await self._store_alert(alert, delivery='rate_limited')
            return False

        log_level = getattr(logging, severity.value, logging.WARNING)
        logger.log(log_level, f"🚨 ADMIN ALERT ({severity.value}): [{component}] {message}")

        # Delivery runs in the background; SMTP failures are logged by email_dispatch
        queued_count = 0
        for admin_email in self.config.admin_emails:
            email = self._build_email(admin_email, alert)
            if dispatch_email(email.to, email.subject, email.type, email.payload) is not None:
                queued_count += 1

        self._rate_limit_tracker.append(utc_now())
        if alert.fingerprint:
            self._suppress_alert(alert.fingerprint)
        await self._store_alert(alert, delivery='queued' if queued_count else 'not_queued')

        if self.config.admin_emails and queued_count == 0:
            logger.error(f"❌ Admin alert not queued for any admin: {component}: {message}")
        return queued_count > 0

    async def get_recent_alerts(self, limit: int = 50) -> List[Dict[str, Any]]:
        """Most recent stored alerts, newest first"""
        alerts = await get_document_store().list_children('admin_alerts')
        # Push keys sort by creation time
        ordered = [dict(data, id=key) for key, data in sorted(alerts.items(), reverse=True)]
        return ordered[:limit]

# ====================================================================
# GLOBAL ADMIN ALERT INSTANCE
# ====================================================================

_admin_alert_system = None

def get_admin_alert_system() -> AdminAlertSystem:
    """Get or create the global admin alert system instance"""
    global _admin_alert_system
    if _admin_alert_system is None:
        _admin_alert_system = AdminAlertSystem()
        logger.info("✅ Admin alert system initialized")
    return _admin_alert_system

def reset_admin_alert_system() -> None:
    """Drop the global instance so configuration is re-read"""
    global _admin_alert_system
    _admin_alert_system = None

# ====================================================================
# CONVENIENCE FUNCTIONS FOR EASY INTEGRATION
# ====================================================================

async def send_critical_alert(component: str, message: str, category: str = "system_health", details: Optional[Dict[str, Any]] = None):
    """Send a critical admin alert"""
    return await get_admin_alert_system().send_alert(AlertSeverity.CRITICAL, category, component, message, details)

async def send_error_alert(component: str, message: str, category: str = "system_health", details: Optional[Dict[str, Any]] = None):
    """Send an error admin alert"""
    return await get_admin_alert_system().send_alert(AlertSeverity.ERROR, category, component, message, details)

async def send_warning_alert(component: str, message: str, category: str = "system_health", details: Optional[Dict[str, Any]] = None):
    """Send a warning admin alert"""
    return await get_admin_alert_system().send_alert(AlertSeverity.WARNING, category, component, message, details)
