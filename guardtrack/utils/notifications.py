import asyncio
import aiohttp
import aiosmtplib
import logging
from typing import Any, Dict, List, Optional
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart

from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select, col

from guardtrack.config import settings
from guardtrack.models.notification import Notification, NotificationType, NotificationPriority
from guardtrack.models.user import User

logger = logging.getLogger(__name__)

class PushNotificationService:
    """Push notification service for mobile apps (FCM)"""

    def __init__(self):
        self.fcm_server_key = settings.FCM_SERVER_KEY
        self.fcm_url = settings.FCM_URL

    @property
    def enabled(self) -> bool:
        return bool(self.fcm_server_key)

    async def send_push_notification(
        self,
        device_tokens: List[str],
        title: str,
        body: str,
        data: Optional[Dict[str, Any]] = None,
        priority: str = "high"
    ) -> Dict[str, bool]:
        """Send push notification to mobile devices"""
        if not self.enabled:
            logger.warning("FCM not configured")
            return {token: False for token in device_tokens}

        headers = {
            "Authorization": f"key={self.fcm_server_key}",
            "Content-Type": "application/json"
        }

        results: Dict[str, bool] = {}

        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=10)) as session:
            for token in device_tokens:
                payload = {
                    "to": token,
                    "notification": {
                        "title": title,
                        "body": body,
                        "sound": "default"
                    },
                    "data": data or {},
                    "priority": priority
                }

                try:
                    async with session.post(self.fcm_url, json=payload, headers=headers) as response:
                        results[token] = response.status == 200

                except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                    logger.error(f"Push notification error for token {token[:10]}...: {e}")
                    results[token] = False

        return results

class EmailService:
    """Email escalation for critical alerts"""

    def __init__(self):
        self.smtp_host = settings.SMTP_HOST
        self.smtp_port = settings.SMTP_PORT
        self.smtp_username = settings.SMTP_USERNAME
        self.smtp_password = settings.SMTP_PASSWORD
        self.from_email = settings.FROM_EMAIL

    @property
    def enabled(self) -> bool:
        return bool(self.smtp_host)

    async def send_email(
        self,
        to_email: str,
        subject: str,
        body: str,
        html_body: Optional[str] = None
    ) -> bool:
        if not self.enabled:
            return False

        message = MIMEMultipart('alternative')
        message['From'] = self.from_email
        message['To'] = to_email
        message['Subject'] = subject
        message.attach(MIMEText(body, 'plain'))
        if html_body:
            message.attach(MIMEText(html_body, 'html'))

        try:
            await aiosmtplib.send(
                message,
                hostname=self.smtp_host,
                port=self.smtp_port,
                start_tls=True,
                username=self.smtp_username or None,
                password=self.smtp_password or None,
            )
            logger.info(f"Email sent successfully to {to_email}")
            return True

        except (aiosmtplib.SMTPException, OSError) as e:
            logger.error(f"Email sending error to {to_email}: {e}")
            return False

    async def send_bulk_email(
        self,
        recipients: List[str],
        subject: str,
        body: str,
        html_body: Optional[str] = None
    ) -> Dict[str, bool]:
        results = await asyncio.gather(
            *(self.send_email(email, subject, body, html_body) for email in recipients)
        )
        return dict(zip(recipients, results))

class NotificationManager:
    """
    Persists in-app notifications and forwards them to external channels.

    The database write is one batch: every row of a fan-out is committed
    together or not at all. Push and e-mail delivery happen afterwards and
    are best-effort.
    """

    def __init__(
        self,
        push_service: Optional[PushNotificationService] = None,
        email_service: Optional[EmailService] = None
    ):
        self.push_service = push_service or PushNotificationService()
        self.email_service = email_service or EmailService()

    async def create_bulk_notifications(
        self,
        db: AsyncSession,
        user_ids: List[str],
        notification_type: NotificationType,
        title: str,
        message: str,
        data: Optional[Dict[str, Any]] = None,
        priority: NotificationPriority = NotificationPriority.NORMAL,
        security_company_id: Optional[str] = None
    ) -> List[Notification]:
        # One row per recipient, duplicates collapsed
        unique_user_ids = list(dict.fromkeys(user_ids))
        if not unique_user_ids:
            return []

        notifications = [
            Notification(
                user_id=user_id,
                security_company_id=security_company_id,
                type=notification_type,
                title=title,
                message=message,
                data=data,
                priority=priority
            )
            for user_id in unique_user_ids
        ]

        db.add_all(notifications)
        await db.commit()

        logger.info(f"Created {len(notifications)} {notification_type.value} notification(s)")

        await self._dispatch_external(db, unique_user_ids, title, message, data, priority)
        return notifications

    async def _dispatch_external(
        self,
        db: AsyncSession,
        user_ids: List[str],
        title: str,
        message: str,
        data: Optional[Dict[str, Any]],
        priority: NotificationPriority
    ):
        if not (self.push_service.enabled or self.email_service.enabled):
            return

        result = await db.execute(select(User).where(col(User.id).in_(user_ids)))
        users = result.scalars().all()

        if self.push_service.enabled:
            tokens = [user.push_token for user in users if user.push_token]
            if tokens:
                fcm_priority = "high" if priority in (NotificationPriority.HIGH, NotificationPriority.URGENT) else "normal"
                push_results = await self.push_service.send_push_notification(
                    tokens, title, message, _stringify(data), fcm_priority
                )
                sent = sum(1 for success in push_results.values() if success)
                logger.info(f"PUSH: {sent} sent, {len(push_results) - sent} failed")

        if self.email_service.enabled and priority == NotificationPriority.URGENT:
            emails = [user.email for user in users if user.email]
            email_results = await self.email_service.send_bulk_email(emails, title, message)
            sent = sum(1 for success in email_results.values() if success)
            logger.critical(f"Urgent email escalation: {sent}/{len(emails)} sent")

def _stringify(data: Optional[Dict[str, Any]]) -> Dict[str, str]:
    """FCM data payloads only carry string values"""
    return {key: str(value) for key, value in (data or {}).items() if value is not None}
