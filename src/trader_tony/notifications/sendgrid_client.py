"""
SendGrid Email Delivery

Sends notification emails through SendGrid, with a mock client that records
messages instead of sending them.
"""

import asyncio
import logging
import os
from typing import Any, Dict, List, Optional

from python_http_client.exceptions import HTTPError
from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Content, Email, Header, Mail, To

from trader_tony.utils.time_utils import format_timestamp, now_utc

from . import templates
from .priority import NotificationPriority

logger = logging.getLogger(__name__)


class MockSendGridClient:
    """Records every message instead of sending it."""

    def __init__(self):
        self.sent_emails: List[Dict[str, Any]] = []
        logger.info("Initialized MockSendGridClient (no real emails will be sent)")

    def send(self, message: Mail) -> Dict[str, Any]:
        personalization = message.personalizations[0] if message.personalizations else None
        recipients = [to["email"] for to in personalization.tos] if personalization else []

        email_data = {
            "to": recipients,
            "from": message.from_email.email if message.from_email else "unknown",
            "subject": message.subject.subject if message.subject else "No Subject",
            "timestamp": format_timestamp(now_utc()),
        }
        self.sent_emails.append(email_data)

        logger.info(f"[MOCK EMAIL] To: {', '.join(recipients)}, Subject: {email_data['subject']}")
        return {"status_code": 202, "body": "Mock email accepted", "headers": {}}

    def get_sent_emails(self) -> List[Dict[str, Any]]:
        return list(self.sent_emails)

    def clear_history(self):
        self.sent_emails.clear()


class SendGridNotificationService:
    """
    Email delivery with priority headers and retry.

    In mock mode no API key is needed and nothing leaves the process.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        from_email: str = "trader-tony@localhost",
        to_emails: Optional[List[str]] = None,
        mock_mode: bool = False,
        retry_delay_seconds: float = 1.0,
    ):
        """
        Args:
            api_key: SendGrid API key (defaults to SENDGRID_API_KEY env var)
            from_email: Sender address
            to_emails: Recipient addresses
            mock_mode: Use MockSendGridClient instead of SendGrid
            retry_delay_seconds: Base delay for exponential backoff
        """
        self.mock_mode = mock_mode
        self.retry_delay_seconds = retry_delay_seconds

        if mock_mode:
            self.client = MockSendGridClient()
            logger.info("SendGrid service initialized in MOCK mode")
        else:
            api_key = api_key or os.getenv("SENDGRID_API_KEY")
            if not api_key:
                raise ValueError("SendGrid API key not provided and SENDGRID_API_KEY env var not set")
            self.client = SendGridAPIClient(api_key)
            logger.info("SendGrid service initialized in PRODUCTION mode")

        self.from_email = from_email
        self.to_emails = list(to_emails or [])
        if not self.to_emails:
            logger.warning("No recipient emails configured!")

    async def send_email(
        self,
        subject: str,
        html_body: str,
        priority: NotificationPriority = NotificationPriority.INFO,
        max_retries: int = 3,
    ) -> bool:
        """
        Send one email, retrying with exponential backoff.

        Returns:
            True if the email was accepted
        """
        if not self.to_emails:
            logger.error(f"Cannot send email {subject!r}: no recipients configured")
            return False

        message = Mail(
            from_email=Email(self.from_email),
            to_emails=[To(email) for email in self.to_emails],
            subject=subject,
            html_content=Content("text/html", html_body),
        )
        self._add_priority_headers(message, priority)

        attempts = max(1, max_retries)
        for attempt in range(attempts):
            try:
                response = await asyncio.to_thread(self.client.send, message)

                if self.mock_mode:
                    return True

                if response.status_code in (200, 202):
                    logger.info(f"Email sent: {subject} (status: {response.status_code})")
                    return True
                logger.warning(f"Unexpected status code {response.status_code} for email: {subject}")

            except HTTPError as e:
                logger.error(f"SendGrid HTTP error (attempt {attempt + 1}/{attempts}): {e}")
                # Client errors other than rate limiting will not succeed on retry
                if 400 <= e.status_code < 500 and e.status_code != 429:
                    return False

            except Exception as e:
                logger.error(f"Error sending email (attempt {attempt + 1}/{attempts}): {e}")

            if attempt < attempts - 1:
                await asyncio.sleep(self.retry_delay_seconds * 2 ** attempt)

        logger.error(f"Failed to send email after {attempts} attempts: {subject}")
        return False

    def _add_priority_headers(self, message: Mail, priority: NotificationPriority):
        if priority == NotificationPriority.CRITICAL:
            values = ("Urgent", "high", "1")
        elif priority == NotificationPriority.WARNING:
            values = ("Normal", "normal", "3")
        else:
            values = ("Low", "low", "5")

        for name, value in zip(("Priority", "Importance", "X-Priority"), values):
            message.header = Header(name, value)

    async def notify_action_failed(self, failure: Dict[str, Any], max_retries: int = 5) -> bool:
        subject, html_body = templates.render_action_failed_email(failure)
        return await self.send_email(subject, html_body, NotificationPriority.CRITICAL, max_retries)

    async def notify_entry_failed(self, failure: Dict[str, Any], max_retries: int = 5) -> bool:
        subject, html_body = templates.render_entry_failed_email(failure)
        return await self.send_email(subject, html_body, NotificationPriority.CRITICAL, max_retries)

    async def notify_batch_summary(
        self,
        priority: NotificationPriority,
        notifications: List[Dict[str, Any]],
        max_retries: int = 2,
    ) -> bool:
        subject, html_body = templates.render_batch_summary_email(priority.value, notifications)
        return await self.send_email(subject, html_body, priority, max_retries)

    def get_mock_history(self) -> List[Dict[str, Any]]:
        """Messages recorded by the mock client (empty outside mock mode)."""
        if isinstance(self.client, MockSendGridClient):
            return self.client.get_sent_emails()
        return []

    def clear_mock_history(self):
        if isinstance(self.client, MockSendGridClient):
            self.client.clear_history()
