# backend/consultflow/services/email.py
"""
Email Service for Consultflow

Sends transactional emails through the Resend API. Implements the
NotificationSink interface: ``send`` never raises, it reports the outcome
in a NotificationResult so callers decide whether a failure is fatal.
"""

import logging
import re
from typing import Any, Dict, Mapping, Optional

import resend
from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.enums import EmailKind
from ..core.exceptions import ServiceException
from ..integrations.protocols import NotificationResult
from .base import BaseService
from .email_subjects import EmailSubject
from .template_registry import TemplateRegistry
from .template_service import TemplateService

logger = logging.getLogger(__name__)


class EmailService(BaseService):
    """
    Service for sending emails using Resend API.

    Extends BaseService for consistent architecture and metrics collection.
    """

    def __init__(self, db: Session, template_service: Optional[TemplateService] = None):
        """
        Initialize email service with dependencies.

        Args:
            db: Database session (required by BaseService)
            template_service: Optional pre-built template renderer
        """
        super().__init__(db)

        api_key = settings.resend_api_key
        if not api_key:
            raise ServiceException("Resend API key not configured")

        resend.api_key = api_key
        self.from_email = settings.email_from_address or settings.from_email
        self.template_service = template_service or TemplateService()

    def _html_to_text(self, html_content: str) -> str:
        """Convert HTML content to plain text for better deliverability"""
        text = re.sub(r"<[^>]+>", "", html_content)
        text = re.sub(r"\s+", " ", text)
        return text.strip()

    @BaseService.measure_operation("send_email")
    def send_email(
        self,
        to_email: str,
        subject: str,
        html_content: str,
        text_content: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Send a generic email using Resend.

        Returns:
            Dict containing the Resend API response

        Raises:
            ServiceException: If email sending fails
        """
        try:
            email_data = {
                "from": self.from_email,
                "to": to_email,
                "subject": subject,
                "html": html_content,
                "text": text_content or self._html_to_text(html_content),
            }
            response = resend.Emails.send(email_data)
            self.logger.info(f"Email sent successfully to {to_email} - Subject: {subject}")
            return dict(response) if response else {}
        except Exception as e:
            error_msg = str(e) if e else "Unknown error"
            self.logger.error(f"Failed to send email to {to_email}: {error_msg}")
            raise ServiceException(f"Email sending failed: {error_msg}")

    def send(self, kind: EmailKind, recipient: str, data: Mapping[str, Any]) -> NotificationResult:
        subject = EmailSubject.for_kind(kind, data)
        try:
            html = self.template_service.render_template(
                TemplateRegistry.for_kind(kind).value,
                context={**dict(data), "subject": subject},
            )
            response = self.send_email(to_email=recipient, subject=subject, html_content=html)
        except ServiceException as e:
            return NotificationResult(success=False, error=e.message, subject=subject)
        except Exception as e:
            # Template errors surface as a failed send, not an exception
            self.logger.error(f"Unexpected error rendering {kind} email for {recipient}: {str(e)}")
            return NotificationResult(success=False, error=str(e), subject=subject)
        return NotificationResult(success=True, message_id=response.get("id"), subject=subject)


class ConsoleEmailService:
    """Logs emails instead of sending them; used when Resend is not configured."""

    def __init__(self, *_: Any, **__: Any) -> None:
        pass

    def send(self, kind: EmailKind, recipient: str, data: Mapping[str, Any]) -> NotificationResult:
        subject = EmailSubject.for_kind(kind, data)
        logger.info("[console email] %s to %s: %s", EmailKind(kind).value, recipient, subject)
        return NotificationResult(success=True, message_id=None, subject=subject)
