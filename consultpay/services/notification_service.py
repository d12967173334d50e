"""Notification service for email and SMS.

Channels:
- Email (SendGrid)
- SMS (Twilio)

Delivery is best-effort: a failed notification is logged and never
propagates into the money flow that triggered it.
"""

import logging
from datetime import datetime
from typing import Any

import httpx

from consultpay.config import settings
from consultpay.gateways.base import to_major_units
from consultpay.models.booking import Booking
from consultpay.models.payout import Payout
from consultpay.models.user import User

logger = logging.getLogger(__name__)

SENDGRID_URL = "https://api.sendgrid.com/v3/mail/send"
TWILIO_URL = "https://api.twilio.com/2010-04-01/Accounts/{sid}/Messages.json"


def format_rupees(amount: int) -> str:
    return f"₹{to_major_units(amount)}"


def format_time(value: datetime) -> str:
    return value.strftime("%d %b %Y, %H:%M UTC")


class NotificationService:
    """Service for sending notifications."""

    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._http_client = client

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Lazy-load HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=settings.gateway_timeout_seconds)
        return self._http_client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()

    # ==================== EMAIL (SENDGRID) ====================

    async def send_email(
        self,
        to_email: str,
        subject: str,
        html_content: str,
        text_content: str | None = None,
    ) -> bool:
        """Send an email via SendGrid.

        Returns:
            bool: True if sent successfully
        """
        if not settings.sendgrid_api_key:
            logger.info(f"SendGrid not configured, skipping email '{subject}' to {to_email}")
            return False

        payload: dict[str, Any] = {
            "personalizations": [{"to": [{"email": to_email}]}],
            "from": {"email": settings.email_from_address, "name": settings.email_from_name},
            "subject": subject,
            "content": [{"type": "text/html", "value": html_content}],
        }
        if text_content:
            payload["content"].insert(0, {"type": "text/plain", "value": text_content})

        try:
            response = await self.http_client.post(
                SENDGRID_URL,
                headers={"Authorization": f"Bearer {settings.sendgrid_api_key}"},
                json=payload,
            )
        except httpx.HTTPError as e:
            logger.warning(f"Email to {to_email} failed: {e}")
            return False

        if response.status_code not in (200, 202):
            logger.warning(f"Email to {to_email} rejected: {response.status_code} {response.text[:200]}")
            return False
        return True

    # ==================== SMS (TWILIO) ====================

    async def send_sms(self, to_phone: str, message: str) -> bool:
        """Send an SMS via Twilio.

        Args:
            to_phone: Recipient phone number (international format)
            message: SMS text

        Returns:
            bool: True if sent successfully
        """
        if not settings.twilio_account_sid or not settings.twilio_auth_token or not settings.twilio_from_number:
            logger.info(f"Twilio not configured, skipping SMS to {to_phone}")
            return False

        try:
            response = await self.http_client.post(
                TWILIO_URL.format(sid=settings.twilio_account_sid),
                auth=(settings.twilio_account_sid, settings.twilio_auth_token),
                data={"To": to_phone, "From": settings.twilio_from_number, "Body": message},
            )
        except httpx.HTTPError as e:
            logger.warning(f"SMS to {to_phone} failed: {e}")
            return False

        if response.status_code != 201:
            logger.warning(f"SMS to {to_phone} rejected: {response.status_code}")
            return False
        return True

    # ==================== HIGH-LEVEL NOTIFICATION METHODS ====================

    async def notify_user(
        self,
        user: User,
        title: str,
        body: str,
        action_url: str | None = None,
        sms: bool = False,
    ) -> bool:
        """Email the user, and text them as well when asked and a phone is known."""
        sent = await self.send_email(
            to_email=user.email,
            subject=title,
            html_content=self._generate_email_html(title, body, action_url),
            text_content=body,
        )
        if sms and user.phone:
            sent = await self.send_sms(user.phone, f"{title}: {body}") or sent
        return sent

    async def notify_booking_confirmed(self, booking: Booking, seeker: User, provider_user: User) -> None:
        when = format_time(booking.start_time)
        link = f"{settings.frontend_url}/bookings/{booking.id}"
        await self.notify_user(
            seeker,
            "Booking confirmed",
            f"Your session on {when} is confirmed. Join here: {booking.meeting_url}",
            action_url=link,
        )
        await self.notify_user(
            provider_user,
            "New booking",
            f"A session on {when} has been booked and paid for.",
            action_url=link,
        )

    async def notify_session_reminder(self, booking: Booking, user: User, lead: str) -> bool:
        body = f"Your session starts {lead} ({format_time(booking.start_time)})."
        if booking.meeting_url:
            body += f" Join: {booking.meeting_url}"
        if lead == "in 1 hour":
            if not user.phone:
                return False
            return await self.send_sms(user.phone, body)
        return await self.notify_user(user, "Session reminder", body)

    async def notify_payout_status(self, payout: Payout, provider_user: User) -> None:
        amount = format_rupees(payout.actual_amount or payout.requested_amount)
        messages = {
            "approved": f"Your payout of {amount} was approved and is being sent.",
            "rejected": f"Your payout request was rejected: {payout.rejection_reason}",
            "completed": f"Your payout of {amount} has been sent to your bank account.",
            "failed": f"Your payout of {amount} could not be delivered. The balance is available again.",
        }
        body = messages.get(payout.status)
        if body is None:
            return
        await self.notify_user(
            provider_user,
            f"Payout {payout.status}",
            body,
            action_url=f"{settings.frontend_url}/provider/payouts",
        )

    async def notify_booking_cancelled(self, booking: Booking, users: list[User], refund_amount: int) -> None:
        body = f"The session on {format_time(booking.start_time)} was cancelled."
        if refund_amount:
            body += f" A refund of {format_rupees(refund_amount)} is on its way to the seeker."
        for user in users:
            await self.notify_user(
                user,
                "Session cancelled",
                body,
                action_url=f"{settings.frontend_url}/bookings/{booking.id}",
            )

    async def notify_dispute_event(self, booking: Booking, users: list[User], event: str) -> None:
        bodies = {
            "opened": "A dispute has been opened for this session. Earnings are on hold until it is resolved.",
            "favor_provider": "The dispute was resolved in the provider's favour.",
            "refund_seeker": "The dispute was resolved with a refund to the seeker.",
        }
        for user in users:
            await self.notify_user(
                user,
                "Dispute update",
                bodies.get(event, event),
                action_url=f"{settings.frontend_url}/bookings/{booking.id}",
            )

    def _generate_email_html(self, title: str, body: str, action_url: str | None) -> str:
        button_html = ""
        if action_url:
            button_html = (
                f'<p style="margin-top: 24px;"><a href="{action_url}" '
                'style="background-color: #4F46E5; color: white; padding: 12px 24px; '
                'text-decoration: none; border-radius: 6px;">View Details</a></p>'
            )
        return f"""
        <!DOCTYPE html>
        <html>
        <body style="font-family: -apple-system, 'Segoe UI', Roboto, sans-serif; max-width: 600px;
                     margin: 0 auto; padding: 20px; color: #333;">
            <div style="background-color: #f9fafb; border-radius: 8px; padding: 24px;">
                <h1 style="color: #111827; font-size: 24px;">{title}</h1>
                <p style="color: #4b5563; font-size: 16px; line-height: 1.6;">{body}</p>
                {button_html}
            </div>
        </body>
        </html>
        """


notification_service = NotificationService()
