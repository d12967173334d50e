"""Meeting link generation for confirmed sessions."""

import secrets

from consultpay.config import settings
from consultpay.models.booking import Booking


class MeetingService:
    """Issues the video room link sent with the booking confirmation."""

    def __init__(self, base_url: str | None = None):
        self.base_url = (base_url or f"{settings.frontend_url}/meet").rstrip("/")

    def create_meeting(self, booking: Booking) -> str:
        # Unguessable room name scoped to the booking
        return f"{self.base_url}/{booking.id.hex[:12]}-{secrets.token_urlsafe(9)}"


meeting_service = MeetingService()
