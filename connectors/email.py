import re
import httpx
from typing import Dict, Any, Optional
from loguru import logger

from connectors.store import LeadStore
from orchestration.errors import TransientError, PermanentError
from orchestration.state import ActivityType, Direction, new_id

SENDGRID_URL = "https://api.sendgrid.com/v3/mail/send"


def html_to_text(html: str) -> str:
    return re.sub(r"\s+", " ", re.sub(r"<[^>]+>", "", html)).strip()


class EmailService:
    """Outbound email via SendGrid, simulated when no API key is configured."""

    def __init__(self, store: LeadStore, api_key: Optional[str] = None,
                 from_email: str = "noreply@example.com", from_name: str = "Sales Team",
                 timeout: float = 20.0):
        self.store = store
        self.api_key = api_key
        self.from_email = from_email
        self.from_name = from_name
        self.timeout = timeout

        if not self.api_key:
            logger.warning("SendGrid API key not configured, simulating email send")

    def send(self, to: str, subject: str, body: str, metadata: Optional[Dict[str, Any]] = None,
             lead_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Send one email. A successful send is logged as an OUTBOUND communication
        (plus an EMAIL_SENT activity) before this returns.

        Returns:
            {"success": True, "message_id": str}

        Raises:
            TransientError: timeout, connection failure, 429 or 5xx
            PermanentError: missing recipient or a 4xx rejection
        """
        if not to:
            raise PermanentError("email", "Recipient address is missing")

        metadata = dict(metadata or {})

        if self.api_key:
            message_id = self._send_via_sendgrid(to, subject, body, metadata)
        else:
            message_id = f"sim-{new_id()}"
            logger.info(f"[SIMULATED] Email sent to {to}: {subject}")

        if lead_id:
            self._log_communication(lead_id, to, subject, body, message_id, metadata)

        return {"success": True, "message_id": message_id}

    def _send_via_sendgrid(self, to: str, subject: str, body: str, metadata: Dict[str, Any]) -> str:
        payload = {
            "personalizations": [{"to": [{"email": to}]}],
            "from": {"email": self.from_email, "name": self.from_name},
            "subject": subject,
            "content": [
                {"type": "text/plain", "value": html_to_text(body)},
                {"type": "text/html", "value": body},
            ],
            "tracking_settings": {
                "open_tracking": {"enable": True},
                "click_tracking": {"enable": True},
            },
            "custom_args": {k: str(v) for k, v in metadata.items()},
        }

        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(
                    SENDGRID_URL,
                    json=payload,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                )
                response.raise_for_status()
        except (httpx.TimeoutException, httpx.TransportError) as e:
            raise TransientError("sendgrid", f"{type(e).__name__}: {e}") from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status >= 500 or status == 429:
                raise TransientError("sendgrid", f"HTTP {status}") from e
            raise PermanentError("sendgrid", f"HTTP {status}: {e.response.text}") from e

        message_id = response.headers.get("x-message-id") or f"sg-{new_id()}"
        logger.info(f"Email sent to {to}: {subject} ({message_id})")
        return message_id

    def _log_communication(self, lead_id: str, to: str, subject: str, body: str,
                           message_id: str, metadata: Dict[str, Any]) -> None:
        self.store.add_communication(
            lead_id,
            Direction.OUTBOUND,
            subject,
            body=body,
            message_id=message_id,
            metadata=dict(metadata, to=to, **{"from": self.from_email}),
        )
        self.store.add_activity(
            lead_id,
            ActivityType.EMAIL_SENT,
            f"Email sent: {subject}",
            metadata={"message_id": message_id, "type": metadata.get("type")},
        )
