from typing import Dict, Any, Optional
from slack_sdk import WebClient
from slack_sdk.errors import SlackApiError
from loguru import logger


class SlackNotifier:
    """Slack integration for pushing pipeline events to the sales team."""

    def __init__(self, token: Optional[str] = None, default_channel: str = "#sales-leads",
                 escalation_channel: str = "#sales-escalations", timeout: int = 20):
        self.token = token
        self.default_channel = default_channel
        self.escalation_channel = escalation_channel
        self.client = WebClient(token=token, timeout=timeout) if token else None
        self.sent = []

        if not self.token:
            logger.warning("No Slack token provided, using mock mode")

    def notify(self, kind: str, payload: Dict[str, Any], channel: Optional[str] = None) -> Optional[str]:
        """
        Send a notification. Never raises: notification failures are logged only.

        Args:
            kind: "hot_lead" | "escalation" | "document" | anything else (generic)
            payload: event fields (lead, reason, score, ...)
            channel: override target channel

        Returns:
            Slack message timestamp, a mock timestamp, or None if sending failed
        """
        target_channel = channel or (self.escalation_channel if kind == "escalation" else self.default_channel)
        message = self._build_message(kind, payload)

        if not self.client:
            logger.info(f"Mock mode: would send Slack {kind} notification to {target_channel}")
            self.sent.append({"kind": kind, "channel": target_channel, **message})
            return f"mock_{kind}_{len(self.sent)}"

        try:
            response = self.client.chat_postMessage(
                channel=target_channel,
                text=message["text"],
                blocks=message["blocks"],
            )
            message_ts = response["ts"]
            logger.info(f"Slack {kind} notification sent to {target_channel}: {message_ts}")
            return message_ts
        except SlackApiError as e:
            logger.error(f"Slack notification failed: {e.response.get('error')}")
            return None
        except Exception as e:
            logger.error(f"Slack notification failed: {e}")
            return None

    def _build_message(self, kind: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if kind == "hot_lead":
            return self._build_hot_lead_message(payload)
        if kind == "escalation":
            return self._build_escalation_message(payload)

        text = payload.get("message") or f"{kind}: lead {payload.get('lead_id', 'unknown')}"
        return {
            "text": text,
            "blocks": [{"type": "section", "text": {"type": "mrkdwn", "text": text}}],
        }

    def _build_hot_lead_message(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        name = payload.get("name") or "Unknown"
        company = payload.get("company") or "Unknown"
        score = payload.get("score", 0)

        text = f"HOT LEAD: {name} from {company} (Score: {score})"
        blocks = [
            {
                "type": "header",
                "text": {"type": "plain_text", "text": "Hot Lead Alert"}
            },
            {
                "type": "section",
                "fields": [
                    {"type": "mrkdwn", "text": f"*Name:*\n{name}"},
                    {"type": "mrkdwn", "text": f"*Company:*\n{company}"},
                    {"type": "mrkdwn", "text": f"*Score:*\n{score}/100"},
                    {"type": "mrkdwn", "text": f"*Title:*\n{payload.get('job_title') or 'Unknown'}"},
                ]
            },
            {
                "type": "section",
                "text": {"type": "mrkdwn", "text": "*Next Action:* Reach out within 2 hours"}
            },
        ]
        return {"text": text, "blocks": blocks}

    def _build_escalation_message(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        reason = payload.get("reason") or "Manual review required"
        text = f"Escalation for lead {payload.get('lead_id')}: {reason}"
        blocks = [
            {
                "type": "header",
                "text": {"type": "plain_text", "text": "Manager Review Required"}
            },
            {
                "type": "section",
                "fields": [
                    {"type": "mrkdwn", "text": f"*Lead:*\n{payload.get('name') or payload.get('lead_id')}"},
                    {"type": "mrkdwn", "text": f"*Reason:*\n{reason}"},
                    {"type": "mrkdwn", "text": f"*Score:*\n{payload.get('score', 'n/a')}"},
                    {"type": "mrkdwn", "text": f"*No-shows:*\n{payload.get('no_show_count', 'n/a')}"},
                ]
            },
        ]
        return {"text": text, "blocks": blocks}
