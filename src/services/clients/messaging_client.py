from datetime import datetime, timedelta
from typing import Optional, Dict, Any
import httpx

# Utils
from utils.log_utils import LogUtil
from utils.environment_utils import EnvironmentUtils
from utils.time_utils import utcnow, to_naive_utc

# Exceptions
from exceptions.flow_exception import ExternalCallException, WindowExpiredException

# Models
from models.executor_result import OutboundMessage

# Messenger Send API limits
MAX_QUICK_REPLIES = 13
MAX_QUICK_REPLY_TITLE_LENGTH = 20
MAX_TEXT_LENGTH = 2000

# Graph API error returned when replying outside the allowed window
WINDOW_EXPIRED_ERROR_CODE = 10
WINDOW_EXPIRED_ERROR_SUBCODE = 2018278


class MessagingClient:
    """
    Client for the Messenger/Instagram Send API.
    Messages are sent with the HUMAN_AGENT tag, which extends the reply window to MESSAGING_WINDOW_DAYS.
    """
    def __init__(self, log_util: LogUtil, environment_utils: EnvironmentUtils):
        self.log_util = log_util
        self.graph_api_url = environment_utils.get_env_variable("META_GRAPH_API_URL")
        self.page_access_token = environment_utils.get_env_variable("META_PAGE_ACCESS_TOKEN")
        self.messaging_window_days = environment_utils.get_env_variable("MESSAGING_WINDOW_DAYS")
        self.timeout_seconds = environment_utils.get_env_variable("HTTP_REQUEST_TIMEOUT_SECONDS")

    def build_payload(self, recipient_id: str, message: OutboundMessage) -> Dict[str, Any]:
        message_payload: Dict[str, Any] = {"text": message.text[:MAX_TEXT_LENGTH]}
        if message.quick_replies:
            message_payload["quick_replies"] = [
                {
                    "content_type": "text",
                    "title": reply[:MAX_QUICK_REPLY_TITLE_LENGTH],
                    "payload": reply,
                }
                for reply in message.quick_replies[:MAX_QUICK_REPLIES]
            ]
        return {
            "recipient": {"id": recipient_id},
            "message": message_payload,
            "messaging_type": "MESSAGE_TAG",
            "tag": "HUMAN_AGENT",
        }

    def is_window_expired(self, last_inbound_at: Optional[datetime], now: Optional[datetime] = None) -> bool:
        if last_inbound_at is None:
            return False
        now = to_naive_utc(now) or utcnow()
        return now - to_naive_utc(last_inbound_at) > timedelta(days=self.messaging_window_days)

    async def send_message(
        self,
        conversation_id: str,
        recipient_id: str,
        message: OutboundMessage,
        page_id: Optional[str] = None,
        last_inbound_at: Optional[datetime] = None
    ) -> Optional[str]:
        """
        Send one outbound message to the user of a conversation.

        Args:
            conversation_id: Conversation ID (logging and window errors)
            recipient_id: Page-scoped ID of the user
            message: OutboundMessage (text with optional quick replies)
            page_id: Sending page ID, defaults to the token's page ("me")
            last_inbound_at: Time of the user's last message, used to detect an expired window before calling Meta

        Returns:
            Meta message ID

        Raises:
            WindowExpiredException: Reply window closed (never retried)
            ExternalCallException: Any other send failure
        """
        if self.is_window_expired(last_inbound_at):
            raise WindowExpiredException(
                message=f"Last user message is older than {self.messaging_window_days} days",
                conversation_id=conversation_id
            )

        url = f"{self.graph_api_url}/{page_id or 'me'}/messages"
        payload = self.build_payload(recipient_id, message)

        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.post(
                    url,
                    params={"access_token": self.page_access_token},
                    json=payload,
                    headers={"Content-Type": "application/json"}
                )
        except httpx.HTTPError as e:
            self.log_util.error(
                service_name="MessagingClient",
                message=f"[SEND] Transport error sending message: {str(e)}",
                conversation_id=conversation_id
            )
            raise ExternalCallException(message=f"Send API request failed: {str(e)}", call_type="messaging")

        if response.status_code == 200:
            message_id = response.json().get("message_id")
            self.log_util.info(
                service_name="MessagingClient",
                message=f"[SEND] Message sent, message_id: {message_id}",
                conversation_id=conversation_id
            )
            return message_id

        error = self._parse_error(response)
        if error.get("code") == WINDOW_EXPIRED_ERROR_CODE and error.get("error_subcode") == WINDOW_EXPIRED_ERROR_SUBCODE:
            self.log_util.warning(
                service_name="MessagingClient",
                message=f"[SEND] Messaging window expired: {error.get('message')}",
                conversation_id=conversation_id
            )
            raise WindowExpiredException(
                message=error.get("message") or "Messaging window expired",
                conversation_id=conversation_id
            )

        self.log_util.error(
            service_name="MessagingClient",
            message=f"[SEND] Send API returned error: {response.status_code} - {error.get('message') or response.text}",
            conversation_id=conversation_id
        )
        raise ExternalCallException(
            message=f"Send API error {response.status_code}: {error.get('message') or response.text}",
            call_type="messaging"
        )

    @staticmethod
    def _parse_error(response: httpx.Response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            return {}
        if isinstance(body, dict) and isinstance(body.get("error"), dict):
            return body["error"]
        return {}
