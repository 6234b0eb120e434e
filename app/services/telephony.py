"""Twilio telephony adapter.

- place_call(): outbound call whose answered leg fetches the voice webhook
- validate_webhook(): X-Twilio-Signature check over the exact URL + form body
- voice_response(): TwiML prompt + record action for the answered leg
- send_sms(): agent SMS notifications
"""

import asyncio
import logging
from dataclasses import dataclass
from urllib.parse import urlencode

import requests
from twilio.rest import Client
from twilio.base.exceptions import TwilioException, TwilioRestException
from twilio.http.http_client import TwilioHttpClient
from twilio.request_validator import RequestValidator
from twilio.twiml.voice_response import VoiceResponse

from app.core.config import settings
from app.core.errors import PermanentError, RetryableError

logger = logging.getLogger(__name__)

WEBHOOK_PATH = "/api/v1/webhooks"

VOICE_PROMPT = (
    "Hello! This is regarding your delivery scheduled for today. "
    "Please record your availability or special delivery instructions after the beep."
)
RECORD_MAX_LENGTH = 60
RECORD_FINISH_KEY = "#"

# Twilio CallStatus → CallLog status
_STATUS_MAP = {
    "queued": "queued",
    "initiated": "initiated",
    "ringing": "ringing",
    "answered": "answered",
    "in-progress": "answered",
    "completed": "completed",
    "no-answer": "no-answer",
    "busy": "busy",
    "failed": "failed",
    "canceled": "failed",
}


def normalize_call_status(status: str | None) -> str | None:
    """Map a provider call status onto the CallLog lifecycle; None if unknown."""
    if not status:
        return None
    return _STATUS_MAP.get(status.strip().lower())


@dataclass
class PlacedCall:
    call_id: str
    initial_status: str


class TelephonyService:
    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        base_url: str = "",
        timeout: float = 10.0,
        client: Client | None = None,
    ):
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client
        self.validator = RequestValidator(auth_token) if auth_token else None

        if not self.enabled:
            logger.warning("Twilio credentials not configured - outbound calls and SMS disabled")

    @classmethod
    def from_settings(cls) -> "TelephonyService":
        return cls(
            settings.TWILIO_ACCOUNT_SID,
            settings.TWILIO_AUTH_TOKEN,
            settings.TWILIO_PHONE_NUMBER,
            base_url=settings.BASE_URL,
            timeout=settings.TELEPHONY_TIMEOUT_SECONDS,
        )

    @property
    def enabled(self) -> bool:
        return bool(self._client) or all([self.account_sid, self.auth_token, self.from_number])

    @property
    def client(self) -> Client:
        if self._client is None:
            self._client = Client(
                self.account_sid,
                self.auth_token,
                http_client=TwilioHttpClient(timeout=self.timeout),
            )
        return self._client

    def callback_url(self, name: str, delivery_id, base: str | None = None) -> str:
        base = (base or self.base_url).rstrip("/")
        return f"{base}{WEBHOOK_PATH}/{name}?{urlencode({'delivery_id': str(delivery_id)})}"

    async def place_call(self, delivery_id, customer_phone: str, callback_base: str | None = None) -> PlacedCall:
        """Place the outbound call. Raises PermanentError / RetryableError."""
        if not self.enabled:
            raise PermanentError(
                "Twilio client not configured. Please set TWILIO_ACCOUNT_SID and TWILIO_AUTH_TOKEN"
            )
        if not (callback_base or self.base_url):
            raise PermanentError("BASE_URL not configured; provider cannot reach the voice webhook")
        if not customer_phone:
            raise PermanentError(f"Delivery {delivery_id} has no customer phone number")

        try:
            call = await asyncio.to_thread(
                self.client.calls.create,
                url=self.callback_url("voice", delivery_id, callback_base),
                to=customer_phone,
                from_=self.from_number,
                status_callback=self.callback_url("call-status", delivery_id, callback_base),
                status_callback_event=["initiated", "ringing", "answered", "completed"],
                status_callback_method="POST",
            )
        except TwilioRestException as e:
            if e.status and 400 <= e.status < 500:
                raise PermanentError(f"Twilio rejected call to {customer_phone}: {e.msg}") from e
            raise RetryableError(f"Twilio error placing call: {e.msg}") from e
        except (requests.RequestException, TwilioException) as e:
            raise RetryableError(f"Twilio unreachable placing call: {e}") from e

        logger.info("Call initiated for delivery %s, SID: %s (%s)", delivery_id, call.sid, call.status)
        return PlacedCall(call_id=call.sid, initial_status=call.status)

    def validate_webhook(self, signature: str | None, url: str, params: dict) -> bool:
        """HMAC check of an inbound webhook against the exact request URL (including query)."""
        if not self.validator:
            logger.warning("TWILIO_AUTH_TOKEN not configured - rejecting webhook %s", url)
            return False
        if not signature:
            return False
        return self.validator.validate(url, params, signature)

    def voice_response(self, delivery_id, callback_base: str | None = None) -> str:
        """TwiML for the answered leg: prompt, then record with callbacks."""
        twiml = VoiceResponse()
        if not delivery_id:
            twiml.say("Sorry, there was an error with this call.")
            return str(twiml)

        twiml.say(VOICE_PROMPT, voice="alice")
        twiml.record(
            action=self.callback_url("recording", delivery_id, callback_base),
            max_length=RECORD_MAX_LENGTH,
            finish_on_key=RECORD_FINISH_KEY,
            transcribe=True,
            transcribe_callback=self.callback_url("transcription", delivery_id, callback_base),
        )
        twiml.say("We did not receive your message. Goodbye.")
        return str(twiml)

    async def send_sms(self, to: str, body: str) -> bool:
        """Send an SMS via Twilio. Returns True on success."""
        if not self.enabled:
            logger.warning("Twilio credentials not configured - skipping SMS to %s", to)
            return False
        if not to:
            return False

        try:
            message = await asyncio.to_thread(
                self.client.messages.create,
                body=body,
                from_=self.from_number,
                to=to,
            )
            logger.info("SMS sent to %s - SID: %s", to, message.sid)
            return True
        except TwilioRestException as e:
            logger.error("Twilio error sending SMS to %s: %s", to, e)
            return False
        except Exception as e:
            logger.error("Unexpected error sending SMS to %s: %s", to, e)
            return False

    def close(self) -> None:
        http_client = getattr(self._client, "http_client", None)
        session = getattr(http_client, "session", None)
        if session is not None:
            session.close()
