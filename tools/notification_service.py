"""
Notification Service Tool
Outbound messaging, speech synthesis and clinic alerts
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

import httpx

from config import Settings, settings as default_settings
from exceptions import NotificationError
from tools.clock import utcnow


logger = logging.getLogger(__name__)


class NotificationChannel(str, Enum):
    """Available notification channels"""
    TEXT = "text"
    VOICE_NOTE = "voice_note"
    VOICE_CALL = "voice_call"
    CLINIC = "clinic"


@dataclass
class NotificationResult:
    """Result of sending a notification"""
    success: bool
    channel: NotificationChannel
    message_id: Optional[str] = None
    delivered_at: Optional[datetime] = None
    error: Optional[str] = None


# ==================== INTERFACES ====================

class NotificationTransport(ABC):
    """Sends messages to patients and caregivers"""

    @abstractmethod
    async def send_text(
        self,
        to: str,
        text: str,
        quick_replies: Optional[List[str]] = None,
        media_url: Optional[str] = None
    ) -> NotificationResult:
        """Send a text message, optionally with quick-reply buttons and an attachment"""

    @abstractmethod
    async def send_voice_note(self, to: str, audio_url: str) -> NotificationResult:
        """Send a pre-recorded audio message"""

    @abstractmethod
    async def place_voice_call(self, to: str, script: str) -> NotificationResult:
        """Place an interactive voice call driven by `script`"""

    @abstractmethod
    async def download_media(self, media_id: str) -> bytes:
        """Fetch media attached to an inbound message"""


class SpeechSynthesizer(ABC):
    """Turns text into a playable audio URL"""

    @abstractmethod
    async def synthesize(self, text: str, language: str = "en") -> str:
        """Return the URL of the synthesised audio"""


class ClinicNotifier(ABC):
    """Signals a patient's clinic"""

    @abstractmethod
    async def alert_clinic(self, clinic_id: str, payload: Dict[str, Any]) -> NotificationResult:
        """Send an adherence alert to the clinic"""


# ==================== HTTP GATEWAYS ====================

class _HttpGateway:
    """Shared request handling for the JSON gateways"""

    def __init__(self, base_url: str, token: Optional[str], timeout: float):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def _post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        # A client per call: Celery tasks run each job in a fresh event loop
        async with httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout) as client:
            try:
                response = await client.post(path, json=body, headers=self._headers())
                response.raise_for_status()
            except httpx.HTTPError as e:
                logger.error(f"Gateway request failed ({self.base_url}{path}): {e}")
                raise NotificationError(f"{path} failed: {e}") from e
        if not response.content:
            return {}
        return response.json()


class HttpNotificationTransport(_HttpGateway, NotificationTransport):
    """Messaging gateway client"""

    def __init__(self, config: Settings = default_settings):
        super().__init__(
            config.MESSAGING_API_URL,
            config.MESSAGING_API_TOKEN,
            config.MESSAGING_TIMEOUT_SECONDS,
        )

    async def send_text(
        self,
        to: str,
        text: str,
        quick_replies: Optional[List[str]] = None,
        media_url: Optional[str] = None
    ) -> NotificationResult:
        body: Dict[str, Any] = {"to": to, "text": text}
        if quick_replies:
            body["quick_replies"] = quick_replies
        if media_url:
            body["media_url"] = media_url
        data = await self._post("/messages", body)
        logger.debug(f"Text sent to {to}")
        return NotificationResult(
            success=True,
            channel=NotificationChannel.TEXT,
            message_id=data.get("id"),
            delivered_at=utcnow(),
        )

    async def send_voice_note(self, to: str, audio_url: str) -> NotificationResult:
        data = await self._post("/messages", {"to": to, "audio_url": audio_url})
        return NotificationResult(
            success=True,
            channel=NotificationChannel.VOICE_NOTE,
            message_id=data.get("id"),
            delivered_at=utcnow(),
        )

    async def place_voice_call(self, to: str, script: str) -> NotificationResult:
        data = await self._post("/calls", {"to": to, "script": script})
        logger.info(f"Voice call initiated to {to} (call_id={data.get('id')})")
        return NotificationResult(
            success=True,
            channel=NotificationChannel.VOICE_CALL,
            message_id=data.get("id"),
            delivered_at=utcnow(),
        )

    async def download_media(self, media_id: str) -> bytes:
        async with httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout) as client:
            try:
                response = await client.get(f"/media/{media_id}", headers=self._headers())
                response.raise_for_status()
            except httpx.HTTPError as e:
                raise NotificationError(f"Media download failed for {media_id}: {e}") from e
        return response.content


class HttpSpeechSynthesizer(_HttpGateway, SpeechSynthesizer):
    """Text-to-speech gateway client"""

    def __init__(self, config: Settings = default_settings):
        super().__init__(
            config.SPEECH_API_URL,
            config.SPEECH_API_TOKEN,
            config.MESSAGING_TIMEOUT_SECONDS,
        )

    async def synthesize(self, text: str, language: str = "en") -> str:
        data = await self._post("/synthesize", {"text": text, "language": language})
        audio_url = data.get("audio_url")
        if not audio_url:
            raise NotificationError("Speech gateway returned no audio_url")
        return audio_url


class WebhookClinicNotifier(ClinicNotifier):
    """Posts clinic alerts to a configured webhook"""

    def __init__(self, config: Settings = default_settings):
        self.webhook_url = config.CLINIC_WEBHOOK_URL
        self.timeout = config.MESSAGING_TIMEOUT_SECONDS

    async def alert_clinic(self, clinic_id: str, payload: Dict[str, Any]) -> NotificationResult:
        if not self.webhook_url:
            logger.info(f"No clinic webhook configured, clinic alert logged only (clinic_id={clinic_id})")
            return NotificationResult(success=False, channel=NotificationChannel.CLINIC, error="not configured")

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            try:
                response = await client.post(self.webhook_url, json={"clinic_id": clinic_id, **payload})
                response.raise_for_status()
            except httpx.HTTPError as e:
                logger.error(f"Clinic alert failed (clinic_id={clinic_id}): {e}")
                raise NotificationError(f"Clinic alert failed: {e}") from e

        logger.info(f"Clinic alerted (clinic_id={clinic_id})")
        return NotificationResult(success=True, channel=NotificationChannel.CLINIC, delivered_at=utcnow())
