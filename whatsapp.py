"""Outbound WhatsApp channel.

Messages go through an HTTP gateway that owns the WhatsApp Web session
(WAHA-style API). The channel is best-effort: :meth:`WhatsAppChannel.send`
never raises for delivery problems and reports ``SendStatus.UNAVAILABLE``
instead. A watchdog task (:meth:`WhatsAppChannel.supervise`) keeps the
session alive, restarting it whenever the gateway reports it dropped, and
hands pairing QR codes to the admin console.
"""
import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Optional

from aiohttp import ClientError, ClientResponseError, ClientSession, ClientTimeout

from advanced_config import WHATSAPP_SETTINGS
from errors import ChannelUnavailable
from pairing import render_qr_pdf
from security import phone_digits

logger = logging.getLogger(__name__)

READY = 'WORKING'
PAIRING = 'SCAN_QR_CODE'
DROPPED = ('STOPPED', 'FAILED')
DISCONNECTED = 'DISCONNECTED'


class SendStatus(Enum):
    OK = 'ok'
    UNAVAILABLE = 'unavailable'


def chat_id_for(phone: str) -> str:
    """WhatsApp address of a phone number: its digits plus '@c.us'."""
    return f"{phone_digits(phone)}@c.us"


class WhatsAppChannel:
    def __init__(self, base_url: str, session_name: str, api_key: Optional[str] = None,
                 on_qr: Optional[Callable[[bytes], Awaitable[None]]] = None):
        self.base_url = base_url.rstrip('/')
        self.session_name = session_name
        self.api_key = api_key
        self.on_qr = on_qr
        self.state = DISCONNECTED
        self._http: Optional[ClientSession] = None
        self._last_qr: Optional[str] = None

    @property
    def ready(self) -> bool:
        return self.state == READY

    async def connect(self) -> 'WhatsAppChannel':
        """Open the HTTP session and ask the gateway to start ours."""
        if self._http is None or self._http.closed:
            headers = {'X-Api-Key': self.api_key} if self.api_key else {}
            self._http = ClientSession(headers=headers, timeout=ClientTimeout(total=30))
        try:
            await self._start_session()
            await self.refresh_state()
        except (ClientError, asyncio.TimeoutError) as e:
            logger.error(f"WhatsApp gateway unreachable: {e}")
            self.state = DISCONNECTED
        return self

    async def close(self):
        if self._http is not None:
            await self._http.close()
            self._http = None
        self.state = DISCONNECTED

    async def send(self, phone: str, text: str) -> SendStatus:
        if not self.ready:
            logger.warning(f"WhatsApp not connected ({self.state}), message to {phone} dropped")
            return SendStatus.UNAVAILABLE
        try:
            await self._send_text(chat_id_for(phone), text)
        except ChannelUnavailable as e:
            logger.error(f"Failed to send WhatsApp message to {phone}: {e}")
            return SendStatus.UNAVAILABLE
        logger.info(f"WhatsApp message sent to {phone}")
        return SendStatus.OK

    async def refresh_state(self) -> str:
        data = await self._request('GET', f"/api/sessions/{self.session_name}")
        state = data.get('status', DISCONNECTED)
        if state != self.state:
            logger.info(f"WhatsApp session state: {self.state} -> {state}")
        self.state = state
        return state

    async def supervise(self):
        """Watchdog: poll the session, restart it when dropped, relay QR codes"""
        while True:
            try:
                state = await self.refresh_state()
                if state in DROPPED:
                    logger.warning(f"WhatsApp session {state}, reconnecting in {WHATSAPP_SETTINGS['reconnect_delay']}s")
                    await asyncio.sleep(WHATSAPP_SETTINGS['reconnect_delay'])
                    await self._start_session()
                    continue
                if state == PAIRING:
                    await self._relay_qr()
                await asyncio.sleep(WHATSAPP_SETTINGS['poll_interval'])
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.state = DISCONNECTED
                logger.error(f"WhatsApp watchdog error: {e}")
                await asyncio.sleep(WHATSAPP_SETTINGS['error_delay'])

    async def _relay_qr(self):
        data = await self._request('GET', f"/api/{self.session_name}/auth/qr", params={'format': 'raw'})
        value = data.get('value')
        if not value or value == self._last_qr:
            return
        self._last_qr = value
        logger.info("New WhatsApp pairing QR code generated")
        if self.on_qr is not None:
            await self.on_qr(render_qr_pdf(value))

    async def _start_session(self):
        try:
            await self._request('POST', "/api/sessions/start", json={'name': self.session_name})
        except ClientResponseError as e:
            # 422: session already running on the gateway
            if e.status != 422:
                raise

    async def _send_text(self, chat_id: str, text: str):
        try:
            await self._request('POST', "/api/sendText", json={
                'session': self.session_name,
                'chatId': chat_id,
                'text': text,
            })
        except (ClientError, asyncio.TimeoutError, ValueError) as e:
            # ValueError: gateway answered with a malformed JSON body
            raise ChannelUnavailable(str(e)) from e

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        if self._http is None:
            raise ClientError("WhatsApp channel is not connected")
        async with self._http.request(method, f"{self.base_url}{path}", **kwargs) as response:
            response.raise_for_status()
            if response.content_type == 'application/json':
                return await response.json()
            return {}
