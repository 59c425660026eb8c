"""SMS delivery for one-time MFA codes."""
from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime
from pathlib import Path
from typing import Protocol

from .config import Settings

logger = logging.getLogger(__name__)


class SmsSender(Protocol):
    async def send_code(self, phone_number: str, code: str, *, expires_minutes: int) -> None: ...


class OutboxSmsSender:
    """Writes outbound SMS to a local outbox; a carrier integration replaces it in production."""

    def __init__(self, settings: Settings) -> None:
        self.outbox_dir = Path(settings.sms_outbox_dir) if settings.sms_outbox_dir else None
        if self.outbox_dir:
            self.outbox_dir.mkdir(parents=True, exist_ok=True)
        self.last_message: dict[str, str] | None = None

    async def send_code(self, phone_number: str, code: str, *, expires_minutes: int) -> None:
        body = f"Tu código de verificación es {code}. Expira en {expires_minutes} minutos."
        await asyncio.to_thread(self._send, phone_number, body)

    def _send(self, phone_number: str, body: str) -> None:
        logger.info("SMS preparado para %s", phone_number[-4:])
        self.last_message = {"to": phone_number, "body": body}
        if not self.outbox_dir:
            return
        filename = self.outbox_dir / f"{datetime.now().strftime('%Y%m%dT%H%M%S%f')}_{uuid.uuid4().hex}.sms"
        filename.write_text(f"To: {phone_number}\n\n{body}\n", encoding="utf-8")
