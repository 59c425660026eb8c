"""Lightweight email utility used to emit verification, reset and MFA messages."""
from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime
from pathlib import Path
from textwrap import dedent
from typing import Any, Mapping, Protocol

from .config import Settings

logger = logging.getLogger(__name__)


class EmailDispatcher(Protocol):
    async def send(self, address: str, template: str, params: Mapping[str, Any]) -> None: ...


TEMPLATES = {
    "verify_email": (
        "Confirma tu cuenta",
        """
        Hola,

        Gracias por registrarte. Confirma tu correo copiando el siguiente enlace
        en tu navegador:

        {link}

        Si no solicitaste esta cuenta, puedes ignorar este mensaje.
        """,
    ),
    "password_reset": (
        "Restablece tu contraseña",
        """
        Hola,

        Recibimos una solicitud para restablecer tu contraseña. Usa este enlace
        dentro de los próximos {minutes} minutos:

        {link}

        Si no fuiste tú, ignora este mensaje; tu contraseña no cambiará.
        """,
    ),
    "mfa_code": (
        "Tu código de verificación",
        """
        Tu código de verificación es: {code}

        Expira en {minutes} minutos. No lo compartas con nadie.
        """,
    ),
}


class EmailService:
    """Very small email helper that writes outbound mail to a local outbox."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.outbox_dir = Path(settings.email_outbox_dir) if settings.email_outbox_dir else None
        if self.outbox_dir:
            self.outbox_dir.mkdir(parents=True, exist_ok=True)
        self.last_message: dict[str, str] | None = None

    async def send(self, address: str, template: str, params: Mapping[str, Any]) -> None:
        """Render ``template`` with ``params`` and persist it to the outbox."""

        subject, body = TEMPLATES[template]
        body = dedent(body).strip().format(**params)
        await asyncio.to_thread(self._send, to_email=address, subject=subject, body=body)

    def _send(self, *, to_email: str, subject: str, body: str) -> None:
        message = f"From: {self.settings.email_from}\nTo: {to_email}\nSubject: {subject}\n\n{body}\n"
        logger.info("Email preparado para %s con asunto '%s'", to_email, subject)
        self.last_message = {"to": to_email, "subject": subject, "body": body}
        if not self.outbox_dir:
            return
        filename = self.outbox_dir / f"{datetime.now().strftime('%Y%m%dT%H%M%S%f')}_{uuid.uuid4().hex}.eml"
        filename.write_text(message, encoding="utf-8")
