from __future__ import annotations
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx
from jinja2 import Environment, FileSystemLoader, select_autoescape

from .. import config

logger = logging.getLogger(__name__)

TEMPLATE_DIR = os.path.join(os.path.dirname(__file__), "templates")

_templates = Environment(
    loader=FileSystemLoader(TEMPLATE_DIR),
    autoescape=select_autoescape(["html"]),
)


def render_template(name: str, context: Dict[str, Any]) -> str:
    return _templates.get_template(name).render(**context)


class MailError(Exception):
    """The mail backend refused or never answered."""


@dataclass(frozen=True)
class Sender:
    email: str
    name: str


# ----------------------------
# Mailer interface
# ----------------------------
class Mailer(ABC):
    """
    Built once at process start (start()), handed to whoever sends mail,
    closed on shutdown (aclose()).
    """

    def __init__(self, sender: Optional[Sender] = None):
        self.sender = sender or Sender(config.MAIL_SENDER_EMAIL,
                                       config.MAIL_FROM_NAME)

    async def start(self) -> None:
        pass

    async def aclose(self) -> None:
        pass

    @abstractmethod
    async def send(self, to: str, subject: str, html: str) -> None:
        """Raises MailError when the message was not accepted."""


# ----------------------------
# Log backend (dev / tests)
# ----------------------------
class LogMailer(Mailer):
    def __init__(self, sender: Optional[Sender] = None):
        super().__init__(sender)
        self.sent: List[Dict[str, str]] = []

    async def send(self, to: str, subject: str, html: str) -> None:
        self.sent.append({"to": to, "subject": subject, "html": html})
        logger.info("mail to=%s subject=%r (%d bytes)", to, subject,
                    len(html))


# ----------------------------
# Mailtrap send API
# ----------------------------
class MailtrapClient(Mailer):
    def __init__(self, token: str, api_url: str = config.MAILTRAP_API_URL,
                 sender: Optional[Sender] = None,
                 http: Optional[httpx.AsyncClient] = None,
                 timeout: float = 10.0):
        super().__init__(sender)
        self._token = token
        self._api_url = api_url
        self._timeout = timeout
        self._http = http
        self._owns_http = http is None

    async def start(self) -> None:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self._timeout)

    async def aclose(self) -> None:
        if self._http is not None and self._owns_http:
            await self._http.aclose()
        self._http = None

    async def send(self, to: str, subject: str, html: str) -> None:
        if self._http is None:
            raise RuntimeError("MailtrapClient not started")
        body = {
            "from": {"email": self.sender.email, "name": self.sender.name},
            "to": [{"email": to}],
            "subject": subject,
            "html": html,
        }
        try:
            r = await self._http.post(
                self._api_url,
                json=body,
                headers={"Authorization": f"Bearer {self._token}"},
            )
        except httpx.HTTPError as e:
            raise MailError(f"{type(e).__name__}: {e}") from e
        if r.status_code >= 300:
            raise MailError(f"HTTP {r.status_code}: {r.text[:200]}")


def new_mailer(backend: str = config.MAIL_BACKEND,
               http: Optional[httpx.AsyncClient] = None) -> Mailer:
    """'log' | 'mailtrap'"""
    if backend == "mailtrap":
        if not config.MAILTRAP_TOKEN:
            raise RuntimeError("MAIL_BACKEND=mailtrap requires MAILTRAP_TOKEN")
        return MailtrapClient(config.MAILTRAP_TOKEN, http=http)
    return LogMailer()


__all__ = ["Mailer", "LogMailer", "MailtrapClient", "MailError", "Sender",
           "new_mailer", "render_template"]
