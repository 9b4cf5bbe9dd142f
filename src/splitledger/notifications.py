from __future__ import annotations

import asyncio
import html
from dataclasses import dataclass
from typing import Optional, Protocol

import aiohttp

from splitledger.config import Settings
from splitledger.logging import get_logger
from splitledger.services.errors import NotificationError
from splitledger.services.membership import InviteDetails


@dataclass(slots=True, frozen=True)
class InviteMessage:
    to: str
    subject: str
    html: str
    link: str


class Notifier(Protocol):
    async def send(self, message: InviteMessage) -> None: ...


def invite_link(settings: Settings, token: str) -> str:
    return f"{settings.site_url.rstrip('/')}/join-group/{token}"


def build_invite_message(details: InviteDetails, settings: Settings) -> InviteMessage:
    link = invite_link(settings, details.token)
    app_name = html.escape(settings.app_name)
    group_name = html.escape(details.group_name)
    inviter = html.escape(details.inviter_name or details.inviter_email or f"User {details.inviter_id}")
    role = "Admin" if details.is_admin else "Member"
    body = (
        "<div>"
        f"<h1>You've been invited to join {group_name} on {app_name}!</h1>"
        f"<p>{role} {inviter} has invited you to join their expense-sharing group.</p>"
        "<p>Click the link below to join:</p>"
        f'<a href="{html.escape(link, quote=True)}">Join Group</a>'
        f"<p>This invitation expires on {details.expires_at:%Y-%m-%d %H:%M %Z}.</p>"
        "</div>"
    )
    return InviteMessage(
        to=details.email,
        subject=f"Join {details.group_name} on {settings.app_name}",
        html=body,
        link=link,
    )


class LogNotifier:
    """Writes invitations to the log instead of delivering them."""

    def __init__(self) -> None:
        self._log = get_logger(__name__)

    async def send(self, message: InviteMessage) -> None:
        self._log.info("invite.outbox", to=message.to, subject=message.subject, link=message.link)


class ResendNotifier:
    api_url = "https://api.resend.com/emails"

    def __init__(
        self,
        api_key: str,
        sender: str,
        session: Optional[aiohttp.ClientSession] = None,
        timeout: float = 10.0,
    ) -> None:
        self._api_key = api_key
        self._sender = sender
        self._session = session
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._log = get_logger(__name__)

    async def send(self, message: InviteMessage) -> None:
        if self._session is not None:
            await self._post(self._session, message)
            return
        async with aiohttp.ClientSession(timeout=self._timeout) as session:
            await self._post(session, message)

    async def _post(self, session: aiohttp.ClientSession, message: InviteMessage) -> None:
        payload = {
            "from": self._sender,
            "to": [message.to],
            "subject": message.subject,
            "html": message.html,
        }
        headers = {"Authorization": f"Bearer {self._api_key}"}
        try:
            async with session.post(self.api_url, json=payload, headers=headers, timeout=self._timeout) as response:
                if response.status >= 300:
                    detail = await response.text()
                    raise NotificationError(f"Resend rejected the email ({response.status}): {detail[:200]}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise NotificationError(f"Failed to send email: {exc}") from exc
        self._log.info("invite.email_sent", to=message.to)


def build_notifier(settings: Settings) -> Notifier:
    if settings.resend_api_key:
        return ResendNotifier(settings.resend_api_key, settings.invite_from)
    return LogNotifier()
