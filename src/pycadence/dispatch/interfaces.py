"""Collaborators the dispatcher talks to.

The engine owns none of these: a recipient directory, a content renderer
and an outbound transport are supplied by the host application. Each is a
structural Protocol, so any object with the right async methods fits.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable


@dataclass(frozen=True)
class Recipient:
    """A contact resolved from the directory."""

    recipient_id: str
    address: str
    """Where the transport delivers (e-mail address, phone number...)."""
    attributes: dict[str, Any] = field(default_factory=dict)
    """Personalization and segmentation data (country, plan, status...)."""


@dataclass(frozen=True)
class RenderedContent:
    subject: str
    html_body: str
    text_body: str = ""


@dataclass(frozen=True)
class SendResult:
    """What the transport reported for one message."""

    accepted: bool
    provider_message_id: str | None = None
    reason: str | None = None
    """Provider's explanation when not accepted."""


@runtime_checkable
class RecipientDirectory(Protocol):
    """Source of recipients and their attributes.

    Both methods must leave out recipients whose status is in
    exclude_statuses (unsubscribed, bounced, complained, suppressed).
    """

    async def resolve(self, list_ref: str, exclude_statuses: Sequence[str]) -> list[Recipient]:
        """Every eligible recipient of a list or segment."""
        ...

    async def lookup(self, recipient_id: str, exclude_statuses: Sequence[str]) -> Recipient | None:
        """A single recipient, or None when unknown or excluded."""
        ...


@runtime_checkable
class ContentRenderer(Protocol):
    async def render(self, content_ref: str, attributes: dict[str, Any]) -> RenderedContent:
        """Render content for one recipient. Raise RenderError on failure."""
        ...


@runtime_checkable
class OutboundTransport(Protocol):
    async def send(
        self,
        address: str,
        subject: str,
        html_body: str,
        text_body: str,
        correlation_id: str,
    ) -> SendResult:
        """Hand one message to the provider.

        correlation_id comes back on delivery callbacks, which feed
        CampaignStore.update_outcome_by_correlation_id(). Raise
        TransportError for failures worth retrying.
        """
        ...
