"""Fan-out dispatch and the external collaborators it drives."""

from pycadence.dispatch.fanout import Dispatcher, DispatchResult
from pycadence.dispatch.interfaces import (
    ContentRenderer,
    OutboundTransport,
    Recipient,
    RecipientDirectory,
    RenderedContent,
    SendResult,
)

__all__ = [
    "Dispatcher",
    "DispatchResult",
    "ContentRenderer",
    "OutboundTransport",
    "Recipient",
    "RecipientDirectory",
    "RenderedContent",
    "SendResult",
]
