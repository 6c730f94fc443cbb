from __future__ import annotations

from typing import Protocol


class DispatchError(Exception):
    """An outbound message could not be handed to the channel provider."""

    def __init__(self, message: str, *, provider: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class ChannelSender(Protocol):
    """Send primitive of one outbound channel binding.

    Implementations send exactly one message per call and return the
    provider's message id when it reports one. Transport failures raise
    ``DispatchError``; nothing is retried here.
    """

    provider: str

    def send_text(self, to_phone: str, text: str) -> str | None:
        """Send a text message to a digits-only phone number."""

    def send_media(
        self, to_phone: str, media_type: str, media_url: str, caption: str | None = None
    ) -> str | None:
        """Send an image, video, audio or document by public URL."""
