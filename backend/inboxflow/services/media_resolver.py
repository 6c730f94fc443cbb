from __future__ import annotations

import logging
import mimetypes
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Protocol
from uuid import UUID

import requests
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from inboxflow.db import repository
from inboxflow.db.models import MessageType
from inboxflow.db.session import SessionFactory, db_transaction
from inboxflow.db.types import utcnow
from inboxflow.whatsapp.types.message import MetaMediaInfo

logger = logging.getLogger(__name__)

_FALLBACK_EXTENSIONS = {
    MessageType.image: ".jpg",
    MessageType.audio: ".ogg",
    MessageType.video: ".mp4",
    MessageType.document: ".bin",
}


class MediaResolutionError(Exception):
    """Media could not be fetched or stored; the row is finalized without a URL."""


class MediaFetcher(Protocol):
    def get_media_info(self, media_id: str) -> MetaMediaInfo: ...

    def download_media(self, url: str) -> bytes: ...


@dataclass(frozen=True, slots=True)
class MediaJob:
    queued_message_id: UUID
    user_id: UUID
    message_type: MessageType
    media_id: str
    whatsapp_message_id: str | None
    mime_type: str | None = None


def file_extension(mime_type: str | None, message_type: MessageType) -> str:
    if mime_type:
        guessed = mimetypes.guess_extension(mime_type.split(";")[0].strip())
        if guessed:
            return guessed
    return _FALLBACK_EXTENSIONS.get(message_type, ".bin")


class MediaResolver:
    """Downloads channel media and republishes it under ``PUBLIC_BASE_URL/media``.

    The queue row is always finalized: ``media_processed`` becomes true with
    the public URL on success and with no URL on permanent failure, so the
    group processor never waits on media that cannot arrive.
    """

    def __init__(
        self,
        *,
        storage_dir: str | Path,
        public_base_url: str,
        session_factory: SessionFactory | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.storage_dir = Path(storage_dir)
        self.public_base_url = public_base_url.rstrip("/")
        self._session_factory = session_factory
        self._clock = clock

    def resolve(self, job: MediaJob, fetcher: MediaFetcher) -> str | None:
        try:
            public_url = self._store(job, fetcher)
        except (MediaResolutionError, requests.RequestException, OSError, KeyError) as exc:
            logger.error(
                "Media %s for queued message %s could not be resolved: %s",
                job.media_id,
                job.queued_message_id,
                exc,
            )
            public_url = None

        with db_transaction(self._session_factory) as session:
            repository.mark_media_resolved(session, job.queued_message_id, public_url)
            if public_url and job.whatsapp_message_id:
                repository.attach_late_media_url(
                    session, job.whatsapp_message_id, job.message_type, public_url
                )
        logger.info(
            "Media %s finalized for queued message %s (url=%s)",
            job.media_id,
            job.queued_message_id,
            public_url,
        )
        return public_url

    def _store(self, job: MediaJob, fetcher: MediaFetcher) -> str:
        info, content = self._fetch(job.media_id, fetcher)
        if not content:
            raise MediaResolutionError(f"Empty media body for {job.media_id}")

        extension = file_extension(info.mime_type or job.mime_type, job.message_type)
        stamp = int(self._clock().timestamp() * 1000)
        relative = Path(str(job.user_id)) / job.message_type.value / f"{stamp}_{job.media_id}{extension}"
        target = self.storage_dir / relative
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(content)
        return f"{self.public_base_url}/media/{relative.as_posix()}"

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        retry=retry_if_exception_type((requests.ConnectionError, requests.Timeout)),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    def _fetch(self, media_id: str, fetcher: MediaFetcher) -> tuple[MetaMediaInfo, bytes]:
        info = fetcher.get_media_info(media_id)
        return info, fetcher.download_media(info.url)
