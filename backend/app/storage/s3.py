"""
S3 Document Fetcher

Resolves a stored file reference (bucket + key) to something the
extraction strategies can consume:

  - Binary formats (PDF, images) are never downloaded by the worker —
    Textract reads them straight from S3. Callers that need a URL get a
    short-lived presigned GET instead.
  - Small flat-file formats (CSV, TSV, plain text) are fetched through a
    presigned GET and decoded to text in-process.

Every URL is scoped to the exact object key and signed by
app.storage.signing — no SDK, no ambient credential chain.
"""

from __future__ import annotations

import logging

import httpx

from app.core.errors import ExtractionError
from app.storage.signing import AwsCredentials, Clock, PresignedUrl, presign_url, utc_now

logger = logging.getLogger(__name__)

DEFAULT_GET_TTL_SECONDS = 900   # 15 minutes
DEFAULT_PUT_TTL_SECONDS = 900


def decode_text(data: bytes) -> str:
    """Decode with UTF-8, falling back to latin-1 for legacy exports."""
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        return data.decode("latin-1", errors="replace")


class S3DocumentFetcher:
    """
    Stateless fetcher bound to one bucket and one credential set.

    The http client is injectable so tests can mount an httpx.MockTransport.
    """

    def __init__(
        self,
        bucket:      str,
        region:      str,
        credentials: AwsCredentials,
        timeout:     float = 30.0,
        http_client: httpx.AsyncClient | None = None,
        clock:       Clock = utc_now,
    ) -> None:
        self._bucket      = bucket
        self._region      = region
        self._credentials = credentials
        self._timeout     = timeout
        self._http        = http_client
        self._clock       = clock

    @property
    def bucket(self) -> str:
        return self._bucket

    def presigned_get(self, key: str, expires_in: int = DEFAULT_GET_TTL_SECONDS) -> PresignedUrl:
        return presign_url(
            "GET", self._bucket, key,
            region=self._region,
            credentials=self._credentials,
            expires_in=expires_in,
            clock=self._clock,
        )

    def presigned_put(
        self,
        key:          str,
        content_type: str,
        expires_in:   int = DEFAULT_PUT_TTL_SECONDS,
    ) -> PresignedUrl:
        """Presigned PUT for direct browser upload; Content-Type is signed."""
        return presign_url(
            "PUT", self._bucket, key,
            region=self._region,
            credentials=self._credentials,
            expires_in=expires_in,
            content_type=content_type,
            clock=self._clock,
        )

    async def fetch_bytes(self, key: str, timeout: float | None = None) -> bytes:
        """Download an object; `timeout` can only shorten the configured one."""
        url = self.presigned_get(key).url
        limit = self._timeout if timeout is None else min(self._timeout, timeout)
        try:
            if self._http is not None:
                response = await self._http.get(url, timeout=limit)
            else:
                async with httpx.AsyncClient(timeout=limit) as http:
                    response = await http.get(url)
        except httpx.HTTPError as exc:
            raise ExtractionError(f"Failed to fetch file from S3: {exc}") from exc

        if response.status_code >= 400:
            raise ExtractionError(
                f"Failed to fetch file from S3: {response.status_code} {response.reason_phrase}"
            )

        logger.info(
            "S3 fetch ok | bucket=%s key=%s size=%d",
            self._bucket, key, len(response.content),
        )
        return response.content

    async def fetch_text(self, key: str, timeout: float | None = None) -> str:
        return decode_text(await self.fetch_bytes(key, timeout=timeout))
