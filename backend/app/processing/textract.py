"""
AWS Textract JSON API client (SigV4-signed, httpx transport).

Textract exposes a single POST endpoint; the operation is selected by the
X-Amz-Target header and the payload is application/x-amz-json-1.1.

Operations used by the extraction strategies:
  DetectDocumentText          synchronous, single image / single page
  StartDocumentTextDetection  asynchronous multi-page job → JobId
  GetDocumentTextDetection    poll + paginate (NextToken) a job's blocks

No retries here: an HTTP error or a timeout is an ExtractionError and the
job fails. Textract's own async job loop is the only waiting we do.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any

import httpx

from app.core.errors import ExtractionError
from app.storage.signing import AwsCredentials, Clock, sign_request, utc_now

logger = logging.getLogger(__name__)

TEXTRACT_SERVICE      = "textract"
TEXTRACT_CONTENT_TYPE = "application/x-amz-json-1.1"


def s3_document(bucket: str, key: str) -> dict[str, Any]:
    return {"S3Object": {"Bucket": bucket, "Name": key}}


def line_texts(blocks: list[dict] | None) -> list[str]:
    """LINE block texts in provider (reading) order."""
    return [
        block["Text"]
        for block in blocks or []
        if block.get("BlockType") == "LINE" and block.get("Text")
    ]


class TextractClient:

    def __init__(
        self,
        region:      str,
        credentials: AwsCredentials,
        timeout:     float = 30.0,
        http_client: httpx.AsyncClient | None = None,
        clock:       Clock = utc_now,
    ) -> None:
        self._region      = region
        self._credentials = credentials
        self._timeout     = timeout
        self._http        = http_client
        self._clock       = clock

    async def call(
        self,
        operation: str,
        payload:   dict[str, Any],
        timeout:   float | None = None,
    ) -> dict[str, Any]:
        """
        Sign and send one Textract operation; return the decoded JSON body.

        `timeout` can only shorten the configured timeout, never extend it.
        """
        if not self._region:
            raise ExtractionError("AWS region is not configured")

        body = json.dumps(
            {k: v for k, v in payload.items() if v is not None},
            separators=(",", ":"),
        )
        signed = sign_request(
            "POST", "/",
            region=self._region,
            service=TEXTRACT_SERVICE,
            credentials=self._credentials,
            headers={
                "content-type": TEXTRACT_CONTENT_TYPE,
                "x-amz-target": f"Textract.{operation}",
            },
            body=body,
            clock=self._clock,
        )

        limit = self._timeout if timeout is None else min(self._timeout, timeout)
        t0 = time.monotonic()
        try:
            if self._http is not None:
                response = await self._http.post(
                    signed.url, headers=signed.headers, content=signed.body,
                    timeout=limit,
                )
            else:
                async with httpx.AsyncClient(timeout=limit) as http:
                    response = await http.post(
                        signed.url, headers=signed.headers, content=signed.body,
                    )
        except httpx.TimeoutException as exc:
            raise ExtractionError(
                f"Textract {operation} timed out after {limit:.1f}s"
            ) from exc
        except httpx.HTTPError as exc:
            raise ExtractionError(f"Textract {operation} request failed: {exc}") from exc

        elapsed_ms = (time.monotonic() - t0) * 1000
        if response.status_code >= 400:
            raise ExtractionError(
                f"Textract {operation} failed: {response.status_code} {response.text}"
            )

        logger.debug(
            "Textract | op=%s status=%d elapsed_ms=%.0f",
            operation, response.status_code, elapsed_ms,
        )
        try:
            return response.json()
        except ValueError as exc:
            raise ExtractionError(f"Textract {operation} returned invalid JSON") from exc

    async def detect_document_text(
        self,
        bucket:  str,
        key:     str,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        return await self.call(
            "DetectDocumentText", {"Document": s3_document(bucket, key)}, timeout=timeout,
        )

    async def start_document_text_detection(
        self,
        bucket:  str,
        key:     str,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        return await self.call(
            "StartDocumentTextDetection",
            {"DocumentLocation": s3_document(bucket, key)},
            timeout=timeout,
        )

    async def get_document_text_detection(
        self,
        job_id:      str,
        next_token:  str | None = None,
        max_results: int = 1000,
        timeout:     float | None = None,
    ) -> dict[str, Any]:
        return await self.call(
            "GetDocumentTextDetection",
            {"JobId": job_id, "NextToken": next_token, "MaxResults": max_results},
            timeout=timeout,
        )
