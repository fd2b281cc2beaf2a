"""
AWS CloudWatch Logs sink implementation.

This module provides the production SinkClient backed by the CloudWatch
Logs API (PutLogEvents, DescribeLogStreams, CreateLogStream,
CreateLogGroup). It uses aiobotocore for async operations.

Invariants:
    - Each SinkClient operation issues exactly one API request
    - botocore-level retries are bounded by SinkConfig.max_attempts
    - Every failure is re-raised as SinkError with the original chained
    - Event timestamps are converted from microseconds to milliseconds

How to change safely:
    - Test with LocalStack before deploying to AWS
    - Keep the error-code table in sync with the CloudWatch Logs API
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional, Sequence

from aiobotocore.config import AioConfig
from aiobotocore.session import get_session
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from .base import InputEvent, SinkError, SinkErrorKind

logger = logging.getLogger(__name__)

_ERROR_KINDS: Dict[str, SinkErrorKind] = {
    "ResourceNotFoundException": SinkErrorKind.NOT_FOUND,
    "InvalidSequenceTokenException": SinkErrorKind.TOKEN_MISMATCH,
    "DataAlreadyAcceptedException": SinkErrorKind.ALREADY_ACCEPTED,
    "ResourceAlreadyExistsException": SinkErrorKind.ALREADY_EXISTS,
    "ThrottlingException": SinkErrorKind.TRANSIENT,
    "ServiceUnavailableException": SinkErrorKind.TRANSIENT,
    "RequestLimitExceeded": SinkErrorKind.TRANSIENT,
    "LimitExceededException": SinkErrorKind.TRANSIENT,
}


def classify_client_error(error: BaseException) -> SinkError:
    """Translate an AWS SDK failure into a SinkError.

    Args:
        error: Exception raised by an aiobotocore call

    Returns:
        SinkError with the matching kind (FATAL if unrecognized)
    """
    if isinstance(error, ClientError):
        details = error.response.get("Error", {})
        code = details.get("Code", "")
        message = details.get("Message") or str(error)
        kind = _ERROR_KINDS.get(code, SinkErrorKind.FATAL)
        return SinkError(kind, message, code=code or None)

    if isinstance(error, (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError)):
        return SinkError(SinkErrorKind.TRANSIENT, str(error), code=type(error).__name__)

    if isinstance(error, asyncio.TimeoutError):
        return SinkError(SinkErrorKind.TRANSIENT, "CloudWatch Logs request timed out")

    return SinkError(SinkErrorKind.FATAL, str(error), code=type(error).__name__)


def rejected_event_count(info: Dict[str, Any], total: int) -> int:
    """Count the events a PutLogEvents response reports as rejected.

    The too-old and expired indexes end a rejected prefix (exclusive);
    the too-new index starts a rejected suffix (inclusive).
    """
    prefix_end = max(
        info.get("tooOldLogEventEndIndex", 0),
        info.get("expiredLogEventEndIndex", 0),
    )
    prefix_end = min(prefix_end, total)
    suffix_start = max(info.get("tooNewLogEventStartIndex", total), prefix_end)
    return prefix_end + max(total - suffix_start, 0)


class CloudWatchSinkClient:
    """CloudWatch Logs implementation of the SinkClient protocol.

    Uses aiobotocore for async operations with the ``logs`` service.
    Credentials come from the standard AWS credential chain.

    Attributes:
        config: Sink configuration

    Example:
        >>> sink = CloudWatchSinkClient(SinkConfig(region="eu-west-1"))
        >>> await sink.connect()
        >>> token = await sink.append_events("app", "host-1", None, events)
        >>> await sink.close()
    """

    def __init__(self, config: Any) -> None:
        """Initialize CloudWatch sink.

        Args:
            config: SinkConfig instance
        """
        self.config = config
        self._session = None
        self._client_ctx = None
        self._client = None
        self._connected = False

    @property
    def is_connected(self) -> bool:
        """Whether connected to CloudWatch Logs."""
        return self._connected

    async def connect(self) -> None:
        """Create the aiobotocore session and client.

        Does not touch any log group or stream; those are provisioned on
        demand by the repeater.

        Raises:
            SinkError: If the client cannot be created
        """
        if self._connected:
            return

        client_config: Dict[str, Any] = {
            "region_name": self.config.region,
            "config": AioConfig(
                connect_timeout=self.config.connect_timeout,
                read_timeout=self.config.read_timeout,
                retries={"mode": "standard", "max_attempts": self.config.max_attempts},
            ),
        }
        if self.config.endpoint_url:
            client_config["endpoint_url"] = self.config.endpoint_url

        try:
            self._session = get_session()
            self._client_ctx = self._session.create_client("logs", **client_config)
            self._client = await self._client_ctx.__aenter__()
        except (BotoCoreError, ClientError) as e:
            raise classify_client_error(e) from e

        self._connected = True
        logger.info(
            "Connected to CloudWatch Logs",
            extra={
                "region": self.config.region,
                "endpoint": self.config.endpoint_url or "AWS",
            },
        )

    async def close(self) -> None:
        """Close the CloudWatch Logs client."""
        if self._client_ctx is not None:
            try:
                await self._client_ctx.__aexit__(None, None, None)
            except Exception as e:
                logger.warning(f"Error closing CloudWatch Logs client: {e}")

        self._client_ctx = None
        self._client = None
        self._session = None
        self._connected = False
        logger.info("CloudWatch Logs connection closed")

    async def append_events(
        self,
        group: str,
        stream: str,
        token: Optional[str],
        events: Sequence[InputEvent],
    ) -> str:
        """Send events with PutLogEvents.

        The sequence token is omitted from the request when empty, which
        is how CloudWatch expects the first write to a stream.
        """
        request: Dict[str, Any] = {
            "logGroupName": group,
            "logStreamName": stream,
            "logEvents": [
                {"timestamp": event.timestamp // 1000, "message": event.message}
                for event in events
            ],
        }
        if token:
            request["sequenceToken"] = token

        response = await self._call("put_log_events", **request)

        rejected = response.get("rejectedLogEventsInfo")
        if rejected:
            # The rest of the batch was stored and the token still advances
            logger.error(
                "CloudWatch rejected events from a batch",
                extra={
                    "group": group,
                    "stream": stream,
                    "rejected_count": rejected_event_count(rejected, len(events)),
                    "batch_count": len(events),
                    "rejected": rejected,
                },
            )

        return response.get("nextSequenceToken") or ""

    async def lookup_token(self, group: str, stream_prefix: str) -> Optional[str]:
        """Find the upload sequence token with DescribeLogStreams.

        A missing log group is reported as "not found" rather than as an
        error, the same as a missing stream.
        """
        try:
            response = await self._call(
                "describe_log_streams",
                logGroupName=group,
                logStreamNamePrefix=stream_prefix,
            )
        except SinkError as e:
            if e.kind is SinkErrorKind.NOT_FOUND:
                return None
            raise

        for entry in response.get("logStreams", []):
            if entry.get("logStreamName") == stream_prefix:
                return entry.get("uploadSequenceToken") or None
        return None

    async def create_stream(self, group: str, stream: str) -> None:
        await self._call("create_log_stream", logGroupName=group, logStreamName=stream)

    async def create_group(self, group: str) -> None:
        await self._call("create_log_group", logGroupName=group)

    async def _call(self, operation: str, **kwargs: Any) -> Dict[str, Any]:
        if not self._client:
            raise SinkError(SinkErrorKind.FATAL, "Not connected to CloudWatch Logs")

        try:
            return await getattr(self._client, operation)(**kwargs)
        except (BotoCoreError, ClientError, asyncio.TimeoutError) as e:
            raise classify_client_error(e) from e
