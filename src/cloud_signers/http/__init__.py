# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0
from collections.abc import AsyncIterable
from dataclasses import dataclass, field

from ..interfaces.http import Fields
from .interfaces import HTTPClient, HTTPRequestConfiguration

__all__ = ["HTTPClient", "HTTPRequestConfiguration", "HTTPResponse"]


@dataclass(kw_only=True)
class HTTPResponse:
    """Basic implementation of :py:class:`.interfaces.HTTPResponse`.

    Implementations of :py:class:`.interfaces.HTTPClient` may return instances of this
    class or of custom response implementations.
    """

    body: bytes | AsyncIterable[bytes] = field(repr=False, default=b"")
    """The response payload, either read in full or as chunks of bytes."""

    status: int
    """The 3 digit response status code (1xx, 2xx, 3xx, 4xx, 5xx)."""

    fields: Fields
    """HTTP header and trailer fields."""

    reason: str | None = None
    """Optional string provided by the server explaining the status."""

    async def consume_body_async(self) -> bytes:
        """Iterate over response body and return as bytes."""
        if isinstance(self.body, bytes):
            return self.body
        chunks = [chunk async for chunk in self.body]
        self.body = b"".join(chunks)
        return self.body
