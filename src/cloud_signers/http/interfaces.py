# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0
from dataclasses import dataclass
from typing import ClassVar, Protocol

from .._http import CloudRequest
from ..interfaces.http import Fields


@dataclass(kw_only=True)
class HTTPRequestConfiguration:
    """Request-level HTTP configuration.

    :param read_timeout: How long, in seconds, the client will attempt to read the first
        byte over an established, open connection before timing out.
    :param timeout: The total time, in seconds, allowed for the whole exchange.
    :param verify_tls: Whether the server's TLS certificate is verified.
    """

    read_timeout: float | None = None
    timeout: float | None = None
    verify_tls: bool = True


class HTTPResponse(Protocol):
    """HTTP primitives returned from an HTTPClient."""

    @property
    def status(self) -> int:
        """The 3 digit response status code (1xx, 2xx, 3xx, 4xx, 5xx)."""
        ...

    @property
    def fields(self) -> Fields:
        """``Fields`` object containing HTTP headers and trailers."""
        ...

    @property
    def reason(self) -> str | None:
        """Optional string provided by the server explaining the status."""
        ...

    async def consume_body_async(self) -> bytes:
        """Iterate over response body and return as bytes."""
        ...


class HTTPClient(Protocol):
    """An asynchronous HTTP client interface."""

    TIMEOUT_EXCEPTIONS: ClassVar[tuple[type[Exception], ...]]
    """Exceptions raised by ``send`` when the exchange timed out or the connection
    failed. Requests failing with them may be retried."""

    async def send(
        self,
        request: CloudRequest,
        *,
        request_config: HTTPRequestConfiguration | None = None,
    ) -> HTTPResponse:
        """Send HTTP request over the wire and return the response.

        :param request: The request including destination URI, fields, payload.
        :param request_config: Configuration specific to this request.
        """
        ...
