# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0
import logging
from collections.abc import AsyncIterable, Iterable, Mapping
from itertools import chain
from typing import Any, ClassVar, Final
from urllib.parse import quote

import aiohttp
from yarl import URL

from .._http import URI, CloudRequest, Field, Fields, materialize_body
from ..interfaces.http import FieldPosition
from . import HTTPResponse
from .interfaces import HTTPClient, HTTPRequestConfiguration

logger: Final = logging.getLogger(__name__)

# Characters left as-is when sending a URL: reserved delimiters and existing
# percent escapes. Anything else, such as spaces or non-ASCII text, is escaped.
_URL_SAFE_CHARS = "!#$%&'()*+,/:;=?@[]~"


def _wire_url(uri: URI) -> URL:
    """The URL to put on the wire for ``uri``.

    The URL is marked as already encoded so the signed path and query are sent
    byte for byte.
    """
    return URL(quote(uri.build(), safe=_URL_SAFE_CHARS), encoded=True)


class AIOHTTPClient(HTTPClient):
    """Implementation of :py:class:`.interfaces.HTTPClient` using aiohttp.

    The underlying session is created on first use, inside the running event loop.
    """

    TIMEOUT_EXCEPTIONS: ClassVar[tuple[type[Exception], ...]] = (
        TimeoutError,
        aiohttp.ClientConnectionError,
    )

    def __init__(self, *, _session: "aiohttp.ClientSession | None" = None) -> None:
        self._session = _session

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(auto_decompress=False)
        return self._session

    async def send(
        self,
        request: CloudRequest,
        *,
        request_config: HTTPRequestConfiguration | None = None,
    ) -> HTTPResponse:
        """Send HTTP request using aiohttp client.

        :param request: The request including destination URI, fields, payload.
        :param request_config: Configuration specific to this request.
        """
        request_config = request_config or HTTPRequestConfiguration()
        body = self._serialize_body(request)

        headers_list = list(
            chain.from_iterable(
                fld.as_tuples()
                for fld in request.fields.get_by_type(FieldPosition.HEADER)
            )
        )
        timeout = aiohttp.ClientTimeout(
            total=request_config.timeout, sock_read=request_config.read_timeout
        )
        logger.debug("Sending %s %s", request.method, request.destination.build())
        async with self._get_session().request(
            method=request.method,
            url=_wire_url(request.destination),
            headers=headers_list,
            data=body,
            timeout=timeout,
            ssl=None if request_config.verify_tls else False,
            # An added default Content-Type would break shared key signatures.
            skip_auto_headers=("Content-Type",),
        ) as resp:
            return await self._marshal_response(resp)

    def _serialize_body(self, request: CloudRequest) -> Any:
        body = request.body
        if isinstance(body, AsyncIterable):
            return body
        if isinstance(body, Iterable) and not isinstance(
            body, bytes | bytearray | memoryview | str | Mapping
        ):
            return b"".join(body)  # type: ignore
        if isinstance(body, Mapping) and "Content-Type" not in request.fields:
            request.fields.set_field(
                Field(
                    name="Content-Type",
                    values=["application/x-www-form-urlencoded; charset=utf-8"],
                )
            )
        return materialize_body(body)

    async def _marshal_response(
        self, aiohttp_resp: "aiohttp.ClientResponse"
    ) -> HTTPResponse:
        """Convert a ``aiohttp.ClientResponse`` to an ``HTTPResponse``."""
        headers = Fields()
        for header_name, header_val in aiohttp_resp.headers.items():
            try:
                headers[header_name].add(header_val)
            except KeyError:
                headers[header_name] = Field(
                    name=header_name,
                    values=[header_val],
                    kind=FieldPosition.HEADER,
                )

        return HTTPResponse(
            status=aiohttp_resp.status,
            fields=headers,
            body=await aiohttp_resp.read(),
            reason=aiohttp_resp.reason,
        )

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
