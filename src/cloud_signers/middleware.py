# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0
import asyncio
import logging
import random
from collections.abc import Callable, Iterable, Mapping, Sequence
from copy import deepcopy
from dataclasses import dataclass, replace
from enum import Enum
from types import TracebackType
from typing import Any, Final, Protocol, Self, assert_never

from ._http import URI, CloudRequest
from ._identity import AWSCredentialIdentity, AzureCredentialIdentity
from .azure import (
    AzureSharedKeySigner,
    AzureSigningProperties,
    requires_tls_verification,
)
from .credentials.store import CredentialStore
from .http.aiohttp import AIOHTTPClient
from .http.interfaces import HTTPClient, HTTPRequestConfiguration, HTTPResponse
from .interfaces.http import RequestBody
from .signers import (
    SigV2Signer,
    SigV2SigningProperties,
    SigV4Signer,
    SigV4SigningProperties,
)

logger: Final = logging.getLogger(__name__)

type AnyCredentialStore = (
    CredentialStore[AWSCredentialIdentity, Any]
    | CredentialStore[AzureCredentialIdentity, Any]
)


class Provider(Enum):
    """Selects the signing algorithm applied to outgoing requests."""

    AWS = "aws"
    """AWS Signature Version 4."""

    AWSV2 = "awsv2"
    """The legacy AWS Signature Version 2 query signing."""

    AZURE = "azure"
    """Azure Storage shared key, bearer token or SAS token authorization."""


@dataclass(kw_only=True, frozen=True)
class TransmitContext:
    """The state of one attempt immediately before it is sent."""

    request: CloudRequest
    request_config: HTTPRequestConfiguration
    attempt: int
    """The attempt number, starting at 1."""


class Interceptor(Protocol):
    """A hook invoked before every attempt is written to the wire."""

    async def modify_before_transmit(self, context: TransmitContext) -> CloudRequest:
        """Return the request to send for this attempt.

        Raising an exception aborts the send.

        :param context: The request and configuration of the attempt.
        """
        ...


class RequestSigningInterceptor(Interceptor):
    """Signs each attempt with a fresh timestamp and current credentials.

    Without a credential store requests are sent unsigned, which is how public
    resources are read.
    """

    def __init__(
        self,
        provider: Provider,
        credentials: AnyCredentialStore | None = None,
        *,
        signing_properties: Mapping[str, Any] | None = None,
    ) -> None:
        """Construct a RequestSigningInterceptor.

        :param provider: The signing algorithm to apply.
        :param credentials: The store the credentials for each attempt come from.
        :param signing_properties: Properties handed to the signer, such as the
            SigV4 ``region`` and ``service`` or the SigV2 ``version``.
        """
        self._provider = provider
        self._credentials = credentials
        self._signing_properties = dict(signing_properties or {})
        self._sigv4 = SigV4Signer()
        self._sigv2 = SigV2Signer()
        self._azure = AzureSharedKeySigner()

    async def modify_before_transmit(self, context: TransmitContext) -> CloudRequest:
        if self._credentials is None:
            logger.debug("No credentials configured, sending the request unsigned.")
            return context.request

        # May block while the store refreshes expiring credentials.
        identity: Any = await self._credentials.get_current()
        match self._provider:
            case Provider.AWS:
                return self._sigv4.sign(
                    signing_properties=SigV4SigningProperties(
                        **self._signing_properties
                    ),
                    http_request=context.request,
                    identity=identity,
                )
            case Provider.AWSV2:
                return self._sigv2.sign(
                    signing_properties=SigV2SigningProperties(
                        **self._signing_properties
                    ),
                    http_request=context.request,
                    identity=identity,
                )
            case Provider.AZURE:
                return self._azure.sign(
                    signing_properties=AzureSigningProperties(
                        **self._signing_properties
                    ),
                    http_request=context.request,
                    identity=identity,
                )
            case _:
                assert_never(self._provider)


def _backoff_delay(attempt: int, scale: float, max_backoff: float) -> float:
    # Exponential backoff with equal jitter.
    capped = min(max_backoff, scale * 2 ** (attempt - 1))
    return capped / 2 + random.uniform(0, capped / 2)


class CloudClient:
    """Sends requests to a storage provider, signing every attempt.

    Attempts that fail with a transport error or a 5xx status are retried up to
    ``max_attempts`` times in total. The interceptors run again for every attempt,
    so each is signed with a fresh timestamp and credential snapshot.

    .. code-block:: python

        store = AWSCredentialStore()
        async with CloudClient(Provider.AWS, store) as client:
            url = "https://bucket.s3.us-west-2.amazonaws.com/key"
            response = await client.get(url)
    """

    def __init__(
        self,
        provider: Provider,
        credentials: AnyCredentialStore | None = None,
        *,
        http_client: HTTPClient | None = None,
        signing_properties: Mapping[str, Any] | None = None,
        interceptors: Sequence[Interceptor] = (),
        max_attempts: int = 3,
        backoff_scale: float = 0.1,
        max_backoff: float = 20,
        request_config: HTTPRequestConfiguration | None = None,
        retryable_status: Callable[[int], bool] = lambda status: status >= 500,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1.")
        self._provider = provider
        self._owns_http_client = http_client is None
        self._http_client = http_client or AIOHTTPClient()
        self._interceptors: list[Interceptor] = [
            *interceptors,
            RequestSigningInterceptor(
                provider, credentials, signing_properties=signing_properties
            ),
        ]
        self._max_attempts = max_attempts
        self._backoff_scale = backoff_scale
        self._max_backoff = max_backoff
        self._request_config = request_config or HTTPRequestConfiguration()
        self._retryable_status = retryable_status

    def _config_for(self, destination: URI) -> HTTPRequestConfiguration:
        if self._provider is Provider.AZURE:
            return replace(
                self._request_config,
                verify_tls=requires_tls_verification(destination),
            )
        return self._request_config

    async def send(self, request: CloudRequest) -> HTTPResponse:
        """Send a request, signing and retrying it as configured.

        :param request: The unsigned request. It isn't modified.
        :raises CloudSignersError: If the request can't be signed. These errors
            aren't retried.
        """
        request_config = self._config_for(request.destination)
        attempt = 0
        while True:
            attempt += 1
            transport_request = deepcopy(request)
            context = TransmitContext(
                request=transport_request,
                request_config=request_config,
                attempt=attempt,
            )
            for interceptor in self._interceptors:
                transport_request = await interceptor.modify_before_transmit(context)
                context = replace(context, request=transport_request)

            logger.debug("Sending %r, attempt %d", transport_request, attempt)
            try:
                response = await self._http_client.send(
                    transport_request, request_config=request_config
                )
            except self._http_client.TIMEOUT_EXCEPTIONS as e:
                if attempt >= self._max_attempts:
                    raise
                logger.debug("Attempt %d failed, retrying: %s", attempt, e)
            else:
                if (
                    not self._retryable_status(response.status)
                    or attempt >= self._max_attempts
                ):
                    return response
                await response.consume_body_async()
                logger.debug(
                    "Attempt %d returned %d, retrying", attempt, response.status
                )
            await asyncio.sleep(
                _backoff_delay(attempt, self._backoff_scale, self._max_backoff)
            )

    async def request(
        self,
        method: str,
        url: str,
        *,
        headers: Iterable[tuple[str, str]] | Mapping[str, str] | None = None,
        body: RequestBody | str = None,
    ) -> HTTPResponse:
        """Build a request from a URL and send it.

        :param body: Bytes, text, or a form mapping. Form mappings are sent
            url-encoded.
        """
        return await self.send(
            CloudRequest.from_url(method, url, headers=headers, body=body)
        )

    async def get(self, url: str, **kwargs: Any) -> HTTPResponse:
        return await self.request("GET", url, **kwargs)

    async def head(self, url: str, **kwargs: Any) -> HTTPResponse:
        return await self.request("HEAD", url, **kwargs)

    async def put(self, url: str, **kwargs: Any) -> HTTPResponse:
        return await self.request("PUT", url, **kwargs)

    async def post(self, url: str, **kwargs: Any) -> HTTPResponse:
        return await self.request("POST", url, **kwargs)

    async def patch(self, url: str, **kwargs: Any) -> HTTPResponse:
        return await self.request("PATCH", url, **kwargs)

    async def delete(self, url: str, **kwargs: Any) -> HTTPResponse:
        return await self.request("DELETE", url, **kwargs)

    async def close(self) -> None:
        """Close the HTTP client if the client created it."""
        if self._owns_http_client and isinstance(self._http_client, AIOHTTPClient):
            await self._http_client.close()

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        await self.close()
