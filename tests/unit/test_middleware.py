# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0
from datetime import UTC, datetime
from typing import Any
from urllib.parse import parse_qs

import pytest

from cloud_signers import (
    AWSCredentialStore,
    AzureCredentialStore,
    CloudClient,
    CloudRequest,
    Field,
    Provider,
    RequestSigningInterceptor,
)
from cloud_signers.exceptions import ConfigurationError
from cloud_signers.http.interfaces import HTTPRequestConfiguration
from cloud_signers.middleware import (
    AnyCredentialStore,
    TransmitContext,
    _backoff_delay,
)
from cloud_signers.testing import MockHTTPClient

S3_URL = "https://bucket.s3.us-west-2.amazonaws.com/key.txt"
BLOB_URL = "https://acct.blob.core.windows.net/container/blob.txt"


@pytest.fixture
def http_client() -> MockHTTPClient:
    return MockHTTPClient()


@pytest.fixture
def aws_store() -> AWSCredentialStore:
    return AWSCredentialStore.from_static("akid", "secret")


class RecordingInterceptor:
    def __init__(self) -> None:
        self.attempts: list[int] = []

    async def modify_before_transmit(self, context: TransmitContext) -> CloudRequest:
        self.attempts.append(context.attempt)
        context.request.fields.set_field(
            Field(name="x-amz-meta-attempt", values=[str(context.attempt)])
        )
        return context.request


def client_for(
    provider: Provider,
    credentials: AnyCredentialStore | None,
    http_client: MockHTTPClient,
    **kwargs: Any,
) -> CloudClient:
    return CloudClient(
        provider,
        credentials,
        http_client=http_client,
        backoff_scale=0,
        **kwargs,
    )


async def test_unsigned_without_credentials(http_client: MockHTTPClient) -> None:
    http_client.add_response(200, body=b"public")
    client = client_for(Provider.AWS, None, http_client)

    response = await client.get(S3_URL)

    assert response.status == 200
    assert await response.consume_body_async() == b"public"
    request = http_client.captured_requests[0]
    assert "Authorization" not in request.fields
    assert "X-Amz-Date" not in request.fields


async def test_sigv4_signing(
    http_client: MockHTTPClient, aws_store: AWSCredentialStore
) -> None:
    http_client.add_response(200)
    client = client_for(Provider.AWS, aws_store, http_client)

    await client.put(S3_URL, body="hello", headers={"Content-Type": "text/plain"})

    request = http_client.captured_requests[0]
    assert request.method == "PUT"
    assert request.body == b"hello"
    authorization = request.fields.get_value("Authorization")
    assert authorization.startswith("AWS4-HMAC-SHA256 Credential=akid/")
    assert "/us-west-2/s3/aws4_request" in authorization
    assert "X-Amz-Date" in request.fields


async def test_signing_properties_are_passed(
    http_client: MockHTTPClient, aws_store: AWSCredentialStore
) -> None:
    http_client.add_response(200)
    client = client_for(
        Provider.AWS,
        aws_store,
        http_client,
        signing_properties={"region": "eu-west-1", "service": "execute-api"},
    )

    await client.get("https://example.com/api")

    authorization = http_client.captured_requests[0].fields.get_value("Authorization")
    assert "/eu-west-1/execute-api/aws4_request" in authorization


async def test_sigv2_signing(
    http_client: MockHTTPClient, aws_store: AWSCredentialStore
) -> None:
    http_client.add_response(200)
    client = client_for(
        Provider.AWSV2,
        aws_store,
        http_client,
        signing_properties={"version": "2009-03-31"},
    )

    await client.get("https://elasticmapreduce.amazonaws.com/?Action=ListClusters")

    query = parse_qs(http_client.captured_requests[0].destination.query or "")
    assert query["Action"] == ["ListClusters"]
    assert query["AWSAccessKeyId"] == ["akid"]
    assert query["Version"] == ["2009-03-31"]
    assert "Signature" in query


async def test_azure_shared_key_signing(http_client: MockHTTPClient) -> None:
    http_client.add_response(200)
    store = AzureCredentialStore.from_shared_key("acct", "a2V5")
    client = client_for(
        Provider.AZURE,
        store,
        http_client,
        signing_properties={"date": datetime(2023, 1, 2, 3, 4, 5, tzinfo=UTC)},
    )

    await client.get(BLOB_URL)

    request = http_client.captured_requests[0]
    assert request.fields.get_value("Authorization").startswith("SharedKey acct:")
    assert request.fields.get_value("x-ms-date") == "Mon, 02 Jan 2023 03:04:05 GMT"
    assert http_client.captured_configs[0] == HTTPRequestConfiguration(verify_tls=True)


async def test_azure_loopback_skips_tls_verification(
    http_client: MockHTTPClient,
) -> None:
    http_client.add_response(200)
    store = AzureCredentialStore.from_sas_token("sv=2019-12-12&sig=abc")
    client = client_for(Provider.AZURE, store, http_client)

    await client.get("https://127.0.0.1:10000/devstoreaccount1/container")

    config = http_client.captured_configs[0]
    assert config is not None
    assert config.verify_tls is False
    request = http_client.captured_requests[0]
    assert request.destination.query == "sv=2019-12-12&sig=abc"


async def test_every_attempt_is_signed_again(
    http_client: MockHTTPClient, aws_store: AWSCredentialStore
) -> None:
    http_client.add_response(503)
    http_client.add_response(500)
    http_client.add_response(200)
    recorder = RecordingInterceptor()
    client = client_for(
        Provider.AWS, aws_store, http_client, interceptors=[recorder]
    )
    request = CloudRequest.from_url("GET", S3_URL)

    response = await client.send(request)

    assert response.status == 200
    assert recorder.attempts == [1, 2, 3]
    for attempt, sent in enumerate(http_client.captured_requests, start=1):
        assert sent.fields.get_value("x-amz-meta-attempt") == str(attempt)
        # Interceptor changes happen before signing, so they're signed.
        assert "x-amz-meta-attempt" in sent.fields.get_value("Authorization")
    assert "Authorization" not in request.fields
    assert "x-amz-meta-attempt" not in request.fields


async def test_gives_up_after_max_attempts(
    http_client: MockHTTPClient, aws_store: AWSCredentialStore
) -> None:
    for _ in range(2):
        http_client.add_response(503, body=b"busy")
    client = client_for(Provider.AWS, aws_store, http_client, max_attempts=2)

    response = await client.get(S3_URL)

    assert response.status == 503
    assert await response.consume_body_async() == b"busy"
    assert http_client.call_count == 2


async def test_client_errors_are_not_retried(
    http_client: MockHTTPClient, aws_store: AWSCredentialStore
) -> None:
    http_client.add_response(403)
    client = client_for(Provider.AWS, aws_store, http_client)

    response = await client.get(S3_URL)

    assert response.status == 403
    assert http_client.call_count == 1


async def test_transport_errors_are_retried(
    http_client: MockHTTPClient, aws_store: AWSCredentialStore
) -> None:
    http_client.add_error(ConnectionError("reset"))
    http_client.add_error(TimeoutError())
    http_client.add_response(200)
    client = client_for(Provider.AWS, aws_store, http_client)

    response = await client.get(S3_URL)

    assert response.status == 200
    assert http_client.call_count == 3


async def test_transport_error_raised_when_exhausted(
    http_client: MockHTTPClient, aws_store: AWSCredentialStore
) -> None:
    http_client.add_error(TimeoutError())
    client = client_for(Provider.AWS, aws_store, http_client, max_attempts=1)

    with pytest.raises(TimeoutError):
        await client.get(S3_URL)


async def test_signing_errors_are_not_retried(
    http_client: MockHTTPClient, aws_store: AWSCredentialStore
) -> None:
    client = client_for(Provider.AWS, aws_store, http_client)

    with pytest.raises(ConfigurationError):
        await client.get("https://example.com/unknown")
    assert http_client.call_count == 0


async def test_custom_retryable_status(
    http_client: MockHTTPClient, aws_store: AWSCredentialStore
) -> None:
    http_client.add_response(429)
    http_client.add_response(200)
    client = client_for(
        Provider.AWS,
        aws_store,
        http_client,
        retryable_status=lambda status: status == 429 or status >= 500,
    )

    assert (await client.get(S3_URL)).status == 200
    assert http_client.call_count == 2


async def test_signing_interceptor_without_store() -> None:
    interceptor = RequestSigningInterceptor(Provider.AZURE)
    request = CloudRequest.from_url("GET", BLOB_URL)
    context = TransmitContext(
        request=request, request_config=HTTPRequestConfiguration(), attempt=1
    )
    assert await interceptor.modify_before_transmit(context) is request


def test_max_attempts_must_be_positive() -> None:
    with pytest.raises(ValueError):
        CloudClient(Provider.AWS, http_client=MockHTTPClient(), max_attempts=0)


@pytest.mark.parametrize("attempt", [1, 2, 5, 30])
def test_backoff_delay_is_bounded(attempt: int) -> None:
    delay = _backoff_delay(attempt, 0.1, 20)
    capped = min(20, 0.1 * 2 ** (attempt - 1))
    assert capped / 2 <= delay <= capped


async def test_context_manager_closes_owned_client() -> None:
    async with CloudClient(Provider.AWS) as client:
        assert isinstance(client, CloudClient)
