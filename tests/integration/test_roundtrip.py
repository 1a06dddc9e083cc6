# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0
"""Requests signed by the client and checked by a local server after crossing the
wire, so transport added or rewritten headers would show up as mismatches."""

import base64
import re
from datetime import UTC, datetime, timedelta
from urllib.parse import parse_qsl

from conftest import StorageServer

from cloud_signers import (
    AWSCredentialIdentity,
    AWSCredentialStore,
    AzureCredentialStore,
    AzureSharedKeySigner,
    BlobResource,
    CloudClient,
    CloudRequest,
    Field,
    Fields,
    Provider,
    SigV4Signer,
    generate_account_sas,
    generate_account_sas_uri,
    generate_service_sas,
    generate_service_sas_uri,
)
from cloud_signers._hashing import hmac_sha256_b64

ACCOUNT = "devstoreaccount1"
KEY = (
    "Eby8vdM02xNOcqFlqUwJPLlmEtlCDXJ1OUzFT50uSRZ6IFsuFq2UVErCz4I6tq/K1SZFPTOtr/"
    "KBHBeksoGMGw=="
)
SECRET = "wJalrXUtnFEMI/K7MDENG+bPxRfiCYEXAMPLEKEY"

_SIGV4_AUTHORIZATION = re.compile(
    r"AWS4-HMAC-SHA256 Credential=(?P<akid>[^/]+)/\d{8}/(?P<region>[^/]+)/"
    r"(?P<service>[^/]+)/aws4_request, SignedHeaders=(?P<headers>[^,]+), "
    r"Signature=[0-9a-f]{64}"
)


def verify_shared_key(request: CloudRequest) -> bool:
    string_to_sign = AzureSharedKeySigner().string_to_sign(
        request=request, account=ACCOUNT
    )
    signature = hmac_sha256_b64(base64.b64decode(KEY), string_to_sign)
    expected = f"SharedKey {ACCOUNT}:{signature}"
    return request.fields.get_value("Authorization") == expected


def verify_sigv4(request: CloudRequest) -> bool:
    authorization = request.fields.get_value("Authorization")
    match = _SIGV4_AUTHORIZATION.fullmatch(authorization)
    if match is None:
        return False
    signed_headers = set(match["headers"].split(";"))
    unsigned = CloudRequest(
        method=request.method,
        destination=request.destination,
        fields=Fields([f for f in request.fields if f.name.lower() in signed_headers]),
        body=request.body,
    )
    resigned = SigV4Signer().sign(
        signing_properties={
            "region": match["region"],
            "service": match["service"],
            "date": request.fields.get_value("X-Amz-Date"),
        },
        http_request=unsigned,
        identity=AWSCredentialIdentity(
            access_key_id=match["akid"], secret_access_key=SECRET
        ),
    )
    return resigned.fields.get_value("Authorization") == authorization


def verify_service_sas(request: CloudRequest) -> bool:
    query = dict(parse_qsl(request.destination.query or ""))
    if "sig" not in query:
        return False
    token = generate_service_sas(
        BlobResource.from_uri(request.destination),
        KEY,
        signed_permission=query["sp"],
        signed_expiry=query.get("se"),
        signed_protocol=query.get("spr"),
        signed_version=query["sv"],
    )
    return dict(parse_qsl(token))["sig"] == query["sig"]


def verify_account_sas(request: CloudRequest) -> bool:
    query = dict(parse_qsl(request.destination.query or ""))
    if "sig" not in query or "ss" not in query:
        return False
    token = generate_account_sas(
        ACCOUNT,
        KEY,
        signed_permission=query["sp"],
        signed_services=query["ss"],
        signed_resource_types=query["srt"],
        signed_start=query.get("st"),
        signed_expiry=query["se"],
        signed_ip=query.get("sip"),
        signed_protocol=query.get("spr"),
        signed_version=query["sv"],
    )
    return dict(parse_qsl(token))["sig"] == query["sig"]


def verify_any_sas(request: CloudRequest) -> bool:
    query = dict(parse_qsl(request.destination.query or ""))
    if "ss" in query:
        return verify_account_sas(request)
    return verify_service_sas(request)


async def test_azure_shared_key_roundtrip(
storage_server: StorageServer) -> None:
    storage_server.verify = verify_shared_key
    store = AzureCredentialStore.from_shared_key(ACCOUNT, KEY)
    url = f"{storage_server.base_url}/{ACCOUNT}/container/blob.txt"

    async with CloudClient(Provider.AZURE, store) as client:
        put = await client.put(
            url,
            body=b"hello world",
            headers={"Content-Type": "text/plain", "x-ms-blob-type": "BlockBlob"},
        )
        get = await client.get(f"{url}?timeout=30")

    assert put.status == 201
    assert get.status == 200
    assert await get.consume_body_async() == b"hello world"


async def test_sigv4_roundtrip(storage_server: StorageServer) -> None:
    storage_server.verify = verify_sigv4
    store = AWSCredentialStore.from_static("AKIDEXAMPLE", SECRET)
    url = f"{storage_server.base_url}/bucket/my%20key.txt"

    async with CloudClient(
        Provider.AWS,
        store,
        signing_properties={"region": "us-east-1", "service": "s3"},
    ) as client:
        put = await client.put(url, body="contents")
        get = await client.get(url)
        listing = await client.get(
            f"{storage_server.base_url}/bucket/?prefix=my%20&list-type=2"
        )

    assert put.status == 201
    assert await get.consume_body_async() == b"contents"
    # Not found rather than forbidden: the query survived the trip intact.
    assert listing.status == 404


async def test_tampered_request_is_rejected(storage_server: StorageServer) -> None:
    def verify_then_tamper(request: CloudRequest) -> bool:
        request.fields.set_field(Field(name="x-ms-version", values=["1999-01-01"]))
        return verify_shared_key(request)

    storage_server.verify = verify_then_tamper
    store = AzureCredentialStore.from_shared_key(ACCOUNT, KEY)

    async with CloudClient(Provider.AZURE, store) as client:
        response = await client.get(
            f"{storage_server.base_url}/{ACCOUNT}/container/blob.txt"
        )

    assert response.status == 403


async def test_service_sas_roundtrip(storage_server: StorageServer) -> None:
    storage_server.verify = verify_service_sas
    url = f"{storage_server.base_url}/{ACCOUNT}/container/blob.txt"
    expiry = datetime.now(UTC) + timedelta(minutes=5)
    storage_server.objects[f"/{ACCOUNT}/container/blob.txt"] = b"shared"

    signed_url = generate_service_sas_uri(
        url, KEY, signed_permission="r", signed_expiry=expiry
    )
    async with CloudClient(Provider.AZURE) as client:
        response = await client.get(signed_url)

    assert response.status == 200
    assert await response.consume_body_async() == b"shared"
    assert "Authorization" not in storage_server.received[0].fields


async def test_account_and_service_sas_authorize_the_same_read(
    storage_server: StorageServer,
) -> None:
    storage_server.verify = verify_any_sas
    url = f"{storage_server.base_url}/{ACCOUNT}/container/blob.txt"
    expiry = datetime.now(UTC) + timedelta(minutes=5)
    storage_server.objects[f"/{ACCOUNT}/container/blob.txt"] = b"shared"

    account_url = generate_account_sas_uri(
        url, KEY, signed_permission="r", signed_expiry=expiry
    )
    service_url = generate_service_sas_uri(
        url, KEY, signed_permission="r", signed_expiry=expiry
    )
    async with CloudClient(Provider.AZURE) as client:
        account_read = await client.get(account_url)
        service_read = await client.get(service_url)
        widened = await client.get(account_url.replace("sp=r", "sp=rw"))

    assert account_read.status == 200
    assert await account_read.consume_body_async() == b"shared"
    assert service_read.status == 200
    assert await service_read.consume_body_async() == b"shared"
    assert widened.status == 403
    assert all("Authorization" not in r.fields for r in storage_server.received)
