# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0
"""Hash and HMAC primitives and the key-derivation chains built on them."""

import base64
import hashlib
import hmac
from hashlib import sha256

EMPTY_SHA256_HASH = "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"


def sha256_hex(data: bytes) -> str:
    return sha256(data).hexdigest()


def content_md5(data: bytes) -> str:
    """Base64 encoded MD5 digest, as sent in a ``Content-MD5`` field."""
    return base64.b64encode(hashlib.md5(data, usedforsecurity=False).digest()).decode()


def hmac_sha256(key: bytes, value: str | bytes) -> bytes:
    if isinstance(value, str):
        value = value.encode("utf-8")
    return hmac.new(key=key, msg=value, digestmod=sha256).digest()


def hmac_sha256_b64(key: bytes, value: str | bytes) -> str:
    return base64.b64encode(hmac_sha256(key, value)).decode("utf-8")


def sigv4_signing_key(secret_key: str, date: str, region: str, service: str) -> bytes:
    """Derive the SigV4 signing key scoped to a date, region and service.

    The key is never cached, each signature derives it for its own scope.
    """
    # Components of Signing Key Calculation
    #
    # DateKey              = HMAC-SHA256("AWS4"+"<SecretAccessKey>", "<YYYYMMDD>")
    # DateRegionKey        = HMAC-SHA256(<DateKey>, "<aws-region>")
    # DateRegionServiceKey = HMAC-SHA256(<DateRegionKey>, "<aws-service>")
    # SigningKey = HMAC-SHA256(<DateRegionServiceKey>, "aws4_request")
    k_date = hmac_sha256(f"AWS4{secret_key}".encode(), date[0:8])
    k_region = hmac_sha256(k_date, region)
    k_service = hmac_sha256(k_region, service)
    return hmac_sha256(k_service, "aws4_request")


def decode_shared_key(key: bytes | str) -> bytes:
    """Azure shared keys are distributed base64 encoded; HMAC needs the raw bytes."""
    if isinstance(key, str):
        return base64.b64decode(key)
    return key
