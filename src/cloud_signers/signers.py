# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0
# ruff: noqa: S101
import datetime
import logging
import re
import warnings
from collections.abc import Iterable, Mapping
from copy import deepcopy
from typing import Final, TypedDict
from urllib.parse import parse_qsl, quote, unquote

from ._hashing import (
    EMPTY_SHA256_HASH,
    hmac_sha256,
    hmac_sha256_b64,
    sha256_hex,
    sigv4_signing_key,
)
from ._http import URI, CloudRequest, Field, materialize_body
from ._identity import AWSCredentialIdentity, reject_expired
from .exceptions import CloudSignersWarning, ConfigurationError
from .interfaces.auth import Signer
from .utils import ensure_utc

logger: Final = logging.getLogger(__name__)

HEADERS_EXCLUDED_FROM_SIGNING: tuple[str, ...] = (
    "accept",
    "accept-encoding",
    "authorization",
    "connection",
    "expect",
    "user-agent",
    "x-amzn-trace-id",
)
DEFAULT_PORTS: dict[str, int] = {"http": 80, "https": 443}

AWS_DEFAULT_REGION = "us-east-1"
SIGV4_TIMESTAMP_FORMAT: str = "%Y%m%dT%H%M%SZ"
SIGV2_TIMESTAMP_FORMAT: str = "%Y-%m-%dT%H:%M:%S"
UNSIGNED_PAYLOAD: str = "UNSIGNED-PAYLOAD"
LARGE_PAYLOAD_SIZE = 16 * 1024 * 1024

_REGION_RE = re.compile(r"^[a-z]{2}(-gov|-iso[a-z]*)?-[a-z]+-\d+$")
_AWS_DOMAINS = ("amazonaws.com", "amazonaws.com.cn")
# Services whose endpoints are global and signed for us-east-1.
_GLOBAL_SERVICES = frozenset(("iam", "sts", "route53", "cloudfront"))


class SigV4SigningProperties(TypedDict, total=False):
    region: str
    service: str
    date: str
    payload_signing_enabled: bool
    content_checksum_enabled: bool
    uri_encode_path: bool


class SigV2SigningProperties(TypedDict, total=False):
    version: str
    timestamp: datetime.datetime


def infer_region_and_service(host: str) -> tuple[str | None, str | None]:
    """Infer the signing region and service from an AWS hostname.

    Recognizes virtual-hosted and path-style S3 endpoints, including the legacy
    ``s3-<region>`` and ``s3-accelerate`` forms, and ``<service>.<region>``
    endpoints. Hosts outside the AWS domains yield ``(None, None)``.
    """
    host = host.lower().rstrip(".")
    domain = next((d for d in _AWS_DOMAINS if host.endswith(f".{d}")), None)
    if domain is None:
        return None, None

    labels = host[: -len(domain) - 1].split(".")
    labels = [label for label in labels if label not in ("dualstack", "fips")]
    for index, label in enumerate(labels):
        if label in ("s3", "s3-accelerate", "s3-external-1"):
            region = labels[index + 1] if index + 1 < len(labels) else None
        elif label.startswith("s3-") and _REGION_RE.match(label[3:]):
            region = label[3:]
        else:
            continue
        if region is None or not _REGION_RE.match(region):
            region = AWS_DEFAULT_REGION
        return region, "s3"

    region = labels[-1]
    if _REGION_RE.match(region):
        return region, labels[-2] if len(labels) >= 2 else None
    service = labels[-1]
    if len(labels) == 1 or service in _GLOBAL_SERVICES:
        return AWS_DEFAULT_REGION, service
    return None, service


def _normalize_host_field(uri: URI) -> str:
    if uri.port is not None and DEFAULT_PORTS.get(uri.scheme) == uri.port:
        return uri.netloc.rsplit(":", 1)[0]
    return uri.netloc


class SigV4Signer(Signer[CloudRequest, AWSCredentialIdentity, SigV4SigningProperties]):
    """Request signer for applying the AWS Signature Version 4 algorithm."""

    def sign(
        self,
        *,
        signing_properties: SigV4SigningProperties,
        http_request: CloudRequest,
        identity: AWSCredentialIdentity,
    ) -> CloudRequest:
        """Generate and apply a SigV4 Signature to a copy of the supplied request.

        :param signing_properties: SigV4SigningProperties to define signing primitives
            such as the target service, region, and date. The region and service are
            inferred from the destination host when they're omitted.
        :param http_request: A CloudRequest to sign prior to sending to the service.
        :param identity: A set of credentials representing an AWS Identity or role
            capacity.
        :raises ConfigurationError: If the region or service can't be determined.
        :raises SigningError: If the request body isn't materialized.
        """
        # Copy and prepopulate any missing values in the
        # supplied request and signing properties.
        self._validate_identity(identity=identity)
        new_signing_properties = self._normalize_signing_properties(
            signing_properties=signing_properties,
            request=http_request,
            identity=identity,
        )
        assert "date" in new_signing_properties

        new_request = self._generate_new_request(request=http_request)
        self._apply_required_fields(
            request=new_request,
            signing_properties=new_signing_properties,
            identity=identity,
        )

        # Construct core signing components
        canonical_request = self.canonical_request(
            signing_properties=new_signing_properties,
            request=new_request,
        )
        logger.debug("Canonical request: %r", canonical_request)
        string_to_sign = self.string_to_sign(
            canonical_request=canonical_request,
            signing_properties=new_signing_properties,
        )
        logger.debug("String to sign: %r", string_to_sign)
        signature = self._signature(
            string_to_sign=string_to_sign,
            secret_key=identity.secret_access_key,
            signing_properties=new_signing_properties,
        )

        signing_fields = self._normalize_signing_fields(request=new_request)
        credential_scope = self._scope(signing_properties=new_signing_properties)
        credential = f"{identity.access_key_id}/{credential_scope}"
        authorization = self.generate_authorization_field(
            credential=credential,
            signed_headers=list(signing_fields.keys()),
            signature=signature,
        )
        new_request.fields.set_field(authorization)

        return new_request

    def generate_authorization_field(
        self, *, credential: str, signed_headers: list[str], signature: str
    ) -> Field:
        """Generate the `Authorization` field.

        :param credential:
            Credential scope string for generating the Authorization header.
            Defined as:
                <access_key>/<date>/<region>/<service>/<request_type>
        :param signed_headers:
            A list of the field names used in signing.
        :param signature:
            Final hash of the SigV4 signing algorithm generated from the
            canonical request and string to sign.
        """
        signed_headers_str = ";".join(signed_headers)
        auth_str = (
            f"AWS4-HMAC-SHA256 Credential={credential}, "
            f"SignedHeaders={signed_headers_str}, Signature={signature}"
        )
        return Field(name="Authorization", values=[auth_str])

    def _signature(
        self,
        *,
        string_to_sign: str,
        secret_key: str,
        signing_properties: SigV4SigningProperties,
    ) -> str:
        """Sign the string to sign.

        In SigV4, a signing key is created that is scoped to a specific region and
        service. The date, region, service and resulting signing key are individually
        hashed, then the composite hash is used to sign the string to sign.
        """
        k_signing = sigv4_signing_key(
            secret_key,
            signing_properties["date"],
            signing_properties["region"],
            signing_properties["service"],
        )
        return hmac_sha256(k_signing, string_to_sign).hex()

    def _validate_identity(self, *, identity: AWSCredentialIdentity) -> None:
        """Perform runtime and expiration checks before attempting signing."""
        if not isinstance(identity, AWSCredentialIdentity):
            raise ConfigurationError(
                "Received unexpected value for identity parameter. Expected "
                f"AWSCredentialIdentity but received {type(identity)}."
            )
        reject_expired(identity)

    def _normalize_signing_properties(
        self,
        *,
        signing_properties: SigV4SigningProperties,
        request: CloudRequest,
        identity: AWSCredentialIdentity,
    ) -> SigV4SigningProperties:
        # Create copy of signing properties to avoid mutating the original
        new_signing_properties = SigV4SigningProperties(**signing_properties)
        if "date" not in new_signing_properties:
            date_obj = datetime.datetime.now(datetime.UTC)
            new_signing_properties["date"] = date_obj.strftime(SIGV4_TIMESTAMP_FORMAT)

        if "region" not in new_signing_properties or (
            "service" not in new_signing_properties
        ):
            region, service = infer_region_and_service(request.destination.host)
            new_signing_properties.setdefault("service", service)  # type: ignore
            new_signing_properties.setdefault(
                "region",
                region or identity.region,  # type: ignore
            )
        if not new_signing_properties.get("region"):
            raise ConfigurationError(
                f"Unable to infer a signing region from {request.destination.host!r}. "
                "Pass the region explicitly."
            )
        if not new_signing_properties.get("service"):
            raise ConfigurationError(
                f"Unable to infer a signing service from {request.destination.host!r}. "
                "Pass the service explicitly."
            )
        return new_signing_properties

    def _generate_new_request(self, *, request: CloudRequest) -> CloudRequest:
        return deepcopy(request)

    def _apply_required_fields(
        self,
        *,
        request: CloudRequest,
        signing_properties: SigV4SigningProperties,
        identity: AWSCredentialIdentity,
    ) -> None:
        # Apply required X-Amz-Date if neither X-Amz-Date nor Date are present.
        if "Date" not in request.fields and "X-Amz-Date" not in request.fields:
            assert "date" in signing_properties
            request.fields.set_field(
                Field(name="X-Amz-Date", values=[signing_properties["date"]])
            )
        # Apply required X-Amz-Security-Token if token present on identity
        if (
            "X-Amz-Security-Token" not in request.fields
            and identity.session_token is not None
        ):
            request.fields.set_field(
                Field(name="X-Amz-Security-Token", values=[identity.session_token])
            )

    def canonical_request(
        self, *, signing_properties: SigV4SigningProperties, request: CloudRequest
    ) -> str:
        """The canonical request is a standardized string laying out the components used
        in the SigV4 signing algorithm. This is useful to quickly compare inputs to find
        signature mismatches and unintended variances.

        The SigV4 specification defines the canonical request to be:
            <HTTPMethod>\n
            <CanonicalURI>\n
            <CanonicalQueryString>\n
            <CanonicalHeaders>\n
            <SignedHeaders>\n
            <HashedPayload>

        :param signing_properties:
            SigV4SigningProperties to define signing primitives such as
            the target service, region, and date.
        :param request:
            A CloudRequest to use for generating a SigV4 signature.
        """
        # We generate the payload first to ensure any field modifications
        # are in place before choosing the canonical fields.
        canonical_payload = self._format_canonical_payload(
            request=request, signing_properties=signing_properties
        )
        canonical_path = self._format_canonical_path(
            path=request.destination.path, signing_properties=signing_properties
        )
        canonical_query = self._format_canonical_query(query=request.destination.query)
        normalized_fields = self._normalize_signing_fields(request=request)
        canonical_fields = self._format_canonical_fields(fields=normalized_fields)
        return (
            f"{request.method.upper()}\n"
            f"{canonical_path}\n"
            f"{canonical_query}\n"
            f"{canonical_fields}\n"
            f"{';'.join(normalized_fields)}\n"
            f"{canonical_payload}"
        )

    def string_to_sign(
        self,
        *,
        canonical_request: str,
        signing_properties: SigV4SigningProperties,
    ) -> str:
        """The string to sign is the second step of our signing algorithm which
        concatenates the formal identifier of our signing algorithm, the signing
        DateTime, the scope of our credentials, and a hash of our previously generated
        canonical request.

        The SigV4 specification defines the string to sign as:
            Algorithm \n
            RequestDateTime \n
            CredentialScope  \n
            HashedCanonicalRequest

        :param canonical_request:
            String generated from the `canonical_request` method.
        :param signing_properties:
            SigV4SigningProperties to define signing primitives such as
            the target service, region, and date.
        """
        date = signing_properties.get("date")
        if date is None:
            raise ConfigurationError(
                "Cannot generate string_to_sign without a valid date "
                f"in your signing_properties. Current value: {date}"
            )
        return (
            "AWS4-HMAC-SHA256\n"
            f"{date}\n"
            f"{self._scope(signing_properties=signing_properties)}\n"
            f"{sha256_hex(canonical_request.encode())}"
        )

    def _scope(self, signing_properties: SigV4SigningProperties) -> str:
        assert "date" in signing_properties
        formatted_date = signing_properties["date"][0:8]
        region = signing_properties["region"]
        service = signing_properties["service"]
        # Scope format: <YYYYMMDD>/<AWS Region>/<AWS Service>/aws4_request
        return f"{formatted_date}/{region}/{service}/aws4_request"

    def _format_canonical_path(
        self, *, path: str | None, signing_properties: SigV4SigningProperties
    ) -> str:
        if path is None:
            path = "/"

        # S3 object keys are taken literally: no dot segment normalization and a
        # single round of encoding.
        default_encode = signing_properties.get("service") != "s3"
        if signing_properties.get("uri_encode_path", default_encode):
            normalized_path = _remove_dot_segments(path)
            return quote(string=normalized_path, safe="/")
        else:
            return quote(string=unquote(path), safe="/")

    def _format_canonical_query(self, *, query: str | None) -> str:
        if query is None:
            return ""

        query_params = parse_qsl(qs=query, keep_blank_values=True)
        query_parts = (
            (quote(string=key, safe=""), quote(string=value, safe=""))
            for key, value in query_params
        )
        # key-value pairs must be in sorted order for their encoded forms.
        return "&".join(f"{key}={value}" for key, value in sorted(query_parts))

    def _normalize_signing_fields(self, *, request: CloudRequest) -> dict[str, str]:
        normalized_fields = {
            field.name.lower(): field.as_string()
            for field in request.fields
            if self._is_signable_header(field.name.lower())
        }
        if "host" not in normalized_fields:
            normalized_fields["host"] = _normalize_host_field(request.destination)

        return dict(sorted(normalized_fields.items()))

    def _is_signable_header(self, field_name: str) -> bool:
        return field_name not in HEADERS_EXCLUDED_FROM_SIGNING

    def _format_canonical_fields(self, *, fields: dict[str, str]) -> str:
        return "".join(
            f"{key}:{' '.join(value.split())}\n" for key, value in fields.items()
        )

    def _should_sha256_sign_payload(
        self,
        *,
        request: CloudRequest,
        signing_properties: SigV4SigningProperties,
    ) -> bool:
        # All insecure connections should be signed
        if request.destination.scheme != "https":
            return True

        return signing_properties.get("payload_signing_enabled", True)

    def _format_canonical_payload(
        self,
        *,
        request: CloudRequest,
        signing_properties: SigV4SigningProperties,
    ) -> str:
        payload_hash = self._compute_payload_hash(
            request=request, signing_properties=signing_properties
        )
        if signing_properties.get("content_checksum_enabled", True):
            request.fields.set_field(
                Field(name="X-Amz-Content-SHA256", values=[payload_hash])
            )
        return payload_hash

    def _compute_payload_hash(
        self, *, request: CloudRequest, signing_properties: SigV4SigningProperties
    ) -> str:
        # Streaming bodies are rejected even when the payload is left unsigned,
        # since the transport would have to replay them on retry.
        payload = materialize_body(request.body)
        if not self._should_sha256_sign_payload(
            request=request, signing_properties=signing_properties
        ):
            return UNSIGNED_PAYLOAD

        if not payload:
            return EMPTY_SHA256_HASH

        if len(payload) >= LARGE_PAYLOAD_SIZE:
            warnings.warn(
                "Payload signing is enabled. This may result in "
                "decreased performance for large request bodies.",
                CloudSignersWarning,
            )
        return sha256_hex(payload)


class SigV2Signer(Signer[CloudRequest, AWSCredentialIdentity, SigV2SigningProperties]):
    """Request signer for the legacy AWS Signature Version 2 query algorithm.

    GET-style requests carry their parameters, and the resulting signature, in the
    query string. When the body is a form mapping, the parameters are read from and
    written back to the body instead.
    """

    def sign(
        self,
        *,
        signing_properties: SigV2SigningProperties,
        http_request: CloudRequest,
        identity: AWSCredentialIdentity,
    ) -> CloudRequest:
        reject_expired(identity)
        new_request = deepcopy(http_request)
        form_body = isinstance(new_request.body, Mapping)
        if form_body:
            params = list(new_request.body.items())  # type: ignore
        else:
            params = parse_qsl(new_request.destination.query or "", True)
        params = [(k, v) for k, v in params if k != "Signature"]

        version = signing_properties.get("version") or next(
            (v for k, v in params if k == "Version"), None
        )
        if version is None:
            raise ConfigurationError(
                "SigV2 signing requires an API version, either as the 'Version' "
                "parameter or the 'version' signing property."
            )
        timestamp = signing_properties.get("timestamp") or datetime.datetime.now(
            datetime.UTC
        )
        required = {
            "AWSAccessKeyId": identity.access_key_id,
            "SignatureMethod": "HmacSHA256",
            "SignatureVersion": "2",
            "Timestamp": ensure_utc(timestamp).strftime(SIGV2_TIMESTAMP_FORMAT),
            "Version": version,
        }
        if identity.session_token is not None:
            required["SecurityToken"] = identity.session_token
        params = [(k, v) for k, v in params if k not in required]
        params.extend(required.items())

        canonical_query = self.canonical_query(params)
        string_to_sign = self.string_to_sign(
            request=new_request, canonical_query=canonical_query
        )
        logger.debug("String to sign: %r", string_to_sign)
        signature = hmac_sha256_b64(
            identity.secret_access_key.encode("utf-8"), string_to_sign
        )

        if form_body:
            new_request.body = dict(sorted(params)) | {"Signature": signature}
        else:
            new_request.destination = new_request.destination.with_query(
                f"{canonical_query}&Signature={_sigv2_quote(signature)}"
            )
        return new_request

    def canonical_query(self, params: Iterable[tuple[str, str]]) -> str:
        # Parameters sort by key, with the value breaking ties between repeated keys.
        return "&".join(
            f"{_sigv2_quote(key)}={_sigv2_quote(value)}"
            for key, value in sorted(params)
        )

    def string_to_sign(self, *, request: CloudRequest, canonical_query: str) -> str:
        host = _normalize_host_field(request.destination).lower()
        path = request.destination.path or "/"
        return f"{request.method.upper()}\n{host}\n{path}\n{canonical_query}"


def _sigv2_quote(value: str) -> str:
    return quote(value.encode("utf-8"), safe="-_.~")


def _remove_dot_segments(path: str, remove_consecutive_slashes: bool = True) -> str:
    """Removes dot segments from a path per :rfc:`3986#section-5.2.4`.

    Optionally removes consecutive slashes, true by default.
    :param path: The path to modify.
    :param remove_consecutive_slashes: Whether to remove consecutive slashes.
    :returns: The path with dot segments removed.
    """
    output: list[str] = []
    for segment in path.split("/"):
        if segment == ".":
            continue
        elif segment != "..":
            output.append(segment)
        elif output:
            output.pop()
    if path.startswith("/") and (not output or output[0]):
        output.insert(0, "")
    if output and path.endswith(("/.", "/..")):
        output.append("")
    result = "/".join(output)
    if remove_consecutive_slashes:
        result = result.replace("//", "/")
    return result
