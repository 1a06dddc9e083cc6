# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0
"""Shared access signature (SAS) generation for Azure Storage.

A SAS delegates scoped, time-limited access to a storage resource. The generated
URIs carry their own authorization, so they can be used without credentials.
"""

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, Final
from urllib.parse import quote, unquote

from ._hashing import decode_shared_key, hmac_sha256_b64
from ._http import URI
from .exceptions import ConfigurationError
from .utils import ensure_utc, is_ip_address, is_loopback

logger: Final = logging.getLogger(__name__)

ACCOUNT_SAS_PERMISSIONS = "rwdxylacuptfi"
"""Account SAS permission flags in the order they must be signed."""

BLOB_SAS_PERMISSIONS = "racwdxyltmeopi"
"""Blob and container service SAS permission flags in the order they must be
signed."""

DEFAULT_SAS_VERSION = "2019-12-12"
DEFAULT_SAS_LIFETIME = timedelta(hours=1)
SAS_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"

# Service versions that changed the layout of the string to sign.
_ENCRYPTION_SCOPE_VERSION = "2020-12-06"
_SIGNED_RESOURCE_VERSION = "2018-11-09"


class SignedPermission:
    """A set of single character SAS permission flags.

    Flags are held without order. Each SAS flow renders them in the fixed order
    the service signs them in, since the signature covers their literal text.
    """

    def __init__(self, permissions: str | Iterable[str] = "") -> None:
        flags = frozenset(permissions)
        unknown = flags - set(ACCOUNT_SAS_PERMISSIONS) - set(BLOB_SAS_PERMISSIONS)
        if unknown:
            raise ConfigurationError(
                f"Unrecognized SAS permission flags: {''.join(sorted(unknown))!r}."
            )
        self.flags = flags

    def canonical(self, order: str) -> str:
        """Render the flags in ``order``.

        :raises ConfigurationError: If a flag isn't valid for ``order``.
        """
        unsupported = self.flags - set(order)
        if unsupported:
            raise ConfigurationError(
                f"SAS permission flags {''.join(sorted(unsupported))!r} aren't "
                f"valid here, expected flags from {order!r}."
            )
        return "".join(flag for flag in order if flag in self.flags)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, SignedPermission) and self.flags == other.flags

    def __hash__(self) -> int:
        return hash(self.flags)

    def __repr__(self) -> str:
        return f"SignedPermission({''.join(sorted(self.flags))!r})"


@dataclass(frozen=True)
class BlobResource:
    """The account, container and blob addressed by a storage URL."""

    account: str
    container: str | None = None
    blob: str | None = None

    @classmethod
    def from_uri(cls, uri: URI) -> "BlobResource":
        """Split a storage URL into its resource names.

        Hosts like ``<account>.blob.core.windows.net`` carry the account in the
        hostname. IP addresses, ``localhost`` and single label hosts (local
        emulators) carry it as the first path segment instead.
        """
        segments = [unquote(s) for s in (uri.path or "").split("/")]
        if _is_path_style(uri.host):
            segments = segments[1:]
            if not segments or not segments[0]:
                raise ConfigurationError(
                    f"Expected an account name in the path of {uri.build()!r}."
                )
            account = segments[0]
        else:
            account = uri.host.split(".", 1)[0]
        container = segments[1] if len(segments) > 1 and segments[1] else None
        blob = "/".join(segments[2:]) or None
        return cls(account=account, container=container, blob=blob)

    def canonicalized(self) -> str:
        resource = f"/blob/{self.account}"
        if self.container is not None:
            resource += f"/{self.container}"
        if self.blob is not None:
            resource += f"/{self.blob}"
        return resource


def _as_permission(value: SignedPermission | str) -> SignedPermission:
    return value if isinstance(value, SignedPermission) else SignedPermission(value)


def _is_path_style(host: str) -> bool:
    return is_loopback(host) or is_ip_address(host) or "." not in host


def _format_time(value: datetime | str | None) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return ensure_utc(value).strftime(SAS_TIMESTAMP_FORMAT)


def _encode_token(params: Iterable[tuple[str, str]]) -> str:
    return "&".join(f"{key}={quote(value, safe='')}" for key, value in params if value)


def _append_token(url: str, token: str) -> str:
    uri = URI.from_string(url)
    query = f"{uri.query}&{token}" if uri.query else token
    return uri.with_query(query).build()


def account_sas_string_to_sign(
    *,
    account: str,
    permissions: str,
    services: str,
    resource_types: str,
    start: str,
    expiry: str,
    ip: str,
    protocol: str,
    version: str,
) -> str:
    """The account SAS string to sign.

    Each field sits on its own line, unset fields as empty lines. Versions from
    2020-12-06 add a trailing, empty, encryption scope line.
    """
    fields = [
        account,
        permissions,
        services,
        resource_types,
        start,
        expiry,
        ip,
        protocol,
        version,
    ]
    if version >= _ENCRYPTION_SCOPE_VERSION:
        fields.append("")
    return "\n".join(fields) + "\n"


def generate_account_sas(
    account: str,
    key: bytes | str,
    *,
    signed_permission: SignedPermission | str,
    signed_services: str = "b",
    signed_resource_types: str = "sco",
    signed_start: datetime | str | None = None,
    signed_expiry: datetime | str | None = None,
    signed_ip: str | None = None,
    signed_protocol: str | None = "https,http",
    signed_version: str = DEFAULT_SAS_VERSION,
) -> str:
    """Generate an account SAS query string.

    :param account: The storage account name.
    :param key: The account key, base64 encoded or raw.
    :param signed_permission: The permissions to grant.
    :param signed_services: Services the token is valid for, for example ``b`` for
        blob.
    :param signed_resource_types: Resource types the token is valid for: ``s``
        service, ``c`` container, ``o`` object.
    :param signed_start: When the token becomes valid. Valid immediately if unset.
    :param signed_expiry: When the token stops being valid. Defaults to an hour from
        now.
    :param signed_ip: An IP address or range allowed to use the token.
    :param signed_protocol: The protocols allowed to use the token.
    :param signed_version: The storage service version to sign with.
    :returns: The token, without a leading ``?``.
    :raises ConfigurationError: If a permission isn't valid for an account SAS.
    """
    if signed_expiry is None:
        signed_expiry = datetime.now(UTC) + DEFAULT_SAS_LIFETIME
    permissions = _as_permission(signed_permission).canonical(ACCOUNT_SAS_PERMISSIONS)
    start = _format_time(signed_start)
    expiry = _format_time(signed_expiry)
    string_to_sign = account_sas_string_to_sign(
        account=account,
        permissions=permissions,
        services=signed_services,
        resource_types=signed_resource_types,
        start=start,
        expiry=expiry,
        ip=signed_ip or "",
        protocol=signed_protocol or "",
        version=signed_version,
    )
    logger.debug("Account SAS string to sign: %r", string_to_sign)
    signature = hmac_sha256_b64(decode_shared_key(key), string_to_sign)
    return _encode_token(
        [
            ("sv", signed_version),
            ("ss", signed_services),
            ("srt", signed_resource_types),
            ("sp", permissions),
            ("st", start),
            ("se", expiry),
            ("sip", signed_ip or ""),
            ("spr", signed_protocol or ""),
            ("sig", signature),
        ]
    )


def generate_account_sas_uri(url: str, key: bytes | str, **kwargs: Any) -> str:
    """Append an account SAS, signed with ``key``, to ``url``.

    The account is taken from the URL. Keyword arguments are passed to
    :func:`generate_account_sas`.
    """
    resource = BlobResource.from_uri(URI.from_string(url))
    return _append_token(url, generate_account_sas(resource.account, key, **kwargs))


def service_sas_string_to_sign(
    *,
    permissions: str,
    start: str,
    expiry: str,
    canonicalized_resource: str,
    identifier: str,
    ip: str,
    protocol: str,
    version: str,
    resource: str,
    snapshot: str,
    cache_control: str,
    content_disposition: str,
    content_encoding: str,
    content_language: str,
    content_type: str,
) -> str:
    """The blob service SAS string to sign.

    Versions from 2018-11-09 sign the resource type and snapshot time, and versions
    from 2020-12-06 add an, empty, encryption scope line after them.
    """
    fields = [
        permissions,
        start,
        expiry,
        canonicalized_resource,
        identifier,
        ip,
        protocol,
        version,
    ]
    if version >= _SIGNED_RESOURCE_VERSION:
        fields.extend([resource, snapshot])
    if version >= _ENCRYPTION_SCOPE_VERSION:
        fields.append("")
    fields.extend(
        [
            cache_control,
            content_disposition,
            content_encoding,
            content_language,
            content_type,
        ]
    )
    return "\n".join(fields)


def generate_service_sas(
    resource: BlobResource,
    key: bytes | str,
    *,
    signed_permission: SignedPermission | str,
    signed_start: datetime | str | None = None,
    signed_expiry: datetime | str | None = None,
    signed_identifier: str | None = None,
    signed_ip: str | None = None,
    signed_protocol: str | None = "https,http",
    signed_version: str = DEFAULT_SAS_VERSION,
    signed_snapshot_time: str | None = None,
    cache_control: str | None = None,
    content_disposition: str | None = None,
    content_encoding: str | None = None,
    content_language: str | None = None,
    content_type: str | None = None,
) -> str:
    """Generate a blob or container service SAS query string.

    The token is scoped to ``resource``: a blob when it names one, otherwise its
    container. The ``content_*`` and ``cache_control`` arguments override the
    matching response headers when the token is used to read a blob.

    :param resource: The container or blob to grant access to.
    :param key: The account key, base64 encoded or raw.
    :param signed_permission: The permissions to grant.
    :param signed_identifier: A stored access policy on the container. Expiry and
        permissions may then come from the policy.
    :returns: The token, without a leading ``?``.
    :raises ConfigurationError: If ``resource`` names no container or a permission
        isn't valid for a service SAS.
    """
    if resource.container is None:
        raise ConfigurationError(
            "A service SAS must be scoped to a container or a blob."
        )
    if signed_expiry is None and signed_identifier is None:
        signed_expiry = datetime.now(UTC) + DEFAULT_SAS_LIFETIME
    permissions = _as_permission(signed_permission).canonical(BLOB_SAS_PERMISSIONS)
    if resource.blob is None:
        signed_resource = "c"
    else:
        signed_resource = "bs" if signed_snapshot_time else "b"
    start = _format_time(signed_start)
    expiry = _format_time(signed_expiry)
    overrides = [
        ("rscc", cache_control or ""),
        ("rscd", content_disposition or ""),
        ("rsce", content_encoding or ""),
        ("rscl", content_language or ""),
        ("rsct", content_type or ""),
    ]
    string_to_sign = service_sas_string_to_sign(
        permissions=permissions,
        start=start,
        expiry=expiry,
        canonicalized_resource=resource.canonicalized(),
        identifier=signed_identifier or "",
        ip=signed_ip or "",
        protocol=signed_protocol or "",
        version=signed_version,
        resource=signed_resource,
        snapshot=signed_snapshot_time or "",
        cache_control=overrides[0][1],
        content_disposition=overrides[1][1],
        content_encoding=overrides[2][1],
        content_language=overrides[3][1],
        content_type=overrides[4][1],
    )
    logger.debug("Service SAS string to sign: %r", string_to_sign)
    signature = hmac_sha256_b64(decode_shared_key(key), string_to_sign)
    return _encode_token(
        [
            ("sv", signed_version),
            ("sr", signed_resource),
            ("sp", permissions),
            ("st", start),
            ("se", expiry),
            ("si", signed_identifier or ""),
            ("sip", signed_ip or ""),
            ("spr", signed_protocol or ""),
            *overrides,
            ("sig", signature),
        ]
    )


def generate_service_sas_uri(url: str, key: bytes | str, **kwargs: Any) -> str:
    """Append a service SAS for the container or blob ``url`` points at.

    Keyword arguments are passed to :func:`generate_service_sas`.
    """
    resource = BlobResource.from_uri(URI.from_string(url))
    return _append_token(url, generate_service_sas(resource, key, **kwargs))
