# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0
import datetime
import logging
import re
from copy import deepcopy
from email.utils import format_datetime
from typing import Final, TypedDict
from urllib.parse import parse_qsl

from ._hashing import hmac_sha256_b64
from ._http import URI, CloudRequest, Field, materialize_body
from ._identity import AzureCredentialIdentity, reject_expired
from .exceptions import ConfigurationError
from .interfaces.auth import Signer
from .utils import ensure_utc, is_loopback

logger: Final = logging.getLogger(__name__)

AZURE_STORAGE_VERSION = "2021-08-06"

# Standard fields included in the string to sign, in order.
STRING_TO_SIGN_FIELDS: tuple[str, ...] = (
    "Content-Encoding",
    "Content-Language",
    "Content-Length",
    "Content-MD5",
    "Content-Type",
    "Date",
    "If-Modified-Since",
    "If-Match",
    "If-None-Match",
    "If-Unmodified-Since",
    "Range",
)

_LINE_FOLD = re.compile(r"\s*\r?\n\s*")


class AzureSigningProperties(TypedDict, total=False):
    date: datetime.datetime
    version: str


def requires_tls_verification(uri: URI) -> bool:
    """Whether TLS certificates must be verified for an Azure destination.

    Only loopback hosts, where a local storage emulator listens with a
    self-signed certificate, skip verification.
    """
    return not is_loopback(uri.host)


class AzureSharedKeySigner(
    Signer[CloudRequest, AzureCredentialIdentity, AzureSigningProperties]
):
    """Request signer for Azure Storage.

    Shared key identities sign the request with the ``SharedKey`` scheme. Identities
    carrying a bearer token or a SAS token are applied as-is, as an ``Authorization``
    field or appended to the query respectively.
    """

    def sign(
        self,
        *,
        signing_properties: AzureSigningProperties,
        http_request: CloudRequest,
        identity: AzureCredentialIdentity,
    ) -> CloudRequest:
        """Authorize a copy of the supplied request.

        :param signing_properties: AzureSigningProperties overriding the request date
            and the ``x-ms-version`` to send.
        :param http_request: A CloudRequest to sign prior to sending to the service.
        :param identity: Azure credentials to authorize the request with.
        :raises ConfigurationError: If the identity is expired or of the wrong type.
        """
        if not isinstance(identity, AzureCredentialIdentity):
            raise ConfigurationError(
                "Received unexpected value for identity parameter. Expected "
                f"AzureCredentialIdentity but received {type(identity)}."
            )
        reject_expired(identity)
        new_request = deepcopy(http_request)
        self._apply_required_fields(
            request=new_request, signing_properties=signing_properties
        )

        if identity.sas_token is not None:
            query = new_request.destination.query
            token = identity.sas_token
            new_request.destination = new_request.destination.with_query(
                f"{query}&{token}" if query else token
            )
        elif identity.access_token is not None:
            new_request.fields.set_field(
                Field(name="Authorization", values=[f"Bearer {identity.access_token}"])
            )
        else:
            assert identity.account is not None and identity.shared_key is not None
            string_to_sign = self.string_to_sign(
                request=new_request, account=identity.account
            )
            logger.debug("String to sign: %r", string_to_sign)
            signature = hmac_sha256_b64(identity.shared_key, string_to_sign)
            new_request.fields.set_field(
                Field(
                    name="Authorization",
                    values=[f"SharedKey {identity.account}:{signature}"],
                )
            )
        return new_request

    def _apply_required_fields(
        self, *, request: CloudRequest, signing_properties: AzureSigningProperties
    ) -> None:
        if "x-ms-date" not in request.fields:
            date = signing_properties.get("date") or datetime.datetime.now(
                datetime.UTC
            )
            formatted = format_datetime(ensure_utc(date), usegmt=True)
            request.fields.set_field(Field(name="x-ms-date", values=[formatted]))
        if "x-ms-version" not in request.fields:
            version = signing_properties.get("version", AZURE_STORAGE_VERSION)
            request.fields.set_field(Field(name="x-ms-version", values=[version]))

    def string_to_sign(self, *, request: CloudRequest, account: str) -> str:
        """Build the shared key string to sign.

        The Azure Storage specification defines it as:
            VERB\n
            Content-Encoding\n
            ...
            Range\n
            CanonicalizedHeaders
            CanonicalizedResource

        Standard fields that are absent contribute an empty line. A zero
        ``Content-Length`` is also written as an empty line.
        """
        values = [request.method.upper()]
        for name in STRING_TO_SIGN_FIELDS:
            if name == "Content-Length":
                values.append(self._content_length(request))
            else:
                values.append(request.fields.get_value(name))
        standard = "\n".join(values)
        return (
            f"{standard}\n"
            f"{self.canonicalized_headers(request)}"
            f"{self.canonicalized_resource(request, account)}"
        )

    def canonicalized_headers(self, request: CloudRequest) -> str:
        headers = {
            field.name.lower(): _LINE_FOLD.sub(" ", field.as_string()).strip()
            for field in request.fields
            if field.name.lower().startswith("x-ms-")
        }
        return "".join(f"{name}:{headers[name]}\n" for name in sorted(headers))

    def canonicalized_resource(self, request: CloudRequest, account: str) -> str:
        """``/<account><path>`` followed by one ``\\nname:values`` line per query
        parameter, names lower-cased and sorted, repeated values sorted and comma
        joined."""
        resource = f"/{account}{request.destination.path or '/'}"
        params: dict[str, list[str]] = {}
        for name, value in parse_qsl(
            request.destination.query or "", keep_blank_values=True
        ):
            params.setdefault(name.lower(), []).append(value)
        for name in sorted(params):
            resource += f"\n{name}:{','.join(sorted(params[name]))}"
        return resource

    def _content_length(self, request: CloudRequest) -> str:
        length = request.fields.get_value("Content-Length")
        if not length:
            payload = materialize_body(request.body)
            length = str(len(payload)) if payload else ""
        return "" if length == "0" else length
