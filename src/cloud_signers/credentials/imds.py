# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0
import asyncio
import json
import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from types import MappingProxyType
from typing import Final, Literal

from .. import __version__
from .._http import URI, CloudRequest, Field, Fields
from .._identity import DEFAULT_EXPIRE_THRESHOLD, AWSCredentialIdentity
from ..exceptions import CredentialRefreshError, CredentialsNotFoundError
from ..http.interfaces import HTTPClient, HTTPRequestConfiguration, HTTPResponse
from ..interfaces.identity import IdentityResolver
from ..utils import parse_timestamp
from .interfaces import IdentityProperties

logger: Final = logging.getLogger(__name__)

_USER_AGENT_FIELD = Field(
    name="User-Agent",
    values=[f"cloud-signers-imds-client/{__version__}"],
)

# Status codes of a token request that mean IMDSv2 isn't available, in which case
# metadata is read without a token.
_TOKEN_UNSUPPORTED_STATUSES = frozenset((403, 404, 405))


@dataclass(init=False)
class IMDSConfig:
    """Configuration for EC2Metadata."""

    _HOST_MAPPING = MappingProxyType(
        {"IPv4": "169.254.169.254", "IPv6": "fd00:ec2::254"}
    )
    _MIN_TTL = 5
    _MAX_TTL = 21600

    endpoint_uri: URI
    endpoint_mode: Literal["IPv4", "IPv6"]
    token_ttl: int
    timeout: float

    def __init__(
        self,
        *,
        endpoint_uri: URI | None = None,
        endpoint_mode: Literal["IPv4", "IPv6"] = "IPv4",
        token_ttl: int = _MAX_TTL,
        timeout: float = 1,
        ec2_instance_profile_name: str | None = None,
    ):
        self.endpoint_mode = endpoint_mode
        self.endpoint_uri = self._resolve_endpoint(endpoint_uri, endpoint_mode)
        self.token_ttl = self._validate_token_ttl(token_ttl)
        self.timeout = timeout
        self.ec2_instance_profile_name = ec2_instance_profile_name

    def _validate_token_ttl(self, ttl: int) -> int:
        if not self._MIN_TTL <= ttl <= self._MAX_TTL:
            raise ValueError(
                f"Token TTL must be between {self._MIN_TTL} and {self._MAX_TTL} "
                "seconds."
            )
        return ttl

    def _resolve_endpoint(
        self, endpoint_uri: URI | None, endpoint_mode: Literal["IPv4", "IPv6"]
    ) -> URI:
        if endpoint_uri is not None:
            return endpoint_uri

        return URI(
            scheme="http",
            host=self._HOST_MAPPING.get(endpoint_mode, self._HOST_MAPPING["IPv4"]),
            port=80,
        )


class Token:
    """Represents an IMDSv2 session token with a value and method for checking
    expiration."""

    def __init__(self, value: str, ttl: int):
        self._value = value
        self._ttl = ttl
        self._created_time = datetime.now(UTC)

    def is_expired(self) -> bool:
        return datetime.now(UTC) - self._created_time >= timedelta(seconds=self._ttl)

    @property
    def value(self) -> str:
        return self._value


class TokenCache:
    """Holds the token needed to fetch instance metadata.

    In addition, it knows how to refresh itself. When the service doesn't issue
    tokens, metadata is read without one (IMDSv1).
    """

    _TOKEN_PATH = "/latest/api/token"  # noqa: S105

    def __init__(self, http_client: HTTPClient, config: IMDSConfig):
        self._http_client = http_client
        self._config = config
        self._base_uri = config.endpoint_uri
        self._refresh_lock = asyncio.Lock()
        self._token: Token | None = None
        self._tokens_supported = True

    def _should_refresh(self) -> bool:
        return self._tokens_supported and (
            self._token is None or self._token.is_expired()
        )

    async def _refresh(self) -> None:
        async with self._refresh_lock:
            if not self._should_refresh():
                return
            headers = Fields(
                [
                    _USER_AGENT_FIELD,
                    Field(
                        name="x-aws-ec2-metadata-token-ttl-seconds",
                        values=[str(self._config.token_ttl)],
                    ),
                ]
            )
            request = CloudRequest(
                method="PUT",
                destination=URI(
                    scheme=self._base_uri.scheme,
                    host=self._base_uri.host,
                    port=self._base_uri.port,
                    path=self._TOKEN_PATH,
                ),
                fields=headers,
            )
            response = await self._http_client.send(
                request,
                request_config=HTTPRequestConfiguration(timeout=self._config.timeout),
            )
            token_value = await response.consume_body_async()
            if response.status in _TOKEN_UNSUPPORTED_STATUSES:
                logger.debug(
                    "IMDS returned %d for a token, using IMDSv1.", response.status
                )
                self._tokens_supported = False
                return
            if response.status != 200:
                raise CredentialRefreshError(
                    f"IMDS token request failed with status {response.status}."
                )
            self._token = Token(token_value.decode("utf-8"), self._config.token_ttl)

    async def get_token(self) -> Token | None:
        if self._should_refresh():
            await self._refresh()
        return self._token


class EC2Metadata:
    def __init__(self, http_client: HTTPClient, config: IMDSConfig | None = None):
        self._http_client = http_client
        self._config = config or IMDSConfig()
        self._token_cache = TokenCache(
            http_client=self._http_client, config=self._config
        )

    async def get(self, *, path: str) -> str:
        token = await self._token_cache.get_token()
        headers = Fields([_USER_AGENT_FIELD])
        if token is not None:
            headers.set_field(
                Field(name="x-aws-ec2-metadata-token", values=[token.value])
            )
        request = CloudRequest(
            method="GET",
            destination=URI(
                scheme=self._config.endpoint_uri.scheme,
                host=self._config.endpoint_uri.host,
                port=self._config.endpoint_uri.port,
                path=path,
            ),
            fields=headers,
        )
        response: HTTPResponse = await self._http_client.send(
            request,
            request_config=HTTPRequestConfiguration(timeout=self._config.timeout),
        )
        body = await response.consume_body_async()
        if response.status != 200:
            raise CredentialRefreshError(
                f"IMDS returned {response.status} for {path}."
            )
        return body.decode("utf-8")


class IMDSCredentialsResolver(
    IdentityResolver[AWSCredentialIdentity, IdentityProperties]
):
    """Resolves AWS Credentials from an EC2 Instance Metadata Service (IMDS) client.

    An unreachable service means the process isn't running on an instance, which is
    reported as :py:class:`CredentialsNotFoundError`.
    """

    _METADATA_PATH_BASE = "/latest/meta-data/iam/security-credentials"
    ENV_VAR_DISABLED = "AWS_EC2_METADATA_DISABLED"

    def __init__(
        self,
        http_client: HTTPClient,
        config: IMDSConfig | None = None,
        *,
        environ: Mapping[str, str] | None = None,
    ):
        self._http_client = http_client
        self._config = config or IMDSConfig()
        self._ec2_metadata_client = EC2Metadata(
            http_client=http_client, config=self._config
        )
        self._environ = os.environ if environ is None else environ
        self._profile_name = self._config.ec2_instance_profile_name

    async def get_identity(
        self, *, properties: IdentityProperties
    ) -> AWSCredentialIdentity:
        if self._environ.get(self.ENV_VAR_DISABLED, "").lower() == "true":
            raise CredentialsNotFoundError(
                f"Instance metadata is disabled by {self.ENV_VAR_DISABLED}."
            )

        try:
            profile = self._profile_name
            if profile is None:
                profiles = await self._ec2_metadata_client.get(
                    path=f"{self._METADATA_PATH_BASE}/"
                )
                profile = profiles.splitlines()[0].strip() if profiles else ""
            if not profile:
                raise CredentialsNotFoundError(
                    "The instance has no IAM instance profile."
                )
            creds_str = await self._ec2_metadata_client.get(
                path=f"{self._METADATA_PATH_BASE}/{profile}"
            )
        except self._http_client.TIMEOUT_EXCEPTIONS as e:
            raise CredentialsNotFoundError(
                "Instance metadata service is unreachable."
            ) from e

        try:
            creds = json.loads(creds_str)
        except ValueError as e:
            raise CredentialRefreshError(
                "Unable to parse JSON from instance metadata."
            ) from e

        access_key_id = creds.get("AccessKeyId")
        secret_access_key = creds.get("SecretAccessKey")
        expiration = creds.get("Expiration")

        if access_key_id is None or secret_access_key is None:
            raise CredentialRefreshError(
                "AccessKeyId and SecretAccessKey are required"
            )

        return AWSCredentialIdentity(
            access_key_id=access_key_id,
            secret_access_key=secret_access_key,
            session_token=creds.get("Token"),
            expiration=parse_timestamp(expiration) if expiration else None,
            expire_threshold=properties.get(
                "expire_threshold", DEFAULT_EXPIRE_THRESHOLD
            ),
            source="imds",
        )
