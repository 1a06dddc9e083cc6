# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0
import asyncio
import json
import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Final

from .._http import URI, CloudRequest, Field, Fields
from .._identity import DEFAULT_EXPIRE_THRESHOLD, AWSCredentialIdentity
from ..exceptions import CredentialRefreshError, CredentialsNotFoundError
from ..http.interfaces import HTTPClient, HTTPRequestConfiguration
from ..interfaces.identity import IdentityResolver
from ..utils import is_loopback, parse_timestamp
from .interfaces import IdentityProperties

logger: Final = logging.getLogger(__name__)

_CONTAINER_METADATA_IP = "169.254.170.2"
_CONTAINER_METADATA_ALLOWED_HOSTS = {
    _CONTAINER_METADATA_IP,
    "169.254.170.23",
    "fd00:ec2::23",
    "localhost",
}
_DEFAULT_TIMEOUT = 2
_DEFAULT_RETRIES = 3
_SLEEP_SECONDS = 1


@dataclass
class ContainerCredentialConfig:
    """Configuration for container credential retrieval operations."""

    timeout: float = _DEFAULT_TIMEOUT
    retries: int = _DEFAULT_RETRIES
    retry_delay: float = _SLEEP_SECONDS
    endpoint_host: str = _CONTAINER_METADATA_IP
    """Host that ``AWS_CONTAINER_CREDENTIALS_RELATIVE_URI`` is resolved against."""


class ContainerMetadataClient:
    """Client for remote credential retrieval in Container environments like ECS/EKS."""

    def __init__(self, http_client: HTTPClient, config: ContainerCredentialConfig):
        self._http_client = http_client
        self._config = config

    def _validate_allowed_url(self, uri: URI) -> None:
        if is_loopback(uri.host) or uri.host == self._config.endpoint_host:
            return

        if uri.host not in _CONTAINER_METADATA_ALLOWED_HOSTS:
            raise CredentialRefreshError(
                f"Unsupported host '{uri.host}'. "
                f"Can only retrieve metadata from a loopback address or "
                f"one of: {', '.join(sorted(_CONTAINER_METADATA_ALLOWED_HOSTS))}"
            )

    async def get_credentials(self, uri: URI, fields: Fields) -> dict[str, Any]:
        self._validate_allowed_url(uri)
        fields.set_field(Field(name="Accept", values=["application/json"]))
        request_config = HTTPRequestConfiguration(timeout=self._config.timeout)

        attempts = 0
        last_exc: Exception | None = None
        while attempts < self._config.retries:
            if attempts:
                await asyncio.sleep(self._config.retry_delay)
            attempts += 1
            request = CloudRequest(method="GET", destination=uri, fields=fields)
            try:
                response = await self._http_client.send(
                    request, request_config=request_config
                )
                body = await response.consume_body_async()
            except self._http_client.TIMEOUT_EXCEPTIONS as e:
                logger.debug("Container metadata attempt %d failed: %s", attempts, e)
                last_exc = e
                continue

            if response.status != 200:
                last_exc = CredentialRefreshError(
                    f"Container metadata service returned {response.status}: "
                    f"{body.decode('utf-8', errors='replace')}"
                )
                continue
            try:
                return json.loads(body.decode("utf-8"))
            except ValueError as e:
                raise CredentialRefreshError(
                    "Unable to parse JSON from container metadata: "
                    f"{body.decode('utf-8', errors='replace')}"
                ) from e

        raise CredentialRefreshError(
            f"Failed to retrieve container metadata after {attempts} attempt(s)"
        ) from last_exc


class ContainerCredentialsResolver(
    IdentityResolver[AWSCredentialIdentity, IdentityProperties]
):
    """Resolves AWS Credentials from container credential sources."""

    ENV_VAR = "AWS_CONTAINER_CREDENTIALS_RELATIVE_URI"
    ENV_VAR_FULL = "AWS_CONTAINER_CREDENTIALS_FULL_URI"
    ENV_VAR_AUTH_TOKEN = "AWS_CONTAINER_AUTHORIZATION_TOKEN"  # noqa: S105
    ENV_VAR_AUTH_TOKEN_FILE = "AWS_CONTAINER_AUTHORIZATION_TOKEN_FILE"  # noqa: S105

    def __init__(
        self,
        http_client: HTTPClient,
        config: ContainerCredentialConfig | None = None,
        *,
        environ: Mapping[str, str] | None = None,
    ):
        self._config = config or ContainerCredentialConfig()
        self._client = ContainerMetadataClient(http_client, self._config)
        self._environ = os.environ if environ is None else environ

    def _resolve_uri_from_env(self) -> URI:
        if self.ENV_VAR in self._environ:
            return URI(
                scheme="http",
                host=self._config.endpoint_host,
                path=self._environ[self.ENV_VAR],
            )
        elif self.ENV_VAR_FULL in self._environ:
            return URI.from_string(self._environ[self.ENV_VAR_FULL])
        else:
            raise CredentialsNotFoundError(
                f"Neither {self.ENV_VAR} or {self.ENV_VAR_FULL} environment "
                "variables are set."
            )

    async def _resolve_fields_from_env(self) -> Fields:
        fields = Fields()
        if self.ENV_VAR_AUTH_TOKEN_FILE in self._environ:
            filename = self._environ[self.ENV_VAR_AUTH_TOKEN_FILE]
            try:
                auth_token = await asyncio.to_thread(self._read_file, filename)
            except (OSError, UnicodeDecodeError) as e:
                raise CredentialRefreshError(f"Unable to read {filename}.") from e

            fields.set_field(Field(name="Authorization", values=[auth_token]))
        elif self.ENV_VAR_AUTH_TOKEN in self._environ:
            auth_token = self._environ[self.ENV_VAR_AUTH_TOKEN]
            fields.set_field(Field(name="Authorization", values=[auth_token]))

        return fields

    def _read_file(self, filename: str) -> str:
        with open(filename, encoding="utf-8") as f:
            return f.read().strip()

    async def get_identity(
        self, *, properties: IdentityProperties
    ) -> AWSCredentialIdentity:
        uri = self._resolve_uri_from_env()
        fields = await self._resolve_fields_from_env()
        creds = await self._client.get_credentials(uri, fields)

        access_key_id = creds.get("AccessKeyId")
        secret_access_key = creds.get("SecretAccessKey")
        expiration = creds.get("Expiration")

        if access_key_id is None or secret_access_key is None:
            raise CredentialRefreshError(
                "AccessKeyId and SecretAccessKey are required for container credentials"
            )

        return AWSCredentialIdentity(
            access_key_id=access_key_id,
            secret_access_key=secret_access_key,
            session_token=creds.get("Token"),
            expiration=parse_timestamp(expiration) if expiration else None,
            expire_threshold=properties.get(
                "expire_threshold", DEFAULT_EXPIRE_THRESHOLD
            ),
            role_arn=creds.get("RoleArn"),
            source="container",
        )
