# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0
import binascii
import json
import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Final
from urllib.parse import urlencode

from .._hashing import decode_shared_key
from .._http import URI, CloudRequest, Field, Fields
from .._identity import DEFAULT_EXPIRE_THRESHOLD, AzureCredentialIdentity
from ..config import AzureStorageConfig
from ..exceptions import (
    ConfigurationError,
    CredentialRefreshError,
    CredentialsNotFoundError,
)
from ..http.interfaces import HTTPClient, HTTPRequestConfiguration
from ..interfaces.identity import IdentityResolver
from ..utils import epoch_seconds_to_datetime
from .interfaces import IdentityProperties

logger: Final = logging.getLogger(__name__)

_MANAGED_IDENTITY_URI = URI(
    scheme="http",
    host="169.254.169.254",
    path="/metadata/identity/oauth2/token",
)


class AzureConfigCredentialsResolver(
    IdentityResolver[AzureCredentialIdentity, IdentityProperties]
):
    """Resolves an account key or SAS token from the environment and the Azure CLI
    config file.

    An account key takes precedence over a SAS token.
    """

    def __init__(self, *, environ: Mapping[str, str] | None = None):
        self._environ = environ

    async def get_identity(
        self, *, properties: IdentityProperties
    ) -> AzureCredentialIdentity:
        config = AzureStorageConfig(environ=self._environ)
        await config.resolve()
        account = config.get("account")
        key = config.get("key")
        sas_token = config.get("sas_token")
        threshold = properties.get("expire_threshold", DEFAULT_EXPIRE_THRESHOLD)

        if key:
            if not account:
                raise ConfigurationError(
                    "An Azure storage key is configured without an account name."
                )
            try:
                shared_key = decode_shared_key(key)
            except binascii.Error as e:
                raise ConfigurationError(
                    "The configured Azure storage key isn't valid base64."
                ) from e
            return AzureCredentialIdentity(
                account=account,
                shared_key=shared_key,
                expire_threshold=threshold,
                source="azure_config",
            )
        if sas_token:
            return AzureCredentialIdentity(
                account=account,
                sas_token=sas_token,
                expire_threshold=threshold,
                source="azure_config",
            )
        raise CredentialsNotFoundError(
            "No Azure storage key or SAS token is configured."
        )


@dataclass(kw_only=True)
class ManagedIdentityConfig:
    """Configuration for tokens issued to an Azure virtual machine's managed
    identity."""

    endpoint_uri: URI = field(default=_MANAGED_IDENTITY_URI)
    api_version: str = "2018-02-01"
    resource: str = "https://storage.azure.com/"
    """The audience the token is issued for."""

    client_id: str | None = None
    """Selects a user-assigned identity when the machine has several."""

    timeout: float = 2


class ManagedIdentityCredentialsResolver(
    IdentityResolver[AzureCredentialIdentity, IdentityProperties]
):
    """Resolves a bearer token from the Azure instance metadata service.

    An unreachable service means the process isn't running on an Azure machine,
    which is reported as :py:class:`CredentialsNotFoundError`.
    """

    def __init__(
        self,
        http_client: HTTPClient,
        config: ManagedIdentityConfig | None = None,
        *,
        account: str | None = None,
        environ: Mapping[str, str] | None = None,
    ):
        self._http_client = http_client
        self._config = config or ManagedIdentityConfig()
        environ = os.environ if environ is None else environ
        self._account = account or environ.get("AZURE_STORAGE_ACCOUNT")

    def _token_uri(self) -> URI:
        params = {
            "api-version": self._config.api_version,
            "resource": self._config.resource,
        }
        if self._config.client_id is not None:
            params["client_id"] = self._config.client_id
        return self._config.endpoint_uri.with_query(urlencode(params))

    async def get_identity(
        self, *, properties: IdentityProperties
    ) -> AzureCredentialIdentity:
        uri = self._token_uri()
        request = CloudRequest(
            method="GET",
            destination=uri,
            fields=Fields([Field(name="Metadata", values=["true"])]),
        )
        try:
            response = await self._http_client.send(
                request,
                request_config=HTTPRequestConfiguration(timeout=self._config.timeout),
            )
            body = await response.consume_body_async()
        except self._http_client.TIMEOUT_EXCEPTIONS as e:
            raise CredentialsNotFoundError(
                "Azure instance metadata service is unreachable."
            ) from e

        if response.status != 200:
            raise CredentialRefreshError(
                f"Managed identity token request returned {response.status}: "
                f"{body.decode('utf-8', errors='replace')}"
            )
        try:
            token = json.loads(body.decode("utf-8"))
        except ValueError as e:
            raise CredentialRefreshError(
                "Unable to parse JSON from the managed identity token response."
            ) from e

        access_token = token.get("access_token")
        if not access_token:
            raise CredentialRefreshError(
                "access_token is required in the managed identity token response."
            )
        expires_on = token.get("expires_on")
        expiration = (
            epoch_seconds_to_datetime(int(expires_on)) if expires_on else None
        )
        logger.debug("Resolved managed identity token expiring at %s", expiration)
        return AzureCredentialIdentity(
            account=self._account,
            access_token=access_token,
            expiration=expiration,
            expire_threshold=properties.get(
                "expire_threshold", DEFAULT_EXPIRE_THRESHOLD
            ),
            endpoint=uri.build(),
            source="managed_identity",
        )
