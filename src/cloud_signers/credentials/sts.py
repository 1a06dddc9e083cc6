# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0
import logging
import time
import xml.etree.ElementTree as ET
from dataclasses import dataclass, replace
from typing import Final
from urllib.parse import urlencode

from .._http import URI, CloudRequest, Field, Fields
from .._identity import DEFAULT_EXPIRE_THRESHOLD, AWSCredentialIdentity
from ..exceptions import ConfigurationError, CredentialRefreshError
from ..http.interfaces import HTTPClient, HTTPRequestConfiguration
from ..interfaces.identity import IdentityResolver
from ..signers import SigV4Signer, SigV4SigningProperties
from ..utils import parse_timestamp
from .interfaces import IdentityProperties

logger: Final = logging.getLogger(__name__)

STS_API_VERSION = "2011-06-15"
_DEFAULT_DURATION = 3600
_MIN_DURATION = 900
_MAX_DURATION = 43200


@dataclass(kw_only=True)
class STSConfig:
    """Configuration for role assumption calls to the security token service."""

    endpoint_uri: URI | None = None
    """The STS endpoint. Defaults to the global endpoint, or the regional one when
    ``region`` isn't ``us-east-1``."""

    region: str = "us-east-1"
    """The region the call is signed for."""

    duration_seconds: int = _DEFAULT_DURATION
    timeout: float = 10

    def __post_init__(self) -> None:
        if not _MIN_DURATION <= self.duration_seconds <= _MAX_DURATION:
            raise ConfigurationError(
                f"Role session duration must be between {_MIN_DURATION} and "
                f"{_MAX_DURATION} seconds."
            )

    @property
    def resolved_endpoint_uri(self) -> URI:
        if self.endpoint_uri is not None:
            return self.endpoint_uri
        if self.region == "us-east-1":
            return URI(host="sts.amazonaws.com", path="/")
        return URI(host=f"sts.{self.region}.amazonaws.com", path="/")


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _find_text(root: ET.Element, name: str) -> str | None:
    for element in root.iter():
        if _local_name(element.tag) == name:
            return element.text
    return None


class AssumeRoleClient:
    """Exchanges source credentials for temporary role credentials with
    ``sts:AssumeRole``."""

    def __init__(
        self,
        http_client: HTTPClient,
        config: STSConfig | None = None,
        signer: SigV4Signer | None = None,
    ):
        self._http_client = http_client
        self._config = config or STSConfig()
        self._signer = signer or SigV4Signer()

    async def assume_role(
        self,
        source: AWSCredentialIdentity,
        *,
        role_arn: str,
        role_session_name: str | None = None,
        external_id: str | None = None,
        duration_seconds: int | None = None,
    ) -> AWSCredentialIdentity:
        """Call ``AssumeRole`` and return the temporary credentials.

        :param source: The credentials the call is signed with.
        :param role_arn: The role to assume.
        :param role_session_name: Identifies the session in the role's logs.
        :param external_id: The external ID the role's trust policy requires.
        :param duration_seconds: The lifetime of the returned credentials.
        :raises CredentialRefreshError: If the call fails or its response is
            malformed.
        """
        session_name = role_session_name or f"cloud-signers-{int(time.time())}"
        duration = duration_seconds or self._config.duration_seconds
        params = {
            "Action": "AssumeRole",
            "Version": STS_API_VERSION,
            "RoleArn": role_arn,
            "RoleSessionName": session_name,
            "DurationSeconds": str(duration),
        }
        if external_id is not None:
            params["ExternalId"] = external_id

        request = CloudRequest(
            method="POST",
            destination=self._config.resolved_endpoint_uri,
            fields=Fields(
                [
                    Field(
                        name="Content-Type",
                        values=["application/x-www-form-urlencoded; charset=utf-8"],
                    )
                ]
            ),
            body=urlencode(params).encode("utf-8"),
        )
        signed = self._signer.sign(
            signing_properties=SigV4SigningProperties(
                region=self._config.region, service="sts"
            ),
            http_request=request,
            identity=source,
        )
        logger.debug("Assuming role %s", role_arn)
        try:
            response = await self._http_client.send(
                signed,
                request_config=HTTPRequestConfiguration(timeout=self._config.timeout),
            )
        except self._http_client.TIMEOUT_EXCEPTIONS as e:
            raise CredentialRefreshError(
                f"Unable to reach the security token service to assume {role_arn}."
            ) from e
        body = await response.consume_body_async()

        try:
            root = ET.fromstring(body)
        except ET.ParseError as e:
            raise CredentialRefreshError(
                f"Malformed AssumeRole response ({response.status})."
            ) from e

        if response.status != 200:
            code = _find_text(root, "Code") or "Unknown"
            message = _find_text(root, "Message") or ""
            raise CredentialRefreshError(
                f"AssumeRole for {role_arn} failed ({response.status} {code}): "
                f"{message}"
            )

        access_key_id = _find_text(root, "AccessKeyId")
        secret_access_key = _find_text(root, "SecretAccessKey")
        expiration = _find_text(root, "Expiration")
        if access_key_id is None or secret_access_key is None or expiration is None:
            raise CredentialRefreshError(
                "AccessKeyId, SecretAccessKey and Expiration are required in the "
                "AssumeRole response."
            )
        return AWSCredentialIdentity(
            access_key_id=access_key_id,
            secret_access_key=secret_access_key,
            session_token=_find_text(root, "SessionToken"),
            expiration=parse_timestamp(expiration),
            role_arn=role_arn,
            source="assume_role",
        )


class AssumeRoleCredentialsResolver(
    IdentityResolver[AWSCredentialIdentity, IdentityProperties]
):
    """Resolves temporary credentials for a role, signing the call with credentials
    from another resolver.

    Each call assumes the role again, so refreshing the resolver's credentials
    extends the session.
    """

    def __init__(
        self,
        source: IdentityResolver[AWSCredentialIdentity, IdentityProperties],
        *,
        role_arn: str,
        http_client: HTTPClient,
        config: STSConfig | None = None,
        role_session_name: str | None = None,
        external_id: str | None = None,
        duration_seconds: int | None = None,
        region: str | None = None,
        profile: str | None = None,
    ):
        self._source = source
        self._role_arn = role_arn
        self._client = AssumeRoleClient(http_client, config)
        self._role_session_name = role_session_name
        self._external_id = external_id
        self._duration_seconds = duration_seconds
        self._region = region
        self._profile = profile

    async def get_identity(
        self, *, properties: IdentityProperties
    ) -> AWSCredentialIdentity:
        source = await self._source.get_identity(properties=properties)
        credentials = await self._client.assume_role(
            source,
            role_arn=self._role_arn,
            role_session_name=self._role_session_name,
            external_id=self._external_id,
            duration_seconds=self._duration_seconds,
        )
        return replace(
            credentials,
            expire_threshold=properties.get(
                "expire_threshold", DEFAULT_EXPIRE_THRESHOLD
            ),
            region=self._region,
            profile=self._profile,
        )
