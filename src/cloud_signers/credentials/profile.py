# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0
import logging
from collections.abc import Mapping
from typing import Final

from .._identity import DEFAULT_EXPIRE_THRESHOLD, AWSCredentialIdentity
from ..config import SOURCE_ENVIRONMENT, AWSProfileConfig
from ..exceptions import CredentialsNotFoundError
from ..http.interfaces import HTTPClient
from ..interfaces.identity import IdentityResolver
from .interfaces import IdentityProperties
from .static import StaticCredentialsResolver
from .sts import AssumeRoleCredentialsResolver, STSConfig

logger: Final = logging.getLogger(__name__)


def _static_credentials(
    config: AWSProfileConfig, properties: IdentityProperties
) -> AWSCredentialIdentity | None:
    access_key_id = config.get("aws_access_key_id")
    secret_access_key = config.get("aws_secret_access_key")
    if not access_key_id or not secret_access_key:
        return None
    from_env = (
        config.get_config_value_object("aws_access_key_id").source
        == SOURCE_ENVIRONMENT
    )
    return AWSCredentialIdentity(
        access_key_id=access_key_id,
        secret_access_key=secret_access_key,
        session_token=config.get("aws_session_token"),
        expire_threshold=properties.get("expire_threshold", DEFAULT_EXPIRE_THRESHOLD),
        region=config.get("region"),
        profile=None if from_env else config.profile,
        source="environment" if from_env else "profile",
    )


class ProfileCredentialsResolver(
    IdentityResolver[AWSCredentialIdentity, IdentityProperties]
):
    """Resolves AWS credentials from a shared config profile and the environment.

    Keys set in the environment take precedence over the profile's. When the profile
    names a ``role_arn`` the keys, or those of its ``source_profile``, are exchanged
    for temporary role credentials.

    The files are read again on every call, so refreshing picks up rotated keys.
    """

    def __init__(
        self,
        profile: str | None = None,
        *,
        http_client: HTTPClient,
        sts_config: STSConfig | None = None,
        environ: Mapping[str, str] | None = None,
    ):
        self._profile = profile
        self._http_client = http_client
        self._sts_config = sts_config
        self._environ = environ

    async def get_identity(
        self, *, properties: IdentityProperties
    ) -> AWSCredentialIdentity:
        config = AWSProfileConfig(self._profile, environ=self._environ)
        await config.resolve()

        role_arn = config.get("role_arn")
        if role_arn:
            return await self._assume_role(config, role_arn, properties)

        credentials = _static_credentials(config, properties)
        if credentials is None:
            if config.profile_found:
                reason = f"Profile {config.profile!r} has no access keys."
            else:
                reason = f"Profile {config.profile!r} not found."
            raise CredentialsNotFoundError(reason)
        return credentials

    async def _assume_role(
        self,
        config: AWSProfileConfig,
        role_arn: str,
        properties: IdentityProperties,
    ) -> AWSCredentialIdentity:
        source_profile = config.get("source_profile")
        if source_profile:
            source_config = AWSProfileConfig(
                source_profile, environ=self._environ, use_environment=False
            )
            await source_config.resolve()
        else:
            source_config = config
        source = _static_credentials(source_config, properties)
        if source is None:
            raise CredentialsNotFoundError(
                f"Profile {config.profile!r} assumes {role_arn} but profile "
                f"{source_config.profile!r} has no access keys to assume it with."
            )

        duration = config.get("duration_seconds")
        logger.debug("Profile %r assumes role %s", config.profile, role_arn)
        resolver = AssumeRoleCredentialsResolver(
            StaticCredentialsResolver(credentials=source),
            role_arn=role_arn,
            http_client=self._http_client,
            config=self._sts_config,
            role_session_name=config.get("role_session_name"),
            external_id=config.get("external_id"),
            duration_seconds=int(duration) if duration else None,
            region=config.get("region"),
            profile=config.profile,
        )
        return await resolver.get_identity(properties=properties)
