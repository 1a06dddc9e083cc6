# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Literal

from .exceptions import ConfigurationError
from .interfaces.identity import Identity
from .utils import ensure_utc, format_timestamp

DEFAULT_EXPIRE_THRESHOLD = timedelta(minutes=5)

type CredentialSource = Literal[
    "static",
    "environment",
    "profile",
    "assume_role",
    "container",
    "imds",
    "azure_config",
    "managed_identity",
]


def expired(identity: Identity, now: datetime) -> bool:
    """Whether ``identity`` is inside its refresh window at ``now``.

    Identities without an expiration never expire.
    """
    if identity.expiration is None:
        return False
    return ensure_utc(now) > identity.expiration - identity.expire_threshold


@dataclass(kw_only=True, frozen=True)
class AWSCredentialIdentity(Identity):
    access_key_id: str
    """A unique identifier for an AWS user or role."""

    secret_access_key: str
    """A secret key used in conjunction with the access key ID to authenticate
    programmatic access to AWS services."""

    session_token: str | None = None
    """A temporary token used to specify the current session for the supplied
    credentials."""

    expiration: datetime | None = None
    expire_threshold: timedelta = DEFAULT_EXPIRE_THRESHOLD

    region: str | None = None
    """The region configured alongside the credentials, used when a request's
    region can't be inferred."""

    profile: str | None = None
    role_arn: str | None = None
    source: CredentialSource = "static"

    def __post_init__(self) -> None:
        if self.expiration is not None:
            object.__setattr__(self, "expiration", ensure_utc(self.expiration))

    def is_expired_at(self, now: datetime) -> bool:
        return expired(self, now)

    def as_config(self) -> dict[str, str]:
        """The resolved values in the form of a shared config profile."""
        values = {
            "aws_access_key_id": self.access_key_id,
            "aws_secret_access_key": self.secret_access_key,
            "source": self.source,
        }
        optional = {
            "aws_session_token": self.session_token,
            "region": self.region,
            "profile": self.profile,
            "role_arn": self.role_arn,
        }
        values.update({k: v for k, v in optional.items() if v is not None})
        if self.expiration is not None:
            values["expiration"] = format_timestamp(self.expiration)
        return values

    def __repr__(self) -> str:
        return (
            f"AWSCredentialIdentity(access_key_id={self.access_key_id!r}, "
            f"expiration={self.expiration!r}, source={self.source!r})"
        )


@dataclass(kw_only=True, frozen=True)
class AzureCredentialIdentity(Identity):
    """Azure storage credentials.

    Exactly one of ``shared_key``, ``access_token`` or ``sas_token`` is set.
    """

    account: str | None = None
    """The storage account name. Required for shared key signing."""

    shared_key: bytes | None = field(default=None, repr=False)
    """The raw (base64 decoded) account key."""

    access_token: str | None = field(default=None, repr=False)
    """An OAuth bearer token, for example one issued to a managed identity."""

    sas_token: str | None = field(default=None, repr=False)
    """A pre-generated shared access signature query string."""

    expiration: datetime | None = None
    expire_threshold: timedelta = DEFAULT_EXPIRE_THRESHOLD

    endpoint: str | None = None
    """The managed identity endpoint that issued ``access_token``."""

    source: CredentialSource = "static"

    def __post_init__(self) -> None:
        auth = [self.shared_key, self.access_token, self.sas_token]
        if sum(value is not None for value in auth) != 1:
            raise ValueError(
                "Exactly one of shared_key, access_token, or sas_token must be set."
            )
        if self.shared_key is not None and self.account is None:
            raise ValueError("Shared key credentials require an account name.")
        if self.sas_token is not None:
            object.__setattr__(self, "sas_token", self.sas_token.lstrip("?"))
        if self.expiration is not None:
            object.__setattr__(self, "expiration", ensure_utc(self.expiration))

    def is_expired_at(self, now: datetime) -> bool:
        return expired(self, now)

    def as_config(self) -> dict[str, str]:
        values: dict[str, str] = {"source": self.source}
        if self.account is not None:
            values["account"] = self.account
        if self.access_token is not None:
            values["access_token"] = self.access_token
        if self.sas_token is not None:
            values["sas_token"] = self.sas_token
        if self.endpoint is not None:
            values["endpoint"] = self.endpoint
        if self.expiration is not None:
            values["expiration"] = format_timestamp(self.expiration)
        return values


def reject_expired(identity: Identity) -> None:
    """Refuse to sign with an identity that is past its hard expiration.

    :raises ConfigurationError: If the identity has expired.
    """
    now = datetime.now(UTC)
    if identity.expiration is not None and now >= identity.expiration:
        raise ConfigurationError(
            f"Provided identity expired at {identity.expiration}. Please "
            "refresh the credentials or update the expiration parameter."
        )
