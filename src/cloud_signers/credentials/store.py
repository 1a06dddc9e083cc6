# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0
import asyncio
import binascii
import logging
from collections.abc import Callable, Iterator, Mapping
from datetime import UTC, datetime, timedelta
from types import MappingProxyType
from typing import Any, Final, Self

from .._hashing import decode_shared_key
from .._identity import (
    DEFAULT_EXPIRE_THRESHOLD,
    AWSCredentialIdentity,
    AzureCredentialIdentity,
)
from ..exceptions import (
    CloudSignersError,
    ConfigurationError,
    CredentialRefreshError,
)
from ..http.aiohttp import AIOHTTPClient
from ..http.interfaces import HTTPClient
from ..interfaces.identity import Identity, IdentityResolver
from .azure import AzureConfigCredentialsResolver, ManagedIdentityCredentialsResolver
from .chain import CredentialsResolverChain
from .container import ContainerCredentialsResolver
from .imds import IMDSCredentialsResolver
from .interfaces import IdentityProperties
from .profile import ProfileCredentialsResolver
from .static import StaticCredentialsResolver

logger: Final = logging.getLogger(__name__)

DEFAULT_REFRESH_TIMEOUT = 60.0


def _utc_now() -> datetime:
    return datetime.now(UTC)


class CredentialState(Mapping[str, str]):
    """The values resolved in the current credential cycle.

    The mapping is read-only. A refresh swaps in a new mapping wholesale, so a
    snapshot taken earlier is never partially updated.
    """

    def __init__(self) -> None:
        self._values: Mapping[str, str] = MappingProxyType({})

    def replace(self, values: Mapping[str, str]) -> None:
        self._values = MappingProxyType(dict(values))

    def snapshot(self) -> Mapping[str, str]:
        return self._values

    def __getitem__(self, key: str) -> str:
        return self._values[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"CredentialState(keys={sorted(self._values)!r})"


class CredentialStore[I: Identity, IP: Mapping[str, Any]]:
    """Holds the current credentials of one resolver and keeps them valid.

    :py:meth:`get_current` returns the cached identity until it is inside its
    expiration threshold. Then the resolver is called again, under a lock so that
    concurrent callers wait for a single refresh instead of starting their own.
    """

    def __init__(
        self,
        resolver: IdentityResolver[I, IP],
        *,
        properties: IP,
        clock: Callable[[], datetime] | None = None,
        refresh_timeout: float | None = DEFAULT_REFRESH_TIMEOUT,
    ) -> None:
        """Construct a CredentialStore.

        :param resolver: The resolver credentials are resolved and refreshed from.
        :param properties: Properties passed to the resolver on every call.
        :param clock: Returns the current time. Defaults to the UTC wall clock.
        :param refresh_timeout: Seconds a resolution may take before it is
            abandoned. ``None`` waits indefinitely.
        """
        self._resolver = resolver
        self._properties = properties
        self._clock = clock or _utc_now
        self._refresh_timeout = refresh_timeout
        self._lock = asyncio.Lock()
        self._identity: I | None = None
        self._state = CredentialState()

    @property
    def state(self) -> CredentialState:
        """The values resolved in the current cycle, for diagnostics."""
        return self._state

    @property
    def resolver(self) -> IdentityResolver[I, IP]:
        return self._resolver

    def _is_current(self, identity: I | None) -> bool:
        return identity is not None and not identity.is_expired_at(self._clock())

    async def get_current(self) -> I:
        """Return valid credentials, resolving or refreshing them first if needed.

        This blocks while a refresh is in flight.

        :raises CredentialsNotFoundError: If no source has credentials.
        :raises CredentialRefreshError: If refreshing failed. The previous
            credentials are kept and the next call tries again.
        """
        identity = self._identity
        if self._is_current(identity):
            return identity  # type: ignore

        async with self._lock:
            # Another task may have refreshed while this one waited.
            identity = self._identity
            if self._is_current(identity):
                return identity  # type: ignore
            return await self._resolve(identity)

    async def refresh(self) -> I:
        """Resolve the credentials again regardless of their expiration."""
        async with self._lock:
            return await self._resolve(self._identity)

    async def _resolve(self, previous: I | None) -> I:
        action = "refresh" if previous is not None else "resolution"
        logger.debug("Starting credential %s with %r", action, self._resolver)
        try:
            identity = await asyncio.wait_for(
                self._resolver.get_identity(properties=self._properties),
                timeout=self._refresh_timeout,
            )
        except TimeoutError as e:
            raise CredentialRefreshError(
                f"Credential {action} timed out after {self._refresh_timeout}s."
            ) from e
        except CredentialRefreshError:
            raise
        except CloudSignersError as e:
            if previous is None:
                raise
            raise CredentialRefreshError(f"Credential refresh failed: {e}") from e
        except Exception as e:
            raise CredentialRefreshError(f"Credential {action} failed: {e}") from e

        self._identity = identity
        self._state.replace(identity.as_config())  # type: ignore
        logger.debug(
            "Finished credential %s, expiration: %s", action, identity.expiration
        )
        return identity


class AWSCredentialStore(
    CredentialStore[AWSCredentialIdentity, IdentityProperties]
):
    """Credential store for AWS.

    Unless a resolver is given, credentials are looked up in order from the shared
    config profile and the environment, the container credentials endpoint, and the
    EC2 instance metadata service. The first source that has credentials is the
    one they are refreshed from.
    """

    def __init__(
        self,
        *,
        profile: str | None = None,
        http_client: HTTPClient | None = None,
        resolver: (
            IdentityResolver[AWSCredentialIdentity, IdentityProperties] | None
        ) = None,
        expire_threshold: timedelta = DEFAULT_EXPIRE_THRESHOLD,
        clock: Callable[[], datetime] | None = None,
        refresh_timeout: float | None = DEFAULT_REFRESH_TIMEOUT,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self._owned_client: AIOHTTPClient | None = None
        if resolver is None:
            if http_client is None:
                http_client = self._owned_client = AIOHTTPClient()
            resolver = CredentialsResolverChain(
                [
                    ProfileCredentialsResolver(
                        profile, http_client=http_client, environ=environ
                    ),
                    ContainerCredentialsResolver(http_client, environ=environ),
                    IMDSCredentialsResolver(http_client, environ=environ),
                ]
            )
        super().__init__(
            resolver,
            properties={"expire_threshold": expire_threshold},
            clock=clock,
            refresh_timeout=refresh_timeout,
        )

    @classmethod
    def from_static(
        cls,
        access_key_id: str,
        secret_access_key: str,
        session_token: str | None = None,
        *,
        expiration: datetime | None = None,
        region: str | None = None,
        expire_threshold: timedelta = DEFAULT_EXPIRE_THRESHOLD,
        clock: Callable[[], datetime] | None = None,
    ) -> Self:
        """A store for explicit keys, which are never refreshed."""
        credentials = AWSCredentialIdentity(
            access_key_id=access_key_id,
            secret_access_key=secret_access_key,
            session_token=session_token,
            expiration=expiration,
            expire_threshold=expire_threshold,
            region=region,
        )
        return cls(
            resolver=StaticCredentialsResolver(credentials=credentials),
            expire_threshold=expire_threshold,
            clock=clock,
        )

    async def close(self) -> None:
        """Close the HTTP client the store created for itself, if any."""
        if self._owned_client is not None:
            await self._owned_client.close()


class AzureCredentialStore(
    CredentialStore[AzureCredentialIdentity, IdentityProperties]
):
    """Credential store for Azure storage.

    Unless a resolver is given, an account key or SAS token is looked up in the
    environment and the Azure CLI config, falling back to a token from the
    virtual machine's managed identity.
    """

    def __init__(
        self,
        *,
        http_client: HTTPClient | None = None,
        resolver: (
            IdentityResolver[AzureCredentialIdentity, IdentityProperties] | None
        ) = None,
        expire_threshold: timedelta = DEFAULT_EXPIRE_THRESHOLD,
        clock: Callable[[], datetime] | None = None,
        refresh_timeout: float | None = DEFAULT_REFRESH_TIMEOUT,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self._owned_client: AIOHTTPClient | None = None
        if resolver is None:
            if http_client is None:
                http_client = self._owned_client = AIOHTTPClient()
            resolver = CredentialsResolverChain(
                [
                    AzureConfigCredentialsResolver(environ=environ),
                    ManagedIdentityCredentialsResolver(http_client, environ=environ),
                ]
            )
        super().__init__(
            resolver,
            properties={"expire_threshold": expire_threshold},
            clock=clock,
            refresh_timeout=refresh_timeout,
        )

    @classmethod
    def _from_identity(
        cls,
        credentials: AzureCredentialIdentity,
        clock: Callable[[], datetime] | None,
    ) -> Self:
        return cls(
            resolver=StaticCredentialsResolver(credentials=credentials),
            expire_threshold=credentials.expire_threshold,
            clock=clock,
        )

    @classmethod
    def from_shared_key(
        cls,
        account: str,
        key: str | bytes,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> Self:
        """A store for an account name and its key.

        :param key: The key as shown by the portal (base64), or its raw bytes.
        """
        try:
            shared_key = decode_shared_key(key)
        except binascii.Error as e:
            raise ConfigurationError("The storage key isn't valid base64.") from e
        return cls._from_identity(
            AzureCredentialIdentity(
                account=account, shared_key=shared_key, source="static"
            ),
            clock,
        )

    @classmethod
    def from_access_token(
        cls,
        access_token: str,
        *,
        account: str | None = None,
        expiration: datetime | None = None,
        expire_threshold: timedelta = DEFAULT_EXPIRE_THRESHOLD,
        clock: Callable[[], datetime] | None = None,
    ) -> Self:
        return cls._from_identity(
            AzureCredentialIdentity(
                account=account,
                access_token=access_token,
                expiration=expiration,
                expire_threshold=expire_threshold,
            ),
            clock,
        )

    @classmethod
    def from_sas_token(
        cls,
        sas_token: str,
        *,
        account: str | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> Self:
        return cls._from_identity(
            AzureCredentialIdentity(account=account, sas_token=sas_token), clock
        )

    async def close(self) -> None:
        """Close the HTTP client the store created for itself, if any."""
        if self._owned_client is not None:
            await self._owned_client.close()
