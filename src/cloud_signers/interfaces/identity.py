# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

from collections.abc import Mapping
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class Identity(Protocol):
    """An entity available to the client representing who the user is."""

    expiration: datetime | None = None
    """The expiration time of the identity.

    If time zone is provided, it is updated to UTC. The value must always be in UTC.
    """

    expire_threshold: timedelta
    """Lead time before ``expiration`` at which the identity is refreshed."""

    def is_expired_at(self, now: datetime) -> bool:
        """Whether the identity should be replaced at the given time."""
        ...

    @property
    def is_expired(self) -> bool:
        """Whether the identity should be replaced now."""
        return self.is_expired_at(datetime.now(tz=UTC))


class IdentityResolver[I: Identity, IP: Mapping[str, Any]](Protocol):
    """Used to load a user's `Identity` from a given source.

    Each `Identity` may have one or more resolver implementations. A resolver that
    produced an identity must be able to produce a fresh one when called again.
    """

    async def get_identity(self, *, properties: IP) -> I:
        """Load the user's identity from this resolver.

        :param properties: Properties used to help determine the identity to return.
        :raises CredentialsNotFoundError: If the source isn't configured.
        """
        ...
