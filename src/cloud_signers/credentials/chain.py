# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0
import logging
from collections.abc import Mapping, Sequence
from typing import Any, Final

from ..exceptions import CredentialsNotFoundError
from ..interfaces.identity import Identity, IdentityResolver

logger: Final = logging.getLogger(__name__)


class CredentialsResolverChain[I: Identity, IP: Mapping[str, Any]](
    IdentityResolver[I, IP]
):
    """Attempts to resolve credentials by checking a sequence of sub-resolvers.

    If a nested resolver raises a :py:class:`CredentialsNotFoundError`, the next
    resolver in the chain will be attempted. Any other error is raised as-is, since
    the source was configured but failed.

    Once a resolver succeeds it is remembered, and later calls go straight to it so
    that refreshed credentials come from the same source.
    """

    def __init__(self, resolvers: Sequence[IdentityResolver[I, IP]]) -> None:
        """Construct a CredentialsResolverChain.

        :param resolvers: The sequence of resolvers to resolve credentials from.
        """
        self._resolvers = resolvers
        self._source: IdentityResolver[I, IP] | None = None

    @property
    def source(self) -> IdentityResolver[I, IP] | None:
        """The resolver that produced the credentials, if any has yet."""
        return self._source

    async def get_identity(self, *, properties: IP) -> I:
        if self._source is not None:
            return await self._source.get_identity(properties=properties)

        logger.debug("Attempting to resolve credentials from resolver chain.")
        failures: list[str] = []
        for resolver in self._resolvers:
            name = type(resolver).__name__
            try:
                logger.debug("Attempting to resolve credentials from %s.", name)
                identity = await resolver.get_identity(properties=properties)
            except CredentialsNotFoundError as e:
                logger.debug("Failed to resolve credentials from %s: %s", name, e)
                failures.append(f"{name}: {e}")
                continue
            logger.debug("Resolved credentials from %s.", name)
            self._source = resolver
            return identity

        tried = " ".join(failures)
        raise CredentialsNotFoundError(
            f"Unable to locate credentials from any source. {tried}"
        )
