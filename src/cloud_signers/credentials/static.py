# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0
from ..interfaces.identity import Identity, IdentityResolver
from .interfaces import IdentityProperties


class StaticCredentialsResolver[I: Identity](IdentityResolver[I, IdentityProperties]):
    """Resolve credentials passed in explicitly.

    The same identity is returned on every call. Without an expiration it is never
    refreshed.
    """

    def __init__(self, *, credentials: I) -> None:
        self._credentials = credentials

    async def get_identity(self, *, properties: IdentityProperties) -> I:
        return self._credentials
