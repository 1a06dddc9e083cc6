# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0
from collections.abc import Mapping
from typing import Any, Protocol

from .http import Request
from .identity import Identity


class Signer[R: Request, I: Identity, SP: Mapping[str, Any]](Protocol):
    """A class that signs requests before they are sent.

    Signing is pure CPU work; it never performs network I/O.
    """

    def sign(self, *, signing_properties: SP, http_request: R, identity: I) -> R:
        """Get a signed copy of the request.

        :param signing_properties: Additional properties used to sign the request.
        :param http_request: The request to be signed.
        :param identity: The identity to use to sign the request.
        """
        ...
