# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0
from datetime import timedelta
from typing import TypedDict


class IdentityProperties(TypedDict, total=False):
    """Properties passed to every credential resolver."""

    expire_threshold: timedelta
    """Lead time before expiration at which resolved credentials are refreshed."""
