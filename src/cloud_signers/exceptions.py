# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0


class CloudSignersWarning(UserWarning): ...


class CloudSignersError(Exception):
    """Top-level exception to capture signing and credential errors."""


class ConfigurationError(CloudSignersError, ValueError):
    """Signing inputs or credential sources are missing or malformed.

    Raised for a region or service that can't be determined, a malformed SAS
    permission string, or when no credential source can be resolved.
    """


class CredentialsNotFoundError(ConfigurationError):
    """A credential source isn't configured in the current environment."""


class SigningError(CloudSignersError):
    """The request can't be canonicalized, for example a streaming body."""


class CredentialRefreshError(CloudSignersError):
    """Re-resolving a credential from its source failed.

    The previously resolved credential is left in place.
    """
