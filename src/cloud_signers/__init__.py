# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0
"""Cloud Signers signs HTTP requests for AWS and Azure storage services and keeps
the credentials they are signed with valid for the lifetime of a process."""

__license__ = "Apache-2.0"
__version__ = "0.1.0"

from ._http import URI, CloudRequest, Field, Fields  # noqa: E402
from ._identity import AWSCredentialIdentity, AzureCredentialIdentity  # noqa: E402
from .azure import AzureSharedKeySigner, AzureSigningProperties  # noqa: E402
from .credentials import (  # noqa: E402
    AWSCredentialStore,
    AzureCredentialStore,
    CredentialState,
    CredentialStore,
)
from .middleware import CloudClient, Provider, RequestSigningInterceptor  # noqa: E402
from .sas import (  # noqa: E402
    BlobResource,
    SignedPermission,
    generate_account_sas,
    generate_account_sas_uri,
    generate_service_sas,
    generate_service_sas_uri,
)
from .signers import (  # noqa: E402
    SigV2Signer,
    SigV2SigningProperties,
    SigV4Signer,
    SigV4SigningProperties,
)

__all__ = (
    "URI",
    "AWSCredentialIdentity",
    "AWSCredentialStore",
    "AzureCredentialIdentity",
    "AzureCredentialStore",
    "AzureSharedKeySigner",
    "AzureSigningProperties",
    "BlobResource",
    "CloudClient",
    "CloudRequest",
    "CredentialState",
    "CredentialStore",
    "Field",
    "Fields",
    "Provider",
    "RequestSigningInterceptor",
    "SigV2Signer",
    "SigV2SigningProperties",
    "SigV4Signer",
    "SigV4SigningProperties",
    "SignedPermission",
    "generate_account_sas",
    "generate_account_sas_uri",
    "generate_service_sas",
    "generate_service_sas_uri",
)
