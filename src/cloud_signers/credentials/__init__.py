# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0
from .azure import AzureConfigCredentialsResolver, ManagedIdentityCredentialsResolver
from .chain import CredentialsResolverChain
from .container import ContainerCredentialsResolver
from .imds import IMDSCredentialsResolver
from .profile import ProfileCredentialsResolver
from .static import StaticCredentialsResolver
from .store import (
    AWSCredentialStore,
    AzureCredentialStore,
    CredentialState,
    CredentialStore,
)
from .sts import AssumeRoleCredentialsResolver

__all__ = (
    "AWSCredentialStore",
    "AssumeRoleCredentialsResolver",
    "AzureConfigCredentialsResolver",
    "AzureCredentialStore",
    "ContainerCredentialsResolver",
    "CredentialState",
    "CredentialStore",
    "CredentialsResolverChain",
    "IMDSCredentialsResolver",
    "ManagedIdentityCredentialsResolver",
    "ProfileCredentialsResolver",
    "StaticCredentialsResolver",
)
