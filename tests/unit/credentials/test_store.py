# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0
import asyncio
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from cloud_signers import (
    AWSCredentialIdentity,
    AWSCredentialStore,
    AzureCredentialStore,
    CredentialStore,
)
from cloud_signers.credentials import ProfileCredentialsResolver
from cloud_signers.credentials.interfaces import IdentityProperties
from cloud_signers.exceptions import (
    ConfigurationError,
    CredentialRefreshError,
    CredentialsNotFoundError,
)
from cloud_signers.testing import MockHTTPClient

NOW = datetime(2024, 5, 1, 12, 0, 0, tzinfo=UTC)


class Clock:
    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class SequenceResolver:
    """Hands out numbered credentials, or raises the queued errors."""

    def __init__(
        self,
        *,
        lifetime: timedelta = timedelta(hours=1),
        clock: Callable[[], datetime],
        delay: float = 0,
    ) -> None:
        self.calls = 0
        self.errors: list[Exception] = []
        self._lifetime = lifetime
        self._clock = clock
        self._delay = delay

    async def get_identity(
        self, *, properties: IdentityProperties
    ) -> AWSCredentialIdentity:
        self.calls += 1
        await asyncio.sleep(self._delay)
        if self.errors:
            raise self.errors.pop(0)
        return AWSCredentialIdentity(
            access_key_id=f"akid-{self.calls}",
            secret_access_key="rotating-s3cr3t-value",
            expiration=self._clock() + self._lifetime,
            expire_threshold=properties["expire_threshold"],
        )


def make_store(
    resolver: SequenceResolver, clock: Clock, **kwargs: float
) -> CredentialStore[AWSCredentialIdentity, IdentityProperties]:
    return CredentialStore(
        resolver,
        properties={"expire_threshold": timedelta(minutes=5)},
        clock=clock,
        **kwargs,
    )


async def test_caches_until_refresh_window() -> None:
    clock = Clock()
    resolver = SequenceResolver(clock=clock)
    store = make_store(resolver, clock)

    first = await store.get_current()
    assert first.access_key_id == "akid-1"
    assert (await store.get_current()) is first

    clock.now += timedelta(minutes=54)
    assert (await store.get_current()) is first

    clock.now += timedelta(minutes=2)
    refreshed = await store.get_current()
    assert refreshed.access_key_id == "akid-2"
    assert resolver.calls == 2


async def test_concurrent_callers_share_one_refresh() -> None:
    clock = Clock()
    resolver = SequenceResolver(clock=clock, delay=0.01)
    store = make_store(resolver, clock)

    results = await asyncio.gather(*(store.get_current() for _ in range(10)))

    assert resolver.calls == 1
    assert all(result is results[0] for result in results)


async def test_state_is_swapped_on_refresh() -> None:
    clock = Clock()
    resolver = SequenceResolver(clock=clock)
    store = make_store(resolver, clock)
    assert len(store.state) == 0

    await store.get_current()
    before = store.state.snapshot()
    assert store.state["aws_access_key_id"] == "akid-1"

    await store.refresh()
    assert store.state["aws_access_key_id"] == "akid-2"
    assert before["aws_access_key_id"] == "akid-1"
    assert "rotating-s3cr3t-value" not in repr(store.state)


async def test_state_is_read_only() -> None:
    clock = Clock()
    store = make_store(SequenceResolver(clock=clock), clock)
    await store.get_current()
    with pytest.raises(TypeError):
        store.state["aws_access_key_id"] = "changed"  # type: ignore
    with pytest.raises(TypeError):
        store.state.snapshot()["aws_access_key_id"] = "changed"  # type: ignore


async def test_failed_refresh_keeps_previous_credentials() -> None:
    clock = Clock()
    resolver = SequenceResolver(clock=clock)
    store = make_store(resolver, clock)
    first = await store.get_current()

    clock.now += timedelta(hours=2)
    resolver.errors.append(CredentialsNotFoundError("gone"))
    with pytest.raises(CredentialRefreshError) as e:
        await store.get_current()
    assert isinstance(e.value.__cause__, CredentialsNotFoundError)
    assert store.state["aws_access_key_id"] == first.access_key_id

    # The next call tries again.
    assert (await store.get_current()).access_key_id == "akid-3"


async def test_unexpected_errors_are_wrapped() -> None:
    clock = Clock()
    resolver = SequenceResolver(clock=clock)
    resolver.errors.append(KeyError("boom"))
    store = make_store(resolver, clock)
    with pytest.raises(CredentialRefreshError):
        await store.get_current()


async def test_initial_resolution_errors_propagate() -> None:
    clock = Clock()
    resolver = SequenceResolver(clock=clock)
    resolver.errors.append(CredentialsNotFoundError("nothing configured"))
    store = make_store(resolver, clock)
    with pytest.raises(CredentialsNotFoundError):
        await store.get_current()


async def test_resolution_timeout() -> None:
    clock = Clock()
    resolver = SequenceResolver(clock=clock, delay=1)
    store = make_store(resolver, clock, refresh_timeout=0.01)
    with pytest.raises(CredentialRefreshError, match="timed out"):
        await store.get_current()


async def test_from_static_never_refreshes() -> None:
    store = AWSCredentialStore.from_static("akid", "secret", region="us-west-2")
    identity = await store.get_current()
    assert identity.region == "us-west-2"
    assert (await store.get_current()) is identity
    assert store.state["source"] == "static"


async def test_default_chain_reads_the_environment(tmp_path: Path) -> None:
    http_client = MockHTTPClient()
    environ = {
        "AWS_ACCESS_KEY_ID": "env-akid",
        "AWS_SECRET_ACCESS_KEY": "env-secret",
        "AWS_SHARED_CREDENTIALS_FILE": str(tmp_path / "credentials"),
        "AWS_CONFIG_FILE": str(tmp_path / "config"),
    }
    store = AWSCredentialStore(http_client=http_client, environ=environ)

    identity = await store.get_current()

    assert identity.access_key_id == "env-akid"
    assert identity.source == "environment"
    assert isinstance(store.resolver.source, ProfileCredentialsResolver)  # type: ignore
    assert http_client.call_count == 0
    await store.close()


async def test_azure_shared_key_store() -> None:
    store = AzureCredentialStore.from_shared_key("acct", "a2V5")
    identity = await store.get_current()
    assert identity.shared_key == b"key"
    assert identity.account == "acct"


def test_azure_shared_key_must_be_base64() -> None:
    with pytest.raises(ConfigurationError):
        AzureCredentialStore.from_shared_key("acct", "abc")


async def test_azure_sas_token_store() -> None:
    store = AzureCredentialStore.from_sas_token("?sv=2019-12-12&sig=abc")
    assert (await store.get_current()).sas_token == "sv=2019-12-12&sig=abc"
    assert store.state["sas_token"] == "sv=2019-12-12&sig=abc"



async def test_default_chain_skips_a_role_without_source_keys(tmp_path: Path) -> None:
    (tmp_path / "config").write_text(
        "[default]\nrole_arn = arn:aws:iam::123456789012:role/app\n"
    )
    http_client = MockHTTPClient()
    http_client.add_response(
        200,
        body=(
            b'{"AccessKeyId": "container-akid", "SecretAccessKey": "s3cr3t", '
            b'"Token": "token", "Expiration": "2030-01-01T00:00:00Z"}'
        ),
    )
    environ = {
        "AWS_ROLE_ARN": "arn:aws:iam::123456789012:role/pod",
        "AWS_CONTAINER_CREDENTIALS_FULL_URI": "http://localhost/creds",
        "AWS_SHARED_CREDENTIALS_FILE": str(tmp_path / "credentials"),
        "AWS_CONFIG_FILE": str(tmp_path / "config"),
    }
    store = AWSCredentialStore(http_client=http_client, environ=environ)

    identity = await store.get_current()

    assert identity.access_key_id == "container-akid"
    assert identity.source == "container"
    assert http_client.call_count == 1
    await store.close()


async def test_role_environment_variable_doesnt_assume_a_role(
    tmp_path: Path,
) -> None:
    http_client = MockHTTPClient()
    environ = {
        "AWS_ROLE_ARN": "arn:aws:iam::123456789012:role/pod",
        "AWS_ACCESS_KEY_ID": "env-akid",
        "AWS_SECRET_ACCESS_KEY": "env-secret",
        "AWS_SHARED_CREDENTIALS_FILE": str(tmp_path / "credentials"),
        "AWS_CONFIG_FILE": str(tmp_path / "config"),
    }
    store = AWSCredentialStore(http_client=http_client, environ=environ)

    identity = await store.get_current()

    assert identity.access_key_id == "env-akid"
    assert identity.role_arn is None
    assert http_client.call_count == 0
    await store.close()
