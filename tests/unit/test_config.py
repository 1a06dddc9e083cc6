# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0
from pathlib import Path

import pytest

from cloud_signers.config import (
    SOURCE_CONFIG_FILE,
    SOURCE_CONNECTION_STRING,
    SOURCE_CREDENTIALS_FILE,
    SOURCE_DEFAULT,
    SOURCE_ENVIRONMENT,
    AWSProfileConfig,
    AzureStorageConfig,
    parse_connection_string,
)
from cloud_signers.exceptions import ConfigurationError


@pytest.fixture
def aws_files(tmp_path: Path) -> dict[str, str]:
    credentials = tmp_path / "credentials"
    credentials.write_text(
        "[default]\n"
        "aws_access_key_id = FILE_AKID\n"
        "aws_secret_access_key = FILE_SECRET\n"
        "[dev]\n"
        "aws_access_key_id = DEV_AKID\n"
        "aws_secret_access_key = DEV_SECRET\n"
    )
    config = tmp_path / "config"
    config.write_text(
        "[default]\n"
        "region = us-east-2\n"
        "aws_access_key_id = CONFIG_AKID\n"
        "[profile dev]\n"
        "region = eu-west-1\n"
        "role_arn = arn:aws:iam::123456789012:role/dev%role\n"
        "[dev]\n"
        "region = ignored-without-prefix\n"
    )
    return {
        "AWS_SHARED_CREDENTIALS_FILE": str(credentials),
        "AWS_CONFIG_FILE": str(config),
    }


async def test_credentials_file_beats_config_file(aws_files: dict[str, str]) -> None:
    config = AWSProfileConfig(environ=aws_files)
    await config.resolve()
    assert config.profile == "default"
    assert config.get("aws_access_key_id") == "FILE_AKID"
    assert config.get_config_value_object("aws_access_key_id").source == (
        SOURCE_CREDENTIALS_FILE
    )
    assert config.get("region") == "us-east-2"
    assert config.get_config_value_object("region").source == SOURCE_CONFIG_FILE


async def test_environment_beats_files(aws_files: dict[str, str]) -> None:
    environ = aws_files | {
        "AWS_ACCESS_KEY_ID": "ENV_AKID",
        "AWS_SECRET_ACCESS_KEY": "ENV_SECRET",
        "AWS_DEFAULT_REGION": "ap-south-1",
    }
    config = AWSProfileConfig(environ=environ)
    await config.resolve()
    assert config.get("aws_access_key_id") == "ENV_AKID"
    assert config.get_config_value_object("aws_access_key_id").source == (
        SOURCE_ENVIRONMENT
    )
    assert config.get("aws_secret_access_key") == "ENV_SECRET"
    assert config.get("region") == "ap-south-1"


async def test_partial_environment_keys_are_ignored(
    aws_files: dict[str, str],
) -> None:
    config = AWSProfileConfig(environ=aws_files | {"AWS_ACCESS_KEY_ID": "ENV_AKID"})
    await config.resolve()
    assert config.get("aws_access_key_id") == "FILE_AKID"
    assert config.get("aws_secret_access_key") == "FILE_SECRET"
    assert config.get_config_value_object("aws_secret_access_key").source == (
        SOURCE_CREDENTIALS_FILE
    )


@pytest.mark.parametrize(
    "env_token, expected_token",
    [(None, None), ("ENV_TOKEN", "ENV_TOKEN")],
)
async def test_session_token_comes_from_the_key_source(
    tmp_path: Path, env_token: str | None, expected_token: str | None
) -> None:
    credentials = tmp_path / "credentials"
    credentials.write_text(
        "[default]\n"
        "aws_access_key_id = FILE_AKID\n"
        "aws_secret_access_key = FILE_SECRET\n"
        "aws_session_token = FILE_TOKEN\n"
    )
    environ = {
        "AWS_SHARED_CREDENTIALS_FILE": str(credentials),
        "AWS_CONFIG_FILE": str(tmp_path / "config"),
        "AWS_ACCESS_KEY_ID": "ENV_AKID",
        "AWS_SECRET_ACCESS_KEY": "ENV_SECRET",
    }
    if env_token is not None:
        environ["AWS_SESSION_TOKEN"] = env_token
    config = AWSProfileConfig(environ=environ)
    await config.resolve()
    assert config.get("aws_access_key_id") == "ENV_AKID"
    assert config.get("aws_session_token") == expected_token
    assert "FILE_TOKEN" not in config.as_dict().values()


async def test_file_session_token_accompanies_file_keys(tmp_path: Path) -> None:
    credentials = tmp_path / "credentials"
    credentials.write_text(
        "[default]\n"
        "aws_access_key_id = FILE_AKID\n"
        "aws_secret_access_key = FILE_SECRET\n"
        "aws_session_token = FILE_TOKEN\n"
    )
    config = AWSProfileConfig(
        environ={
            "AWS_SHARED_CREDENTIALS_FILE": str(credentials),
            "AWS_CONFIG_FILE": str(tmp_path / "config"),
            "AWS_SESSION_TOKEN": "STRAY_ENV_TOKEN",
        }
    )
    await config.resolve()
    assert config.get("aws_access_key_id") == "FILE_AKID"
    assert config.get("aws_session_token") == "FILE_TOKEN"


async def test_role_arn_is_not_read_from_the_environment(
    aws_files: dict[str, str],
) -> None:
    environ = aws_files | {
        "AWS_ROLE_ARN": "arn:aws:iam::123456789012:role/pod",
        "AWS_ROLE_SESSION_NAME": "pod-session",
    }
    config = AWSProfileConfig(environ=environ)
    await config.resolve()
    assert config.get("role_arn") is None
    assert config.get("role_session_name") is None


async def test_environment_can_be_ignored(aws_files: dict[str, str]) -> None:
    environ = aws_files | {"AWS_ACCESS_KEY_ID": "ENV_AKID"}
    config = AWSProfileConfig(environ=environ, use_environment=False)
    await config.resolve()
    assert config.get("aws_access_key_id") == "FILE_AKID"


async def test_named_profile_uses_prefixed_section(aws_files: dict[str, str]) -> None:
    config = AWSProfileConfig(environ=aws_files | {"AWS_PROFILE": "dev"})
    await config.resolve()
    assert config.profile == "dev"
    assert config.profile_found
    assert config.get("aws_access_key_id") == "DEV_AKID"
    assert config.get("region") == "eu-west-1"
    assert config.get("role_arn") == "arn:aws:iam::123456789012:role/dev%role"


async def test_missing_profile(aws_files: dict[str, str]) -> None:
    config = AWSProfileConfig("missing", environ=aws_files)
    await config.resolve()
    assert not config.profile_found
    assert config.get("aws_access_key_id") is None
    assert config.get_config_value_object("region").source == SOURCE_DEFAULT
    assert config.as_dict() == {}


async def test_missing_files(tmp_path: Path) -> None:
    environ = {
        "AWS_SHARED_CREDENTIALS_FILE": str(tmp_path / "nope"),
        "AWS_CONFIG_FILE": str(tmp_path / "nope-either"),
    }
    config = AWSProfileConfig(environ=environ)
    await config.resolve()
    assert not config.profile_found


async def test_malformed_file(tmp_path: Path) -> None:
    credentials = tmp_path / "credentials"
    credentials.write_text("aws_access_key_id = no section\n")
    config = AWSProfileConfig(
        environ={
            "AWS_SHARED_CREDENTIALS_FILE": str(credentials),
            "AWS_CONFIG_FILE": str(tmp_path / "config"),
        }
    )
    with pytest.raises(ConfigurationError):
        await config.resolve()


async def test_values_require_resolve(aws_files: dict[str, str]) -> None:
    config = AWSProfileConfig(environ=aws_files)
    with pytest.raises(RuntimeError):
        config.get("region")
    await config.resolve()
    with pytest.raises(RuntimeError):
        await config.resolve()


def test_parse_connection_string() -> None:
    assert parse_connection_string(
        "DefaultEndpointsProtocol=https;AccountName=acct;AccountKey=a2V5==;"
    ) == {
        "DefaultEndpointsProtocol": "https",
        "AccountName": "acct",
        "AccountKey": "a2V5==",
    }


def test_malformed_connection_string() -> None:
    with pytest.raises(ConfigurationError):
        parse_connection_string("AccountName=acct;garbage")


@pytest.fixture
def azure_dir(tmp_path: Path) -> Path:
    (tmp_path / "config").write_text(
        "[storage]\n"
        "account = fileacct\n"
        "connection_string = AccountName=connacct;AccountKey=Y29ubmtleQ==\n"
    )
    return tmp_path


async def test_azure_file_values(azure_dir: Path) -> None:
    config = AzureStorageConfig(environ={"AZURE_CONFIG_DIR": str(azure_dir)})
    await config.resolve()
    assert config.get("account") == "fileacct"
    assert config.get_config_value_object("account").source == SOURCE_CONFIG_FILE
    assert config.get("key") == "Y29ubmtleQ=="
    assert config.get_config_value_object("key").source == SOURCE_CONNECTION_STRING
    assert config.get("sas_token") is None


async def test_azure_environment_wins(azure_dir: Path) -> None:
    environ = {
        "AZURE_CONFIG_DIR": str(azure_dir),
        "AZURE_STORAGE_ACCOUNT": "envacct",
        "AZURE_STORAGE_CONNECTION_STRING": (
            "AccountName=envconn;SharedAccessSignature=sv=2019-12-12&sig=abc"
        ),
    }
    config = AzureStorageConfig(environ=environ)
    await config.resolve()
    assert config.get("account") == "envacct"
    assert config.get("sas_token") == "sv=2019-12-12&sig=abc"
    assert config.get_config_value_object("sas_token").source == (
        SOURCE_CONNECTION_STRING
    )
    assert config.get("key") == "Y29ubmtleQ=="


async def test_azure_without_config(tmp_path: Path) -> None:
    config = AzureStorageConfig(environ={"AZURE_CONFIG_DIR": str(tmp_path)})
    await config.resolve()
    assert config.as_dict() == {}
