# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0
import asyncio
import configparser
import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any, ClassVar, Final, Literal

from .exceptions import ConfigurationError

logger: Final = logging.getLogger(__name__)

SOURCE_ENVIRONMENT = "environment"
SOURCE_CREDENTIALS_FILE = "credentials_file"
SOURCE_CONFIG_FILE = "config_file"
SOURCE_CONNECTION_STRING = "connection_string"
SOURCE_DEFAULT = "default"

SourceType = Literal[
    "environment",
    "credentials_file",
    "config_file",
    "connection_string",
    "default",
]

DEFAULT_PROFILE = "default"

_CREDENTIAL_FIELDS: Final = (
    "aws_access_key_id",
    "aws_secret_access_key",
    "aws_session_token",
)


class ConfigValue:
    """Configuration value with metadata about its source"""

    def __init__(self, value: Any, source: SourceType):
        self.value = value
        self.source = source

    def __repr__(self) -> str:
        return f"ConfigValue(source={self.source!r})"


def _read_ini(path: Path) -> configparser.ConfigParser | None:
    if not path.is_file():
        return None
    # Values such as role ARNs and connection strings may contain ``%``.
    parser = configparser.ConfigParser(interpolation=None)
    try:
        parser.read(path, encoding="utf-8")
    except configparser.Error as e:
        raise ConfigurationError(f"Unable to parse {path}: {e}") from e
    return parser


class _LayeredConfig:
    """Resolves each field from an ordered list of value layers.

    Each entry of ``CONFIG_FIELDS`` names the environment variable(s) and the file
    key that can supply the field. The first layer holding a value wins.
    """

    CONFIG_FIELDS: ClassVar[dict[str, dict[str, Any]]] = {}

    def __init__(self, *, environ: Mapping[str, str] | None = None):
        self._environ = os.environ if environ is None else environ
        self._values: dict[str, ConfigValue] = {}
        self._resolved = False

    async def _load_layers(self) -> list[tuple[SourceType, Mapping[str, str]]]:
        raise NotImplementedError()

    async def resolve(self) -> None:
        """Read the environment and config files.

        File reads run in a worker thread so they don't block the event loop.
        """
        if self._resolved:
            raise RuntimeError(
                "Config has already been resolved. Multiple calls to resolve() are "
                "not allowed."
            )
        layers = await self._load_layers()
        self._values = self._resolve_fields(layers)
        self._resolved = True

    def _resolve_fields(
        self, layers: list[tuple[SourceType, Mapping[str, str]]]
    ) -> dict[str, ConfigValue]:
        return {
            field_name: self._resolve_field(field_info, layers)
            for field_name, field_info in self.CONFIG_FIELDS.items()
        }

    def _resolve_field(
        self,
        field_info: dict[str, Any],
        layers: list[tuple[SourceType, Mapping[str, str]]],
    ) -> ConfigValue:
        env_vars = field_info.get("env_var", ())
        if isinstance(env_vars, str):
            env_vars = (env_vars,)
        config_key = field_info.get("config_key")

        for source, values in layers:
            if source == SOURCE_ENVIRONMENT:
                keys = env_vars
            else:
                keys = (config_key,) if config_key else ()
            for key in keys:
                if values.get(key):
                    return ConfigValue(values[key], source)
        return ConfigValue(field_info.get("default"), SOURCE_DEFAULT)

    def get_config_value_object(self, field_name: str) -> ConfigValue:
        """Get the raw ConfigValue object for a field"""
        if not self._resolved:
            raise RuntimeError("Config must be resolved before accessing values")
        return self._values[field_name]

    def get(self, field_name: str) -> str | None:
        return self.get_config_value_object(field_name).value

    def as_dict(self) -> dict[str, str]:
        """The resolved values, omitting unset fields."""
        if not self._resolved:
            raise RuntimeError("Config must be resolved before accessing values")
        return {
            name: value.value
            for name, value in self._values.items()
            if value.value is not None
        }


class AWSProfileConfig(_LayeredConfig):
    """A named profile from the shared AWS config and credentials files.

    Values are taken from the environment first, then the credentials file, then
    the config file. The profile is the one passed in, else ``AWS_PROFILE``, else
    ``default``.

    The access key, secret key and session token are taken together from the first
    source that has both keys.

    :param profile: The profile to load.
    :param environ: The environment to read. Defaults to ``os.environ``.
    :param use_environment: Whether environment variables override file values.
        Disabled when loading the source profile of a role.
    """

    CONFIG_FIELDS: ClassVar[dict[str, dict[str, Any]]] = {
        "aws_access_key_id": {
            "env_var": "AWS_ACCESS_KEY_ID",
            "config_key": "aws_access_key_id",
        },
        "aws_secret_access_key": {
            "env_var": "AWS_SECRET_ACCESS_KEY",
            "config_key": "aws_secret_access_key",
        },
        "aws_session_token": {
            "env_var": "AWS_SESSION_TOKEN",
            "config_key": "aws_session_token",
        },
        "region": {
            "env_var": ("AWS_REGION", "AWS_DEFAULT_REGION"),
            "config_key": "region",
        },
        # Role settings come from profiles only. AWS_ROLE_ARN is for web identity.
        "role_arn": {"config_key": "role_arn"},
        "role_session_name": {"config_key": "role_session_name"},
        "source_profile": {"config_key": "source_profile"},
        "external_id": {"config_key": "external_id"},
        "duration_seconds": {"config_key": "duration_seconds"},
    }

    def __init__(
        self,
        profile: str | None = None,
        *,
        environ: Mapping[str, str] | None = None,
        use_environment: bool = True,
    ):
        super().__init__(environ=environ)
        self.profile = profile or self._environ.get("AWS_PROFILE") or DEFAULT_PROFILE
        self._use_environment = use_environment
        self.profile_found = False

    def _resolve_fields(
        self, layers: list[tuple[SourceType, Mapping[str, str]]]
    ) -> dict[str, ConfigValue]:
        values = super()._resolve_fields(layers)
        # Keys and token come from one layer: the first that holds both keys.
        credentials = {
            name: ConfigValue(None, SOURCE_DEFAULT) for name in _CREDENTIAL_FIELDS
        }
        for layer in layers:
            candidate = {
                name: self._resolve_field(self.CONFIG_FIELDS[name], [layer])
                for name in _CREDENTIAL_FIELDS
            }
            if (
                candidate["aws_access_key_id"].value
                and candidate["aws_secret_access_key"].value
            ):
                credentials = candidate
                break
        values.update(credentials)
        return values

    @property
    def credentials_path(self) -> Path:
        return Path(
            self._environ.get("AWS_SHARED_CREDENTIALS_FILE", "~/.aws/credentials")
        ).expanduser()

    @property
    def config_path(self) -> Path:
        return Path(self._environ.get("AWS_CONFIG_FILE", "~/.aws/config")).expanduser()

    async def _load_layers(self) -> list[tuple[SourceType, Mapping[str, str]]]:
        credentials_values, config_values = await asyncio.gather(
            asyncio.to_thread(self._read_credentials_file),
            asyncio.to_thread(self._read_config_file),
        )
        self.profile_found = credentials_values is not None or config_values is not None
        layers: list[tuple[SourceType, Mapping[str, str]]] = []
        if self._use_environment:
            layers.append((SOURCE_ENVIRONMENT, self._environ))
        layers.append((SOURCE_CREDENTIALS_FILE, credentials_values or {}))
        layers.append((SOURCE_CONFIG_FILE, config_values or {}))
        return layers

    def _read_credentials_file(self) -> dict[str, str] | None:
        parser = _read_ini(self.credentials_path)
        if parser is None or self.profile not in parser:
            return None
        logger.debug("Found profile %r in %s", self.profile, self.credentials_path)
        return dict(parser[self.profile])

    def _read_config_file(self) -> dict[str, str] | None:
        parser = _read_ini(self.config_path)
        if parser is None:
            return None
        # The config file prefixes every section but the default with "profile".
        sections = [f"profile {self.profile}"]
        if self.profile == DEFAULT_PROFILE:
            sections.append(DEFAULT_PROFILE)
        for section in sections:
            if section in parser:
                logger.debug("Found profile %r in %s", self.profile, self.config_path)
                return dict(parser[section])
        return None


def parse_connection_string(connection_string: str) -> dict[str, str]:
    """Split an Azure storage connection string into its ``Name=value`` parts.

    :raises ConfigurationError: If a part isn't of the form ``Name=value``.
    """
    values: dict[str, str] = {}
    for part in connection_string.strip().strip(";").split(";"):
        name, sep, value = part.partition("=")
        if not sep or not name.strip():
            raise ConfigurationError(
                "Malformed storage connection string, expected 'Name=value' parts."
            )
        values[name.strip()] = value.strip()
    return values


# Connection string parts mapped to the config keys they supply.
_CONNECTION_STRING_KEYS: Final = {
    "AccountName": "account",
    "AccountKey": "key",
    "SharedAccessSignature": "sas_token",
}


class AzureStorageConfig(_LayeredConfig):
    """Azure storage settings from the environment and the Azure CLI config file.

    The ``[storage]`` section of ``$AZURE_CONFIG_DIR/config`` (``~/.azure/config``
    by default) supplies the file values. A connection string, from either place,
    supplies any value that isn't set explicitly alongside it.
    """

    CONFIG_FIELDS: ClassVar[dict[str, dict[str, Any]]] = {
        "account": {"env_var": "AZURE_STORAGE_ACCOUNT", "config_key": "account"},
        "key": {"env_var": "AZURE_STORAGE_KEY", "config_key": "key"},
        "sas_token": {"env_var": "AZURE_STORAGE_SAS_TOKEN", "config_key": "sas_token"},
    }

    @property
    def config_path(self) -> Path:
        directory = self._environ.get("AZURE_CONFIG_DIR", "~/.azure")
        return Path(directory).expanduser() / "config"

    async def _load_layers(self) -> list[tuple[SourceType, Mapping[str, str]]]:
        file_values = await asyncio.to_thread(self._read_config_file)
        layers: list[tuple[SourceType, Mapping[str, str]]] = [
            (SOURCE_ENVIRONMENT, self._environ)
        ]
        env_connection = self._environ.get("AZURE_STORAGE_CONNECTION_STRING")
        if env_connection:
            layers.append(
                (SOURCE_CONNECTION_STRING, self._connection_values(env_connection))
            )
        layers.append((SOURCE_CONFIG_FILE, file_values))
        if file_values.get("connection_string"):
            layers.append(
                (
                    SOURCE_CONNECTION_STRING,
                    self._connection_values(file_values["connection_string"]),
                )
            )
        return layers

    def _connection_values(self, connection_string: str) -> dict[str, str]:
        parts = parse_connection_string(connection_string)
        return {
            key: parts[name]
            for name, key in _CONNECTION_STRING_KEYS.items()
            if name in parts
        }

    def _read_config_file(self) -> dict[str, str]:
        parser = _read_ini(self.config_path)
        if parser is None or "storage" not in parser:
            return {}
        logger.debug("Found storage settings in %s", self.config_path)
        return dict(parser["storage"])
