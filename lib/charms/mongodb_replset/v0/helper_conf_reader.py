# Copyright 2024 Canonical Ltd.
# See LICENSE file for licensing details.

"""Utilities for reading the mongod configuration file, whatever its format.

mongod accepts two configuration formats: the YAML one (nested or dotted keys) and the
legacy ini-like `key=value` one. The file deployed on a node is not guaranteed to match the
installed mongod version, so the format is detected at read time.
"""
import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping
from io import StringIO
from os.path import exists
from typing import Any, Dict, List, Optional

from charms.mongodb_replset.v0.constants_charm import (
    MONGOD_CONF_FILES,
    MONGOD_CONFIGSVR_PORT,
    MONGOD_DEFAULT_BIND_IP,
    MONGOD_DEFAULT_PORT,
    MONGOD_SHARDSVR_PORT,
)
from charms.mongodb_replset.v0.helper_enums import BaseStrEnum
from charms.mongodb_replset.v0.models import ConnectionConfig, DesiredMember
from overrides import override
from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

# The unique Charmhub library identifier, never change it
LIBID = "a7c5e3f1b9d24e6a8c0f2b4d6e8a0c2e"

# Increment this major API version when introducing breaking changes
LIBAPI = 0

# Increment this PATCH version before using `charmcraft publish-lib` or reset
# to 0 if you are raising the major API version
LIBPATCH = 1


logger = logging.getLogger(__name__)


TRUE_VALUES = {"true", "yes", "on", "1", "enabled"}


class ConfigFormat(BaseStrEnum):
    """Tag of a parsed mongod configuration."""

    STRUCTURED = "structured"
    FLAT = "flat"


class ConfigKey(BaseStrEnum):
    """Settings the connection depends on, independently of the file format."""

    BIND_IP = "bind_ip"
    PORT = "port"
    CLUSTER_ROLE = "cluster_role"
    CONFIG_SERVER = "config_server"
    SHARD_SERVER = "shard_server"
    IPV6 = "ipv6"
    AUTH = "auth"


def is_true(val: Any) -> bool:
    """Interpret yaml / ini flag values."""
    if isinstance(val, bool):
        return val

    if val is None:
        return False

    return str(val).strip().lower() in TRUE_VALUES


class NodeConfigFormat(ABC):
    """Base class of a parsed mongod config, one subclass per file format."""

    format: ConfigFormat
    keys: Dict[ConfigKey, str]

    def __init__(self, data: Mapping):
        self.data = data

    @abstractmethod
    def get(self, key: ConfigKey) -> Optional[Any]:
        """Value of a setting, None if not set."""
        pass

    @abstractmethod
    def is_config_server(self) -> bool:
        """Whether the node is flagged as a config server."""
        pass

    @abstractmethod
    def is_shard_server(self) -> bool:
        """Whether the node is flagged as a shard server."""
        pass

    @abstractmethod
    def auth_enabled(self) -> bool:
        """Whether authorization is enabled on the node."""
        pass

    def bind_ip(self) -> Optional[str]:
        """First address of the bind list."""
        bind_ip = self.get(ConfigKey.BIND_IP)
        if bind_ip is None:
            return None

        if isinstance(bind_ip, (list, tuple)):
            bind_ip = ",".join(str(ip) for ip in bind_ip)

        first = str(bind_ip).split(",")[0].strip()
        return first or None

    def port(self) -> Optional[int]:
        """Explicitly configured port."""
        port = self.get(ConfigKey.PORT)
        if port is None or str(port).strip() == "":
            return None

        try:
            return int(str(port).strip())
        except ValueError:
            logger.warning(f"Ignoring invalid port {port} in mongod config.")
            return None

    def ipv6_enabled(self) -> bool:
        """Whether IPv6 is enabled on the node."""
        return is_true(self.get(ConfigKey.IPV6))


class StructuredNodeConfig(NodeConfigFormat):
    """YAML mongod configuration, with nested or dotted keys."""

    format = ConfigFormat.STRUCTURED
    keys = {
        ConfigKey.BIND_IP: "net.bindIp",
        ConfigKey.PORT: "net.port",
        ConfigKey.CLUSTER_ROLE: "sharding.clusterRole",
        ConfigKey.IPV6: "net.ipv6",
        ConfigKey.AUTH: "security.authorization",
    }

    @override
    def get(self, key: ConfigKey) -> Optional[Any]:
        """Value of a setting, looked up as a dotted key first then as a nested path."""
        dotted = self.keys.get(key)
        if dotted is None:
            return None

        if dotted in self.data:
            return self.data[dotted]

        current = self.data
        for node_key in dotted.split("."):
            if not isinstance(current, Mapping) or node_key not in current:
                return None
            current = current[node_key]

        return current

    @override
    def is_config_server(self) -> bool:
        return self.get(ConfigKey.CLUSTER_ROLE) == "configsvr"

    @override
    def is_shard_server(self) -> bool:
        return self.get(ConfigKey.CLUSTER_ROLE) == "shardsvr"

    @override
    def auth_enabled(self) -> bool:
        return is_true(self.get(ConfigKey.AUTH))


class FlatNodeConfig(NodeConfigFormat):
    """Legacy ini-like `key=value` mongod configuration."""

    format = ConfigFormat.FLAT
    keys = {
        ConfigKey.BIND_IP: "bind_ip",
        ConfigKey.PORT: "port",
        ConfigKey.CONFIG_SERVER: "configsvr",
        ConfigKey.SHARD_SERVER: "shardsvr",
        ConfigKey.IPV6: "ipv6",
        ConfigKey.AUTH: "auth",
    }

    @staticmethod
    def parse(text: str) -> "FlatNodeConfig":
        """Split the lines on the first `=`, lines without a value are ignored."""
        data = {}
        for line in text.splitlines():
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue

            key, _, val = line.partition("=")
            key, val = key.strip(), val.strip()
            if key and val:
                data[key] = val

        return FlatNodeConfig(data)

    @override
    def get(self, key: ConfigKey) -> Optional[Any]:
        flat_key = self.keys.get(key)
        if flat_key is None:
            return None

        return self.data.get(flat_key)

    @override
    def is_config_server(self) -> bool:
        # older packages wrote the flag as `confsvr`
        return is_true(self.get(ConfigKey.CONFIG_SERVER)) or is_true(self.data.get("confsvr"))

    @override
    def is_shard_server(self) -> bool:
        return is_true(self.get(ConfigKey.SHARD_SERVER))

    @override
    def auth_enabled(self) -> bool:
        return is_true(self.get(ConfigKey.AUTH))


def parse_node_config(text: str) -> NodeConfigFormat:
    """Parse the content of a mongod config, YAML first then `key=value` lines."""
    try:
        data = YAML(typ="safe").load(StringIO(text))
    except YAMLError as e:
        logger.debug(f"mongod config is not YAML ({e}), reading it as key=value lines.")
        data = None

    if isinstance(data, Mapping):
        return StructuredNodeConfig(data)

    return FlatNodeConfig.parse(text)


def mongod_conf_file(candidates: Optional[List[str]] = None) -> str:
    """Path of the mongod config of this node, the last candidate is the fallback."""
    candidates = candidates or MONGOD_CONF_FILES
    for path in candidates[:-1]:
        if exists(path):
            return path

    return candidates[-1]


def loopback_for(address: str) -> str:
    """Wildcard bind addresses are replaced by the loopback of the same family."""
    if address == "0.0.0.0":
        return "127.0.0.1"

    if address.strip("[]") in {"::", "::0"}:
        return "::1"

    return address.strip("[]")


def connection_config(node_config: NodeConfigFormat) -> ConnectionConfig:
    """Derive the admin connection settings from a parsed config."""
    port = node_config.port()
    if port is None:
        if node_config.is_config_server():
            port = MONGOD_CONFIGSVR_PORT
        elif node_config.is_shard_server():
            port = MONGOD_SHARDSVR_PORT
        else:
            port = MONGOD_DEFAULT_PORT

    return ConnectionConfig(
        bind_address=loopback_for(node_config.bind_ip() or MONGOD_DEFAULT_BIND_IP),
        port=port,
        ipv6_enabled=node_config.ipv6_enabled(),
        auth_enabled=node_config.auth_enabled(),
    )


def resolve_connection_config(path: Optional[str] = None) -> ConnectionConfig:
    """Read the mongod config of the node, never raises.

    Args:
        path: config file to read, by default /etc/mongod.conf or /etc/mongodb.conf
    """
    path = path or mongod_conf_file()
    try:
        with open(path, "r") as f:
            text = f.read()
    except OSError as e:
        logger.debug(f"Could not read {path}: {e}. Using the default connection settings.")
        text = ""

    node_config = parse_node_config(text)
    conn = connection_config(node_config)
    logger.debug(f"mongod config {path} ({node_config.format}): {conn.conn_string}")
    return conn


def _member_params(params: Any, host: Any) -> Dict[str, Any]:
    """Check the parameters declared for a member."""
    if params is None:
        return {}
    if not isinstance(params, Mapping) or not all(isinstance(key, str) for key in params):
        raise ValueError(f"parameters of member {host} must be a mapping, got: {params!r}")
    return dict(params)


def load_members_config(raw: Optional[str]) -> List[DesiredMember]:
    """Parse the `members` charm option.

    Accepted shapes, in YAML:
        - a mapping of host to member parameters, the order of the keys is kept
        - a list of hosts, or of mappings with a `host` key
        - a list holding a single host mapping (the format of older manifests)

    Raises:
        ValueError if the option is not valid.
    """
    if raw is None or not raw.strip():
        return []

    try:
        data = YAML(typ="safe").load(StringIO(raw))
    except YAMLError as e:
        raise ValueError(f"members is not valid YAML: {e}")

    if isinstance(data, str):
        data = [host.strip() for host in data.split(",") if host.strip()]

    if isinstance(data, list) and len(data) == 1 and isinstance(data[0], Mapping):
        if "host" not in data[0]:
            data = data[0]

    members = []
    if isinstance(data, Mapping):
        for host, params in data.items():
            if not isinstance(host, str):
                raise ValueError(f"member host must be a string, got: {host!r}")
            params = _member_params(params, host)
            declared = params.pop("host", host)
            if declared != host:
                raise ValueError(f"member {host} is declared with another host: {declared!r}")
            members.append(DesiredMember(host=host, **params))
    elif isinstance(data, list):
        for item in data:
            if isinstance(item, Mapping):
                members.append(DesiredMember(**_member_params(item, item.get("host"))))
            elif isinstance(item, str):
                members.append(DesiredMember(host=item))
            else:
                raise ValueError(f"member must be a host or a mapping, got: {item!r}")
    else:
        raise ValueError(f"members must be a mapping or a list, got: {type(data).__name__}")

    return members
