# Copyright 2024 Canonical Ltd.
# See LICENSE file for licensing details.

"""Connection state shared by all the components of one reconciliation pass."""
import logging
from functools import cached_property
from typing import Any, Dict, Optional

from charms.mongodb_replset.v0.constants_charm import COMMAND_RETRIES, RETRY_SLEEP
from charms.mongodb_replset.v0.helper_conf_reader import resolve_connection_config
from charms.mongodb_replset.v0.models import (
    AuthParams,
    ConnectionConfig,
    DesiredReplicaSet,
    TlsParams,
)
from charms.mongodb_replset.v0.mongodb_commands import ReplSetCommands
from charms.mongodb_replset.v0.mongodb_shell import MongoShell

# The unique Charmhub library identifier, never change it
LIBID = "2c4e6a8c0e2a4c6e8a0c2e4a6c8e0a2c"

# Increment this major API version when introducing breaking changes
LIBAPI = 0

# Increment this PATCH version before using `charmcraft publish-lib` or reset
# to 0 if you are raising the major API version
LIBPATCH = 1


logger = logging.getLogger(__name__)


class MongoSession:
    """This class represents the client side configuration of one reconciliation pass.

    A new session is created on every pass: the node config is read at most once and the
    server version is memoized for the lifetime of the session only.
    """

    def __init__(
        self,
        replset: DesiredReplicaSet,
        conf_path: Optional[str] = None,
        connection: Optional[ConnectionConfig] = None,
        shell: Optional[MongoShell] = None,
        retries: int = COMMAND_RETRIES,
        retry_sleep: float = RETRY_SLEEP,
    ):
        """Constructor of MongoSession.

        Args:
            replset: the desired state, source of the per host TLS / auth options
            conf_path: mongod config file, by default the one found on the node
            connection: already resolved connection settings, the config file is not read
            shell: the shell executor, by default a MongoShell matching the connection
            retries: max number of attempts of an administrative command
            retry_sleep: seconds between two attempts
        """
        self.replset = replset
        self.conf_path = conf_path
        self.retries = retries
        self.retry_sleep = retry_sleep
        self._connection = connection
        self._shell = shell

    @property
    def connection(self) -> ConnectionConfig:
        """Connection settings of the local node."""
        if self._connection is None:
            self._connection = resolve_connection_config(self.conf_path)

        return self._connection

    @property
    def shell(self) -> MongoShell:
        """The shell executor."""
        if self._shell is None:
            self._shell = MongoShell(
                ipv6_enabled=self.connection.ipv6_enabled, retry_sleep=self.retry_sleep
            )

        return self._shell

    @property
    def conn_string(self) -> str:
        """Address of the local node."""
        return self.connection.conn_string

    @property
    def auth_enabled(self) -> bool:
        """Whether the local node enforces authorization."""
        return self.connection.auth_enabled

    def tls_for(self, host: Optional[str]) -> TlsParams:
        """TLS options declared for a host."""
        member = self.replset.member(host) if host else None
        return member.tls if member else TlsParams()

    def auth_for(self, host: Optional[str]) -> AuthParams:
        """Authentication options declared for a host."""
        member = self.replset.member(host) if host else None
        return member.auth if member else AuthParams()

    def command(
        self, command: str, host: Optional[str] = None, retries: Optional[int] = None
    ) -> Dict[str, Any]:
        """Run an administrative command on a host, by default the local node."""
        return self.shell.command(
            command,
            host or self.conn_string,
            tls=self.tls_for(host),
            auth=self.auth_for(host),
            retries=self.retries if retries is None else retries,
        )

    @cached_property
    def version(self) -> str:
        """Server version of the local node."""
        return self.shell.eval(
            ReplSetCommands.version(), self.conn_string, retries=self.retries
        ).strip()
