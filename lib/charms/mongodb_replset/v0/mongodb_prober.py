# Copyright 2024 Canonical Ltd.
# See LICENSE file for licensing details.

"""Discovery of the state of the desired replica set members."""
import logging
from typing import Any, Dict, List, Optional

from charms.mongodb_replset.v0.models import HostClassification, HostProbe, PrimaryStatus
from charms.mongodb_replset.v0.mongodb_commands import ReplSetCommands
from charms.mongodb_replset.v0.mongodb_exceptions import (
    MongoDBCommandExecutionError,
    MongoDBTopologyConflictError,
)
from charms.mongodb_replset.v0.mongodb_session import MongoSession

# The unique Charmhub library identifier, never change it
LIBID = "9e1a3c5e7a9c4e1a3c5e7a9c1e3a5c7e"

# Increment this major API version when introducing breaking changes
LIBAPI = 0

# Increment this PATCH version before using `charmcraft publish-lib` or reset
# to 0 if you are raising the major API version
LIBPATCH = 1


logger = logging.getLogger(__name__)


NO_REPLICATION_ERRMSG = "not running with --replSet"
NO_REPLICATION_CODE_NAME = "NoReplicationEnabled"
UNAUTHORIZED_ERRMSGS = ("unauthorized", "not authorized")


class MembershipProber:
    """Classifies the hosts of the desired member list."""

    def __init__(self, session: MongoSession):
        self.session = session

    @property
    def replset_name(self) -> str:
        return self.session.replset.name

    def is_primary(self, host: str) -> PrimaryStatus:
        """Query db.isMaster() on a host."""
        return PrimaryStatus.from_is_master(
            self.session.command(ReplSetCommands.is_master(), host)
        )

    def configured_members(self, host: str) -> List[str]:
        """Query rs.conf() on a host, returns the hosts of all the configured members.

        Unlike isMaster, the replica set config also lists the hidden members.
        """
        output = self.session.command(ReplSetCommands.conf(), host)
        return [member["host"] for member in output.get("members", [])]

    def probe(self, host: str) -> HostProbe:
        """Query rs.status() on a host and classify it.

        Raises:
            MongoDBTopologyConflictError if the host cannot be part of the replica set
        """
        logger.debug(f"Checking replica set member {host} ...")
        try:
            status = self.session.command(ReplSetCommands.status(), host)
        except MongoDBCommandExecutionError:
            logger.warning(f"Can't connect to replica set member {host}.")
            return HostProbe(
                host=host,
                reachable=False,
                classification=HostClassification.UNREACHABLE,
                usable=False,
            )

        logger.debug(f"Status of {host}: {status}")
        return self._classify(host, status)

    def _classify(self, host: str, status: Dict[str, Any]) -> HostProbe:
        errmsg = str(status.get("errmsg", ""))

        if errmsg == NO_REPLICATION_ERRMSG or status.get("codeName") == NO_REPLICATION_CODE_NAME:
            raise MongoDBTopologyConflictError(
                host,
                f"not supposed to be part of a replica set, can't configure {self.replset_name}.",
            )

        if self.session.auth_enabled and any(msg in errmsg for msg in UNAUTHORIZED_ERRMSGS):
            trusted = self.session.replset.trust_unauthorized_members
            logger.warning(
                f"Host {host} is available, but unauthorized since authentication is enabled. "
                f"{'Counting' if trusted else 'Not counting'} it as an alive member."
            )
            return HostProbe(
                host=host,
                reachable=True,
                classification=HostClassification.UNAUTHORIZED_BUT_ALIVE,
                usable=trusted,
            )

        if "set" in status:
            if status["set"] != self.replset_name:
                raise MongoDBTopologyConflictError(
                    host, f"already part of another replica set: {status['set']}."
                )

            logger.debug(f"Host {host} is available for replica set {status['set']}")
            return HostProbe(
                host=host, reachable=True, classification=HostClassification.IN_SET, usable=True
            )

        if "info" in status:
            logger.debug(f"Host {host} is alive but unconfigured: {status['info']}")
            return HostProbe(
                host=host,
                reachable=True,
                classification=HostClassification.UNCONFIGURED,
                usable=True,
            )

        logger.warning(f"Unexpected status of {host}, ignoring it: {status}")
        return HostProbe(
            host=host,
            reachable=True,
            classification=HostClassification.UNRECOGNIZED,
            usable=False,
        )

    def probe_all(self, hosts: List[str]) -> List[HostProbe]:
        """Probe the hosts one after the other, in order."""
        return [self.probe(host) for host in hosts]

    def alive_members(self, hosts: List[str]) -> List[str]:
        """The usable hosts, in the order of the input."""
        return [probe.host for probe in self.probe_all(hosts) if probe.usable]

    def find_primary(self, hosts: List[str]) -> Optional[str]:
        """Address of the primary, as reported by the first host that knows it."""
        for host in hosts:
            status = self.is_primary(host)
            if status.primary:
                return status.primary

            if status.is_primary:
                return host

        return None
