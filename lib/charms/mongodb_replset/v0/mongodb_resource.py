# Copyright 2024 Canonical Ltd.
# See LICENSE file for licensing details.

"""Lifecycle of the replica set resource managed on the node.

There can only be one replica set per node. The resource follows the usual
prefetch / exists / create / destroy / flush contract of configuration-management providers:
create and destroy only record the requested change, which is applied by flush.
"""
import logging
from typing import Optional

from charms.mongodb_replset.v0.models import (
    ActualReplicaSetStatus,
    EnsureState,
    ReconcileResult,
)
from charms.mongodb_replset.v0.mongodb_commands import ReplSetCommands
from charms.mongodb_replset.v0.mongodb_exceptions import MongoDBError
from charms.mongodb_replset.v0.mongodb_replset import ReplSetReconciler
from charms.mongodb_replset.v0.mongodb_session import MongoSession

# The unique Charmhub library identifier, never change it
LIBID = "7c9e1a3c5e7a4c9e1a3c5e7a9c1e3a5c"

# Increment this major API version when introducing breaking changes
LIBAPI = 0

# Increment this PATCH version before using `charmcraft publish-lib` or reset
# to 0 if you are raising the major API version
LIBPATCH = 1


logger = logging.getLogger(__name__)


class ReplSetResource:
    """The replica set of the local node."""

    def __init__(self, session: MongoSession, reconciler: Optional[ReplSetReconciler] = None):
        self.session = session
        self.reconciler = reconciler or ReplSetReconciler(session)
        self.properties: Optional[ActualReplicaSetStatus] = None
        self._ensure: Optional[EnsureState] = None

    def instances(self) -> Optional[ActualReplicaSetStatus]:
        """Fetch the replica set configured on the local node, None if there is none."""
        try:
            output = self.session.command(ReplSetCommands.conf())
        except MongoDBError as e:
            logger.debug(f"Got an exception: {e}")
            return None

        if not output.get("members"):
            logger.debug("MongoDB replica set properties: None")
            return None

        props = ActualReplicaSetStatus(
            name=output.get("_id", self.session.replset.name),
            present=True,
            members=[member["host"] for member in output["members"]],
        )
        logger.debug(f"MongoDB replica set properties: {props}")
        return props

    def prefetch(self) -> Optional[ActualReplicaSetStatus]:
        """Load the current state, only kept if it is the replica set we manage."""
        instance = self.instances()
        if instance is not None and instance.name != self.session.replset.name:
            logger.debug(f"Local node belongs to replica set {instance.name}, not ours.")
            instance = None

        self.properties = instance
        return instance

    def exists(self) -> bool:
        return self.properties is not None and self.properties.present

    def create(self) -> None:
        self._ensure = EnsureState.PRESENT

    def destroy(self) -> None:
        self._ensure = EnsureState.ABSENT

    def flush(self) -> ReconcileResult:
        """Apply the recorded change and refresh the current state.

        Raises:
            MongoDBError subclasses raised by the reconciliation
        """
        if self._ensure is not None and self._ensure != self.session.replset.ensure:
            self.session.replset = self.session.replset.model_copy(update={"ensure": self._ensure})
            self.reconciler.replset = self.session.replset

        result = self.reconciler.reconcile(self.properties)
        self.prefetch()
        return result

    def ensure(self) -> ReconcileResult:
        """Converge the node to the desired state in one call."""
        self.prefetch()
        if self.session.replset.ensure == EnsureState.PRESENT:
            if not self.exists():
                self.create()
        elif self.exists():
            self.destroy()

        return self.flush()
