#!/usr/bin/env python3

# Copyright 2024 Canonical Ltd.
# See LICENSE file for licensing details.

"""Charmed Machine Operator managing the members of a MongoDB replica set."""
import logging
from typing import Optional

import ops
from charms.mongodb_replset.v0.constants_charm import (
    MembersNotConfigured,
    ReconcileProgress,
    ReplSetAbsentNotSupported,
    ReplSetActive,
    ReplSetConfigInvalid,
    ReplSetRemovalNotSupported,
)
from charms.mongodb_replset.v0.helper_charm import Status
from charms.mongodb_replset.v0.helper_conf_reader import load_members_config
from charms.mongodb_replset.v0.models import (
    DesiredReplicaSet,
    EnsureState,
    ReconcileResult,
)
from charms.mongodb_replset.v0.mongodb_exceptions import MongoDBError
from charms.mongodb_replset.v0.mongodb_resource import ReplSetResource
from charms.mongodb_replset.v0.mongodb_session import MongoSession
from ops.charm import ActionEvent, ConfigChangedEvent, UpdateStatusEvent
from ops.main import main
from ops.model import ActiveStatus, BlockedStatus, MaintenanceStatus
from pydantic import ValidationError

from status_exception import StatusException, status_for

logger = logging.getLogger(__name__)


class MongoDBReplSetCharm(ops.CharmBase):
    """This class represents the machine charm reconciling a MongoDB replica set."""

    def __init__(self, *args):
        super().__init__(*args)
        self.status = Status(self)

        self.framework.observe(self.on.config_changed, self._on_config_changed)
        self.framework.observe(self.on.update_status, self._on_update_status)
        self.framework.observe(
            self.on.get_replset_status_action, self._on_get_replset_status_action
        )
        self.framework.observe(self.on.reconcile_action, self._on_reconcile_action)

    def _on_config_changed(self, _: ConfigChangedEvent) -> None:
        """Apply the desired members on config changes."""
        self._reconcile()

    def _on_update_status(self, _: UpdateStatusEvent) -> None:
        """Converge periodically, members unreachable earlier get added once they are up."""
        self._reconcile()

    def _on_get_replset_status_action(self, event: ActionEvent) -> None:
        """Report the replica set as configured on this node."""
        try:
            session = self.session(self.desired_replset())
        except StatusException as e:
            event.fail(e.status.message)
            return

        resource = ReplSetResource(session)
        actual = resource.prefetch()
        if actual is None:
            event.set_results({"name": session.replset.name, "present": "false", "members": ""})
            return

        event.set_results(
            {
                "name": actual.name,
                "present": str(actual.present).lower(),
                "members": ",".join(actual.members),
            }
        )

    def _on_reconcile_action(self, event: ActionEvent) -> None:
        """Force a reconciliation pass."""
        result = self._reconcile()
        if result is None:
            event.fail(self.unit.status.message)
            return

        event.set_results(
            {
                "outcome": str(result.outcome),
                "alive": ",".join(result.alive),
                "dead": ",".join(result.dead),
                "added": ",".join(result.added),
                "initiated-on": result.initiated_on or "",
                "unsupported-removals": ",".join(result.unsupported_removals),
            }
        )

    def desired_replset(self) -> DesiredReplicaSet:
        """Desired state built from the charm config.

        Raises:
            StatusException if the config is not valid
        """
        try:
            return DesiredReplicaSet(
                name=self.config.get("replset-name") or self.app.name,
                members=load_members_config(self.config.get("members")),
                ensure=self.config.get("ensure", "present"),
                arbiter=self.config.get("arbiter") or None,
                initialize_host=self.config.get("initialize-host") or None,
                probe_members=self.config.get("probe-members", True),
                trust_unauthorized_members=self.config.get("trust-unauthorized-members", True),
            )
        except (ValueError, ValidationError) as e:
            logger.error(f"Invalid replica set config: {e}")
            raise StatusException(BlockedStatus(ReplSetConfigInvalid.format(e)))

    def session(self, replset: DesiredReplicaSet) -> MongoSession:
        """A new session for one reconciliation pass."""
        return MongoSession(
            replset,
            conf_path=self.config.get("mongod-conf-path") or None,
            retries=self.config.get("command-retries"),
            retry_sleep=self.config.get("command-retry-sleep"),
        )

    def _reconcile(self) -> Optional[ReconcileResult]:
        """Run the replica set lifecycle and report its result on the unit status."""
        try:
            replset = self.desired_replset()
        except StatusException as e:
            self.status.set(e.status)
            return None

        if replset.ensure == EnsureState.PRESENT and not replset.members:
            self.status.set(BlockedStatus(MembersNotConfigured))
            return None

        session = self.session(replset)
        resource = ReplSetResource(session)

        self.status.set(MaintenanceStatus(ReconcileProgress))
        try:
            result = resource.ensure()
        except MongoDBError as e:
            logger.error(f"Reconciliation of replica set {replset.name} failed: {e}")
            self.status.set(status_for(e, replset.name))
            return None

        logger.info(f"Replica set {replset.name} reconciled: {result.outcome}")
        self._set_workload_version(session)

        if replset.ensure == EnsureState.ABSENT:
            self.status.set(BlockedStatus(ReplSetAbsentNotSupported.format(replset.name)))
        elif result.unsupported_removals:
            self.status.set(
                BlockedStatus(
                    ReplSetRemovalNotSupported.format(", ".join(result.unsupported_removals))
                )
            )
        else:
            members = resource.properties.members if resource.properties else result.alive
            self.status.set(ActiveStatus(ReplSetActive.format(replset.name, len(members))))

        return result

    def _set_workload_version(self, session: MongoSession) -> None:
        try:
            self.unit.set_workload_version(session.version)
        except MongoDBError as e:
            logger.debug(f"Could not fetch the MongoDB version: {e}")


if __name__ == "__main__":
    main(MongoDBReplSetCharm)
