# Copyright 2024 Canonical Ltd.
# See LICENSE file for licensing details.

"""Exception with ops status, and the statuses of the replica set errors."""

import ops
from charms.mongodb_replset.v0.constants_charm import (
    MongoShellUnavailable,
    NoPrimaryMember,
    NoReachableMember,
    ReplSetAddMemberFailed,
    ReplSetInitiateFailed,
    ReplSetTopologyConflict,
    WaitingForPrimary,
)
from charms.mongodb_replset.v0.mongodb_exceptions import (
    MongoDBConvergenceTimeoutError,
    MongoDBError,
    MongoDBNoPrimaryError,
    MongoDBNoReachableHostError,
    MongoDBReplSetAddMemberError,
    MongoDBReplSetInitiateError,
    MongoDBTopologyConflictError,
)


class StatusException(Exception):
    """Exception with ops status"""

    def __init__(self, status: ops.StatusBase) -> None:
        super().__init__(status.message)
        self.status = status


def status_for(error: MongoDBError, replset_name: str) -> ops.StatusBase:
    """Unit status reporting a failed reconciliation.

    Rejected changes need the operator to act, the other failures are retried on the next
    update-status.
    """
    if isinstance(error, MongoDBTopologyConflictError):
        return ops.BlockedStatus(ReplSetTopologyConflict.format(error.host, error.reason))

    if isinstance(error, MongoDBReplSetInitiateError):
        return ops.BlockedStatus(ReplSetInitiateFailed.format(replset_name, error.errmsg))

    if isinstance(error, MongoDBReplSetAddMemberError):
        return ops.BlockedStatus(
            ReplSetAddMemberFailed.format(error.host, replset_name, error.errmsg)
        )

    if isinstance(error, MongoDBNoReachableHostError):
        return ops.WaitingStatus(NoReachableMember.format(replset_name))

    if isinstance(error, MongoDBNoPrimaryError):
        return ops.WaitingStatus(NoPrimaryMember.format(replset_name))

    if isinstance(error, MongoDBConvergenceTimeoutError):
        return ops.WaitingStatus(WaitingForPrimary.format(error.host))

    return ops.WaitingStatus(MongoShellUnavailable)
