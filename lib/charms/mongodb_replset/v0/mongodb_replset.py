# Copyright 2024 Canonical Ltd.
# See LICENSE file for licensing details.

"""Reconciliation of the replica set membership with the desired member list.

A pass either initiates a new replica set (when no member reports a primary) or adds the
missing alive members to the existing one through its primary. Members are never removed.
Unreachable members are skipped, they get added on a later pass once reachable.
"""
import logging
import time
from typing import Any, Dict, List, Optional

from charms.mongodb_replset.v0.constants_charm import CONVERGENCE_RETRIES, CONVERGENCE_SLEEP
from charms.mongodb_replset.v0.helper_commands import error_cmd_retry_log
from charms.mongodb_replset.v0.helper_enums import BaseStrEnum
from charms.mongodb_replset.v0.models import (
    ActualReplicaSetStatus,
    EnsureState,
    ReconcileOutcome,
    ReconcileResult,
)
from charms.mongodb_replset.v0.mongodb_commands import ReplSetCommands
from charms.mongodb_replset.v0.mongodb_exceptions import (
    MongoDBConvergenceTimeoutError,
    MongoDBNoPrimaryError,
    MongoDBNoReachableHostError,
    MongoDBReplSetAddMemberError,
    MongoDBReplSetConfigConflictError,
    MongoDBReplSetInitiateError,
)
from charms.mongodb_replset.v0.mongodb_prober import MembershipProber
from charms.mongodb_replset.v0.mongodb_session import MongoSession
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_fixed

# The unique Charmhub library identifier, never change it
LIBID = "4a6c8e0a2c4e4a6c8e0a2c4e6a8c0e2a"

# Increment this major API version when introducing breaking changes
LIBAPI = 0

# Increment this PATCH version before using `charmcraft publish-lib` or reset
# to 0 if you are raising the major API version
LIBPATCH = 1


logger = logging.getLogger(__name__)


# replies of a reconfiguration racing with another one
CONFIG_CONFLICT_CODE_NAMES = {"ConfigurationInProgress", "InterruptedDueToReplStateChange"}
CONFIG_CONFLICT_ERRMSG = "config version"


class ConvergenceState(BaseStrEnum):
    """State of the wait for a freshly initiated host to become primary."""

    CONVERGED = "converged"
    RETRY = "retry"
    EXHAUSTED = "exhausted"


def convergence_step(attempt: int, limit: int, is_primary: bool) -> ConvergenceState:
    """Transition of the convergence wait after the check number `attempt` (from 1)."""
    if is_primary:
        return ConvergenceState.CONVERGED

    if attempt >= limit:
        return ConvergenceState.EXHAUSTED

    return ConvergenceState.RETRY


def is_failed(output: Dict[str, Any]) -> bool:
    """Whether the database rejected a command."""
    return output.get("ok", 1) == 0


def is_config_conflict(output: Dict[str, Any]) -> bool:
    """Whether a rejected reconfiguration is worth retrying."""
    if not is_failed(output):
        return False

    return (
        output.get("codeName") in CONFIG_CONFLICT_CODE_NAMES
        or CONFIG_CONFLICT_ERRMSG in str(output.get("errmsg", "")).lower()
    )


class ReplSetReconciler:
    """Brings the replica set membership in line with the desired members."""

    def __init__(
        self,
        session: MongoSession,
        prober: Optional[MembershipProber] = None,
        convergence_retries: int = CONVERGENCE_RETRIES,
        convergence_sleep: float = CONVERGENCE_SLEEP,
    ):
        self.session = session
        self.replset = session.replset
        self.prober = prober or MembershipProber(session)
        self.convergence_retries = convergence_retries
        self.convergence_sleep = convergence_sleep

    def reconcile(self, actual: Optional[ActualReplicaSetStatus] = None) -> ReconcileResult:
        """Run one reconciliation pass.

        Args:
            actual: the replica set as currently configured on the local node, if any

        Raises:
            MongoDBNoReachableHostError if no desired member is usable
            MongoDBTopologyConflictError if a member belongs to another / no replica set
            MongoDBReplSetInitiateError, MongoDBReplSetAddMemberError if the database
                rejected the change
            MongoDBConvergenceTimeoutError if the initiated host did not become primary
            MongoDBNoPrimaryError if no primary could be found to add the members to
        """
        current_members = actual.members if actual is not None and actual.present else []

        if self.replset.ensure == EnsureState.ABSENT:
            logger.warning(f"Removing the replica set {self.replset.name} is not supported.")
            return ReconcileResult(
                outcome=ReconcileOutcome.NOT_SUPPORTED, unsupported_removals=current_members
            )

        declared = self.replset.hosts
        if not declared:
            logger.debug(f"No member declared for the replica set {self.replset.name}.")
            return ReconcileResult(outcome=ReconcileOutcome.NO_OP)

        if self.replset.probe_members:
            # so we don't try to add dead members to the replica set
            alive = self.prober.alive_members(declared)
            dead = [host for host in declared if host not in alive]
            logger.debug(f"Alive members: {alive}")
            if dead:
                logger.debug(f"Dead members: {dead}")
            if not alive:
                raise MongoDBNoReachableHostError(
                    f"Can't connect to any member of replica set {self.replset.name}."
                )
        else:
            alive, dead = declared, []

        removals = [host for host in current_members if host not in declared]
        if removals:
            logger.warning(f"Members {removals} are not declared, removal is not supported.")

        present = actual is not None and actual.present
        if not present and not self.prober.find_primary(alive):
            target = self.initiate(alive)
            return ReconcileResult(
                outcome=ReconcileOutcome.INITIATED,
                alive=alive,
                dead=dead,
                initiated_on=target,
                unsupported_removals=removals,
            )

        added = self.add_members(alive)
        if added:
            outcome = ReconcileOutcome.MEMBERS_ADDED
        elif removals:
            outcome = ReconcileOutcome.NOT_SUPPORTED
        else:
            outcome = ReconcileOutcome.NO_OP

        return ReconcileResult(
            outcome=outcome, alive=alive, dead=dead, added=added, unsupported_removals=removals
        )

    def initiate(self, alive: List[str]) -> str:
        """Initiate the replica set with the alive members, returns the initiation host."""
        logger.debug(f"Initializing the replica set {self.replset.name}")
        config = self.replset.initiate_config(alive)
        logger.debug(f"Replica set config: {config.to_str()}")

        target = alive[0]
        if self.session.auth_enabled:
            # initiating with auth enabled requires a host we are authorized on
            if not self.replset.initialize_host:
                raise MongoDBReplSetInitiateError(
                    "authentication is enabled but no initialize host is set."
                )
            target = self.replset.initialize_host

        try:
            output = self._mutate(ReplSetCommands.initiate(config), target)
        except MongoDBReplSetConfigConflictError as e:
            raise MongoDBReplSetInitiateError(e.errmsg)

        if is_failed(output):
            raise MongoDBReplSetInitiateError(output.get("errmsg"))

        self.wait_for_primary(target)
        return target

    def wait_for_primary(self, host: str) -> None:
        """Block until the host reports itself primary.

        Raises:
            MongoDBConvergenceTimeoutError once all the checks are exhausted
        """
        for attempt in range(1, self.convergence_retries + 1):
            state = convergence_step(
                attempt, self.convergence_retries, self.prober.is_primary(host).is_primary
            )
            if state == ConvergenceState.CONVERGED:
                logger.debug("Replica set initialization has successfully ended")
                return

            if state == ConvergenceState.EXHAUSTED:
                break

            logger.debug(f"Waiting for replica set initialization. Retry: {attempt}")
            time.sleep(self.convergence_sleep)

        raise MongoDBConvergenceTimeoutError(host)

    def add_members(self, alive: List[str]) -> List[str]:
        """Add the alive hosts missing from the replica set, returns the added hosts."""
        logger.debug(f"Adding members to existing replica set {self.replset.name}")
        primary = self.prober.find_primary(alive)
        if not primary:
            raise MongoDBNoPrimaryError(
                f"Can't find primary host for replica set {self.replset.name}."
            )

        current_hosts = self.prober.is_primary(primary).members
        # hidden members are missing from isMaster
        current_hosts += [
            host
            for host in self.prober.configured_members(primary)
            if host not in current_hosts
        ]
        logger.debug(f"Current hosts are: {current_hosts}")
        new_hosts = [host for host in alive if host not in current_hosts]
        logger.debug(f"New hosts are: {new_hosts}")

        for host in new_hosts:
            if self.replset.is_arbiter(host):
                command = ReplSetCommands.add_arbiter(host)
            else:
                command = ReplSetCommands.add(self.replset.member_config(host))

            try:
                output = self._mutate(command, primary)
            except MongoDBReplSetConfigConflictError as e:
                raise MongoDBReplSetAddMemberError(host, e.errmsg)

            if is_failed(output):
                raise MongoDBReplSetAddMemberError(host, output.get("errmsg"))

            logger.info(f"Added {host} to the replica set {self.replset.name}")

        return new_hosts

    def _mutate(self, command: str, host: str) -> Dict[str, Any]:
        """Run a reconfiguration command, retrying when it raced with another change."""
        retries = max(self.session.retries, 1)
        for attempt in Retrying(
            retry=retry_if_exception_type(MongoDBReplSetConfigConflictError),
            stop=stop_after_attempt(retries),
            wait=wait_fixed(self.session.retry_sleep),
            before_sleep=error_cmd_retry_log(logger, retries, command, host),
            reraise=True,
        ):
            with attempt:
                output = self.session.command(command, host)
                if is_config_conflict(output):
                    raise MongoDBReplSetConfigConflictError(output.get("errmsg"))

                return output
