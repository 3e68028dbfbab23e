# Copyright 2024 Canonical Ltd.
# See LICENSE file for licensing details.

"""Unit test for the replica set reconciliation."""
import json
import unittest

from charms.mongodb_replset.v0.models import (
    ActualReplicaSetStatus,
    ConnectionConfig,
    DesiredMember,
    DesiredReplicaSet,
    EnsureState,
    ReconcileOutcome,
)
from charms.mongodb_replset.v0.mongodb_exceptions import (
    MongoDBConvergenceTimeoutError,
    MongoDBNoPrimaryError,
    MongoDBNoReachableHostError,
    MongoDBReplSetAddMemberError,
    MongoDBReplSetInitiateError,
    MongoDBTopologyConflictError,
)
from charms.mongodb_replset.v0.mongodb_replset import (
    ConvergenceState,
    ReplSetReconciler,
    convergence_step,
    is_config_conflict,
    is_failed,
)

from tests.unit.helpers import (
    HOST_A,
    HOST_B,
    HOST_C,
    LOCAL_CONNECTION,
    REPLSET_NAME,
    FakeCluster,
)

AUTH_CONNECTION = ConnectionConfig(bind_address="127.0.0.1", port=27017, auth_enabled=True)
CONFIG_IN_PROGRESS = {
    "ok": 0,
    "errmsg": "Cannot run replSetReconfig because the node is currently updating its config",
    "code": 109,
    "codeName": "ConfigurationInProgress",
}


def replset_of(*hosts: str, **kwargs) -> DesiredReplicaSet:
    return DesiredReplicaSet(
        name=REPLSET_NAME, members=[DesiredMember(host=host) for host in hosts], **kwargs
    )


def actual_of(*hosts: str) -> ActualReplicaSetStatus:
    return ActualReplicaSetStatus(name=REPLSET_NAME, present=True, members=list(hosts))


class TestConvergence(unittest.TestCase):
    def test_convergence_step(self):
        """Test the transitions of the wait for a primary."""
        self.assertEqual(convergence_step(1, 10, True), ConvergenceState.CONVERGED)
        self.assertEqual(convergence_step(10, 10, True), ConvergenceState.CONVERGED)
        self.assertEqual(convergence_step(1, 10, False), ConvergenceState.RETRY)
        self.assertEqual(convergence_step(9, 10, False), ConvergenceState.RETRY)
        self.assertEqual(convergence_step(10, 10, False), ConvergenceState.EXHAUSTED)
        self.assertEqual(convergence_step(1, 1, False), ConvergenceState.EXHAUSTED)

    def test_reply_checks(self):
        """Test the detection of rejected and conflicting commands."""
        self.assertFalse(is_failed({"ok": 1}))
        self.assertFalse(is_failed({}))
        self.assertTrue(is_failed({"ok": 0, "errmsg": "boom"}))

        self.assertTrue(is_config_conflict(CONFIG_IN_PROGRESS))
        self.assertTrue(
            is_config_conflict({"ok": 0, "errmsg": "New config version 3 is not greater"})
        )
        self.assertFalse(is_config_conflict({"ok": 1, "codeName": "ConfigurationInProgress"}))
        self.assertFalse(is_config_conflict({"ok": 0, "errmsg": "not master"}))


class TestReplSetInitiate(unittest.TestCase):
    def setUp(self) -> None:
        self.cluster = FakeCluster()

    def reconciler(
        self, replset: DesiredReplicaSet, connection=LOCAL_CONNECTION, **kwargs
    ) -> ReplSetReconciler:
        session = self.cluster.session(replset, connection=connection)
        return ReplSetReconciler(session, **kwargs)

    def test_initiate_all_members(self):
        """Test that a new replica set is initiated once, on the first alive member."""
        result = self.reconciler(replset_of(HOST_A, HOST_B, HOST_C)).reconcile()

        self.assertEqual(result.outcome, ReconcileOutcome.INITIATED)
        self.assertEqual(result.initiated_on, HOST_A)
        self.assertEqual(result.alive, [HOST_A, HOST_B, HOST_C])
        self.assertEqual(result.dead, [])

        self.assertEqual(len(self.cluster.mutations), 1)
        self.assertEqual(self.cluster.mutations[0][0], HOST_A)
        self.assertEqual(
            self.cluster.last_config,
            {
                "_id": REPLSET_NAME,
                "members": [
                    {"_id": 0, "host": HOST_A},
                    {"_id": 1, "host": HOST_B},
                    {"_id": 2, "host": HOST_C},
                ],
            },
        )
        self.assertEqual(self.cluster.primary, HOST_A)

    def test_initiate_is_idempotent(self):
        """Test that a converged replica set is not changed anymore."""
        replset = replset_of(HOST_A, HOST_B, HOST_C)
        self.reconciler(replset).reconcile()

        result = self.reconciler(replset).reconcile(actual_of(HOST_A, HOST_B, HOST_C))

        self.assertEqual(result.outcome, ReconcileOutcome.NO_OP)
        self.assertEqual(result.added, [])
        self.assertEqual(len(self.cluster.mutations), 1)

    def test_initiate_skips_dead_members(self):
        """Test that unreachable members are left out of the initial config."""
        self.cluster.down = {HOST_B}

        result = self.reconciler(replset_of(HOST_A, HOST_B, HOST_C)).reconcile()

        self.assertEqual(result.outcome, ReconcileOutcome.INITIATED)
        self.assertEqual(result.alive, [HOST_A, HOST_C])
        self.assertEqual(result.dead, [HOST_B])
        self.assertEqual(
            [member["host"] for member in self.cluster.last_config["members"]], [HOST_A, HOST_C]
        )
        self.assertEqual([m["_id"] for m in self.cluster.last_config["members"]], [0, 1])

        # once back, the dead member is added to the running set
        self.cluster.down = set()
        result = self.reconciler(replset_of(HOST_A, HOST_B, HOST_C)).reconcile(
            actual_of(HOST_A, HOST_C)
        )

        self.assertEqual(result.outcome, ReconcileOutcome.MEMBERS_ADDED)
        self.assertEqual(result.added, [HOST_B])
        self.assertEqual(self.cluster.mutations[-1], (HOST_A, f'rs.add({{"host": "{HOST_B}"}})'))

    def test_initiate_first_alive_member_is_target(self):
        """Test that the initiation runs on the first alive member in declaration order."""
        self.cluster.down = {HOST_A}

        result = self.reconciler(replset_of(HOST_A, HOST_B, HOST_C)).reconcile()

        self.assertEqual(result.initiated_on, HOST_B)
        self.assertEqual(self.cluster.mutations[0][0], HOST_B)

    def test_no_reachable_member(self):
        """Test that nothing is changed when no member can be reached."""
        self.cluster.down = {HOST_A, HOST_B, HOST_C}

        with self.assertRaises(MongoDBNoReachableHostError):
            self.reconciler(replset_of(HOST_A, HOST_B, HOST_C)).reconcile()

        self.assertEqual(self.cluster.mutations, [])

    def test_topology_conflict_stops_the_pass(self):
        """Test that a standalone member aborts the pass before any change."""
        self.cluster.status_overrides[HOST_C] = {
            "ok": 0,
            "errmsg": "not running with --replSet",
            "codeName": "NoReplicationEnabled",
        }

        with self.assertRaises(MongoDBTopologyConflictError) as e:
            self.reconciler(replset_of(HOST_A, HOST_B, HOST_C)).reconcile()

        self.assertEqual(e.exception.host, HOST_C)
        self.assertEqual(self.cluster.mutations, [])

    def test_initiate_with_auth_on_initialize_host(self):
        """Test that with authentication enabled, the initiation runs on the initialize host."""
        replset = replset_of(HOST_A, HOST_B, HOST_C, initialize_host=HOST_B)

        result = self.reconciler(replset, connection=AUTH_CONNECTION).reconcile()

        self.assertEqual(result.initiated_on, HOST_B)
        self.assertEqual(self.cluster.mutations[0][0], HOST_B)
        self.assertEqual(self.cluster.primary, HOST_B)
        self.assertEqual(self.cluster.last_config["members"][0]["host"], HOST_A)

    def test_initiate_with_auth_without_initialize_host(self):
        """Test that authentication requires an initialize host."""
        with self.assertRaises(MongoDBReplSetInitiateError):
            self.reconciler(replset_of(HOST_A, HOST_B), connection=AUTH_CONNECTION).reconcile()

        self.assertEqual(self.cluster.mutations, [])

    def test_initiate_unauthorized_members(self):
        """Test the unauthorized members policy with authentication enabled."""
        self.cluster.status_overrides[HOST_C] = {
            "ok": 0,
            "errmsg": "command replSetGetStatus requires authentication: unauthorized",
            "codeName": "Unauthorized",
        }

        result = self.reconciler(
            replset_of(HOST_A, HOST_B, HOST_C, initialize_host=HOST_A),
            connection=AUTH_CONNECTION,
        ).reconcile()
        self.assertEqual(result.alive, [HOST_A, HOST_B, HOST_C])

        self.cluster = FakeCluster()
        self.cluster.status_overrides[HOST_C] = {"ok": 0, "errmsg": "unauthorized"}
        result = self.reconciler(
            replset_of(
                HOST_A, HOST_B, HOST_C, initialize_host=HOST_A, trust_unauthorized_members=False
            ),
            connection=AUTH_CONNECTION,
        ).reconcile()
        self.assertEqual(result.alive, [HOST_A, HOST_B])
        self.assertEqual(result.dead, [HOST_C])

    def test_initiate_rejected(self):
        """Test a replica set initiation rejected by the database."""
        self.cluster.mutation_replies = [
            {
                "ok": 0,
                "errmsg": "already initialized",
                "code": 23,
                "codeName": "AlreadyInitialized",
            }
        ]

        with self.assertRaises(MongoDBReplSetInitiateError) as e:
            self.reconciler(replset_of(HOST_A, HOST_B)).reconcile()

        self.assertEqual(e.exception.errmsg, "already initialized")

    def test_initiate_convergence(self):
        """Test the wait for the initiated host to become primary."""
        self.cluster.elect_after = 2
        result = self.reconciler(replset_of(HOST_A, HOST_B), convergence_retries=3).reconcile()
        self.assertEqual(result.outcome, ReconcileOutcome.INITIATED)

        self.cluster = FakeCluster()
        self.cluster.elect_after = 2
        with self.assertRaises(MongoDBConvergenceTimeoutError) as e:
            self.reconciler(replset_of(HOST_A, HOST_B), convergence_retries=2).reconcile()
        self.assertEqual(e.exception.host, HOST_A)

    def test_initiate_convergence_timeout(self):
        """Test that the wait gives up after the configured number of checks."""
        self.cluster.elect_after = None

        with self.assertRaises(MongoDBConvergenceTimeoutError):
            self.reconciler(replset_of(HOST_A, HOST_B, HOST_C), convergence_retries=3).reconcile()

        # one check while looking for a primary, then the convergence checks
        self.assertEqual(self.cluster.commands_on("db.isMaster()").count(HOST_A), 4)
        self.assertEqual(len(self.cluster.mutations), 1)

    def test_initiate_with_arbiter(self):
        """Test that the arbiter is flagged in the initial config."""
        replset = replset_of(HOST_A, HOST_B, HOST_C, arbiter=HOST_C)

        self.reconciler(replset).reconcile()

        self.assertEqual(
            self.cluster.last_config["members"][2], {"_id": 2, "host": HOST_C, "arbiterOnly": True}
        )

    def test_initiate_without_probing(self):
        """Test that without probing, the declared hosts are used as they are."""
        result = self.reconciler(replset_of(HOST_A, HOST_B, probe_members=False)).reconcile()

        self.assertEqual(result.outcome, ReconcileOutcome.INITIATED)
        self.assertEqual(result.alive, [HOST_A, HOST_B])
        self.assertEqual(self.cluster.commands_on("rs.status()"), [])

    def test_existing_set_is_joined_not_initiated(self):
        """Test that a primary found on another member prevents a second initiation."""
        self.cluster.with_replset([HOST_A, HOST_B], primary=HOST_B)

        result = self.reconciler(replset_of(HOST_A, HOST_B, HOST_C)).reconcile(None)

        self.assertEqual(result.outcome, ReconcileOutcome.MEMBERS_ADDED)
        self.assertEqual(result.added, [HOST_C])
        self.assertEqual(self.cluster.commands_on("rs.initiate("), [])
        self.assertEqual(self.cluster.commands_on("rs.add("), [HOST_B])


class TestReplSetAddMembers(unittest.TestCase):
    def setUp(self) -> None:
        self.cluster = FakeCluster().with_replset([HOST_A, HOST_B], primary=HOST_A)

    def reconcile(self, replset: DesiredReplicaSet, actual=None, **kwargs):
        session = self.cluster.session(replset, **kwargs)
        return ReplSetReconciler(session).reconcile(actual or actual_of(*self.cluster.members))

    def test_add_member_on_primary(self):
        """Test that a new member is added through the primary."""
        replset = replset_of(HOST_A, HOST_B)
        replset.members.append(DesiredMember(host=HOST_C, priority=0, hidden=True))

        result = self.reconcile(replset)

        self.assertEqual(result.outcome, ReconcileOutcome.MEMBERS_ADDED)
        self.assertEqual(result.added, [HOST_C])
        self.assertEqual(len(self.cluster.mutations), 1)
        host, command = self.cluster.mutations[0]
        self.assertEqual(host, HOST_A)
        self.assertEqual(
            json.loads(command[len("rs.add(") : -1]),
            {"host": HOST_C, "priority": 0, "hidden": True},
        )

        # nothing left to do on the next pass
        result = self.reconcile(replset)
        self.assertEqual(result.outcome, ReconcileOutcome.NO_OP)
        self.assertEqual(len(self.cluster.mutations), 1)

    def test_add_arbiter(self):
        """Test that the arbiter joins with addArb."""
        result = self.reconcile(replset_of(HOST_A, HOST_B, HOST_C, arbiter=HOST_C))

        self.assertEqual(result.added, [HOST_C])
        self.assertEqual(self.cluster.mutations, [(HOST_A, f'rs.addArb("{HOST_C}")')])
        self.assertEqual(self.cluster.arbiters, [HOST_C])

        result = self.reconcile(replset_of(HOST_A, HOST_B, HOST_C, arbiter=HOST_C))
        self.assertEqual(result.outcome, ReconcileOutcome.NO_OP)

    def test_passive_members_are_not_added_again(self):
        """Test that priority 0 members count as current members."""
        self.cluster.with_replset([HOST_A, HOST_B, HOST_C], primary=HOST_A)
        self.cluster.passives = [HOST_C]

        result = self.reconcile(replset_of(HOST_A, HOST_B, HOST_C))

        self.assertEqual(result.outcome, ReconcileOutcome.NO_OP)
        self.assertEqual(self.cluster.mutations, [])

    def test_hidden_members_are_not_added_again(self):
        """Test that hidden members, missing from isMaster, count as current members."""
        self.cluster.with_replset([HOST_A, HOST_B, HOST_C], primary=HOST_A)
        self.cluster.passives = [HOST_C]
        self.cluster.hidden = [HOST_C]
        replset = replset_of(HOST_A, HOST_B)
        replset.members.append(DesiredMember(host=HOST_C, priority=0, hidden=True))

        for _ in range(2):
            result = self.reconcile(replset)

            self.assertEqual(result.outcome, ReconcileOutcome.NO_OP)
            self.assertEqual(result.added, [])
        self.assertEqual(self.cluster.mutations, [])
        self.assertEqual(self.cluster.commands_on("rs.conf()"), [HOST_A, HOST_A])

    def test_hidden_member_added_once(self):
        """Test that a hidden member joins once and is left alone by the later passes."""
        replset = replset_of(HOST_A, HOST_B)
        replset.members.append(DesiredMember(host=HOST_C, priority=0, hidden=True))

        self.assertEqual(self.reconcile(replset).added, [HOST_C])
        self.assertEqual(self.cluster.hidden, [HOST_C])

        for _ in range(2):
            self.assertEqual(self.reconcile(replset).outcome, ReconcileOutcome.NO_OP)
        self.assertEqual(self.cluster.commands_on("rs.add("), [HOST_A])

    def test_add_member_rejected(self):
        """Test a new member rejected by the primary."""
        self.cluster.mutation_replies = [
            {
                "ok": 0,
                "errmsg": "Found two member configurations with same host field",
                "code": 103,
                "codeName": "NewReplicaSetConfigurationIncompatible",
            }
        ]

        with self.assertRaises(MongoDBReplSetAddMemberError) as e:
            self.reconcile(replset_of(HOST_A, HOST_B, HOST_C))

        self.assertEqual(e.exception.host, HOST_C)
        self.assertIn("same host", e.exception.errmsg)

    def test_add_member_config_conflict_is_retried(self):
        """Test that a reconfiguration racing with another one is retried."""
        self.cluster.mutation_replies = [CONFIG_IN_PROGRESS]

        result = self.reconcile(replset_of(HOST_A, HOST_B, HOST_C))

        self.assertEqual(result.added, [HOST_C])
        self.assertEqual(self.cluster.commands_on("rs.add("), [HOST_A, HOST_A])

    def test_add_member_config_conflict_exhausted(self):
        """Test that a persistent config conflict fails the addition."""
        self.cluster.mutation_replies = [CONFIG_IN_PROGRESS] * 2

        with self.assertRaises(MongoDBReplSetAddMemberError):
            self.reconcile(replset_of(HOST_A, HOST_B, HOST_C), retries=2)

        self.assertEqual(self.cluster.commands_on("rs.add("), [HOST_A, HOST_A])

    def test_no_primary(self):
        """Test that members are not added without a primary."""
        self.cluster.primary = None

        with self.assertRaises(MongoDBNoPrimaryError):
            self.reconcile(replset_of(HOST_A, HOST_B, HOST_C))

        self.assertEqual(self.cluster.mutations, [])

    def test_removals_are_not_supported(self):
        """Test that undeclared members are reported and kept."""
        self.cluster.with_replset([HOST_A, HOST_B, HOST_C], primary=HOST_A)

        result = self.reconcile(replset_of(HOST_A, HOST_B))

        self.assertEqual(result.outcome, ReconcileOutcome.NOT_SUPPORTED)
        self.assertEqual(result.unsupported_removals, [HOST_C])
        self.assertEqual(self.cluster.mutations, [])

    def test_absent_is_not_supported(self):
        """Test that the replica set is never removed."""
        replset = replset_of(HOST_A, HOST_B, ensure=EnsureState.ABSENT)

        result = self.reconcile(replset)

        self.assertEqual(result.outcome, ReconcileOutcome.NOT_SUPPORTED)
        self.assertEqual(result.unsupported_removals, [HOST_A, HOST_B])
        self.assertEqual(self.cluster.calls, [])

    def test_no_declared_member(self):
        """Test that an empty member list is a no-op."""
        result = self.reconcile(DesiredReplicaSet(name=REPLSET_NAME))

        self.assertEqual(result.outcome, ReconcileOutcome.NO_OP)
        self.assertEqual(self.cluster.calls, [])
