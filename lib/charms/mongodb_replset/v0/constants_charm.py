# Copyright 2024 Canonical Ltd.
# See LICENSE file for licensing details.

"""In this file we declare the constants and enums used by the charm."""

# The unique Charmhub library identifier, never change it
LIBID = "d41f2a9c0b7e4c3a8f5e6d7c8b9a0f1e"

# Increment this major API version when introducing breaking changes
LIBAPI = 0

# Increment this PATCH version before using `charmcraft publish-lib` or reset
# to 0 if you are raising the major API version
LIBPATCH = 1


# Blocked statuses
ReplSetConfigInvalid = "Invalid replica set configuration: {}"
ReplSetTopologyConflict = "Host {} cannot join the replica set: {}"
ReplSetInitiateFailed = "rs.initiate() failed for replica set {}: {}"
ReplSetAddMemberFailed = "rs.add() failed to add {} to replica set {}: {}"
ReplSetRemovalNotSupported = "Removing members is not supported: {}"
ReplSetAbsentNotSupported = "Removing the replica set {} is not supported."
MembersNotConfigured = "The members option is not set."

# Waiting statuses
NoReachableMember = "Can't connect to any member of replica set {}."
NoPrimaryMember = "Can't find the primary of replica set {}."
WaitingForPrimary = "Waiting for {} to become primary..."
MongoShellUnavailable = "Could not run the mongo shell, retrying on next update."

# Maintenance statuses
ReconcileProgress = "Reconciling replica set members..."

# Active statuses
ReplSetActive = "Replica set {} with {} members."

# Mongo shell
MONGO_BIN = "mongo"
ADMIN_DB = "admin"
MONGOD_CONF_FILES = ["/etc/mongod.conf", "/etc/mongodb.conf"]
MONGORC_FILE = "/root/.mongorc.js"

# Default ports
MONGOD_DEFAULT_PORT = 27017
MONGOD_SHARDSVR_PORT = 27018
MONGOD_CONFIGSVR_PORT = 27019
MONGOD_DEFAULT_BIND_IP = "127.0.0.1"

# Retry policy
EVAL_RETRIES = 10
COMMAND_RETRIES = 4
RETRY_SLEEP = 3
CONVERGENCE_RETRIES = 10
CONVERGENCE_SLEEP = 3
SHELL_TIMEOUT = 60
