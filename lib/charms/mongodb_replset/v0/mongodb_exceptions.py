# Copyright 2024 Canonical Ltd.
# See LICENSE file for licensing details.

"""File containing all MongoDB replica set related exceptions."""
from typing import Optional

# The unique Charmhub library identifier, never change it
LIBID = "8c2d4e6f0a1b4c5d9e7f3a2b1c0d9e8f"

# Increment this major API version when introducing breaking changes
LIBAPI = 0

# Increment this PATCH version before using `charmcraft publish-lib` or reset
# to 0 if you are raising the major API version
LIBPATCH = 1


class MongoDBError(Exception):
    """Base exception class for MongoDB errors."""


class MongoDBCmdError(MongoDBError):
    """Exception thrown when a mongo shell process fails or times out."""

    def __init__(self, cmd: str = None, out: str = None, err: str = None):
        super().__init__()
        self.cmd = cmd
        self.out = out
        self.err = err

    def __str__(self):
        """Returns the string for the command error."""
        return f"Command error, cmd: {self.cmd}, stderr: {self.err}"


class MongoDBCommandExecutionError(MongoDBError):
    """Exception thrown when a shell command could not be evaluated after all the retries."""

    def __init__(self, command: str):
        super().__init__(f"Could not evaluate MongoDB shell command: {command}")
        self.command = command


class MongoDBResponseParseError(MongoDBError):
    """Exception thrown when the output of the mongo shell is not valid JSON."""

    def __init__(self, output: str):
        super().__init__(f"Could not parse MongoDB shell output: {output}")
        self.output = output


class MongoDBTopologyConflictError(MongoDBError):
    """Exception thrown when a host cannot be part of the desired replica set."""

    def __init__(self, host: str, reason: str):
        super().__init__(f"Host {host}: {reason}")
        self.host = host
        self.reason = reason


class MongoDBReplSetInitiateError(MongoDBError):
    """Exception thrown when the database rejects rs.initiate()."""

    def __init__(self, errmsg: Optional[str] = None):
        super().__init__(errmsg)
        self.errmsg = errmsg


class MongoDBReplSetAddMemberError(MongoDBError):
    """Exception thrown when the database rejects rs.add() or rs.addArb()."""

    def __init__(self, host: str, errmsg: Optional[str] = None):
        super().__init__(f"{host}: {errmsg}")
        self.host = host
        self.errmsg = errmsg


class MongoDBReplSetConfigConflictError(MongoDBError):
    """Exception thrown when a reconfiguration races with another configuration change."""

    def __init__(self, errmsg: Optional[str] = None):
        super().__init__(errmsg)
        self.errmsg = errmsg


class MongoDBConvergenceTimeoutError(MongoDBError):
    """Exception thrown when an initiated host does not become primary in time."""

    def __init__(self, host: str):
        super().__init__(f"host {host} didn't become primary")
        self.host = host


class MongoDBNoPrimaryError(MongoDBError):
    """Exception thrown when no alive member reports a primary."""


class MongoDBNoReachableHostError(MongoDBError):
    """Exception thrown when none of the desired members can be reached."""
