# Copyright 2024 Canonical Ltd.
# See LICENSE file for licensing details.

"""Catalogue of the administrative shell commands issued against the replica set members."""
import json

from charms.mongodb_replset.v0.models import MemberConfig, ReplSetConfig

# The unique Charmhub library identifier, never change it
LIBID = "0b2d4f6a8c0e4a1b9d3f5b7d9f1b3d5f"

# Increment this major API version when introducing breaking changes
LIBAPI = 0

# Increment this PATCH version before using `charmcraft publish-lib` or reset
# to 0 if you are raising the major API version
LIBPATCH = 1


class ReplSetCommands:
    """Builds shell expressions, arguments are serialized as JSON literals."""

    @staticmethod
    def is_master() -> str:
        return "db.isMaster()"

    @staticmethod
    def status() -> str:
        return "rs.status()"

    @staticmethod
    def conf() -> str:
        return "rs.conf()"

    @staticmethod
    def version() -> str:
        return "db.version()"

    @staticmethod
    def initiate(config: ReplSetConfig) -> str:
        return f"rs.initiate({config.to_str()})"

    @staticmethod
    def add(member: MemberConfig) -> str:
        return f"rs.add({member.to_str()})"

    @staticmethod
    def add_arbiter(host: str) -> str:
        return f"rs.addArb({json.dumps(host)})"

    @staticmethod
    def printjson(command: str) -> str:
        """Wrap an expression so that the shell prints its value."""
        return f"printjson({command})"
