# Copyright 2024 Canonical Ltd.
# See LICENSE file for licensing details.

import json
import re
import shutil
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple

from charms.mongodb_replset.v0.models import ConnectionConfig, DesiredReplicaSet
from charms.mongodb_replset.v0.mongodb_exceptions import MongoDBCommandExecutionError
from charms.mongodb_replset.v0.mongodb_session import MongoSession

REPLSET_NAME = "rs0"
HOST_A = "10.0.0.1:27017"
HOST_B = "10.0.0.2:27017"
HOST_C = "10.0.0.3:27017"
LOCAL_CONNECTION = ConnectionConfig(bind_address="127.0.0.1", port=27017)
MUTATING_COMMANDS = ("rs.initiate(", "rs.add(", "rs.addArb(")


def copy_file_content_to_tmp(config_dir_path: str, source_path: str) -> str:
    """Copy the content of a file into a temporary file and return it."""
    target_dir = f"{config_dir_path}/tmp"
    Path(target_dir).mkdir(parents=True, exist_ok=True)

    dest_path = f"{target_dir}/{source_path.split('/')[-1]}"
    shutil.copyfile(f"{config_dir_path}/{source_path}", dest_path)

    return dest_path


class FakeCluster:
    """Stands in for the mongo shell, answering the admin commands like a replica set would.

    Hosts are unconfigured replica set members by default. Like mongod, isMaster leaves the
    `hidden` members out of its host lists. Set `elect_after` to the number of isMaster checks
    an initiated host needs before reporting itself primary, None to never elect it.
    """

    def __init__(self, name: str = REPLSET_NAME, local: str = HOST_A):
        self.name = name
        self.local = local
        self.members: List[str] = []
        self.arbiters: List[str] = []
        self.passives: List[str] = []
        self.hidden: List[str] = []
        self.primary: Optional[str] = None
        self.down: Set[str] = set()
        self.status_overrides: Dict[str, Dict[str, Any]] = {}
        self.mutation_replies: List[Dict[str, Any]] = []
        self.elect_after: Optional[int] = 0
        self.pending_primary: Optional[str] = None
        self.version = "4.4.29"
        self.calls: List[Tuple[str, str]] = []

    def with_replset(self, members: List[str], primary: str) -> "FakeCluster":
        self.members = list(members)
        self.primary = primary
        return self

    @property
    def mutations(self) -> List[Tuple[str, str]]:
        return [
            (host, command)
            for host, command in self.calls
            if command.startswith(MUTATING_COMMANDS)
        ]

    def commands_on(self, prefix: str) -> List[str]:
        return [host for host, command in self.calls if command.startswith(prefix)]

    def session(self, replset: DesiredReplicaSet, **kwargs) -> MongoSession:
        kwargs.setdefault("connection", LOCAL_CONNECTION)
        return MongoSession(replset, shell=self, retry_sleep=0, **kwargs)

    # MongoShell interface
    def eval(self, command: str, host: str, **kwargs) -> str:
        if host in self.down:
            raise MongoDBCommandExecutionError(command)
        if command == "db.version()":
            return f"{self.version}\n"
        raise AssertionError(f"unexpected eval: {command}")

    def command(self, command: str, host: str, **kwargs) -> Dict[str, Any]:
        host = self.local if host == LOCAL_CONNECTION.conn_string else host
        self.calls.append((host, command))
        if host in self.down:
            raise MongoDBCommandExecutionError(command)

        if command == "rs.status()":
            return self._status(host)
        if command == "db.isMaster()":
            return self._is_master(host)
        if command == "rs.conf()":
            return self._conf()
        if command.startswith(MUTATING_COMMANDS):
            return self._mutate(host, command)

        raise AssertionError(f"unexpected command: {command}")

    def _status(self, host: str) -> Dict[str, Any]:
        if host in self.status_overrides:
            return self.status_overrides[host]
        if host in self._all_members():
            return {"set": self.name, "myState": 1 if host == self.primary else 2, "ok": 1}
        return {
            "info": "run rs.initiate(...) if not yet done for the set",
            "ok": 0,
            "errmsg": "no replset config has been received",
            "code": 94,
            "codeName": "NotYetInitialized",
        }

    def _is_master(self, host: str) -> Dict[str, Any]:
        if self.pending_primary == host:
            if self.elect_after is not None:
                if self.elect_after <= 0:
                    self.primary, self.pending_primary = host, None
                self.elect_after -= 1

        if host not in self._all_members():
            return {"ismaster": False, "secondary": False, "isreplicaset": True, "ok": 1}

        reply = {
            "hosts": [h for h in self.members if h not in self.passives + self.hidden],
            "setName": self.name,
            "ismaster": host == self.primary,
            "secondary": host != self.primary,
            "ok": 1,
        }
        if self.primary:
            reply["primary"] = self.primary
        if self.arbiters:
            reply["arbiters"] = list(self.arbiters)
        if self.passives:
            reply["passives"] = [h for h in self.passives if h not in self.hidden]
        return reply

    def _conf(self) -> Dict[str, Any]:
        if not self.members:
            return {}
        return {
            "_id": self.name,
            "version": 1,
            "members": [
                {"_id": i, "host": host} for i, host in enumerate(self._all_members())
            ],
        }

    def _mutate(self, host: str, command: str) -> Dict[str, Any]:
        if self.mutation_replies:
            return self.mutation_replies.pop(0)

        arg = json.loads(re.match(r"^rs\.\w+\((.*)\)$", command).group(1))
        if command.startswith("rs.initiate("):
            self.members = [member["host"] for member in arg["members"]]
            self.last_config = arg
            self.pending_primary = host
            return {"ok": 1}

        if host != self.primary:
            return {"ok": 0, "errmsg": "not master", "code": 10107}
        added = arg if command.startswith("rs.addArb(") else arg["host"]
        if added in self._all_members():
            return {
                "ok": 0,
                "errmsg": "Found two member configurations with same host field",
                "code": 103,
                "codeName": "NewReplicaSetConfigurationIncompatible",
            }
        if command.startswith("rs.addArb("):
            self.arbiters.append(arg)
        else:
            self.members.append(arg["host"])
            if arg.get("hidden"):
                self.hidden.append(arg["host"])
            self.last_added = arg
        return {"ok": 1}

    def _all_members(self) -> List[str]:
        return self.members + self.arbiters
