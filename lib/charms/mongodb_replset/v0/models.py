# Copyright 2024 Canonical Ltd.
# See LICENSE file for licensing details.

"""Replica set related data structures / model classes."""
import json
from abc import ABC
from typing import Any, Dict, List, Optional

from charms.mongodb_replset.v0.helper_enums import BaseStrEnum
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# The unique Charmhub library identifier, never change it
LIBID = "5e9a7c3b1d0f4e2a8b6c4d2e0f1a3b5c"

# Increment this major API version when introducing breaking changes
LIBAPI = 0

# Increment this PATCH version before using `charmcraft publish-lib` or reset
# to 0 if you are raising the major API version
LIBPATCH = 1


# legacy flat member keys -> (nested object, key)
LEGACY_MEMBER_KEYS = {
    "ssl": ("tls", "enabled"),
    "sslCAFile": ("tls", "ca_file"),
    "sslPEMKeyFile": ("tls", "pem_key_file"),
    "authenticationDatabase": ("auth", "database"),
    "authenticationMechanism": ("auth", "mechanism"),
    "username": ("auth", "username"),
    "arbiterOnly": (None, "arbiter"),
}


class Model(ABC, BaseModel):
    """Base model class."""

    model_config = ConfigDict(populate_by_name=True)

    def to_str(self, by_alias: bool = True) -> str:
        """Deserialize object into a string."""
        return json.dumps(self.to_dict(by_alias=by_alias))

    def to_dict(self, by_alias: bool = False) -> Dict[str, Any]:
        """Deserialize object into a dict, unset optional values are dropped."""
        return self.model_dump(by_alias=by_alias, exclude_none=True, mode="json")


class EnsureState(BaseStrEnum):
    """Desired presence of the replica set."""

    PRESENT = "present"
    ABSENT = "absent"


class TlsParams(Model):
    """TLS options passed to the mongo shell when connecting to a member."""

    enabled: bool = False
    ca_file: Optional[str] = None
    pem_key_file: Optional[str] = None


class AuthParams(Model):
    """Authentication options passed to the mongo shell when connecting to a member."""

    database: Optional[str] = None
    mechanism: Optional[str] = None
    username: Optional[str] = None


class MemberConfig(Model):
    """A member entry of a replica set configuration document."""

    id: Optional[int] = Field(default=None, alias="_id")
    host: str
    arbiter_only: Optional[bool] = Field(default=None, alias="arbiterOnly")
    priority: Optional[int] = None
    hidden: Optional[bool] = None
    votes: Optional[int] = None


class ReplSetConfig(Model):
    """The configuration document passed to rs.initiate()."""

    id: str = Field(alias="_id")
    members: List[MemberConfig]


class DesiredMember(Model):
    """Data class representing a host that should be a member of the replica set."""

    host: str
    priority: Optional[int] = None
    hidden: Optional[bool] = None
    votes: Optional[int] = None
    arbiter: bool = False
    tls: TlsParams = Field(default_factory=TlsParams)
    auth: AuthParams = Field(default_factory=AuthParams)

    @model_validator(mode="before")
    @classmethod
    def fold_legacy_keys(cls, values: Any) -> Any:
        """Accept the flat ssl* / authentication* keys of older manifests."""
        if not isinstance(values, dict):
            return values

        values = dict(values)
        for legacy_key, (group, key) in LEGACY_MEMBER_KEYS.items():
            if legacy_key not in values:
                continue

            val = values.pop(legacy_key)
            if group is None:
                values.setdefault(key, val)
                continue

            nested = values.get(group) or {}
            if isinstance(nested, BaseModel):
                nested = nested.model_dump()
            values[group] = {key: val, **nested}

        return values

    @field_validator("host")
    @classmethod
    def host_not_empty(cls, host: str) -> str:  # noqa: N805
        """Strip the host and reject empty ones."""
        host = host.strip()
        if not host:
            raise ValueError("member host cannot be empty.")
        return host


class DesiredReplicaSet(Model):
    """Data class representing the replica set membership we want on the node."""

    name: str
    members: List[DesiredMember] = Field(default_factory=list)
    ensure: EnsureState = EnsureState.PRESENT
    arbiter: Optional[str] = None
    initialize_host: Optional[str] = None
    probe_members: bool = True
    trust_unauthorized_members: bool = True

    @field_validator("members")
    @classmethod
    def unique_hosts(cls, members: List[DesiredMember]) -> List[DesiredMember]:  # noqa: N805
        """Reject member lists declaring the same host twice."""
        seen = set()
        for member in members:
            if member.host in seen:
                raise ValueError(f"host {member.host} declared more than once.")
            seen.add(member.host)

        return members

    @property
    def hosts(self) -> List[str]:
        """Hosts of the members, in declaration order."""
        return [member.host for member in self.members]

    def member(self, host: str) -> Optional[DesiredMember]:
        """Return the declared member for this host, if any."""
        for member in self.members:
            if member.host == host:
                return member

        return None

    def is_arbiter(self, host: str) -> bool:
        """Whether the host should join the set as an arbiter."""
        if self.arbiter and self.arbiter == host:
            return True

        member = self.member(host)
        return member is not None and member.arbiter

    def member_config(self, host: str, member_id: Optional[int] = None) -> MemberConfig:
        """Build the configuration entry of a host from its declared parameters."""
        member = self.member(host) or DesiredMember(host=host)
        return MemberConfig(
            _id=member_id,
            host=host,
            arbiterOnly=True if member_id is not None and self.is_arbiter(host) else None,
            priority=member.priority,
            hidden=member.hidden,
            votes=member.votes,
        )

    def initiate_config(self, hosts: List[str]) -> ReplSetConfig:
        """Build the rs.initiate() document, ids are assigned in the order of the hosts."""
        return ReplSetConfig(
            _id=self.name,
            members=[self.member_config(host, member_id) for member_id, host in enumerate(hosts)],
        )


class ActualReplicaSetStatus(Model):
    """Snapshot of the replica set as reported by rs.conf() on the local node."""

    name: str
    present: bool = True
    members: List[str] = Field(default_factory=list)


class HostClassification(BaseStrEnum):
    """How a probed host relates to the desired replica set."""

    IN_SET = "in-set"
    UNCONFIGURED = "unconfigured"
    UNAUTHORIZED_BUT_ALIVE = "unauthorized-but-alive"
    UNREACHABLE = "unreachable"
    UNRECOGNIZED = "unrecognized"


class HostProbe(Model):
    """Result of probing one desired member during a reconciliation pass."""

    host: str
    reachable: bool
    classification: HostClassification
    usable: bool


class PrimaryStatus(Model):
    """Data class representing the reply of db.isMaster() on a host."""

    is_primary: bool = False
    primary: Optional[str] = None
    set_name: Optional[str] = None
    hosts: List[str] = Field(default_factory=list)
    arbiters: List[str] = Field(default_factory=list)
    passives: List[str] = Field(default_factory=list)

    @classmethod
    def from_is_master(cls, reply: Dict[str, Any]) -> "PrimaryStatus":
        """Build the status from the raw isMaster / hello document."""
        return cls(
            is_primary=bool(reply.get("ismaster", reply.get("isWritablePrimary", False))),
            primary=reply.get("primary"),
            set_name=reply.get("setName"),
            hosts=reply.get("hosts", []),
            arbiters=reply.get("arbiters", []),
            passives=reply.get("passives", []),
        )

    @property
    def members(self) -> List[str]:
        """All the hosts known to the set, arbiters and passive members included."""
        return self.hosts + self.arbiters + self.passives


class ConnectionConfig(Model):
    """Where and how to reach the local mongod for administrative commands."""

    bind_address: str
    port: int
    ipv6_enabled: bool = False
    auth_enabled: bool = False

    @property
    def conn_string(self) -> str:
        """Host string usable with `mongo --host`."""
        if ":" in self.bind_address:
            return f"[{self.bind_address}]:{self.port}"

        return f"{self.bind_address}:{self.port}"


class ReconcileOutcome(BaseStrEnum):
    """What a reconciliation pass ended up doing."""

    INITIATED = "initiated"
    MEMBERS_ADDED = "members-added"
    NO_OP = "no-op"
    NOT_SUPPORTED = "not-supported"


class ReconcileResult(Model):
    """Summary of a reconciliation pass."""

    outcome: ReconcileOutcome
    alive: List[str] = Field(default_factory=list)
    dead: List[str] = Field(default_factory=list)
    added: List[str] = Field(default_factory=list)
    initiated_on: Optional[str] = None
    unsupported_removals: List[str] = Field(default_factory=list)
