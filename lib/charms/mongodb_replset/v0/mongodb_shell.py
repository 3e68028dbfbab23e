# Copyright 2024 Canonical Ltd.
# See LICENSE file for licensing details.

"""Evaluation of administrative commands through the mongo shell."""
import json
import logging
import re
from os.path import exists
from typing import Any, Dict, List, Optional

from charms.mongodb_replset.v0.constants_charm import (
    ADMIN_DB,
    COMMAND_RETRIES,
    EVAL_RETRIES,
    MONGO_BIN,
    MONGORC_FILE,
    RETRY_SLEEP,
)
from charms.mongodb_replset.v0.helper_commands import error_cmd_retry_log, run_cmd
from charms.mongodb_replset.v0.models import AuthParams, TlsParams
from charms.mongodb_replset.v0.mongodb_commands import ReplSetCommands
from charms.mongodb_replset.v0.mongodb_exceptions import (
    MongoDBCmdError,
    MongoDBCommandExecutionError,
    MongoDBResponseParseError,
)
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_fixed

# The unique Charmhub library identifier, never change it
LIBID = "6d8f0b2d4f6a4c8e0a2c4e6a8c0e2a4c"

# Increment this major API version when introducing breaking changes
LIBAPI = 0

# Increment this PATCH version before using `charmcraft publish-lib` or reset
# to 0 if you are raising the major API version
LIBPATCH = 1


logger = logging.getLogger(__name__)


# shell helpers printed by printjson() that are not valid JSON, with their replacement
SHELL_WRAPPERS = [
    (re.compile(r"ObjectId\(([^)]*)\)"), r"\1"),
    (re.compile(r"ISODate\((.+?)\)"), r"\1"),
    (re.compile(r"Timestamp\((.+?)\)"), r"[\1]"),
    (re.compile(r"NumberLong\((.+?)\)"), r"\1"),
    (re.compile(r"NumberInt\((.+?)\)"), r"\1"),
    (re.compile(r"NumberDecimal\((.+?)\)"), r"\1"),
    (re.compile(r"BinData\(\d+,\s*(\"[^\"]*\")\)"), r"\1"),
]
SHELL_ERROR_LINE = re.compile(r"^Error:.+$", re.MULTILINE)


def clean_shell_output(output: Optional[str]) -> str:
    """Rewrite the shell specific wrappers so that the output parses as strict JSON."""
    output = SHELL_ERROR_LINE.sub("", output or "")
    for pattern, replacement in SHELL_WRAPPERS:
        output = pattern.sub(replacement, output)

    output = output.strip()
    if not output or output == "null":
        return "{}"

    return output


def parse_shell_output(output: Optional[str]) -> Dict[str, Any]:
    """Parse the printjson() output of a command.

    Raises:
        MongoDBResponseParseError if the cleaned output is not a JSON document
    """
    cleaned = clean_shell_output(output)
    try:
        document = json.loads(cleaned)
    except json.JSONDecodeError:
        raise MongoDBResponseParseError(cleaned)

    if not isinstance(document, dict):
        raise MongoDBResponseParseError(cleaned)

    return document


class MongoShell:
    """Runs javascript expressions against a host with the mongo shell client."""

    def __init__(
        self,
        ipv6_enabled: bool = False,
        retry_sleep: float = RETRY_SLEEP,
        mongorc_file: Optional[str] = MONGORC_FILE,
        binary: str = MONGO_BIN,
    ):
        self.ipv6_enabled = ipv6_enabled
        self.retry_sleep = retry_sleep
        self.mongorc_file = mongorc_file
        self.binary = binary

    def mongorc_prefix(self) -> str:
        """Load the root defaults file first, if any."""
        if self.mongorc_file and exists(self.mongorc_file):
            return f"load({json.dumps(self.mongorc_file)}); "

        return ""

    def build_args(
        self,
        db: str,
        host: str,
        command: str,
        tls: Optional[TlsParams] = None,
        auth: Optional[AuthParams] = None,
    ) -> List[str]:
        """Command line of the shell for one evaluation."""
        args = [self.binary, db, "--quiet"]

        if self.ipv6_enabled:
            if (tls and tls.enabled) or (auth and auth.username):
                logger.warning(
                    f"IPv6 is enabled: connecting to {host} without the requested TLS / "
                    "authentication options."
                )
            return args + ["--ipv6", "--host", host, "--eval", command]

        args += ["--host", host]
        if tls and tls.enabled:
            args.append("--ssl")
            for flag, val in (("--sslCAFile", tls.ca_file), ("--sslPEMKeyFile", tls.pem_key_file)):
                if val:
                    args += [flag, val]

        if auth:
            for flag, val in (
                ("--authenticationDatabase", auth.database),
                ("--authenticationMechanism", auth.mechanism),
                ("--username", auth.username),
            ):
                if val:
                    args += [flag, val]

        return args + ["--eval", command]

    def eval(
        self,
        command: str,
        host: str,
        db: str = ADMIN_DB,
        tls: Optional[TlsParams] = None,
        auth: Optional[AuthParams] = None,
        retries: int = EVAL_RETRIES,
    ) -> str:
        """Evaluate a javascript expression, retrying failed processes.

        Args:
            command: the javascript expression
            host: the `host:port` to connect to
            db: database to connect to
            tls: TLS options of the connection
            auth: authentication options of the connection
            retries: max number of attempts

        Raises:
            MongoDBCommandExecutionError if all the attempts failed
        """
        command = f"{self.mongorc_prefix()}{command}"
        args = self.build_args(db, host, command, tls=tls, auth=auth)
        retries = max(retries, 1)

        logger.debug(f"mongo eval on {host} (db: {db}, tls: {bool(tls and tls.enabled)})")
        try:
            for attempt in Retrying(
                retry=retry_if_exception_type(MongoDBCmdError),
                stop=stop_after_attempt(retries),
                wait=wait_fixed(self.retry_sleep),
                before_sleep=error_cmd_retry_log(logger, retries, command, host),
                reraise=True,
            ):
                with attempt:
                    output = run_cmd(args)
        except MongoDBCmdError:
            raise MongoDBCommandExecutionError(command)

        return output.out

    def command(
        self,
        command: str,
        host: str,
        tls: Optional[TlsParams] = None,
        auth: Optional[AuthParams] = None,
        retries: int = COMMAND_RETRIES,
    ) -> Dict[str, Any]:
        """Run an administrative command on the admin db and parse its JSON output.

        When TLS is requested and all the attempts fail, one more evaluation is made
        without the TLS and authentication options.
        """
        expression = ReplSetCommands.printjson(command)
        logger.debug(f"Mongo command {command} on {host}")

        if tls and tls.enabled:
            try:
                output = self.eval(expression, host, tls=tls, auth=auth, retries=retries)
            except MongoDBCommandExecutionError:
                logger.debug(f"mongo command {command} - non-TLS fallback on {host}")
                output = self.eval(expression, host, retries=retries)
        else:
            output = self.eval(expression, host, retries=retries)

        return parse_shell_output(output)
