# Copyright 2024 Canonical Ltd.
# See LICENSE file for licensing details.

"""Utility functions for running commands."""

import logging
import os
import subprocess
from types import SimpleNamespace
from typing import List

from charms.mongodb_replset.v0.constants_charm import SHELL_TIMEOUT
from charms.mongodb_replset.v0.mongodb_exceptions import MongoDBCmdError
from tenacity import RetryCallState

# The unique Charmhub library identifier, never change it
LIBID = "f1e3d5c7b9a14c2e8d6f0a2c4e6b8d0f"

# Increment this major API version when introducing breaking changes
LIBAPI = 0

# Increment this PATCH version before using `charmcraft publish-lib` or reset
# to 0 if you are raising the major API version
LIBPATCH = 1


logger = logging.getLogger(__name__)


def run_cmd(args: List[str], timeout: int = SHELL_TIMEOUT) -> SimpleNamespace:
    """Run command.

    Arg:
        args: the executable followed by its arguments, no shell is involved
        timeout: number of seconds before the process is killed
    """
    # only log the executable to avoid logging sensitive information
    command = args[0]
    logger.debug(f"Executing command: {command}")

    try:
        output = subprocess.run(
            args,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            timeout=timeout,
            env=os.environ,
        )
    except (TimeoutError, subprocess.TimeoutExpired):
        raise MongoDBCmdError(cmd=command, err="timeout")
    except OSError as e:
        raise MongoDBCmdError(cmd=command, err=str(e))

    if output.returncode != 0:
        logger.error(f"{command}:\n Stderr: {output.stderr}\n Stdout: {output.stdout}")
        raise MongoDBCmdError(cmd=command, out=output.stdout, err=output.stderr)

    return SimpleNamespace(cmd=command, out=output.stdout, err=output.stderr)


def error_cmd_retry_log(logger, retry_max: int, command: str, host: str):
    """Return a custom log function to run before a new Tenacity retry."""

    def log_error(retry_state: RetryCallState):
        logger.error(
            f"Command {command} on {host} failed."
            f"(Attempts left: {retry_max - retry_state.attempt_number})\n"
            f"\tError: {retry_state.outcome.exception()}"
        )

    return log_error
