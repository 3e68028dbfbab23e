# Copyright 2024 Canonical Ltd.
# See LICENSE file for licensing details.

"""In this file we declare the base enum types with string representations."""
from enum import Enum

# The unique Charmhub library identifier, never change it
LIBID = "3b1f0c6e1d2a4f7e9a6b5c4d3e2f1a0b"

# Increment this major API version when introducing breaking changes
LIBAPI = 0

# Increment this PATCH version before using `charmcraft publish-lib` or reset
# to 0 if you are raising the major API version
LIBPATCH = 1


class BaseStrEnum(str, Enum):
    """Base Enum class with str representation."""

    def __str__(self):
        """String representation of enum value."""
        return self.value

