# Copyright 2024 Canonical Ltd.
# See LICENSE file for licensing details.

"""Utility functions for charms related operations."""
import logging

from ops import CharmBase
from ops.model import StatusBase

# The unique Charmhub library identifier, never change it
LIBID = "e0a2c4e6a8c04e0a2c4e6a8c0e2a4c6e"

# Increment this major API version when introducing breaking changes
LIBAPI = 0

# Increment this PATCH version before using `charmcraft publish-lib` or reset
# to 0 if you are raising the major API version
LIBPATCH = 1


logger = logging.getLogger(__name__)


class Status:
    """Class for managing the various status changes in a charm."""

    def __init__(self, charm: CharmBase):
        self.charm = charm

    def set(self, status: StatusBase, app: bool = False):
        """Set status on unit or app IF not already set.

        This avoids updating unnecessarily the "last active since" field on the model.
        """
        context = self.charm.app if app else self.charm.unit
        if context.status == status:
            return

        logger.debug(f"Setting status: {status}")
        context.status = status
