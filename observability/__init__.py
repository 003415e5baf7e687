# SPDX-License-Identifier: MIT
"""Health endpoints for the controller process."""

from .health import HealthServer, ReadinessCheck

__all__ = ["HealthServer", "ReadinessCheck"]
