# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""Tracking of async operations and their deadlines."""

from .operations import OperationTracker

__all__ = ["OperationTracker"]
