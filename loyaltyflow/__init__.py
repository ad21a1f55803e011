# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""LoyaltyFlow: workflow execution engine for loyalty program conversations."""

from .core import ResumeEvent, WorkflowEngine

__version__ = "1.0.0"

__all__ = ["ResumeEvent", "WorkflowEngine", "__version__"]
