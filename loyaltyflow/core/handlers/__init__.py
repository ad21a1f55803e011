# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
Built-in node handlers, one per node type.
"""

from typing import List

from .base import Advance, Done, Fail, NodeHandler, NodeResult, Suspend
from .condition import ConditionHandler
from .flow import DelayHandler, TerminalHandler
from .http import HttpRequestHandler
from .message import MessageHandler
from .session import SessionOpHandler
from .subworkflow import SubWorkflowHandler
from .wait import WaitInputHandler


def builtin_handlers() -> List[NodeHandler]:
    return [
        MessageHandler(),
        ConditionHandler(),
        SessionOpHandler(),
        HttpRequestHandler(),
        WaitInputHandler(),
        SubWorkflowHandler(),
        DelayHandler(),
        TerminalHandler(),
    ]


__all__ = [
    "Advance",
    "Done",
    "Fail",
    "NodeHandler",
    "NodeResult",
    "Suspend",
    "builtin_handlers",
    "ConditionHandler",
    "DelayHandler",
    "HttpRequestHandler",
    "MessageHandler",
    "SessionOpHandler",
    "SubWorkflowHandler",
    "TerminalHandler",
    "WaitInputHandler",
]
