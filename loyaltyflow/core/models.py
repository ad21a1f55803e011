# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
Workflow definition models.

A published workflow is an immutable ``WorkflowVersion``: nodes keyed by id,
connections between them and an entry node. Every node is a variant of a
tagged union on ``type``; its ``config`` has exactly one shape per type and
unknown keys are rejected when the definition is loaded.
"""

import re
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .exceptions import DefinitionError

MAX_SUBWORKFLOW_DEPTH = 5
MAX_DELAY_MS = 24 * 60 * 60 * 1000


class NodeType(str, Enum):
    MESSAGE = "message"
    CONDITION = "condition"
    SESSION_OP = "session_op"
    HTTP_REQUEST = "http_request"
    WAIT_INPUT = "wait_input"
    SUB_WORKFLOW = "sub_workflow"
    DELAY = "delay"
    TERMINAL = "terminal"


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    GREATER = "greater"
    LESS = "less"
    GREATER_EQUAL = "greater_equal"
    LESS_EQUAL = "less_equal"
    REGEX = "regex"
    IN_ARRAY = "in_array"
    IS_EMPTY = "is_empty"
    IS_NOT_EMPTY = "is_not_empty"


class SessionOperation(str, Enum):
    GET = "get"
    SET = "set"
    DELETE = "delete"
    INCREMENT = "increment"
    DECREMENT = "decrement"
    MERGE = "merge"
    CLEAR = "clear"
    EXISTS = "exists"
    CUSTOM = "custom"


class WaitType(str, Enum):
    INPUT = "input"
    CALLBACK = "callback"
    CONTACT = "contact"
    LOCATION = "location"
    POLL = "poll"


def _is_template(value: Any) -> bool:
    return isinstance(value, str) and "{{" in value


class _Strict(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


# ============================================================================
# Condition Trees
# ============================================================================


class ConditionRule(_Strict):
    """Leaf comparison: variable <operator> value"""

    variable: str
    operator: ConditionOperator
    value: Any = None
    case_sensitive: bool = False

    @model_validator(mode="after")
    def check_pattern(self):
        if self.operator == ConditionOperator.REGEX and not _is_template(self.value):
            if not isinstance(self.value, str):
                raise ValueError("regex operator needs a string pattern")
            try:
                re.compile(self.value)
            except re.error as e:
                raise ValueError(f"invalid regex {self.value!r}: {e}")
        return self


class ConditionGroup(_Strict):
    """AND/OR group of rules or nested groups"""

    operator: Literal["and", "or"] = "and"
    conditions: List[Union["ConditionGroup", ConditionRule]] = Field(min_length=1)

    @field_validator("operator", mode="before")
    @classmethod
    def lower_operator(cls, v):
        return v.lower() if isinstance(v, str) else v


ConditionGroup.model_rebuild()

ConditionExpression = Union[ConditionGroup, ConditionRule]


# ============================================================================
# Node Configs
# ============================================================================


class MessageButton(_Strict):
    text: str
    callback_data: Optional[str] = None
    url: Optional[str] = None


class MessageConfig(_Strict):
    text: str
    buttons: List[List[MessageButton]] = Field(default_factory=list)
    parse_mode: Optional[str] = None

    @field_validator("buttons", mode="before")
    @classmethod
    def rows_of_buttons(cls, v):
        # A flat list of buttons means one button per row
        if isinstance(v, list) and v and all(isinstance(b, dict) for b in v):
            return [[b] for b in v]
        return v


class ConditionConfig(_Strict):
    expression: ConditionExpression
    true_node_id: Optional[str] = None
    false_node_id: Optional[str] = None


class SessionOpConfig(_Strict):
    operation: SessionOperation
    key: Optional[str] = None
    value: Any = None
    amount: Union[int, float] = 1
    deep: bool = False
    expression: Optional[str] = None
    assign_to: Optional[str] = None
    ttl_seconds: Optional[int] = Field(default=None, ge=1)
    condition: Optional[ConditionExpression] = None

    @model_validator(mode="after")
    def check_operation(self):
        if self.operation != SessionOperation.CLEAR and not self.key:
            raise ValueError(f"session_op '{self.operation.value}' needs a key")
        if self.operation == SessionOperation.CUSTOM and not self.expression:
            raise ValueError("session_op 'custom' needs an expression")
        if self.operation == SessionOperation.MERGE:
            if not isinstance(self.value, dict) and not _is_template(self.value):
                raise ValueError("session_op 'merge' needs a mapping value")
        return self


class HttpRequestConfig(_Strict):
    method: Literal["GET", "POST", "PUT", "PATCH", "DELETE"] = "GET"
    url: str
    headers: Dict[str, str] = Field(default_factory=dict)
    query: Dict[str, Any] = Field(default_factory=dict)
    body: Any = None
    timeout_ms: Optional[int] = Field(default=None, ge=1)
    response_mapping: Dict[str, str] = Field(default_factory=dict)
    assign_to: Optional[str] = None

    @field_validator("method", mode="before")
    @classmethod
    def upper_method(cls, v):
        return v.upper() if isinstance(v, str) else v


class WaitInputConfig(_Strict):
    wait_type: WaitType = WaitType.INPUT
    variable: Optional[str] = None
    timeout_ms: Optional[int] = Field(default=None, ge=1)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class SubWorkflowConfig(_Strict):
    workflow_id: str
    version: Union[int, Literal["active"]] = "active"
    input_mapping: Dict[str, str] = Field(default_factory=dict)
    output_mapping: Dict[str, str] = Field(default_factory=dict)


class DelayConfig(_Strict):
    delay_ms: int = Field(ge=0, le=MAX_DELAY_MS)


class TerminalConfig(_Strict):
    success: bool = True
    message: Optional[str] = None


# ============================================================================
# Nodes and Connections
# ============================================================================


class _NodeBase(_Strict):
    id: str
    label: Optional[str] = None
    position: Optional[Dict[str, Any]] = None

    @property
    def node_type(self) -> NodeType:
        return NodeType(self.type)  # type: ignore[attr-defined]

    @property
    def display_name(self) -> str:
        return self.label or self.id


class MessageNode(_NodeBase):
    type: Literal["message"]
    config: MessageConfig


class ConditionNode(_NodeBase):
    type: Literal["condition"]
    config: ConditionConfig


class SessionOpNode(_NodeBase):
    type: Literal["session_op"]
    config: SessionOpConfig


class HttpRequestNode(_NodeBase):
    type: Literal["http_request"]
    config: HttpRequestConfig


class WaitInputNode(_NodeBase):
    type: Literal["wait_input"]
    config: WaitInputConfig = Field(default_factory=WaitInputConfig)


class SubWorkflowNode(_NodeBase):
    type: Literal["sub_workflow"]
    config: SubWorkflowConfig


class DelayNode(_NodeBase):
    type: Literal["delay"]
    config: DelayConfig


class TerminalNode(_NodeBase):
    type: Literal["terminal"]
    config: TerminalConfig = Field(default_factory=TerminalConfig)


Node = Annotated[
    Union[
        MessageNode,
        ConditionNode,
        SessionOpNode,
        HttpRequestNode,
        WaitInputNode,
        SubWorkflowNode,
        DelayNode,
        TerminalNode,
    ],
    Field(discriminator="type"),
]


class Connection(_Strict):
    source: str
    target: str
    branch: Optional[str] = None
    id: Optional[str] = None


# ============================================================================
# Workflow Version
# ============================================================================


class WorkflowVersion(BaseModel):
    """Immutable published snapshot of a workflow graph"""
    model_config = ConfigDict(frozen=True)

    workflow_id: str
    version: int = Field(default=1, ge=1)
    project_id: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    entry_node_id: str
    nodes: Dict[str, Node]
    connections: List[Connection] = Field(default_factory=list)
    variables: Dict[str, Any] = Field(default_factory=dict)
    settings: Dict[str, Any] = Field(default_factory=dict)
    is_active: bool = False
    created_at: datetime = Field(default_factory=datetime.now)

    @field_validator("nodes", mode="before")
    @classmethod
    def index_nodes(cls, v):
        """Accept nodes as a list or as a mapping keyed by node id"""
        if isinstance(v, list):
            return {n.get("id"): n for n in v if isinstance(n, dict)}
        if isinstance(v, dict):
            indexed = {}
            for key, node in v.items():
                if isinstance(node, dict) and "id" not in node:
                    node = {**node, "id": key}
                indexed[key] = node
            return indexed
        return v

    @property
    def id(self) -> str:
        return f"{self.workflow_id}@{self.version}"

    @classmethod
    def from_definition(cls, data: Dict[str, Any]) -> "WorkflowVersion":
        """
        Validate a raw definition and its graph.

        Raises:
            DefinitionError: On a malformed node config or a broken graph
        """
        workflow_id = data.get("workflow_id") if isinstance(data, dict) else None
        try:
            version = cls.model_validate(data)
        except ValidationError as e:
            errors = [
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
                for err in e.errors()
            ]
            raise DefinitionError(
                f"Invalid workflow definition {workflow_id or ''}".strip(),
                workflow_id=workflow_id,
                errors=errors,
            ) from e

        errors = version.graph_errors()
        if errors:
            raise DefinitionError(
                f"Invalid workflow graph {version.workflow_id}",
                workflow_id=version.workflow_id,
                errors=errors,
            )
        return version

    # ------------------------------------------------------------------------
    # Graph checks
    # ------------------------------------------------------------------------

    def graph_errors(self) -> List[str]:
        """Structural errors that make the graph unrunnable"""
        errors: List[str] = []

        if not self.entry_node_id:
            errors.append("no entry node")
        elif self.entry_node_id not in self.nodes:
            errors.append(f"entry node '{self.entry_node_id}' does not exist")

        for key, node in self.nodes.items():
            if key != node.id:
                errors.append(f"node key '{key}' does not match node id '{node.id}'")

        for conn in self.connections:
            if conn.source not in self.nodes:
                errors.append(f"connection source '{conn.source}' does not exist")
            if conn.target not in self.nodes:
                errors.append(f"connection target '{conn.target}' does not exist")

        for node in self.nodes.values():
            errors.extend(self._branch_errors(node))

        return errors

    def _branch_errors(self, node) -> List[str]:
        outgoing = self.outgoing(node.id)
        untagged = [c for c in outgoing if c.branch is None]
        tags = [c.branch for c in outgoing if c.branch is not None]
        duplicates = sorted({t for t in tags if tags.count(t) > 1})
        errors = [f"node '{node.id}' has duplicate '{t}' branches" for t in duplicates]

        if node.type == NodeType.CONDITION.value:
            if untagged:
                errors.append(f"condition '{node.id}' has connections without a true/false branch")
            for tag in tags:
                if tag not in ("true", "false"):
                    errors.append(f"condition '{node.id}' has unknown branch '{tag}'")
            for branch in ("true", "false"):
                configured = getattr(node.config, f"{branch}_node_id")
                connected = [c.target for c in outgoing if c.branch == branch]
                if configured is not None and configured not in self.nodes:
                    errors.append(f"condition '{node.id}' {branch} target '{configured}' does not exist")
                elif configured is not None and connected and connected[0] != configured:
                    errors.append(f"condition '{node.id}' has ambiguous {branch} branch")
                elif configured is None and not connected:
                    errors.append(f"condition '{node.id}' is missing its {branch} branch")
        elif node.type == NodeType.WAIT_INPUT.value:
            if len(untagged) > 1:
                errors.append(f"wait node '{node.id}' has more than one default connection")
        elif node.type != NodeType.TERMINAL.value:
            if tags:
                errors.append(f"{node.type} node '{node.id}' cannot have branch connections")
            if len(untagged) > 1:
                errors.append(f"{node.type} node '{node.id}' has more than one outgoing connection")

        return errors

    # ------------------------------------------------------------------------
    # Navigation
    # ------------------------------------------------------------------------

    def get_node(self, node_id: str):
        node = self.nodes.get(node_id)
        if node is None:
            raise DefinitionError(
                f"Node '{node_id}' does not exist in {self.id}",
                workflow_id=self.workflow_id,
                node_id=node_id,
            )
        return node

    def outgoing(self, node_id: str) -> List[Connection]:
        return [c for c in self.connections if c.source == node_id]

    def condition_targets(self, node_id: str) -> Tuple[str, str]:
        """(true target, false target) of a condition node"""
        node = self.get_node(node_id)
        targets = []
        for branch in ("true", "false"):
            target = getattr(node.config, f"{branch}_node_id") or self.branch_target(node_id, branch)
            if target is None:
                raise DefinitionError(
                    f"Condition '{node_id}' is missing its {branch} branch",
                    workflow_id=self.workflow_id,
                    node_id=node_id,
                )
            targets.append(target)
        return targets[0], targets[1]

    def branch_target(self, node_id: str, branch: str) -> Optional[str]:
        for conn in self.outgoing(node_id):
            if conn.branch == branch:
                return conn.target
        return None

    def default_target(self, node_id: str) -> Optional[str]:
        for conn in self.outgoing(node_id):
            if conn.branch is None:
                return conn.target
        return None

    def next_node_id(self, node_id: str, branch: Optional[str] = None) -> Optional[str]:
        """
        Resolve where execution continues after a node.

        Condition nodes follow their true/false target; other nodes follow a
        connection tagged with ``branch`` when one exists, else the default one.
        None means the graph ends here.
        """
        node = self.get_node(node_id)
        if node.type == NodeType.CONDITION.value:
            true_target, false_target = self.condition_targets(node_id)
            return true_target if branch == "true" else false_target
        if branch is not None:
            target = self.branch_target(node_id, branch)
            if target is not None:
                return target
        return self.default_target(node_id)

    def sub_workflow_refs(self) -> List[Tuple[str, Union[int, str]]]:
        return [
            (n.config.workflow_id, n.config.version)
            for n in self.nodes.values()
            if n.type == NodeType.SUB_WORKFLOW.value
        ]


# ============================================================================
# Resume Events
# ============================================================================


class ResumeEvent(BaseModel):
    """Inbound event delivered by the trigger layer to a waiting execution"""

    type: str = "message"
    text: Optional[str] = None
    callback_data: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    variables: Dict[str, Any] = Field(default_factory=dict)

    @property
    def value(self) -> Any:
        """Value stored into a wait node's variable"""
        if self.callback_data is not None:
            return self.callback_data
        if self.text is not None:
            return self.text
        return self.payload or None
