# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
Graph lint for workflow versions.

``WorkflowVersion.graph_errors()`` rejects graphs that cannot run. The
checks here only produce warnings: the graph runs, but probably not the
way its author meant.
"""

from typing import Callable, Dict, List, Optional, Set, Union

from .exceptions import DefinitionError
from .models import MAX_SUBWORKFLOW_DEPTH, NodeType, WorkflowVersion

# Resolves (workflow_id, version) to a published version
VersionResolver = Callable[[str, Union[int, str]], WorkflowVersion]


def reachable_nodes(version: WorkflowVersion) -> Set[str]:
    """Node ids reachable from the entry node"""
    seen: Set[str] = set()
    stack = [version.entry_node_id]
    while stack:
        node_id = stack.pop()
        if node_id in seen or node_id not in version.nodes:
            continue
        seen.add(node_id)
        node = version.nodes[node_id]
        if node.type == NodeType.CONDITION.value:
            for target in (node.config.true_node_id, node.config.false_node_id):
                if target:
                    stack.append(target)
        stack.extend(c.target for c in version.outgoing(node_id))
    return seen


def find_cycles(version: WorkflowVersion) -> List[List[str]]:
    """Cycles in the connection graph, each as a list of node ids"""
    graph: Dict[str, List[str]] = {node_id: [] for node_id in version.nodes}
    for conn in version.connections:
        if conn.source in graph:
            graph[conn.source].append(conn.target)

    cycles: List[List[str]] = []
    state: Dict[str, int] = {}  # 1 = on stack, 2 = done
    path: List[str] = []

    def visit(node_id: str):
        state[node_id] = 1
        path.append(node_id)
        for target in graph.get(node_id, []):
            if state.get(target) == 1:
                cycles.append(path[path.index(target):] + [target])
            elif target not in state:
                visit(target)
        path.pop()
        state[node_id] = 2

    for node_id in graph:
        if node_id not in state:
            visit(node_id)
    return cycles


def nesting_depth(
    version: WorkflowVersion,
    resolve: VersionResolver,
    _trail: Optional[List[str]] = None,
) -> int:
    """
    Longest chain of sub-workflow invocations starting at ``version``.

    Stops counting once the chain passes the allowed depth; a recursive
    reference therefore reports ``MAX_SUBWORKFLOW_DEPTH + 1``.
    """
    trail = _trail or []
    if len(trail) > MAX_SUBWORKFLOW_DEPTH:
        return 0

    deepest = 0
    for workflow_id, ref in version.sub_workflow_refs():
        try:
            child = resolve(workflow_id, ref)
        except DefinitionError:
            continue
        depth = 1 + nesting_depth(child, resolve, trail + [version.workflow_id])
        deepest = max(deepest, depth)
    return deepest


def lint(version: WorkflowVersion, resolve: Optional[VersionResolver] = None) -> List[str]:
    """
    Warnings for a structurally valid version.

    Args:
        version: Version to inspect
        resolve: Optional resolver used to follow sub-workflow references
    """
    warnings: List[str] = []

    reachable = reachable_nodes(version)
    for node_id in version.nodes:
        if node_id not in reachable:
            warnings.append(f"node '{node_id}' is not reachable from the entry node")

    for cycle in find_cycles(version):
        waits = [
            n for n in cycle
            if version.nodes[n].type in (NodeType.WAIT_INPUT.value, NodeType.DELAY.value)
        ]
        if not waits:
            warnings.append(f"cycle without a wait node: {' -> '.join(cycle)}")

    for node in version.nodes.values():
        if node.type == NodeType.TERMINAL.value and version.outgoing(node.id):
            warnings.append(f"terminal node '{node.id}' has outgoing connections that are never followed")

    if resolve is not None:
        for workflow_id, ref in version.sub_workflow_refs():
            try:
                resolve(workflow_id, ref)
            except DefinitionError:
                warnings.append(f"sub-workflow '{workflow_id}' (version {ref}) is not published")

        depth = nesting_depth(version, resolve)
        if depth > MAX_SUBWORKFLOW_DEPTH:
            warnings.append(
                f"sub-workflow nesting reaches depth {depth}; runs will fail past {MAX_SUBWORKFLOW_DEPTH}"
            )

    return warnings
