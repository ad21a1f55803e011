# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""Workflow definitions shared by the test modules"""


def node(node_id, node_type, **config):
    return {"id": node_id, "type": node_type, "config": config}


def quiz_flow(workflow_id="quiz"):
    """Greeting, then loop on a wait node until session.step == 3"""
    return {
        "workflow_id": workflow_id,
        "name": "Loyalty quiz",
        "entry_node_id": "M",
        "nodes": [
            node("M", "message", text="Hello {{ execution.session_id }}"),
            node(
                "C",
                "condition",
                expression={"variable": "session.step", "operator": "equals", "value": 3},
            ),
            node("T", "terminal", message="Quiz done"),
            node("W", "wait_input", variable="answer"),
        ],
        "connections": [
            {"source": "M", "target": "C"},
            {"source": "C", "target": "T", "branch": "true"},
            {"source": "C", "target": "W", "branch": "false"},
            {"source": "W", "target": "C"},
        ],
    }


def counter_flow(workflow_id="counter"):
    """Two increments of session.counter, then done"""
    return {
        "workflow_id": workflow_id,
        "entry_node_id": "I1",
        "nodes": [
            node("I1", "session_op", operation="increment", key="counter"),
            node("I2", "session_op", operation="increment", key="counter"),
            node("T", "terminal"),
        ],
        "connections": [
            {"source": "I1", "target": "I2"},
            {"source": "I2", "target": "T"},
        ],
    }


def double_flow(workflow_id="double"):
    """Child workflow: childOutput = childVar * 2"""
    return {
        "workflow_id": workflow_id,
        "entry_node_id": "S",
        "nodes": [
            node("S", "session_op", operation="custom", key="childOutput", expression="childVar * 2"),
            node("T", "terminal"),
        ],
        "connections": [{"source": "S", "target": "T"}],
    }


def caller_flow(workflow_id="caller", child="double"):
    """Parent workflow calling ``child`` with parentVar -> childVar"""
    return {
        "workflow_id": workflow_id,
        "entry_node_id": "P",
        "nodes": [
            node(
                "P",
                "sub_workflow",
                workflow_id=child,
                input_mapping={"childVar": "parentVar"},
                output_mapping={"parentResult": "childOutput"},
            ),
            node("T", "terminal"),
        ],
        "connections": [{"source": "P", "target": "T"}],
    }


def ask_flow(workflow_id="ask"):
    """Child workflow that waits for an answer and stores it"""
    return {
        "workflow_id": workflow_id,
        "entry_node_id": "Q",
        "nodes": [
            node("Q", "message", text="Your name?"),
            node("W", "wait_input", variable="name"),
            node("T", "terminal"),
        ],
        "connections": [
            {"source": "Q", "target": "W"},
            {"source": "W", "target": "T"},
        ],
    }


def chain_flow(level, last):
    """Level ``level`` of a nesting chain ending at ``last``"""
    workflow_id = f"level{level}"
    if level == last:
        return {
            "workflow_id": workflow_id,
            "entry_node_id": "T",
            "nodes": [node("T", "terminal")],
        }
    return {
        "workflow_id": workflow_id,
        "entry_node_id": "S",
        "nodes": [
            node("S", "sub_workflow", workflow_id=f"level{level + 1}"),
            node("T", "terminal"),
        ],
        "connections": [{"source": "S", "target": "T"}],
    }


def delay_flow(workflow_id="reminder", delay_ms=60000):
    return {
        "workflow_id": workflow_id,
        "entry_node_id": "D",
        "nodes": [
            node("D", "delay", delay_ms=delay_ms),
            node("M", "message", text="Your points are waiting"),
        ],
        "connections": [{"source": "D", "target": "M"}],
    }


def failing_flow(workflow_id="points", url="https://api.example.com/points"):
    """Sets a flag, then calls an API whose response fills session.points"""
    return {
        "workflow_id": workflow_id,
        "entry_node_id": "S",
        "nodes": [
            node("S", "session_op", operation="set", key="flag", value=True),
            node(
                "H",
                "http_request",
                url=url,
                response_mapping={"points": "body.points"},
            ),
            node("T", "terminal"),
        ],
        "connections": [
            {"source": "S", "target": "H"},
            {"source": "H", "target": "T"},
        ],
    }
