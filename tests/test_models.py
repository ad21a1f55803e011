# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""Tests for definition models and graph validation"""

import pytest

from loyaltyflow.core.exceptions import DefinitionError
from loyaltyflow.core.models import ResumeEvent, WorkflowVersion
from loyaltyflow.core.validator import find_cycles, lint, reachable_nodes

from flows import node, quiz_flow


def build(definition):
    return WorkflowVersion.from_definition(definition)


# ============================================================================
# Node configs
# ============================================================================


class TestNodeConfigs:
    """Tagged union of node types"""

    def test_quiz_flow_loads(self):
        """Test nodes given as a list are indexed by id"""
        version = build(quiz_flow())
        assert set(version.nodes) == {"M", "C", "T", "W"}
        assert version.nodes["C"].type == "condition"
        assert version.id == "quiz@1"

    def test_nodes_as_mapping(self):
        """Test nodes keyed by id without repeating the id"""
        version = build(
            {
                "workflow_id": "wf",
                "entry_node_id": "T",
                "nodes": {"T": {"type": "terminal"}},
            }
        )
        assert version.nodes["T"].id == "T"
        assert version.nodes["T"].config.success is True

    def test_unknown_node_type(self):
        """Test an unknown type is a DefinitionError"""
        with pytest.raises(DefinitionError) as exc_info:
            build({"workflow_id": "wf", "entry_node_id": "X", "nodes": [node("X", "teleport")]})
        assert exc_info.value.errors

    def test_unknown_config_key(self):
        """Test extra config keys are rejected"""
        with pytest.raises(DefinitionError):
            build(
                {
                    "workflow_id": "wf",
                    "entry_node_id": "M",
                    "nodes": [node("M", "message", text="hi", colour="red")],
                }
            )

    def test_flat_button_list(self):
        """Test a flat button list becomes one button per row"""
        version = build(
            {
                "workflow_id": "wf",
                "entry_node_id": "M",
                "nodes": [
                    node("M", "message", text="Pick", buttons=[{"text": "A"}, {"text": "B"}]),
                ],
            }
        )
        assert [[b.text for b in row] for row in version.nodes["M"].config.buttons] == [["A"], ["B"]]

    @pytest.mark.parametrize(
        "config",
        [
            {"operation": "increment"},
            {"operation": "custom", "key": "x"},
            {"operation": "merge", "key": "x", "value": 5},
        ],
    )
    def test_session_op_requirements(self, config):
        """Test session_op configs that cannot run"""
        with pytest.raises(DefinitionError):
            build({"workflow_id": "wf", "entry_node_id": "S", "nodes": [node("S", "session_op", **config)]})

    def test_delay_limit(self):
        """Test delays longer than a day are rejected"""
        with pytest.raises(DefinitionError):
            build(
                {
                    "workflow_id": "wf",
                    "entry_node_id": "D",
                    "nodes": [node("D", "delay", delay_ms=25 * 60 * 60 * 1000)],
                }
            )

    def test_http_method_is_normalized(self):
        version = build(
            {
                "workflow_id": "wf",
                "entry_node_id": "H",
                "nodes": [node("H", "http_request", method="post", url="https://x")],
            }
        )
        assert version.nodes["H"].config.method == "POST"


# ============================================================================
# Graph rules
# ============================================================================


class TestGraph:
    """Structural checks and navigation"""

    def test_missing_entry_node(self):
        definition = quiz_flow()
        definition["entry_node_id"] = "nope"
        with pytest.raises(DefinitionError) as exc_info:
            build(definition)
        assert any("entry node" in e for e in exc_info.value.errors)

    def test_dangling_connection(self):
        definition = quiz_flow()
        definition["connections"].append({"source": "T", "target": "ghost"})
        with pytest.raises(DefinitionError):
            build(definition)

    def test_condition_needs_both_branches(self):
        """Test a condition without a false branch"""
        definition = quiz_flow()
        definition["connections"] = [c for c in definition["connections"] if c.get("branch") != "false"]
        with pytest.raises(DefinitionError) as exc_info:
            build(definition)
        assert any("false branch" in e for e in exc_info.value.errors)

    def test_condition_rejects_untagged_connection(self):
        definition = quiz_flow()
        definition["connections"].append({"source": "C", "target": "M"})
        with pytest.raises(DefinitionError):
            build(definition)

    def test_condition_targets_from_config(self):
        """Test true/false targets given in the node config"""
        version = build(
            {
                "workflow_id": "wf",
                "entry_node_id": "C",
                "nodes": [
                    node(
                        "C",
                        "condition",
                        expression={"variable": "x", "operator": "is_empty"},
                        true_node_id="A",
                        false_node_id="B",
                    ),
                    node("A", "terminal"),
                    node("B", "terminal", success=False),
                ],
            }
        )
        assert version.next_node_id("C", "true") == "A"
        assert version.next_node_id("C", "false") == "B"

    def test_plain_node_single_exit(self):
        """Test a message node with two exits is rejected"""
        definition = quiz_flow()
        definition["connections"].append({"source": "M", "target": "T"})
        with pytest.raises(DefinitionError):
            build(definition)

    def test_wait_node_tagged_exits(self):
        """Test a wait node follows the connection matching callback data"""
        version = build(
            {
                "workflow_id": "wf",
                "entry_node_id": "W",
                "nodes": [
                    node("W", "wait_input", wait_type="callback"),
                    node("Y", "terminal"),
                    node("N", "terminal", success=False),
                ],
                "connections": [
                    {"source": "W", "target": "Y", "branch": "yes"},
                    {"source": "W", "target": "N"},
                ],
            }
        )
        assert version.next_node_id("W", "yes") == "Y"
        assert version.next_node_id("W", "maybe") == "N"
        assert version.next_node_id("W") == "N"

    def test_no_outgoing_connection_ends(self):
        version = build(quiz_flow())
        assert version.next_node_id("T") is None


class TestLint:
    """Warnings for valid graphs"""

    def test_reachable_and_cycles(self):
        version = build(quiz_flow())
        assert reachable_nodes(version) == {"M", "C", "T", "W"}
        assert any(set(cycle) == {"C", "W"} for cycle in find_cycles(version))
        assert lint(version) == []

    def test_orphan_and_busy_loop(self):
        """Test unreachable nodes and cycles without a wait node"""
        version = build(
            {
                "workflow_id": "wf",
                "entry_node_id": "A",
                "nodes": [
                    node("A", "session_op", operation="increment", key="n"),
                    node("B", "session_op", operation="increment", key="n"),
                    node("Z", "terminal"),
                ],
                "connections": [
                    {"source": "A", "target": "B"},
                    {"source": "B", "target": "A"},
                ],
            }
        )
        warnings = lint(version)
        assert any("'Z' is not reachable" in w for w in warnings)
        assert any("cycle without a wait node" in w for w in warnings)


def test_resume_event_value():
    """Test callback data wins over text, text over payload"""
    assert ResumeEvent(text="hi", callback_data="yes").value == "yes"
    assert ResumeEvent(text="hi").value == "hi"
    assert ResumeEvent(payload={"phone": "+1"}).value == {"phone": "+1"}
    assert ResumeEvent().value is None
