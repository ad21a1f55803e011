# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""Tests for the workflow definition store"""

import json

import pytest
import yaml

from loyaltyflow.core.cache import DefinitionCache
from loyaltyflow.core.definitions import DefinitionStore
from loyaltyflow.core.exceptions import DefinitionError

from flows import caller_flow, chain_flow, double_flow, quiz_flow


class TestDefinitionStore:
    """Publishing, activation and lookup of versions"""

    def test_publish_assigns_versions(self, definitions):
        """Test each publish creates the next version and activates it"""
        first = definitions.publish(quiz_flow())
        second = definitions.publish(quiz_flow())

        assert (first.version, second.version) == (1, 2)
        assert second.is_active
        assert definitions.active_version_number("quiz") == 2
        assert definitions.get_version("quiz").version == 2

    def test_versions_are_immutable_files(self, definitions):
        """Test a version is stored once as JSON"""
        definitions.publish(quiz_flow())
        version_file = definitions.storage_path / "quiz" / "v1.json"
        data = json.loads(version_file.read_text())
        assert data["workflow_id"] == "quiz"
        assert data["entry_node_id"] == "M"
        assert "is_active" not in data

    def test_publish_without_activation(self, definitions):
        definitions.publish(quiz_flow())
        candidate = definitions.publish(quiz_flow(), activate=False)

        assert not candidate.is_active
        assert definitions.get_version("quiz").version == 1
        assert definitions.get_version("quiz", 2).version == 2

    def test_activate_rolls_back(self, definitions):
        """Test activating an older version"""
        definitions.publish(quiz_flow())
        definitions.publish(quiz_flow())
        activated = definitions.activate("quiz", 1)

        assert activated.is_active
        assert [v.is_active for v in definitions.list_versions("quiz")] == [True, False]

    def test_id_alias(self, definitions):
        """Test ``id`` is accepted in place of ``workflow_id``"""
        definition = quiz_flow()
        definition["id"] = definition.pop("workflow_id")
        assert definitions.publish(definition).workflow_id == "quiz"

    @pytest.mark.parametrize("workflow_id", [None, "", "../escape", "has space"])
    def test_invalid_workflow_id(self, definitions, workflow_id):
        definition = quiz_flow()
        definition["workflow_id"] = workflow_id
        with pytest.raises(DefinitionError):
            definitions.publish(definition)

    def test_invalid_definition_is_not_stored(self, definitions):
        definition = quiz_flow()
        definition["entry_node_id"] = "missing"
        with pytest.raises(DefinitionError):
            definitions.publish(definition)
        assert definitions.list_versions("quiz") == []

    def test_empty_condition_group_is_rejected(self, definitions):
        definition = quiz_flow()
        definition["nodes"][1]["config"]["expression"] = {"operator": "and", "conditions": []}
        with pytest.raises(DefinitionError):
            definitions.publish(definition)
        assert definitions.list_versions("quiz") == []

    def test_unknown_lookups(self, definitions):
        """Test missing workflows, versions and bad references"""
        with pytest.raises(DefinitionError):
            definitions.get_version("nope")
        definitions.publish(quiz_flow())
        with pytest.raises(DefinitionError):
            definitions.get_version("quiz", 9)
        with pytest.raises(DefinitionError):
            definitions.get_version("quiz", "latest")

    def test_reload_from_disk(self, definitions):
        """Test a fresh store reads what another one published"""
        definitions.publish(quiz_flow())
        fresh = DefinitionStore(definitions.storage_path, cache=DefinitionCache())

        version = fresh.get_version("quiz")
        assert version.version == 1
        assert version.is_active
        assert fresh.list_workflows() == ["quiz"]

    def test_publish_yaml_file(self, definitions, tmp_path):
        """Test publishing from a YAML source file"""
        source = tmp_path / "quiz.yaml"
        source.write_text(yaml.safe_dump(quiz_flow()))
        assert definitions.publish_file(source).id == "quiz@1"


class TestCheck:
    """Validation without publishing"""

    def test_check_does_not_store(self, definitions):
        version, warnings = definitions.check(quiz_flow())
        assert version.version == 1
        assert warnings == []
        assert definitions.list_workflows() == []

    def test_unpublished_sub_workflow_warning(self, definitions):
        _, warnings = definitions.check(caller_flow(child="missing"))
        assert any("'missing'" in w and "not published" in w for w in warnings)

    def test_published_sub_workflow(self, definitions):
        definitions.publish(double_flow())
        _, warnings = definitions.check(caller_flow())
        assert warnings == []

    def test_nesting_depth_warning(self, definitions):
        """Test a chain deeper than the limit is flagged"""
        for level in range(7, 0, -1):
            definitions.publish(chain_flow(level, last=7))
        _, warnings = definitions.check(chain_flow(0, last=7))
        assert any("nesting reaches depth" in w for w in warnings)
