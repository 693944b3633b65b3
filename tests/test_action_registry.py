"""Tests for the reusable-action registry."""

import pytest
from pydantic import ValidationError

from forgeflow.core.action_registry import ActionRegistry, render_action_script, resolve_action_inputs
from forgeflow.core.exceptions import ActionNotFound, ActionRegistryError
from forgeflow.models.core import ActionInput, ReusableAction


@pytest.fixture
def action_registry(temp_db):
    """Create an ActionRegistry instance for testing."""
    return ActionRegistry()


@pytest.fixture
def deploy_action():
    return ReusableAction(
        name="deploy",
        description="Upload the build to a host",
        script='scp -r dist "$TARGET_HOST:/srv/app"',
        inputs=[
            ActionInput(name="TARGET_HOST", required=True),
            ActionInput(name="CHANNEL", default="stable"),
        ],
    )


class TestActionRegistry:
    """Test cases for ActionRegistry."""

    def test_register_and_get(self, action_registry, deploy_action):
        """Test action registration and retrieval."""
        action_registry.register_action(deploy_action)
        action_registry.clear_cache()

        loaded = action_registry.get_action("deploy")
        assert loaded.script == deploy_action.script
        assert [i.name for i in loaded.inputs] == ["TARGET_HOST", "CHANNEL"]
        assert loaded.inputs[0].required

    def test_duplicate_name(self, action_registry, deploy_action):
        """Test that names are unique unless replacing."""
        action_registry.register_action(deploy_action)
        with pytest.raises(ActionRegistryError):
            action_registry.register_action(deploy_action)

        replaced = deploy_action.model_copy(update={"script": "echo replaced"})
        action_registry.register_action(replaced, replace=True)
        action_registry.clear_cache()
        assert action_registry.get_action("deploy").script == "echo replaced"

    def test_missing_action(self, action_registry):
        """Test lookups of unknown or unselected actions."""
        with pytest.raises(ActionNotFound):
            action_registry.get_action("nope")
        with pytest.raises(ActionNotFound):
            action_registry.get_action("")

    def test_list_and_delete(self, action_registry, deploy_action):
        """Test listing and deleting actions."""
        action_registry.register_action(deploy_action)
        action_registry.register_action(ReusableAction(name="build-docs", script="mkdocs build"))
        assert [a.name for a in action_registry.list_actions()] == ["build-docs", "deploy"]

        action_registry.delete_action("deploy")
        with pytest.raises(ActionNotFound):
            action_registry.get_action("deploy")
        with pytest.raises(ActionNotFound):
            action_registry.delete_action("deploy")

    def test_input_names_must_be_env_names(self):
        """Test that input names must be valid environment variable names."""
        with pytest.raises(ValidationError):
            ActionInput(name="target-host")


class TestActionInputs:
    """Test cases for input resolution and script rendering."""

    def test_resolve_values_and_defaults(self, deploy_action):
        """Test configured values, defaults and missing required inputs."""
        values, missing = resolve_action_inputs(deploy_action, {"TARGET_HOST": "build01"})
        assert values == {"TARGET_HOST": "build01", "CHANNEL": "stable"}
        assert missing == []

        values, missing = resolve_action_inputs(deploy_action, {"TARGET_HOST": ""})
        assert missing == ["TARGET_HOST"]

    def test_render_quotes_values(self, deploy_action):
        """Test that input values are exported shell-quoted before the script."""
        script = render_action_script(deploy_action, {"TARGET_HOST": "it's me", "CHANNEL": "beta"})
        lines = script.splitlines()
        assert lines[0] == "export TARGET_HOST='it'\"'\"'s me'"
        assert lines[1] == "export CHANNEL=beta"
        assert lines[2] == deploy_action.script
