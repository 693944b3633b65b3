"""Tests for step ordering, workflow validation and workflow storage."""

import pytest
from pydantic import ValidationError

from forgeflow.core.dag import find_cycle_steps, topological_order
from forgeflow.core.exceptions import WorkflowCycleError, WorkflowNotFoundError, WorkflowValidationError
from forgeflow.core.workflow_manager import WorkflowHistory, WorkflowManager, validate_workflow
from forgeflow.models.catalog import STEP_CATALOG, check_connection
from forgeflow.models.core import StepType, Workflow

from conftest import make_workflow


@pytest.fixture
def workflow_manager(temp_db):
    """Create a WorkflowManager instance for testing."""
    return WorkflowManager()


def build_release_workflow(**kwargs):
    return make_workflow(
        [
            ("timer", "timer", {"mode": "daily", "time": "09:00", "enabled": True}),
            ("build", "build"),
            ("release", "release"),
        ],
        [("timer", "build"), ("build", "release")],
        **kwargs
    )


class TestTopologicalOrder:
    """Test cases for execution ordering."""

    def test_every_step_follows_its_predecessors(self):
        """Test ordering of a diamond."""
        workflow = make_workflow(
            [("d", "command"), ("b", "command"), ("c", "command"), ("a", "command")],
            [("a", "b"), ("a", "c"), ("b", "d"), ("c", "d")],
        )
        order = [step.id for step in topological_order(workflow.steps, workflow.connections)]
        assert order[0] == "a"
        assert order[-1] == "d"
        for connection in workflow.connections:
            assert order.index(connection.from_step) < order.index(connection.to_step)

    def test_ready_steps_keep_document_order(self):
        """Test that unconnected steps run in list order."""
        workflow = make_workflow([("one", "command"), ("two", "command"), ("three", "command")])
        assert [s.id for s in topological_order(workflow.steps, workflow.connections)] == ["one", "two", "three"]

    def test_cycle_is_rejected(self):
        """Test that a cycle raises and names the stuck steps."""
        workflow = make_workflow(
            [("start", "command"), ("a", "command"), ("b", "command")],
            [("start", "a"), ("a", "b"), ("b", "a")],
        )
        with pytest.raises(WorkflowCycleError) as exc_info:
            topological_order(workflow.steps, workflow.connections)
        assert sorted(exc_info.value.step_ids) == ["a", "b"]
        assert sorted(find_cycle_steps(workflow.steps, workflow.connections)) == ["a", "b"]

    def test_empty_workflow(self):
        """Test that an empty workflow orders to nothing."""
        assert topological_order([], []) == []


class TestWorkflowModel:
    """Test cases for structural rules enforced by the document model."""

    def test_duplicate_step_ids(self):
        """Test that step ids must be unique."""
        with pytest.raises(ValidationError):
            make_workflow([("a", "command"), ("a", "build")])

    def test_connection_to_unknown_step(self):
        """Test that both connection endpoints must exist."""
        with pytest.raises(ValidationError):
            make_workflow([("a", "command")], [("a", "missing")])

    def test_duplicate_connection(self):
        """Test that an ordered pair may only be connected once."""
        with pytest.raises(ValidationError):
            make_workflow([("a", "command"), ("b", "command")], [("a", "b"), ("a", "b")])

    def test_self_connection(self):
        """Test that a step cannot connect to itself."""
        with pytest.raises(ValidationError):
            make_workflow([("a", "command")], [("a", "a")])

    def test_unknown_step_type(self):
        """Test that step types come from the closed catalog."""
        with pytest.raises(ValidationError):
            make_workflow([("a", "deploy_to_mars")])

    def test_connection_aliases_round_trip(self):
        """Test that connections serialize with from/to keys."""
        workflow = make_workflow([("a", "command"), ("b", "command")], [("a", "b")])
        dumped = workflow.model_dump(mode="json", by_alias=True)
        assert dumped["connections"][0]["from"] == "a"
        assert Workflow.model_validate(dumped).connections[0].to_step == "b"


class TestValidation:
    """Test cases for workflow validation."""

    def test_valid_workflow(self):
        """Test a valid release workflow."""
        result = validate_workflow(build_release_workflow())
        assert result.is_valid
        assert result.errors == []

    def test_port_violations(self):
        """Test that edges into input-less or out of output-less steps are errors."""
        workflow = make_workflow([("release", "release"), ("link", "link")], [("release", "link")])
        result = validate_workflow(workflow)
        assert not result.is_valid
        assert any("no output ports" in error for error in result.errors)
        assert any("no input ports" in error for error in result.errors)

    def test_cycle_is_an_error(self):
        """Test that cycles invalidate a workflow."""
        workflow = make_workflow([("a", "command"), ("b", "command")], [("a", "b"), ("b", "a")])
        assert not validate_workflow(workflow).is_valid

    def test_misconfigured_enabled_timer(self):
        """Test that an enabled timer lacking its mode parameters is an error."""
        workflow = make_workflow([("timer", "timer", {"mode": "weekly", "enabled": True})])
        result = validate_workflow(workflow)
        assert not result.is_valid
        assert "day_of_week" in result.errors[0]

    def test_disabled_timer_is_not_checked(self):
        """Test that a disabled timer may be incomplete."""
        workflow = make_workflow([("timer", "timer", {"mode": "weekly", "enabled": False})])
        assert validate_workflow(workflow).is_valid

    def test_invalid_timer_value(self):
        """Test that an unparsable timer config is reported, not raised."""
        workflow = make_workflow([("timer", "timer", {"mode": "daily", "time": "25:99", "enabled": True})])
        result = validate_workflow(workflow)
        assert not result.is_valid
        assert "invalid configuration" in result.errors[0]

    def test_warnings(self):
        """Test non-blocking warnings."""
        workflow = make_workflow([("act", "action"), ("cmd", "command"), ("rel", "release")])
        result = validate_workflow(workflow)
        assert result.is_valid
        assert len(result.warnings) == 3
        assert validate_workflow(make_workflow([])).warnings == ["Workflow has no steps"]


class TestCatalog:
    """Test cases for the step catalog."""

    def test_catalog_covers_every_step_type(self):
        """Test that every step type has a catalog entry."""
        assert set(STEP_CATALOG) == set(StepType)

    def test_check_connection(self):
        """Test connection checks against ports."""
        workflow = make_workflow([("timer", "timer"), ("build", "build"), ("link", "link")], [("timer", "build")])
        assert check_connection(workflow, "build", "timer") == "Step type 'timer' has no input ports"
        assert "already exists" in check_connection(workflow, "timer", "build")
        assert check_connection(workflow, "nope", "build") == "Unknown source step: nope"
        assert check_connection(workflow, "link", "build") is None


class TestWorkflowHistory:
    """Test cases for the undo/redo stack."""

    def test_undo_redo(self):
        """Test undo then redo restores the edited state."""
        history = WorkflowHistory()
        original = make_workflow([("a", "command")])
        edited = make_workflow([("a", "command"), ("b", "command")])

        history.push(original)
        restored = history.undo(edited)
        assert [s.id for s in restored.steps] == ["a"]
        assert history.can_redo
        assert [s.id for s in history.redo(restored).steps] == ["a", "b"]

    def test_limit(self):
        """Test that only the most recent snapshots are kept."""
        history = WorkflowHistory(limit=3)
        for index in range(5):
            history.push(make_workflow([], name=f"v{index}"))
        assert len(history) == 3

    def test_push_clears_redo(self):
        """Test that a new edit discards redo states."""
        history = WorkflowHistory()
        history.push(make_workflow([]))
        history.undo(make_workflow([], name="edited"))
        history.push(make_workflow([], name="other"))
        assert not history.can_redo

    def test_empty_history(self):
        """Test undo and redo without history."""
        history = WorkflowHistory()
        current = make_workflow([])
        assert history.undo(current) is None
        assert history.redo(current) is None


class TestWorkflowManager:
    """Test cases for WorkflowManager."""

    def test_create_and_get(self, workflow_manager):
        """Test storing and loading a workflow."""
        workflow_manager.create_workflow(build_release_workflow())
        loaded = workflow_manager.get_workflow("wf-1")
        assert loaded.name == "Demo workflow"
        assert [c.key for c in loaded.connections] == [("timer", "build"), ("build", "release")]
        assert loaded.steps[0].config["time"] == "09:00"

    def test_create_duplicate(self, workflow_manager):
        """Test that ids are unique."""
        workflow_manager.create_workflow(build_release_workflow())
        with pytest.raises(WorkflowValidationError):
            workflow_manager.create_workflow(build_release_workflow())

    def test_create_invalid(self, workflow_manager):
        """Test that invalid workflows are not stored."""
        workflow = make_workflow([("a", "command"), ("b", "command")], [("a", "b"), ("b", "a")])
        with pytest.raises(WorkflowValidationError) as exc_info:
            workflow_manager.create_workflow(workflow)
        assert exc_info.value.details["validation_errors"]
        with pytest.raises(WorkflowNotFoundError):
            workflow_manager.get_workflow("wf-1")

    def test_list_workflows(self, workflow_manager):
        """Test workflow summaries."""
        workflow_manager.create_workflow(build_release_workflow())
        workflow_manager.create_workflow(make_workflow([("cmd", "command", {"command": "make"})], id="wf-2"))
        summaries = workflow_manager.list_workflows()
        assert [(s.id, s.step_count) for s in summaries] == [("wf-1", 3), ("wf-2", 1)]

    def test_update_and_undo_redo(self, workflow_manager):
        """Test that updates can be undone and redone."""
        workflow_manager.create_workflow(build_release_workflow())
        edited = workflow_manager.get_workflow("wf-1")
        edited.name = "Renamed"
        workflow_manager.update_workflow(edited)

        assert workflow_manager.undo("wf-1").name == "Demo workflow"
        assert workflow_manager.get_workflow("wf-1").name == "Demo workflow"
        assert workflow_manager.redo("wf-1").name == "Renamed"
        assert workflow_manager.redo("wf-1") is None

    def test_add_connection(self, workflow_manager):
        """Test that connections are checked against the catalog."""
        workflow_manager.create_workflow(make_workflow([("link", "link"), ("download", "download")]))
        updated = workflow_manager.add_connection("wf-1", "link", "download")
        assert [c.key for c in updated.connections] == [("link", "download")]
        assert updated.connections[0].id

        with pytest.raises(WorkflowValidationError):
            workflow_manager.add_connection("wf-1", "download", "link")

    def test_delete(self, workflow_manager):
        """Test deleting a workflow."""
        workflow_manager.create_workflow(build_release_workflow())
        workflow_manager.delete_workflow("wf-1")
        with pytest.raises(WorkflowNotFoundError):
            workflow_manager.delete_workflow("wf-1")

    def test_record_release(self, workflow_manager):
        """Test that a release advances the stored next version without touching history."""
        workflow_manager.create_workflow(build_release_workflow())
        updated = workflow_manager.record_release("wf-1", "1.0.0")
        assert updated.next_version == "1.0.1"
        assert workflow_manager.get_workflow("wf-1").next_version == "1.0.1"
        assert not workflow_manager.history("wf-1").can_undo
        assert workflow_manager.record_release("unknown", "1.0.0") is None
