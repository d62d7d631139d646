"""Tests for the action catalog and executor."""

import pytest

from loop_kernel.action import Action, ActionValidationError, create_action
from loop_kernel.controller import (
    ActionCatalog,
    Capability,
    Controller,
    ControllerError,
    ExecutionResult,
    validate_parameters,
)


def boom(action):
    raise ValueError("handler bug")


def flaky(action):
    raise TimeoutError("upstream timed out")


class TestCatalog:
    def test_register_and_lookup(self, catalog):
        assert catalog.names() == ["echo", "search"]
        assert catalog.get("echo").name == "echo"
        assert catalog.get("missing") is None
        assert catalog.get(None) is None

    def test_duplicate_registration_rejected(self, catalog):
        with pytest.raises(ControllerError, match="already registered"):
            catalog.register(Capability("echo", "again", lambda a: ""))

    def test_without_returns_copy(self, catalog):
        reduced = catalog.without("search")

        assert reduced.names() == ["echo"]
        assert catalog.names() == ["echo", "search"]

    def test_describe_subset(self, catalog):
        described = catalog.describe(["search"])

        assert described == [{"name": "search", "description": "Search for a query", "parameters": {}}]


class TestValidateParameters:
    SCHEMA = {
        "path": {"type": "string", "required": True, "min_length": 1, "max_length": 10, "pattern": r"^[\w./]+$"},
        "limit": {"type": "integer", "min": 1, "max": 100},
    }

    def test_valid(self):
        assert validate_parameters({"path": "a/b.txt", "limit": 5}, self.SCHEMA) == []

    def test_errors_are_collected(self):
        errors = validate_parameters({"path": "this path is far too long", "limit": 0}, self.SCHEMA)

        assert "path must have length <= 10" in errors
        assert any("does not match pattern" in e for e in errors)
        assert "limit must be >= 1" in errors

    def test_missing_required_and_wrong_type(self):
        errors = validate_parameters({"limit": "ten"}, self.SCHEMA)

        assert "Missing required parameter: path" in errors
        assert "limit must be of type integer, got str" in errors

    def test_bool_is_not_an_integer(self):
        assert validate_parameters({"path": "x", "limit": True}, self.SCHEMA)


class TestController:
    def test_executes_approved_action(self, catalog):
        result = Controller(catalog).execute(create_action("echo", parameters={"text": "hi"}))

        assert result.success
        assert result.output == "echo:hi"
        assert result.action_type == "echo"

    def test_unknown_action_is_data_not_exception(self, catalog):
        result = Controller(catalog).execute(create_action("teleport"))

        assert not result.success
        assert "Unknown action type" in result.output

    def test_invalid_parameters_are_data(self, catalog):
        result = Controller(catalog).execute(create_action("echo", parameters={"text": 5}))

        assert not result.success
        assert result.output.startswith("Validation failed")

    def test_handler_bug_becomes_failed_result(self):
        controller = Controller(ActionCatalog([Capability("boom", "Always fails", boom)]))

        result = controller.execute(create_action("boom"))

        assert not result.success
        assert "ValueError: handler bug" in result.output

    def test_transient_handler_error_propagates(self):
        controller = Controller(ActionCatalog([Capability("flaky", "Times out", flaky)]))

        with pytest.raises(TimeoutError):
            controller.execute(create_action("flaky"))

    def test_handler_may_report_failure_itself(self):
        def refuse(action):
            return ExecutionResult.failure(action, "quota exhausted")

        controller = Controller(ActionCatalog([Capability("refuse", "Refuses", refuse)]))

        result = controller.execute(create_action("refuse"))

        assert not result.success
        assert result.output == "quota exhausted"

    def test_structured_output_is_rendered(self):
        controller = Controller(ActionCatalog([Capability("stats", "Stats", lambda a: {"b": 2, "a": 1})]))

        result = controller.execute(create_action("stats"))

        assert result.output == '{"a": 1, "b": 2}'


class TestActions:
    def test_create_action_validates(self):
        with pytest.raises(ActionValidationError):
            create_action("")

        with pytest.raises(ActionValidationError):
            create_action("echo", parameters=["not", "a", "dict"])

    def test_from_dict_does_not_validate(self):
        action = Action.from_dict({"parameters": "oops"})

        assert action.action_type is None
        assert action.parameters == "oops"

    def test_json_roundtrip(self):
        action = create_action("echo", "notes.txt", {"text": "hi"}, action_id="a1")

        assert Action.from_json(action.to_json()) == action

    def test_actions_are_frozen(self):
        action = create_action("echo")

        with pytest.raises((AttributeError, TypeError)):
            action.action_type = "other"
