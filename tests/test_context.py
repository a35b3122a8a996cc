"""Tests for run configuration, declarations and the run context."""

import pytest
from pydantic import BaseModel, ValidationError

from codeloop.core.config import LoopConfig, response_length_buffer
from codeloop.core.context import Context, strip_invalid_identifiers
from codeloop.core.declarations import Exit, ObjectInstance, Property, Tool
from codeloop.core.records import Iteration, TranscriptMessage


# ---------------------------------------------------------------------------
# LoopConfig
# ---------------------------------------------------------------------------


@pytest.mark.unit
class TestLoopConfig:
    def test_defaults(self):
        """Defaults are three iterations at temperature 0.7 with no model."""
        config = LoopConfig()
        assert config.loop == 3
        assert config.temperature == 0.7
        assert config.model is None

    @pytest.mark.parametrize("loop", [0, -1, 1.5, True])
    def test_rejects_bad_loop(self, loop):
        """Non-positive and non-integer loop budgets are rejected."""
        with pytest.raises(ValueError):
            LoopConfig(loop=loop)

    def test_from_dict_ignores_none(self):
        """None values in an options dict keep the defaults."""
        config = LoopConfig.from_options({"loop": 5, "model": None})
        assert config.loop == 5
        assert config.model is None

    def test_from_config_is_identity(self):
        """A LoopConfig passed as options is used as-is."""
        config = LoopConfig(loop=2)
        assert LoopConfig.from_options(config) is config

    @pytest.mark.parametrize(
        "length,expected", [(0, 1_000), (50_000, 5_000), (1_000_000, 16_000)]
    )
    def test_response_length_buffer(self, length, expected):
        """Response buffer scales with the model limit within its bounds."""
        assert response_length_buffer(length) == expected

    def test_input_token_budget(self):
        """Input budget is the model limit minus the response buffer."""
        assert LoopConfig(model_token_limit=100_000).input_token_budget == 90_000


# ---------------------------------------------------------------------------
# Declarations
# ---------------------------------------------------------------------------


class Payload(BaseModel):
    answer: int


@pytest.mark.unit
class TestDeclarations:
    def test_tool_names_must_be_identifiers(self):
        """Tool names and aliases must be public identifiers."""
        with pytest.raises(ValueError):
            Tool("not valid", lambda x: x)
        with pytest.raises(ValueError):
            Tool("ok", lambda x: x, aliases=("_hidden",))

    def test_tool_schemas(self):
        """Input and output annotations become JSON schemas."""
        tool = Tool("count", len, input=list[str], output=int)
        assert tool.input_schema == {"items": {"type": "string"}, "type": "array"}
        assert tool.output_schema == {"type": "integer"}
        assert Tool("any", len).input_schema == {}

    def test_tool_coercion_is_best_effort(self):
        """Invalid input is passed through, valid input is coerced."""
        tool = Tool("t", len, input=int, output=int)
        assert tool.coerce_input("3") == 3
        assert tool.coerce_input("three") == "three"
        assert tool.coerce_output("7") == 7

    def test_tool_signature(self):
        """Signature line includes the description."""
        tool = Tool("lookup", len, description="Find a user")
        assert tool.signature() == "lookup(input) -> output  # Find a user"

    def test_property_validation(self):
        """Typed properties coerce and reject values."""
        prop = Property("count", 0, writable=True, type=int)
        assert prop.validate("4") == 4
        with pytest.raises(ValidationError):
            prop.validate("four")

    def test_object_rejects_duplicate_members(self):
        """A property and a tool cannot share a name."""
        with pytest.raises(ValueError, match="Duplicate member"):
            ObjectInstance(
                "o",
                properties=[Property("x")],
                tools=[Tool("x", len)],
            )

    def test_object_property_values_dump_models(self):
        """Model-valued properties are dumped to dicts."""
        obj = ObjectInstance("o", properties=[Property("p", Payload(answer=1))])
        assert obj.property_values() == {"p": {"answer": 1}}

    def test_exit_matching_and_validation(self):
        """Exits match name or alias and validate their payload."""
        done = Exit("done", schema=Payload, aliases=("finish",))
        assert done.matches("done") and done.matches("finish")
        assert not done.matches("other")
        assert done.validate({"answer": "2"}) == Payload(answer=2)
        with pytest.raises(ValidationError):
            done.validate({"answer": "x"})
        assert done.payload_schema["properties"]["answer"]["type"] == "integer"

    def test_exit_without_schema_accepts_anything(self):
        """Schema-less exits return the payload untouched."""
        assert Exit("any").validate({"x": object}) == {"x": object}


# ---------------------------------------------------------------------------
# Context
# ---------------------------------------------------------------------------


@pytest.mark.unit
class TestContext:
    def test_option_overrides(self):
        """Options and keyword arguments override the defaults."""
        ctx = Context(options={"loop": 4, "temperature": 0.1}, model="gpt-x")
        assert ctx.loop == 4
        assert ctx.temperature == 0.1
        assert ctx.model == "gpt-x"
        assert ctx.iteration == 0

    def test_duplicate_names_rejected(self):
        """Tool, alias, object and exit names must be unique."""
        with pytest.raises(ValueError, match="Duplicate tool"):
            Context(tools=[Tool("a", len), Tool("b", len, aliases=("a",))])
        with pytest.raises(ValueError, match="Duplicate exit"):
            Context(exits=[Exit("done"), Exit("done")])
        with pytest.raises(ValueError, match="Duplicate tool"):
            Context(tools=[Tool("account", len)], objects=[ObjectInstance("account")])

    def test_lookups(self):
        """Tools, objects and exits are found by name or alias."""
        ctx = Context(
            tools=[Tool("add", len, aliases=("plus",))],
            objects=[ObjectInstance("cart")],
            exits=[Exit("done", aliases=("finish",))],
        )
        assert ctx.get_tool("plus").name == "add"
        assert ctx.get_object("cart").name == "cart"
        assert ctx.get_exit("finish").name == "done"
        assert ctx.get_tool("missing") is None

    def test_messages_order(self):
        """System prompt, transcript, then partial messages."""
        ctx = Context(
            instructions="Be helpful",
            transcript=[{"role": "user", "content": "hi"}],
        )
        ctx.add_partial_message(TranscriptMessage(role="assistant", content="draft"))
        messages = ctx.get_messages()
        assert [m.role for m in messages] == ["system", "user", "assistant"]
        assert "Be helpful" in messages[0].content
        assert messages[2].content == "draft"

    def test_object_state_round_trip(self):
        """Restoring a saved object state undoes later writes."""
        obj = ObjectInstance("cart", properties=[Property("count", 1, writable=True, type=int)])
        ctx = Context(objects=[obj])
        state = ctx.object_state()
        obj.properties[0].value = 9
        ctx.restore_object_state(state)
        assert obj.properties[0].value == 1

    def test_restore_keeps_raw_value_on_type_mismatch(self):
        """Unparseable saved values are restored raw; unknown objects are skipped."""
        obj = ObjectInstance("cart", properties=[Property("count", 1, type=int)])
        ctx = Context(objects=[obj])
        ctx.restore_object_state({"cart": {"count": "many"}, "unknown": {"x": 1}})
        assert obj.properties[0].value == "many"

    def test_strip_invalid_identifiers(self):
        """Only public identifiers survive."""
        kept = strip_invalid_identifiers({"ok": 1, "1bad": 2, "class": 3, "_x": 4})
        assert kept == {"ok": 1}


@pytest.mark.unit
class TestIteration:
    def test_error_fields_survive_serialization(self):
        """The error is dumped as message and type."""
        iteration = Iteration(id="i1", status="error", error=ValueError("bad"))
        dumped = iteration.model_dump()
        assert "error" not in dumped
        assert dumped["error_message"] == "bad"
        assert dumped["error_type"] == "ValueError"

    def test_exit_name(self):
        """exit_name reads the action of the return value."""
        iteration = Iteration(id="i1", status="success", return_value={"action": "done"})
        assert iteration.exit_name == "done"
