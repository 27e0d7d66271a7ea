"""
Unit tests for variable definitions and their type-driven validation.
"""
import pytest
from pydantic import ValidationError

from stackpilot.MODELS.variable_definition import SelectOption, VariableDefinition, VariableType


class TestVariableType:
    """Tests for the type tag."""

    def test_parse_is_case_insensitive(self):
        assert VariableType("password") == VariableType.PASSWORD
        assert VariableType("POSTGRESCONNECTIONSTRING") == VariableType.POSTGRES_CONNECTION_STRING

    def test_unknown_tag(self):
        with pytest.raises(ValueError):
            VariableType("Color")

    def test_connection_string_family(self):
        assert VariableType.REDIS_CONNECTION_STRING.is_connection_string
        assert VariableType.CONNECTION_STRING.is_connection_string
        assert not VariableType.STRING.is_connection_string


class TestVariableDefinition:
    """Tests for VariableDefinition."""

    def test_required_follows_default(self):
        assert VariableDefinition(name="A").required
        assert not VariableDefinition(name="A", default="x").required
        assert VariableDefinition(name="A", default="x", required=True).required

    def test_default_is_text(self):
        assert VariableDefinition(name="PORT", default=8080).default == "8080"
        assert VariableDefinition(name="FLAG", default=True).default == "true"

    def test_blank_name_rejected(self):
        with pytest.raises(ValidationError):
            VariableDefinition(name="  ")

    def test_required_value_missing(self):
        result = VariableDefinition(name="DB_PASSWORD", label="Database password").validate_value("")
        assert not result.is_valid
        assert result.errors == ["Database password is required."]

    def test_optional_blank_is_valid(self):
        assert VariableDefinition(name="A", default="").validate_value(None).is_valid

    def test_number_bounds(self):
        variable = VariableDefinition(name="WORKERS", type="Number", min=1, max=8, default="2")
        assert variable.validate_value("4").is_valid
        assert variable.validate_value("0").errors == ["WORKERS must be at least 1."]
        assert variable.validate_value("9").errors == ["WORKERS must be at most 8."]
        assert variable.validate_value("many").errors == ["WORKERS must be a valid number."]

    def test_port_range(self):
        variable = VariableDefinition(name="PORT", type=VariableType.PORT)
        assert variable.validate_value("8080").is_valid
        assert not variable.validate_value("70000").is_valid
        assert not variable.validate_value("80.5").is_valid

    def test_boolean(self):
        variable = VariableDefinition(name="DEBUG", type="Boolean", default="false")
        assert variable.validate_value("TRUE").is_valid
        assert not variable.validate_value("yes").is_valid

    def test_select(self):
        variable = VariableDefinition(
            name="MODE", type="Select",
            options=[SelectOption(value="dev"), SelectOption(value="prod", label="Production")],
        )
        assert variable.validate_value("prod").is_valid
        assert variable.validate_value("test").errors == ["MODE must be one of: dev, prod."]

    def test_pattern_with_custom_error(self):
        variable = VariableDefinition(name="TAG", pattern=r"^v\d+$", pattern_error="Tag must look like v1")
        assert variable.validate_value("v12").is_valid
        assert variable.validate_value("latest").errors == ["Tag must look like v1"]

    def test_invalid_pattern_skips_check(self):
        assert VariableDefinition(name="TAG", pattern="([").validate_value("anything").is_valid

    def test_url_and_email(self):
        url = VariableDefinition(name="URL", type="Url")
        assert url.validate_value("https://example.com/path").is_valid
        assert not url.validate_value("example.com").is_valid
        email = VariableDefinition(name="MAIL", type="Email")
        assert email.validate_value("ops@example.com").is_valid
        assert not email.validate_value("ops@").is_valid

    def test_connection_strings_only_checked_for_presence(self):
        variable = VariableDefinition(name="DB", type="PostgresConnectionString")
        assert variable.validate_value("anything goes").is_valid
        assert not variable.validate_value("").is_valid
