"""
Models for stack variables: type tags, select options and validation metadata.
"""
import math
import re
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, field_validator, model_validator


class VariableType(str, Enum):
    """
    Type tag of a variable. Validation and rendering dispatch on this tag.
    """
    STRING = "String"
    NUMBER = "Number"
    BOOLEAN = "Boolean"
    SELECT = "Select"
    PASSWORD = "Password"
    PORT = "Port"
    URL = "Url"
    EMAIL = "Email"
    PATH = "Path"
    MULTILINE = "MultiLine"
    CONNECTION_STRING = "ConnectionString"
    SQLSERVER_CONNECTION_STRING = "SqlServerConnectionString"
    POSTGRES_CONNECTION_STRING = "PostgresConnectionString"
    MYSQL_CONNECTION_STRING = "MySqlConnectionString"
    EVENTSTORE_CONNECTION_STRING = "EventStoreConnectionString"
    MONGO_CONNECTION_STRING = "MongoConnectionString"
    REDIS_CONNECTION_STRING = "RedisConnectionString"

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str):
            for member in cls:
                if member.value.lower() == value.lower():
                    return member
        return None

    @property
    def is_connection_string(self) -> bool:
        return self.value.endswith("ConnectionString")

    @property
    def is_numeric(self) -> bool:
        return self in (VariableType.NUMBER, VariableType.PORT)


class SelectOption(BaseModel):
    """
    One allowed value of a Select variable.
    """
    model_config = ConfigDict(frozen=True)

    value: str
    label: Optional[str] = None
    description: Optional[str] = None


class VariableValidationResult(BaseModel):
    """
    Outcome of validating a value against a variable definition.
    """
    is_valid: bool
    errors: List[str] = []


EMAIL_PATTERN = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')
URL_PATTERN = re.compile(r'^[A-Za-z][A-Za-z0-9+.-]*://[^\s/?#]+[^\s]*$')
BOOLEAN_VALUES = {"true", "false", "1", "0"}


class VariableDefinition(BaseModel):
    """
    A variable a stack manifest expects, with its type and validation constraints.
    """
    model_config = ConfigDict(frozen=True)

    name: str
    type: VariableType = VariableType.STRING
    default: Optional[str] = None
    required: bool = True
    label: Optional[str] = None
    description: Optional[str] = None
    pattern: Optional[str] = None
    pattern_error: Optional[str] = None
    options: List[SelectOption] = []
    min: Optional[float] = None
    max: Optional[float] = None
    placeholder: Optional[str] = None
    group: Optional[str] = None
    order: int = 0

    @field_validator("name")
    @classmethod
    def _name_not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("Variable name cannot be empty.")
        return value

    @field_validator("default", mode="before")
    @classmethod
    def _default_as_text(cls, value):
        # YAML hands us ints and bools for unquoted defaults
        if isinstance(value, bool):
            return "true" if value else "false"
        if value is not None and not isinstance(value, str):
            return str(value)
        return value

    @model_validator(mode="before")
    @classmethod
    def _derive_required(cls, data):
        # Without an explicit flag a variable is required when it has no default
        if isinstance(data, dict) and data.get("required") is None:
            data = {**data, "required": data.get("default") is None}
        return data

    @property
    def display_name(self) -> str:
        return self.label or self.name

    def validate_value(self, value: Optional[str]) -> VariableValidationResult:
        """
        Validates a value against this variable's constraints.

        :param value: The candidate value, None when not supplied.
        :return: The validation result.
        """
        errors: List[str] = []
        name = self.display_name

        if value is None or not str(value).strip():
            if self.required:
                errors.append(f"{name} is required.")
            return VariableValidationResult(is_valid=not errors, errors=errors)

        value = str(value)

        if self.type.is_numeric:
            errors.extend(self._validate_number(value))
        elif self.type == VariableType.BOOLEAN:
            if value.lower() not in BOOLEAN_VALUES:
                errors.append(f"{name} must be true or false.")
        elif self.type == VariableType.SELECT:
            allowed = [o.value for o in self.options]
            if allowed and value not in allowed:
                errors.append(f"{name} must be one of: {', '.join(allowed)}.")
        elif self.type in (VariableType.STRING, VariableType.PASSWORD, VariableType.MULTILINE):
            if self.pattern:
                try:
                    if not re.search(self.pattern, value):
                        errors.append(self.pattern_error or f"{name} does not match the required pattern.")
                except re.error:
                    # Invalid pattern in the manifest: nothing to check against
                    pass
        elif self.type == VariableType.URL:
            if not URL_PATTERN.match(value):
                errors.append(f"{name} must be a valid URL.")
        elif self.type == VariableType.EMAIL:
            if not EMAIL_PATTERN.match(value):
                errors.append(f"{name} must be a valid email address.")
        elif self.type == VariableType.PATH:
            if "\x00" in value:
                errors.append(f"{name} must be a valid path.")
        # Connection strings are only checked for presence

        return VariableValidationResult(is_valid=not errors, errors=errors)

    def _validate_number(self, value: str) -> List[str]:
        name = self.display_name
        try:
            number = float(value)
        except ValueError:
            return [f"{name} must be a valid number."]
        if math.isnan(number):
            return [f"{name} must be a valid number."]

        errors = []
        if self.min is not None and number < self.min:
            errors.append(f"{name} must be at least {self.min:g}.")
        if self.max is not None and number > self.max:
            errors.append(f"{name} must be at most {self.max:g}.")
        if self.type == VariableType.PORT and (number < 1 or number > 65535 or not number.is_integer()):
            errors.append(f"{name} must be a valid port (1-65535).")
        return errors
