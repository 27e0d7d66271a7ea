"""
Utilities for substituting and detecting ${VAR} placeholders in manifest text.
"""
import re
from typing import Dict, List, Mapping, Optional, Tuple

from ..errors import UnresolvedVariable

# Group 1: escaped "$$"
# Group 2: VAR name
# Group 3: ":" when the modifier also applies to empty values
# Group 4: - or +
# Group 5: default or alternate value
PLACEHOLDER_PATTERN = re.compile(
    r'\$(?:(\$)|\{([A-Za-z_][A-Za-z0-9_.]*)(?:(:?)([-+])([^}]*))?\})'
)


class VariableResolver:
    """
    Substitutes and detects variable placeholders.
    Supports ${VAR}, ${VAR:-default}, ${VAR-default}, ${VAR:+value}, ${VAR+value}
    and $$ for a literal dollar sign.
    """

    @staticmethod
    def resolve(template: str, values: Mapping[str, Optional[str]]) -> str:
        """
        Replaces every placeholder in the template with its value.

        :param template: The text containing ${VAR} placeholders.
        :param values: Variable values by name.
        :return: The resolved text.
        :raises UnresolvedVariable: If a variable has no value and no default.
        """
        missing: List[str] = []

        def replace(match):
            """
            Internal replacement function for re.sub.
            """
            if match.group(1):
                return '$'
            var_name = match.group(2)
            colon = match.group(3)
            modifier = match.group(4)  # None, '-', or '+'
            alt_value = match.group(5)

            value = values.get(var_name)
            is_set = value is not None
            is_usable = bool(value) if colon else is_set

            if modifier == '-':
                return value if is_usable else alt_value
            if modifier == '+':
                return alt_value if is_usable else ''
            if is_set:
                return value
            missing.append(var_name)
            return match.group(0)

        resolved = PLACEHOLDER_PATTERN.sub(replace, template)
        if missing:
            raise UnresolvedVariable(missing)
        return resolved

    @staticmethod
    def detect(template: str) -> List[Tuple[str, Optional[str]]]:
        """
        Finds the variables referenced by a template.

        :param template: The text to scan.
        :return: (name, default) pairs in first-seen order, one per name.
                 The default is None when the variable is required.
        """
        found: Dict[str, Optional[str]] = {}
        for match in PLACEHOLDER_PATTERN.finditer(template):
            if match.group(1):
                continue
            name = match.group(2)
            modifier = match.group(4)
            if modifier == '-':
                default: Optional[str] = match.group(5)
            elif modifier == '+':
                default = ''
            else:
                default = None
            if name not in found or found[name] is None:
                found[name] = default
        return list(found.items())

    @staticmethod
    def references(template: str) -> List[str]:
        """
        Names of all variables referenced by a template, in first-seen order.
        """
        return [name for name, _ in VariableResolver.detect(template)]

    @staticmethod
    def has_placeholders(template: str) -> bool:
        """
        Checks whether a template references any variable.
        """
        return any(m.group(2) for m in PLACEHOLDER_PATTERN.finditer(template))


def split_outside_placeholders(value: str, separator: str = ':') -> List[str]:
    """
    Splits a string on a separator, ignoring separators inside ${...}.

    Example: "${DATA_DIR:-/srv}:/data:ro" -> ["${DATA_DIR:-/srv}", "/data", "ro"]
    """
    parts: List[str] = []
    current: List[str] = []
    depth = 0
    i = 0
    while i < len(value):
        char = value[i]
        if char == '$' and value[i + 1:i + 2] == '{':
            depth += 1
            current.append('${')
            i += 2
            continue
        if char == '}' and depth:
            depth -= 1
        elif char == separator and not depth:
            parts.append(''.join(current))
            current = []
            i += 1
            continue
        current.append(char)
        i += 1
    parts.append(''.join(current))
    return parts
