"""
Utilities for string interpolation using environment variables.
"""
import logging
import re
from typing import Dict, Optional, Set

logger = logging.getLogger(__name__)

# ${VAR} | ${VAR:-default} | ${VAR-default} | ${VAR:+alt} | $VAR
_VARIABLE = (
    r'\$\{(?P<braced>[A-Za-z_][A-Za-z0-9_]*)(?:(?P<colon>:?)(?P<op>[-+?])(?P<alt>[^}]*))?\}'
    r'|\$(?P<bare>[A-Za-z_][A-Za-z0-9_]*)'
)
# compose files escape a dollar sign as $$, stage definitions as \$
_PATTERNS = {
    '$$': re.compile(r'\$\$|' + _VARIABLE),
    '\\$': re.compile(r'\\\$|' + _VARIABLE),
}


class EnvironmentInterpolator:
    """
    Utility for interpolating environment variables in strings.
    Supports $VAR, ${VAR}, ${VAR:-default}, ${VAR-default}, ${VAR:+value},
    ${VAR:?message} and an escaped dollar sign ($$ by default).
    """
    @staticmethod
    def interpolate(template: str,
                    context: Dict[str, str],
                    strict: bool = False,
                    missing: Optional[Set[str]] = None,
                    escape: str = '$$') -> str:
        """
        Interpolates environment variables in the template string using the provided context.

        :param template: The string containing ${VAR} placeholders.
        :param context: The environment variables context.
        :param strict: Raise instead of substituting an empty string for unset variables.
        :param missing: If given, names of unset variables are added to it.
        :param escape: Sequence standing for a literal dollar sign, '$$' or '\\$'.
        :return: The interpolated string.
        :raises KeyError: If strict and a variable is unset with no default,
            or if a ${VAR:?message} variable is unset.
        """
        def replace(match):
            if match.group(0) == escape:
                return '$'

            name = match.group('braced') or match.group('bare')
            op = match.group('op')
            alt = match.group('alt') or ''
            value = context.get(name)
            # with ':' an empty value counts as unset
            unset = value is None or (match.group('colon') == ':' and value == '')

            if op == '-':
                return alt if unset else value
            if op == '+':
                return '' if unset else alt
            if op == '?':
                if unset:
                    raise KeyError(alt or f"Variable {name} is required")
                return value

            if value is None:
                if strict:
                    raise KeyError(f"Variable {name} not found in context")
                if missing is not None:
                    missing.add(name)
                return ''
            return value

        return _PATTERNS[escape].sub(replace, template)
