"""
Parsing of compose-style durations such as "30s", "1m30s" or "500ms".
"""
import re
from typing import Union

_UNITS = {
    'us': 0.000001,
    'ms': 0.001,
    's': 1.0,
    'm': 60.0,
    'h': 3600.0,
}
_PART = re.compile(r'(\d+(?:\.\d+)?)(us|ms|s|m|h)')


def parse_duration(value: Union[str, int, float]) -> float:
    """
    Converts a duration into seconds. Plain numbers are taken as seconds.

    :raises ValueError: If the string is not a valid duration.
    """
    if isinstance(value, (int, float)):
        return float(value)

    text = value.strip()
    try:
        return float(text)
    except ValueError:
        pass

    pos = 0
    total = 0.0
    for match in _PART.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _UNITS[match.group(2)]
        pos = match.end()

    if pos != len(text) or not text:
        raise ValueError(f"Invalid duration: {value!r}")
    return total
