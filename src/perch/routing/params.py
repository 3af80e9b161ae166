"""Path parameter converters.

Segments are matched after splitting on ``/`` and percent-decoding, so a
converter never sees a separator it should stop at.

A converter restricts which segments a ``{name:conv}`` parameter accepts.
The regex runs during matching; conversion to the handler's annotated type
happens later, in the binder.
"""

import re

# converter name -> segment regex
CONVERTERS: dict[str, str] = {
    "str": r".+",
    "int": r"-?\d+",
    "float": r"-?\d+(?:\.\d+)?",
    "uuid": r"[0-9a-fA-F]{8}-?[0-9a-fA-F]{4}-?[0-9a-fA-F]{4}-?[0-9a-fA-F]{4}-?[0-9a-fA-F]{12}",
}

# Converters that consume the remainder of the path
WILDCARD_CONVERTERS: frozenset[str] = frozenset({"path"})


def compile_converter(name: str) -> re.Pattern[str]:
    """Return the compiled regex for converter *name*.

    Raises ``KeyError`` for an unknown converter.
    """
    return re.compile(CONVERTERS[name], re.DOTALL)
