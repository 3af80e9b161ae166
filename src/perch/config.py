"""Application configuration.

AppConfig is a frozen dataclass: immutable after creation, no string-key
dict lookups.
"""

from dataclasses import dataclass, field

from perch.codecs import Codec, JSONCodec


@dataclass(frozen=True, slots=True)
class AppConfig:
    """Application configuration. Immutable after creation.

    All fields have sensible defaults. Override what you need::

        config = AppConfig(debug=True, max_content_length=1024 * 1024)
    """

    # Include exception summaries in 500 responses
    debug: bool = False

    # Request/response body codec
    codec: Codec = field(default_factory=JSONCodec)

    # Walk the dependency graph at startup and fail fast on missing
    # registrations, cycles and lifetime violations
    validate_dependencies: bool = True

    # Request bodies larger than this are rejected with 413 (None = no limit)
    max_content_length: int | None = 16 * 1024 * 1024
