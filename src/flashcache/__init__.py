"""flashcache: similarity cache and resilient client for LLM flashcard generation.

``__version__`` is read from the installed distribution. It is sent upstream
in the User-Agent header and logged when a generation context starts.
"""

from __future__ import annotations

import warnings
from importlib.metadata import PackageNotFoundError, version

_DISTRIBUTION = "flashcache"
_FALLBACK_VERSION = "0.0.0+unknown"

try:
    __version__ = version(_DISTRIBUTION)
except PackageNotFoundError:
    warnings.warn(
        f"Package metadata for {_DISTRIBUTION!r} not found; "
        f"using fallback version {_FALLBACK_VERSION!r}.",
        RuntimeWarning,
        stacklevel=2,
    )
    __version__ = _FALLBACK_VERSION
