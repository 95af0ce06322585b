"""
keyrotator.errors
-----------------
Exception taxonomy shared by every keyrotator component.

Every error raised deliberately by this package derives from KeyRotatorError,
so callers (the CLI, schedulers) can catch one type and still inspect the
concrete failure class when deciding how to report it.
"""

from __future__ import annotations


class KeyRotatorError(Exception):
    pass


# --------- configuration ----------
class ConfigValidationError(KeyRotatorError, ValueError):
    """Rotation policy or run configuration is invalid. Raised before any I/O."""


# --------- rotation ----------
class FutureVersionError(KeyRotatorError):
    """A key version has a creation timestamp after the rotation time."""


class GenerationFailure(KeyRotatorError):
    """New key material could not be generated."""


class KeyValidationError(KeyRotatorError):
    """A structural invariant of a Key was violated."""


# --------- serialization ----------
class SerializationError(KeyRotatorError, ValueError):
    pass


class EmptyInputError(SerializationError):
    pass


class UnknownKeyTypeError(SerializationError):
    pass


class MalformedKeyError(SerializationError):
    pass


# --------- storage ----------
class StoreIOError(KeyRotatorError):
    """A backing store failed to service a get or put."""


class ObjectNotFoundError(StoreIOError):
    pass


# --------- manifests / orchestration ----------
class ManifestValidationError(KeyRotatorError):
    pass


class DeadlineExceededError(KeyRotatorError):
    """The run deadline passed, or a sibling task failed and cancelled the run."""


def wrap(err: KeyRotatorError, context: str) -> KeyRotatorError:
    """Return an error of the same class as `err` with `context` prepended."""
    return type(err)(f"{context}: {err}")
