"""
keyrotator
----------
Versioned key rotation for a Prio deployment.

Each locality has one packet encryption key and one batch signing key per
ingestor. A scheduled run rotates those keys according to an age-based policy,
writes them back to the key store, and republishes the public halves in each
ingestor's manifest.
"""

from .errors import KeyRotatorError
from .key import Key, KeyType, Material, RotationConfig, Version
from .manifest import DataShareProcessorSpecificManifest, IngestorGlobalManifest
from .rotator import RotateKeyConfig, RotateKeysConfig, rotate_keys

__version__ = "0.1.0"

__all__ = [
    "KeyRotatorError",
    "Key",
    "KeyType",
    "Material",
    "RotationConfig",
    "Version",
    "DataShareProcessorSpecificManifest",
    "IngestorGlobalManifest",
    "RotateKeyConfig",
    "RotateKeysConfig",
    "rotate_keys",
]
