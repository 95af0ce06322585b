# keyrotator/key/__init__.py

from .key import Key, RotationConfig, Version
from .material import KeyType, Material, generate

__all__ = [
    "Key",
    "KeyType",
    "Material",
    "RotationConfig",
    "Version",
    "generate",
]
