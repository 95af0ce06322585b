"""
keyrotator.key.key
------------------
Versioned keys and the rotation policy.

A Key holds every live version of some key material. The first version is the
"primary": it is used for new signatures and encryptions, while every version
remains valid for verification and decryption. Keys are immutable values;
`rotate()` returns a new Key rather than changing the receiver, so a Key can be
shared between threads without locking.
"""

from __future__ import annotations
import bisect, json
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Dict, Iterator, List, Optional

from ..errors import (
    ConfigValidationError, FutureVersionError, GenerationFailure,
    KeyValidationError, SerializationError,
)
from ..utils import Timestamp, semicolon_join, unix_seconds
from .material import Material


@dataclass(frozen=True)
class Version:
    """A single generation of key material."""
    material: Material
    creation_timestamp: int  # Unix seconds


class Key:
    """An ordered, immutable collection of key versions; the first is primary."""

    __slots__ = ("_versions",)

    def __init__(self):
        object.__setattr__(self, "_versions", ())

    def __setattr__(self, name, value):
        raise AttributeError("Key is immutable")

    @classmethod
    def from_versions(cls, primary: Version, *others: Version) -> "Key":
        """Create a key from its primary version plus any other versions."""
        return cls._from_version_list([primary, *others])

    @classmethod
    def _from_version_list(cls, vs: List[Version]) -> "Key":
        # If vs is non-empty its first element is the primary version. All
        # non-empty keys are built here so the canonical ordering and the
        # distinct-timestamp invariant hold everywhere.
        k = cls()
        if not vs:
            return k
        primary = vs[0]
        others = sorted(vs[1:], key=lambda v: v.creation_timestamp, reverse=True)
        seen = {primary.creation_timestamp}
        for v in others:
            if v.creation_timestamp in seen:
                raise KeyValidationError(
                    f"key contains multiple versions with creation timestamp {v.creation_timestamp}")
            seen.add(v.creation_timestamp)
        object.__setattr__(k, "_versions", (primary, *others))
        return k

    # --------- accessors ----------
    @property
    def primary(self) -> Version:
        if not self._versions:
            raise KeyValidationError("empty key has no primary version")
        return self._versions[0]

    def is_empty(self) -> bool:
        return not self._versions

    def __len__(self):
        return len(self._versions)

    def __iter__(self) -> Iterator[Version]:
        return iter(self._versions)

    def __eq__(self, other):
        if not isinstance(other, Key):
            return NotImplemented
        return self._versions == other._versions

    def __hash__(self):
        return hash(self._versions)

    def __repr__(self):
        if not self._versions:
            return "Key([])"
        parts = [f"{self._versions[0].creation_timestamp}*"]
        parts.extend(str(v.creation_timestamp) for v in self._versions[1:])
        return f"Key([{', '.join(parts)}])"

    def diff(self, old: "Key") -> str:
        """Describe the changes from `old` to this key, for logging.

        Returns the empty string if and only if the two keys are equal.
        """
        new_pk = self._versions[0].creation_timestamp if self._versions else None
        old_pk = old._versions[0].creation_timestamp if old._versions else None
        new_by_ts = {v.creation_timestamp: v.material for v in self._versions}
        old_by_ts = {v.creation_timestamp: v.material for v in old._versions}

        diffs = []
        if new_pk != old_pk:
            diffs.append(f"changed primary version {_or_none(old_pk)} → {_or_none(new_pk)}")
        for ts in sorted(new_by_ts.keys() | old_by_ts.keys()):
            if ts not in old_by_ts:
                diffs.append(f"added version {ts}")
            elif ts not in new_by_ts:
                diffs.append(f"removed version {ts}")
            elif old_by_ts[ts] != new_by_ts[ts]:
                diffs.append(f"modified key material for version {ts}")
        return semicolon_join(*diffs)

    # --------- rotation ----------
    def rotate(self, now: Timestamp, cfg: "RotationConfig") -> "Key":
        """Rotate the key according to `cfg`, returning the new key.

        Policy:
          * If no versions exist, or the youngest version is older than
            create_min_age, create a new version.
          * While there are more than delete_min_key_count versions and the
            oldest is older than delete_min_age, delete the oldest.
          * The youngest version not younger than primary_min_age becomes
            primary; if there is none, the oldest version does.

        The returned key always has at least one version, and rotating it
        again with the same arguments returns an equal key.
        """
        try:
            cfg.validate()
        except ConfigValidationError as err:
            raise ConfigValidationError(f"invalid rotation config: {err}") from err

        now_ts = unix_seconds(now)

        def age(v: Version) -> int:
            return now_ts - v.creation_timestamp

        for v in self._versions:
            if age(v) < 0:
                raise FutureVersionError(
                    f"found key version with creation timestamp {v.creation_timestamp}, after now ({now_ts})")
        # oldest to youngest
        vs = sorted(self._versions, key=lambda v: v.creation_timestamp)

        create_min_age = cfg.create_min_age.total_seconds()
        if not vs or age(vs[-1]) > create_min_age:
            try:
                m = cfg.create_key()
            except Exception as err:
                raise GenerationFailure(f"couldn't create new key version: {err}") from err
            vs.append(Version(material=m, creation_timestamp=now_ts))

        delete_min_age = cfg.delete_min_age.total_seconds()
        while len(vs) > cfg.delete_min_key_count and age(vs[0]) > delete_min_age:
            vs.pop(0)

        if not vs:
            raise KeyValidationError("after rotation, key must contain at least one version")

        # Ages decrease with index, so "younger than primary_min_age" flips
        # from False to True exactly once.
        primary_min_age = cfg.primary_min_age.total_seconds()
        too_young = [age(v) < primary_min_age for v in vs]
        primary_idx = bisect.bisect_left(too_young, True)
        if primary_idx > 0:
            primary_idx -= 1
        vs[0], vs[primary_idx] = vs[primary_idx], vs[0]

        return Key._from_version_list(vs)

    # --------- JSON ----------
    def to_list(self) -> List[Dict[str, Any]]:
        out = []
        for i, v in enumerate(self._versions):
            entry: Dict[str, Any] = {"key": v.material.to_text(), "creation_time": str(v.creation_timestamp)}
            if i == 0:
                entry["primary"] = True
            out.append(entry)
        return out

    @classmethod
    def from_list(cls, entries: List[Dict[str, Any]]) -> "Key":
        if not isinstance(entries, list):
            raise SerializationError(f"serialized key must be a list (got {type(entries).__name__})")
        if not entries:
            return cls()

        vs: List[Version] = []
        primary_idx: Optional[int] = None
        for i, entry in enumerate(entries):
            try:
                material = Material.from_text(entry["key"])
                creation_timestamp = int(entry["creation_time"])
            except (AttributeError, KeyError, TypeError, ValueError) as err:
                raise SerializationError(f"couldn't parse key version {i}: {err}") from err
            vs.append(Version(material=material, creation_timestamp=creation_timestamp))
            if entry.get("primary"):
                if primary_idx is not None:
                    raise KeyValidationError("serialized key contains multiple primary versions")
                primary_idx = i
        if primary_idx is None:
            raise KeyValidationError("serialized key contains no primary versions")

        vs[0], vs[primary_idx] = vs[primary_idx], vs[0]
        return cls._from_version_list(vs)

    def to_json(self) -> str:
        return json.dumps(self.to_list(), separators=(",", ":"))

    @classmethod
    def from_json(cls, data) -> "Key":
        if isinstance(data, (bytes, bytearray)):
            data = data.decode("utf-8")
        try:
            entries = json.loads(data)
        except ValueError as err:
            raise SerializationError(f"couldn't parse key JSON: {err}") from err
        return cls.from_list(entries)


def _or_none(ts: Optional[int]) -> str:
    return "none" if ts is None else str(ts)


@dataclass(frozen=True)
class RotationConfig:
    """Policy parameters for Key.rotate."""
    create_key: Optional[Callable[[], Material]] = None  # returns newly-generated key material
    create_min_age: timedelta = timedelta(0)             # youngest version age before a new one is created
    primary_min_age: timedelta = timedelta(0)            # minimum age before a version may normally be primary
    delete_min_age: timedelta = timedelta(0)             # minimum age before a version may be deleted
    delete_min_key_count: int = 0                        # versions always kept, regardless of age

    def validate(self) -> None:
        if self.create_key is None:
            raise ConfigValidationError("create_key must be set")
        if self.create_min_age < timedelta(0):
            raise ConfigValidationError("create_min_age must be non-negative")
        if self.primary_min_age < timedelta(0):
            raise ConfigValidationError("primary_min_age must be non-negative")
        if self.delete_min_age < timedelta(0):
            raise ConfigValidationError("delete_min_age must be non-negative")
        if self.delete_min_key_count < 0:
            raise ConfigValidationError("delete_min_key_count must be non-negative")
        if not (self.primary_min_age <= self.create_min_age <= self.delete_min_age):
            raise ConfigValidationError(
                "config must satisfy primary_min_age <= create_min_age <= delete_min_age")
