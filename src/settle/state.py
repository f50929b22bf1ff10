# Copyright (c) Syntropy Systems
"""Typed observed state returned by probes."""
from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Union

from typing_extensions import TypeAlias


def digest_text(text: str) -> str:
    """Return the sha256 hex digest of a text payload."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def digest_bytes(data: bytes) -> str:
    """Return the sha256 hex digest of raw bytes."""
    return hashlib.sha256(data).hexdigest()


@dataclass(frozen=True)
class Present:
    """The unit exists; value and digest describe it when meaningful."""

    value: str | None = None
    digest: str | None = None

    def to_dict(self) -> dict[str, str | None]:
        return {"state": "present", "value": self.value, "digest": self.digest}


@dataclass(frozen=True)
class Absent:
    """The unit does not exist on this host."""

    def to_dict(self) -> dict[str, str | None]:
        return {"state": "absent"}


@dataclass(frozen=True)
class Unknown:
    """State could not be determined (missing command, unreadable file...)."""

    reason: str = ""

    def to_dict(self) -> dict[str, str | None]:
        return {"state": "unknown", "reason": self.reason}


@dataclass(frozen=True)
class CustomizedSince:
    """Content changed by something other than settle.

    ``version`` is the tool version that last wrote the content, or None
    when settle never managed it.
    """

    version: str | None
    digest: str | None = None

    def to_dict(self) -> dict[str, str | None]:
        return {"state": "customized", "version": self.version, "digest": self.digest}


ObservedState: TypeAlias = Union[Present, Absent, Unknown, CustomizedSince]


def observed_from_dict(data: dict[str, str | None] | None) -> ObservedState:
    """Rebuild an observed state from its ledger representation."""
    if not data:
        return Unknown("not recorded")
    state = data.get("state")
    if state == "present":
        return Present(value=data.get("value"), digest=data.get("digest"))
    if state == "absent":
        return Absent()
    if state == "customized":
        return CustomizedSince(version=data.get("version"), digest=data.get("digest"))
    return Unknown(data.get("reason") or "")


def observed_digest(observed: ObservedState) -> str | None:
    """Return the content digest carried by an observed state, if any."""
    if isinstance(observed, (Present, CustomizedSince)):
        return observed.digest
    return None
