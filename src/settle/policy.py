# Copyright (c) Syntropy Systems
"""Desired-state policies and how observed state satisfies them."""
from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from enum import Enum

from settle.state import Absent, ObservedState, Present, digest_text


class PolicyKind(str, Enum):
    """Kinds of desired state a unit can declare."""

    PRESENT = "present"
    ABSENT = "absent"
    VALUE = "value"
    ONE_OF = "one_of"
    CONTENT = "content"
    AT_LEAST = "at_least"


@dataclass(frozen=True)
class Policy:
    """Desired state for a single unit.

    ``members`` names the set elements for present/absent policies over
    package or service sets; ``target`` holds the expected value, the
    accepted values (one_of), the file text (content) or the minimum
    (at_least).
    """

    kind: PolicyKind
    target: str | float | tuple[str, ...] | None = None
    members: tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def present(cls, *members: str) -> Policy:
        return cls(PolicyKind.PRESENT, members=tuple(members))

    @classmethod
    def absent(cls, *members: str) -> Policy:
        return cls(PolicyKind.ABSENT, members=tuple(members))

    @classmethod
    def value(cls, target: str) -> Policy:
        return cls(PolicyKind.VALUE, target=target)

    @classmethod
    def one_of(cls, *targets: str) -> Policy:
        return cls(PolicyKind.ONE_OF, target=tuple(targets))

    @classmethod
    def content(cls, text: str) -> Policy:
        return cls(PolicyKind.CONTENT, target=text)

    @classmethod
    def at_least(cls, minimum: float) -> Policy:
        return cls(PolicyKind.AT_LEAST, target=float(minimum))

    @property
    def target_digest(self) -> str | None:
        """Digest of the desired content, for content policies."""
        if self.kind is PolicyKind.CONTENT and isinstance(self.target, str):
            return digest_text(self.target)
        return None

    def fingerprint(self) -> str:
        """Stable hash of the policy, used to detect policy changes between versions."""
        target = list(self.target) if isinstance(self.target, tuple) else self.target
        payload = json.dumps(
            {"kind": self.kind.value, "target": target, "members": list(self.members)},
            sort_keys=True,
        )
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]

    def satisfied_by(self, observed: ObservedState) -> bool:  # noqa: PLR0911
        """Return True when the observed state already matches this policy."""
        if self.kind is PolicyKind.ABSENT:
            if not isinstance(observed, Present):
                return isinstance(observed, Absent)
            if not self.members:
                return False
            return not (set(self.members) & _split(observed.value))

        if not isinstance(observed, Present):
            return False

        if self.kind is PolicyKind.PRESENT:
            return set(self.members) <= _split(observed.value)
        if self.kind is PolicyKind.VALUE:
            return observed.value == self.target
        if self.kind is PolicyKind.ONE_OF:
            return isinstance(self.target, tuple) and observed.value in self.target
        if self.kind is PolicyKind.CONTENT:
            return observed.digest is not None and observed.digest == self.target_digest
        if self.kind is PolicyKind.AT_LEAST:
            try:
                return float(observed.value or "nan") >= float(self.target or 0)
            except ValueError:
                return False
        return False

    def describe(self) -> str:
        """Short human-readable rendering of the target."""
        if self.kind in (PolicyKind.PRESENT, PolicyKind.ABSENT):
            members = ", ".join(self.members) if self.members else "unit"
            return f"{self.kind.value}: {members}"
        if self.kind is PolicyKind.CONTENT:
            return f"content sha256:{(self.target_digest or '')[:12]}"
        if self.kind is PolicyKind.ONE_OF and isinstance(self.target, tuple):
            return "one of: " + ", ".join(self.target)
        return f"{self.kind.value}: {self.target}"


def _split(value: str | None) -> set[str]:
    if not value:
        return set()
    return {item.strip() for item in value.split(",") if item.strip()}
