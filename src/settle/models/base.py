# Copyright (c) Syntropy Systems
"""Shared Pydantic model helpers for settle."""

from __future__ import annotations

from typing import ClassVar, Optional

from pydantic import BaseModel, ConfigDict
from typing_extensions import TypeAlias

# ObservedState.to_dict() as stored in the ledger
ObservedDict: TypeAlias = dict[str, Optional[str]]


class SettleBaseModel(BaseModel):
    """Base model with shared config for settle schemas."""

    model_config: ClassVar[ConfigDict] = ConfigDict(
        extra="ignore",
        populate_by_name=True,
    )


class StrictModel(BaseModel):
    """Base model for operator-written documents: unknown keys are errors."""

    model_config: ClassVar[ConfigDict] = ConfigDict(
        extra="forbid",
        populate_by_name=True,
    )
