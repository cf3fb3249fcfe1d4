# Copyright (c) Syntropy Systems
"""Shared Pydantic base for quorum records and worker output."""

from __future__ import annotations

from typing import ClassVar

from pydantic import BaseModel, ConfigDict


class QuorumBaseModel(BaseModel):
    """Base model with shared config for quorum schemas.

    Unknown keys are dropped so worker output with extra fields still
    validates.
    """

    model_config: ClassVar[ConfigDict] = ConfigDict(
        extra="ignore",
        populate_by_name=True,
    )
