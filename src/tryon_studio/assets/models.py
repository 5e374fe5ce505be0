"""Asset and user records read by the orchestrator."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class AssetKind(str, Enum):
    MODEL = "model"
    GARMENT = "garment"
    RESULT = "result"

    @property
    def directory(self) -> str:
        return {
            AssetKind.MODEL: "models",
            AssetKind.GARMENT: "garments",
            AssetKind.RESULT: "results",
        }[self]


@dataclass(slots=True)
class AssetView:
    """Immutable file record with a validity flag."""

    asset_id: str
    owner_id: str
    kind: AssetKind
    file_name: str
    original_name: str
    file_url: str
    file_size: int
    mime_type: str
    width: int
    height: int
    category: str | None
    is_valid: bool
    is_deleted: bool
    deleted_at: datetime | None
    created_at: datetime


@dataclass(slots=True)
class UserUsage:
    user_id: str
    display_name: str
    total_requests: int
    monthly_requests: int
