"""File-backed asset store and user usage counters."""

from __future__ import annotations

import logging
import shutil
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from uuid import uuid4

from PIL import Image, UnidentifiedImageError
from sqlalchemy import update as sa_update
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from tryon_studio.assets.models import AssetKind, AssetView, UserUsage
from tryon_studio.storage.common import to_db_datetime, to_utc_aware, to_utc_aware_or_none, utc_now
from tryon_studio.storage.sqlmodel_models import AppUser, Asset

logger = logging.getLogger(__name__)


class AssetStore:
    """Asset records in SQLite, file bytes under ``upload_root/<kind dir>/``."""

    def __init__(
        self,
        engine: Engine,
        upload_root: Path,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.engine = engine
        self.upload_root = upload_root
        self._clock = clock

    def ensure_user(self, user_id: str, *, display_name: str | None = None) -> UserUsage:
        """Create the user row on first sight and return its usage counters."""

        with Session(self.engine) as session:
            row = session.get(AppUser, user_id)
            if row is None:
                now = to_db_datetime(self._clock())
                row = AppUser(
                    user_id=user_id,
                    display_name=display_name or user_id,
                    created_at=now,
                    updated_at=now,
                )
                session.add(row)
                session.commit()
                session.refresh(row)
            return _to_usage(row)

    def get_usage(self, user_id: str) -> UserUsage | None:
        with Session(self.engine) as session:
            row = session.get(AppUser, user_id)
            return _to_usage(row) if row is not None else None

    def increment_usage(self, user_id: str) -> None:
        """Bump request counters after a task was accepted by the provider."""

        with Session(self.engine) as session:
            session.execute(
                sa_update(AppUser)
                .where(col(AppUser.user_id) == user_id)
                .values(
                    total_requests=col(AppUser.total_requests) + 1,
                    monthly_requests=col(AppUser.monthly_requests) + 1,
                    updated_at=to_db_datetime(self._clock()),
                )
                .execution_options(synchronize_session=False),
            )
            session.commit()

    def register_upload(
        self,
        *,
        owner_id: str,
        kind: AssetKind,
        source_path: Path,
        category: str | None = None,
        is_valid: bool = True,
    ) -> AssetView:
        """Copy a local image into the store and record it as an input asset."""

        if kind == AssetKind.RESULT:
            raise ValueError("Result assets are created by materialization only.")
        try:
            with Image.open(source_path) as image:
                width, height = image.size
                mime_type = Image.MIME.get(image.format or "", "application/octet-stream")
        except UnidentifiedImageError as exc:
            raise ValueError(f"Not a readable image: {source_path}") from exc

        self.ensure_user(owner_id)
        file_name = f"{kind.value}-{uuid4().hex}{source_path.suffix.lower()}"
        target = self._path(kind, file_name)
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source_path, target)
        try:
            return self._insert(
                owner_id=owner_id,
                kind=kind,
                file_name=file_name,
                original_name=source_path.name,
                file_size=target.stat().st_size,
                mime_type=mime_type,
                width=width,
                height=height,
                category=category,
                is_valid=is_valid,
            )
        except Exception:
            target.unlink(missing_ok=True)
            raise

    def create_result_asset(  # noqa: PLR0913
        self,
        *,
        owner_id: str,
        content: bytes,
        width: int,
        height: int,
        category: str | None,
        external_job_id: str,
        mode: str,
    ) -> AssetView:
        """Write JPEG bytes and record them as a ``result`` asset.

        The file is written to a temporary name and renamed into place; a
        failed insert removes the file so a retry starts clean.
        """

        stamp = int(self._clock().timestamp() * 1000)
        file_name = f"result-{external_job_id}-{stamp}-{uuid4().hex[:8]}.jpg"
        target = self._path(AssetKind.RESULT, file_name)
        target.parent.mkdir(parents=True, exist_ok=True)
        partial = target.with_suffix(".part")
        try:
            partial.write_bytes(content)
            partial.replace(target)
            return self._insert(
                owner_id=owner_id,
                kind=AssetKind.RESULT,
                file_name=file_name,
                original_name=f"{mode}-tryon-result.jpg",
                file_size=len(content),
                mime_type="image/jpeg",
                width=width,
                height=height,
                category=category,
                is_valid=True,
            )
        except Exception:
            partial.unlink(missing_ok=True)
            target.unlink(missing_ok=True)
            raise

    def get_asset(self, asset_id: str) -> AssetView | None:
        with Session(self.engine) as session:
            row = session.get(Asset, asset_id)
            return _to_asset_view(row) if row is not None else None

    def file_path_for(self, asset: AssetView) -> Path:
        return self._path(asset.kind, asset.file_name)

    def file_exists(self, asset: AssetView) -> bool:
        return self.file_path_for(asset).is_file()

    def read_bytes(self, asset: AssetView) -> bytes:
        return self.file_path_for(asset).read_bytes()

    def discard_asset(self, asset_id: str) -> None:
        """Hard-remove an asset that was never linked to a task."""

        with Session(self.engine) as session:
            row = session.get(Asset, asset_id)
            if row is None:
                return
            path = self._path(AssetKind(row.kind), row.file_name)
            session.delete(row)
            session.commit()
        path.unlink(missing_ok=True)
        logger.info("Discarded unlinked asset %s", asset_id)

    def soft_delete_asset(self, asset_id: str) -> bool:
        now = to_db_datetime(self._clock())
        with Session(self.engine) as session:
            result = session.execute(
                sa_update(Asset)
                .where(col(Asset.asset_id) == asset_id, col(Asset.is_deleted).is_(False))
                .values(is_deleted=True, deleted_at=now)
                .execution_options(synchronize_session=False),
            )
            session.commit()
            return result.rowcount == 1

    def list_assets(self, owner_id: str, *, kind: AssetKind | None = None) -> list[AssetView]:
        with Session(self.engine) as session:
            statement = (
                select(Asset)
                .where(Asset.owner_id == owner_id, col(Asset.is_deleted).is_(False))
                .order_by(col(Asset.created_at).desc())
            )
            if kind is not None:
                statement = statement.where(Asset.kind == kind.value)
            return [_to_asset_view(row) for row in session.exec(statement).all()]

    def _path(self, kind: AssetKind, file_name: str) -> Path:
        return self.upload_root / kind.directory / file_name

    def _insert(  # noqa: PLR0913
        self,
        *,
        owner_id: str,
        kind: AssetKind,
        file_name: str,
        original_name: str,
        file_size: int,
        mime_type: str,
        width: int,
        height: int,
        category: str | None,
        is_valid: bool,
    ) -> AssetView:
        row = Asset(
            asset_id=str(uuid4()),
            owner_id=owner_id,
            kind=kind.value,
            file_name=file_name,
            original_name=original_name,
            file_url=f"/uploads/{kind.directory}/{file_name}",
            file_size=file_size,
            mime_type=mime_type,
            width=width,
            height=height,
            category=category,
            is_valid=is_valid,
            created_at=to_db_datetime(self._clock()),
        )
        with Session(self.engine) as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_asset_view(row)


def _to_usage(row: AppUser) -> UserUsage:
    return UserUsage(
        user_id=row.user_id,
        display_name=row.display_name,
        total_requests=row.total_requests,
        monthly_requests=row.monthly_requests,
    )


def _to_asset_view(row: Asset) -> AssetView:
    return AssetView(
        asset_id=row.asset_id,
        owner_id=row.owner_id,
        kind=AssetKind(row.kind),
        file_name=row.file_name,
        original_name=row.original_name,
        file_url=row.file_url,
        file_size=row.file_size,
        mime_type=row.mime_type,
        width=row.width,
        height=row.height,
        category=row.category,
        is_valid=row.is_valid,
        is_deleted=row.is_deleted,
        deleted_at=to_utc_aware_or_none(row.deleted_at),
        created_at=to_utc_aware(row.created_at),
    )
