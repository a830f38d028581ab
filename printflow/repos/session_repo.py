# printflow/repos/session_repo.py
from datetime import datetime, timezone
from typing import Any, Dict, List

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from printflow.data.models.design_asset import DesignAssetModel
from printflow.data.models.design_session import DesignSessionModel
from printflow.data.models.stage_event import StageEventModel


class SessionRepo:
    def __init__(self, db: Session):
        self.db = db

    def get_session(self, session_id: str) -> DesignSessionModel | None:
        return self.db.get(DesignSessionModel, session_id)

    def create_session(self, session: DesignSessionModel) -> DesignSessionModel:
        self.db.add(session)
        self.db.flush()
        self.db.add(self._event_for(session.id, session.version, {
            "stage": session.stage,
            "progress": session.progress,
            "message": session.message,
            "error_code": None,
            "retry_count": session.retry_count,
        }))
        self.db.commit()
        self.db.refresh(session)
        return session

    def update_session_version(
        self,
        session_id: str,
        old_version: int,
        new_data: Dict[str, Any],
        snapshot: Dict[str, Any],
        expected_stage: str | None = None,
    ) -> int:
        """
        Conditional write: UPDATE ... WHERE id = ? AND version = ? [AND stage = ?].

        Returns the rowcount, 0 means somebody else changed the session first.
        On success a stage event built from ``snapshot`` (the pre-write
        stage/progress/message/retry_count) merged with ``new_data`` is
        appended with seq = new version. Caller commits or rolls back.
        """
        stmt = (
            update(DesignSessionModel)
            .where(
                DesignSessionModel.id == session_id,
                DesignSessionModel.version == old_version,
            )
            .values(
                **new_data,
                version=old_version + 1,
                updated_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        if expected_stage is not None:
            stmt = stmt.where(DesignSessionModel.stage == expected_stage)

        rowcount = self.db.execute(stmt).rowcount
        if rowcount:
            merged = {**snapshot, **new_data}
            self.db.add(self._event_for(session_id, old_version + 1, merged))
        return rowcount

    def consume_approval(self, session_id: str, nonce: str) -> int:
        # version is bumped so writers holding an older snapshot lose their race
        stmt = (
            update(DesignSessionModel)
            .where(
                DesignSessionModel.id == session_id,
                DesignSessionModel.approval_nonce == nonce,
                DesignSessionModel.approval_consumed_at.is_(None),
            )
            .values(
                approval_consumed_at=datetime.now(timezone.utc),
                version=DesignSessionModel.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount

    def get_events(self, session_id: str, after_seq: int = 0) -> List[StageEventModel]:
        return list(
            self.db.execute(
                select(StageEventModel)
                .where(
                    StageEventModel.session_id == session_id,
                    StageEventModel.seq > after_seq,
                )
                .order_by(StageEventModel.seq)
            ).scalars().all()
        )

    def add_asset(self, asset: DesignAssetModel) -> DesignAssetModel:
        self.db.add(asset)
        self.db.flush()
        return asset

    def get_asset(self, asset_id: str) -> DesignAssetModel | None:
        return self.db.get(DesignAssetModel, asset_id)

    def commit(self):
        self.db.commit()

    def rollback(self):
        self.db.rollback()

    @staticmethod
    def _event_for(session_id: str, seq: int, data: Dict[str, Any]) -> StageEventModel:
        return StageEventModel(
            session_id=session_id,
            seq=seq,
            stage=data["stage"],
            progress=data["progress"],
            message=data.get("message"),
            error_code=data.get("error_code"),
            attempt=data.get("retry_count", 0),
        )
