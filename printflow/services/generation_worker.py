# printflow/services/generation_worker.py
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List

from sqlalchemy.orm import Session

from printflow.data.models.design_asset import DesignAssetModel
from printflow.data.models.design_session import DesignSessionModel
from printflow.domain.errors import (
    AccessDenied,
    ApprovalAlreadyUsed,
    InvalidTransition,
    NotFound,
    NotReady,
    PermanentProviderError,
    RetryLimitExceeded,
    RetryNotAllowed,
    TransientProviderError,
)
from printflow.domain.stages import (
    STAGE_MESSAGES,
    STAGE_ORDER,
    STAGE_PROGRESS_FLOOR,
    Stage,
    is_terminal,
    next_stage,
    stage_index,
)
from printflow.repos.session_repo import SessionRepo
from printflow.services.generation_client import GenerationClient, GenerationStatus
from printflow.services.notification_service import StatusNotifier
from printflow.utils.logging import get_logger
from printflow.utils.retry import stage_retrying
from printflow.utils.settings import (
    GENERATION_BACKOFF_SECONDS,
    GENERATION_MAX_ATTEMPTS,
    GENERATION_POLL_SECONDS,
    GENERATION_STAGE_TIMEOUT_SECONDS,
    SESSION_MAX_RETRIES,
)

logger = get_logger(__name__)

FAILURE_MESSAGES = {
    "content_policy": "The prompt was declined by the content policy. Try rephrasing it.",
    "provider_unavailable": "The design service is unavailable right now. Please retry.",
    "no_assets": "The design service did not return any artwork.",
}
DEFAULT_FAILURE_MESSAGE = "Design generation failed."


class GenerationWorker:
    """
    Drives a design session through the generation stages.

    Nobody owns a session: the background task, a user retry and a second
    worker may all act on the same row. Every write is conditional on the
    version (and stage) read before the provider call, a write that loses
    the race is dropped.
    """

    def __init__(
        self,
        db: Session,
        client: GenerationClient,
        notifier: StatusNotifier,
        max_attempts: int = GENERATION_MAX_ATTEMPTS,
        backoff: float = GENERATION_BACKOFF_SECONDS,
        max_retries: int = SESSION_MAX_RETRIES,
        poll_interval: float = GENERATION_POLL_SECONDS,
        stage_timeout: float = GENERATION_STAGE_TIMEOUT_SECONDS,
    ):
        self.db = db
        self.repo = SessionRepo(db)
        self.client = client
        self.notifier = notifier
        self.max_attempts = max_attempts
        self.backoff = backoff
        self.max_retries = max_retries
        self.poll_interval = poll_interval
        self.stage_timeout = timedelta(seconds=stage_timeout)

    # =====================================================
    # QUERY
    # =====================================================
    def get_session(self, session_id: str, user_id: str | None = None) -> Dict[str, Any]:
        session = self._get(session_id, user_id)
        return {
            "session_id": session.id,
            "owner_id": session.owner_id,
            "prompt": session.prompt,
            "style_hints": session.style_hints or [],
            "locale": session.locale,
            "stage": session.stage,
            "progress": session.progress,
            "message": session.message,
            "error_code": session.error_code,
            "error_message": session.error_message,
            "retry_count": session.retry_count,
            "retries_left": max(self.max_retries - session.retry_count, 0),
            "selected_asset_id": session.selected_asset_id,
            "product_slug": session.product_slug,
            "variant_id": session.variant_id,
            "consent_accepted": session.consent_accepted,
            "consent_accepted_at": session.consent_accepted_at,
            "abandoned": session.abandoned_at is not None,
            "assets": [
                {
                    "id": a.id,
                    "preview_url": a.preview_url,
                    "mockup_urls": a.mockup_urls or [],
                    "notes": a.notes,
                    "created_at": a.created_at,
                }
                for a in session.assets
            ],
            "version": session.version,
            "created_at": session.created_at,
            "updated_at": session.updated_at,
        }

    # =====================================================
    # COMMANDS
    # =====================================================
    def create_session(
        self,
        prompt: str,
        style_hints: List[str] | None = None,
        locale: str = "en",
        owner_id: str | None = None,
    ) -> Dict[str, Any]:
        prompt = (prompt or "").strip()
        if not prompt:
            raise ValueError("Prompt must not be empty")

        session = self.repo.create_session(
            DesignSessionModel(
                owner_id=owner_id,
                prompt=prompt,
                style_hints=list(style_hints or []),
                locale=locale,
                stage=Stage.QUEUED.value,
                progress=0,
                message=STAGE_MESSAGES[Stage.QUEUED],
                retry_count=0,
                version=1,
            )
        )
        logger.info(f"Created design session {session.id}")
        self.notifier.publish_session(session.id, after_seq=0)
        return self.get_session(session.id)

    def advance(self, session_id: str) -> bool:
        """
        Move the session at most one stage forward.

        Returns True when this call made a stage transition. Calling it again
        while the provider is still busy with the current stage only records
        progress; terminal sessions are left alone.
        """
        session = self._get(session_id)
        if is_terminal(session.stage):
            logger.debug(f"Session {session_id} is {session.stage}, nothing to advance")
            return False

        snap = self._snapshot(session)
        if snap["stage"] == Stage.QUEUED.value:
            return self._start(snap)
        if self._stage_expired(session):
            logger.warning(f"Session {session_id} spent longer than {self.stage_timeout} in {session.stage}")
            return self._fail(snap, "provider_unavailable")
        return self._poll(snap)

    def run(self, session_id: str, budget_seconds: float) -> str:
        """Advance until the session is terminal or the time budget runs out."""
        deadline = time.monotonic() + budget_seconds
        while True:
            self.db.expire_all()
            session = self._get(session_id)
            if is_terminal(session.stage):
                return session.stage

            moved = self.advance(session_id)
            if not moved:
                if time.monotonic() >= deadline:
                    logger.info(f"Session {session_id} still at {session.stage} after budget")
                    return self._get(session_id).stage
                time.sleep(self.poll_interval)

    def retry(self, session_id: str, user_id: str | None = None) -> Dict[str, Any]:
        session = self._get(session_id, user_id)

        if session.stage != Stage.FAILED.value:
            raise RetryNotAllowed()
        if session.retry_count >= self.max_retries:
            raise RetryLimitExceeded(
                f"Session was already retried {session.retry_count} times"
            )

        snap = self._snapshot(session)
        new_data = {
            "stage": Stage.QUEUED.value,
            "progress": 0,
            "message": STAGE_MESSAGES[Stage.QUEUED],
            "error_code": None,
            "error_message": None,
            "job_handle": None,
            "job_attempts": 0,
            "stage_started_at": datetime.now(timezone.utc),
            "retry_count": snap["retry_count"] + 1,
        }
        if self._write(snap, new_data, expected_stage=Stage.FAILED.value):
            logger.info(f"Session {session_id} requeued, retry {snap['retry_count'] + 1}")
        return self.get_session(session_id)

    def configure_product(
        self,
        session_id: str,
        product_slug: str,
        variant_id: int,
        asset_id: str | None = None,
        user_id: str | None = None,
    ) -> Dict[str, Any]:
        session = self._get(session_id, user_id)

        if session.stage != Stage.READY.value:
            raise NotReady()
        if session.approval_consumed_at is not None:
            raise ApprovalAlreadyUsed("Session was already ordered")
        if session.approval_nonce is not None:
            # checkouts may already carry the approval token
            raise InvalidTransition("Selection is locked once the design is approved")

        asset_id = asset_id or session.selected_asset_id
        asset = self.repo.get_asset(asset_id) if asset_id else None
        if not asset or asset.session_id != session.id:
            raise NotFound("Design asset not found in this session")

        snap = self._snapshot(session)
        new_data = {
            "product_slug": product_slug,
            "variant_id": variant_id,
            "selected_asset_id": asset.id,
        }
        self._write(snap, new_data, expected_stage=Stage.READY.value)
        return self.get_session(session_id)

    def claim(self, session_id: str, user_id: str) -> Dict[str, Any]:
        session = self._get(session_id)
        if session.owner_id == user_id:
            return self.get_session(session_id)
        if session.owner_id is not None:
            raise AccessDenied()

        snap = self._snapshot(session)
        self._write(snap, {"owner_id": user_id})
        return self.get_session(session_id, user_id)

    def abandon(self, session_id: str, user_id: str | None = None) -> Dict[str, Any]:
        """
        Marks the session abandoned. Generation that is already running
        carries on, only user driven transitions (approval) are refused.
        """
        session = self._get(session_id, user_id)
        if session.abandoned_at is None:
            snap = self._snapshot(session)
            self._write(snap, {"abandoned_at": datetime.now(timezone.utc)})
        return self.get_session(session_id)

    # stage handling

    def _start(self, snap: Dict[str, Any]) -> bool:
        # idempotency key per attempt, a retried start returns the same job
        key = f"{snap['id']}:{snap['retry_count']}"
        try:
            handle = self._call(
                self.client.start_generation,
                snap["prompt"],
                snap["style_hints"],
                snap["locale"],
                key,
            )
        except PermanentProviderError as e:
            return self._fail(snap, e.reason)
        except TransientProviderError:
            return self._fail(snap, "provider_unavailable")

        return self._transition(snap, Stage.GENERATING_BRIEF, {"job_handle": handle})

    def _poll(self, snap: Dict[str, Any]) -> bool:
        try:
            status = self._call(self.client.poll, snap["job_handle"])
        except PermanentProviderError as e:
            return self._fail(snap, e.reason)
        except TransientProviderError:
            return self._fail(snap, "provider_unavailable")

        if status.failed:
            if status.retryable:
                return self._restart(snap, status.failure_code or "provider_unavailable")
            return self._fail(snap, status.failure_code or "generation_failed")

        current = Stage(snap["stage"])
        reported = self._reported_stage(status, current)
        if stage_index(reported) <= stage_index(current):
            # provider still busy with the current stage
            self._record_progress(snap, status)
            return False

        target = next_stage(current)
        extra: Dict[str, Any] = {}
        if target is Stage.READY:
            if not status.preview_url:
                return self._fail(snap, "no_assets")
            asset = self.repo.add_asset(
                DesignAssetModel(
                    session_id=snap["id"],
                    preview_url=status.preview_url,
                    mockup_urls=list(status.mockup_urls),
                    notes=status.notes,
                )
            )
            extra["selected_asset_id"] = asset.id

        return self._transition(snap, target, extra)

    def _restart(self, snap: Dict[str, Any], code: str) -> bool:
        """
        The provider job failed but may succeed if started again. A new job
        is started under a fresh idempotency key, up to ``max_attempts`` jobs
        per stage. Returns True only when the session failed.
        """
        attempt = snap["job_attempts"] + 1
        if attempt >= self.max_attempts:
            return self._fail(snap, code)

        logger.warning(f"Session {snap['id']} job failed at {snap['stage']} ({code}), restarting, attempt {attempt}")
        key = f"{snap['id']}:{snap['retry_count']}:{attempt}"
        try:
            handle = self._call(
                self.client.start_generation,
                snap["prompt"],
                snap["style_hints"],
                snap["locale"],
                key,
            )
        except PermanentProviderError as e:
            return self._fail(snap, e.reason)
        except TransientProviderError:
            return self._fail(snap, "provider_unavailable")

        self._write(
            snap,
            {
                "job_handle": handle,
                "job_attempts": attempt,
                "stage_started_at": datetime.now(timezone.utc),
            },
            expected_stage=snap["stage"],
        )
        return False

    def _stage_expired(self, session: DesignSessionModel) -> bool:
        started = session.stage_started_at or session.updated_at
        if started.tzinfo is None:
            # sqlite hands back naive timestamps
            started = started.replace(tzinfo=timezone.utc)
        return datetime.now(timezone.utc) >= started + self.stage_timeout

    def _reported_stage(self, status: GenerationStatus, current: Stage) -> Stage:
        if status.done:
            return Stage.READY
        try:
            reported = Stage(status.stage)
        except ValueError:
            logger.warning(f"Unknown provider stage {status.stage!r}, keeping {current.value}")
            return current
        if reported not in STAGE_ORDER:
            return current
        return reported

    def _transition(self, snap: Dict[str, Any], target: Stage, extra: Dict[str, Any]) -> bool:
        new_data = {
            "stage": target.value,
            "progress": max(snap["progress"], STAGE_PROGRESS_FLOOR[target]),
            "message": STAGE_MESSAGES[target],
            "job_attempts": 0,
            "stage_started_at": datetime.now(timezone.utc),
            **extra,
        }
        moved = self._write(snap, new_data, expected_stage=snap["stage"])
        if moved:
            logger.info(f"Session {snap['id']}: {snap['stage']} -> {target.value}")
        return moved

    def _record_progress(self, snap: Dict[str, Any], status: GenerationStatus) -> None:
        current = Stage(snap["stage"])
        following = next_stage(current)
        ceiling = STAGE_PROGRESS_FLOOR[following] - 1 if following else 100
        progress = max(snap["progress"], min(status.progress, ceiling))
        message = status.message or snap["message"]

        if progress == snap["progress"] and message == snap["message"]:
            return
        self._write(
            snap,
            {"progress": progress, "message": message},
            expected_stage=snap["stage"],
        )

    def _fail(self, snap: Dict[str, Any], code: str) -> bool:
        logger.warning(f"Session {snap['id']} failed at {snap['stage']}: {code}")
        new_data = {
            "stage": Stage.FAILED.value,
            "message": STAGE_MESSAGES[Stage.FAILED],
            "error_code": code,
            "error_message": FAILURE_MESSAGES.get(code, DEFAULT_FAILURE_MESSAGE),
        }
        return self._write(snap, new_data, expected_stage=snap["stage"])

    def _write(
        self,
        snap: Dict[str, Any],
        new_data: Dict[str, Any],
        expected_stage: str | None = None,
    ) -> bool:
        rowcount = self.repo.update_session_version(
            session_id=snap["id"],
            old_version=snap["version"],
            new_data=new_data,
            snapshot=snap,
            expected_stage=expected_stage,
        )
        if rowcount == 0:
            # somebody else got there first
            self.repo.rollback()
            logger.info(f"Session {snap['id']} changed underneath (v{snap['version']}), write dropped")
            return False

        self.repo.commit()
        self.notifier.publish_session(snap["id"], after_seq=snap["version"])
        return True

    def _call(self, fn, *args):
        return stage_retrying(self.max_attempts, self.backoff)(fn, *args)

    def _get(self, session_id: str, user_id: str | None = None) -> DesignSessionModel:
        session = self.repo.get_session(session_id)
        if not session:
            raise NotFound("Design session not found")
        if user_id is not None and session.owner_id not in (None, user_id):
            raise AccessDenied()
        return session

    @staticmethod
    def _snapshot(session: DesignSessionModel) -> Dict[str, Any]:
        return {
            "id": session.id,
            "version": session.version,
            "stage": session.stage,
            "progress": session.progress,
            "message": session.message,
            "error_code": session.error_code,
            "retry_count": session.retry_count,
            "job_handle": session.job_handle,
            "job_attempts": session.job_attempts or 0,
            "prompt": session.prompt,
            "style_hints": list(session.style_hints or []),
            "locale": session.locale,
        }
