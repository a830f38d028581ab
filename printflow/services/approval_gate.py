# printflow/services/approval_gate.py
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict

from jose import JWTError, jwt
from sqlalchemy.orm import Session

from printflow.domain.errors import (
    AccessDenied,
    ApprovalAlreadyUsed,
    ConsentRequired,
    InvalidApprovalToken,
    NotFound,
    NotReady,
    SelectionRequired,
    SessionAbandoned,
)
from printflow.domain.stages import Stage
from printflow.repos.session_repo import SessionRepo
from printflow.services.notification_service import StatusNotifier
from printflow.utils.logging import get_logger
from printflow.utils.settings import APPROVAL_TOKEN_SECRET, APPROVAL_TOKEN_TTL_SECONDS

logger = get_logger(__name__)

ALGORITHM = "HS256"


class ApprovalGate:
    """
    Approval of a finished design.

    The token returned by ``approve`` is a signed reference to the session,
    its selection and a nonce stored on the session row. The order
    coordinator consumes it with a conditional write on that nonce, so one
    approval can turn into one order only.
    """

    def __init__(
        self,
        db: Session,
        notifier: StatusNotifier,
        secret: str = APPROVAL_TOKEN_SECRET,
        ttl_seconds: int = APPROVAL_TOKEN_TTL_SECONDS,
    ):
        self.repo = SessionRepo(db)
        self.notifier = notifier
        self.secret = secret
        self.ttl_seconds = ttl_seconds

    def approve(self, session_id: str, consent: bool, user_id: str | None = None) -> Dict[str, Any]:
        session = self.repo.get_session(session_id)
        if not session:
            raise NotFound("Design session not found")
        if user_id is not None and session.owner_id not in (None, user_id):
            raise AccessDenied()

        if session.stage != Stage.READY.value:
            raise NotReady()
        if not consent:
            raise ConsentRequired()
        if session.abandoned_at is not None:
            raise SessionAbandoned()
        if session.approval_consumed_at is not None:
            raise ApprovalAlreadyUsed()
        if not session.product_slug or session.variant_id is None or not session.selected_asset_id:
            raise SelectionRequired()

        now = datetime.now(timezone.utc)
        nonce = session.approval_nonce
        if nonce is None:
            nonce = str(uuid.uuid4())
            snap = {
                "stage": session.stage,
                "progress": session.progress,
                "message": session.message,
                "error_code": session.error_code,
                "retry_count": session.retry_count,
            }
            old_version = session.version
            rowcount = self.repo.update_session_version(
                session_id=session.id,
                old_version=old_version,
                new_data={
                    "consent_accepted": True,
                    "consent_accepted_at": now,
                    "approval_nonce": nonce,
                    "approved_at": now,
                },
                snapshot=snap,
                expected_stage=Stage.READY.value,
            )
            if rowcount == 0:
                self.repo.rollback()
                # a parallel approve or selection change won, take whatever it left
                session = self.repo.get_session(session_id)
                if session.approval_nonce is None or session.approval_consumed_at is not None:
                    raise ApprovalAlreadyUsed("Session changed while approving, please retry")
                nonce = session.approval_nonce
            else:
                self.repo.commit()
                self.notifier.publish_session(session_id, after_seq=old_version)
                session = self.repo.get_session(session_id)
                logger.info(f"Session {session_id} approved")

        token = self._sign(session, nonce, now)
        return {
            "session_id": session.id,
            "approval_token": token,
            "consent_accepted_at": session.consent_accepted_at,
            "expires_in": self.ttl_seconds,
        }

    def verify(self, token: str, check_expiry: bool = True) -> Dict[str, Any]:
        """
        Claims of a valid token. Expiry is skipped when a payment for the
        approval has already been captured.
        """
        try:
            claims = jwt.decode(
                token,
                self.secret,
                algorithms=[ALGORITHM],
                options={"verify_exp": check_expiry},
            )
        except JWTError as e:
            logger.info(f"Rejected approval token: {e}")
            raise InvalidApprovalToken()

        session = self.repo.get_session(claims["sub"])
        if not session or session.approval_nonce != claims.get("jti"):
            raise InvalidApprovalToken("Approval is no longer valid")
        return claims

    def consume(self, claims: Dict[str, Any]) -> int:
        """Marks the approval used; caller commits. Returns the rowcount."""
        return self.repo.consume_approval(claims["sub"], claims["jti"])

    def _sign(self, session, nonce: str, now: datetime) -> str:
        claims = {
            "sub": session.id,
            "jti": nonce,
            "asset": session.selected_asset_id,
            "product": session.product_slug,
            "variant": session.variant_id,
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(seconds=self.ttl_seconds)).timestamp()),
        }
        return jwt.encode(claims, self.secret, algorithm=ALGORITHM)
