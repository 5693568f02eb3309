"""
In-process registry of uploads and running batches.

Each user may have at most one running batch. Uploaded pages are kept in
memory so a later batch can crop and recognize regions from them.
"""
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from config.settings import settings
from core.cancellation import CancellationToken
from core.exceptions import BatchInProgressError
from core.models import BatchResult, PageImage
from services.orchestrator import BatchOrchestrator

logger = logging.getLogger(__name__)


@dataclass
class Upload:
    """Pages rasterized from one upload request."""
    id: str
    user_id: str
    pages: List[PageImage]
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class BatchSession:
    """A batch started by one user."""
    id: str
    user_id: str
    upload_id: str
    orchestrator: BatchOrchestrator
    token: CancellationToken
    result: BatchResult
    guidelines: str = ""
    created_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def is_running(self) -> bool:
        return not self.result.state.is_terminal

    def to_dict(self) -> dict:
        data = self.result.to_dict()
        data['batch_id'] = self.id
        data['upload_id'] = self.upload_id
        data['cancel_requested'] = self.token.cancelled
        return data


class BatchSessionRegistry:
    """
    Tracks uploads and batches per user.

    Finished batches and unused uploads are evicted when they outlive the
    session TTL or exceed the per-user caps. Running batches and the uploads
    they read from are never evicted.
    """

    def __init__(
        self,
        max_uploads_per_user: Optional[int] = None,
        max_batches_per_user: Optional[int] = None,
        ttl: Optional[timedelta] = None,
        clock: Callable[[], datetime] = datetime.utcnow
    ):
        self.uploads: Dict[str, Upload] = {}
        self.batches: Dict[str, BatchSession] = {}
        self.max_uploads_per_user = max_uploads_per_user or settings.max_uploads_per_user
        self.max_batches_per_user = max_batches_per_user or settings.max_batches_per_user
        self.ttl = ttl or timedelta(minutes=settings.session_ttl_minutes)
        self.clock = clock

    def add_upload(self, user_id: str, pages: List[PageImage]) -> Upload:
        upload = Upload(id=str(uuid.uuid4()), user_id=user_id, pages=pages, created_at=self.clock())
        self.uploads[upload.id] = upload
        self.prune(user_id)
        return upload

    def get_upload(self, user_id: str, upload_id: str) -> Optional[Upload]:
        upload = self.uploads.get(upload_id)
        if upload is None or upload.user_id != user_id:
            return None
        return upload

    def running_batch(self, user_id: str) -> Optional[BatchSession]:
        """The user's running batch, if any."""
        for session in self.batches.values():
            if session.user_id == user_id and session.is_running:
                return session
        return None

    def ensure_idle(self, user_id: str) -> None:
        """
        Raises:
            BatchInProgressError: If the user already has a running batch
        """
        running = self.running_batch(user_id)
        if running is not None:
            raise BatchInProgressError(
                f"Batch {running.id} is still running. Cancel it or wait for it to finish."
            )

    def add_batch(
        self,
        user_id: str,
        upload_id: str,
        orchestrator: BatchOrchestrator,
        token: CancellationToken,
        result: BatchResult,
        guidelines: str = ""
    ) -> BatchSession:
        self.ensure_idle(user_id)
        session = BatchSession(
            id=str(uuid.uuid4()),
            user_id=user_id,
            upload_id=upload_id,
            orchestrator=orchestrator,
            token=token,
            result=result,
            guidelines=guidelines,
            created_at=self.clock()
        )
        self.batches[session.id] = session
        self.prune(user_id)
        return session

    def get_batch(self, user_id: str, batch_id: str) -> Optional[BatchSession]:
        session = self.batches.get(batch_id)
        if session is None or session.user_id != user_id:
            return None
        return session

    def prune(self, user_id: str) -> None:
        """Evict the user's expired or surplus finished batches and uploads."""
        cutoff = self.clock() - self.ttl

        kept = 0
        # Newest first
        for session in reversed(list(self.batches.values())):
            if session.user_id != user_id:
                continue
            if session.is_running:
                kept += 1
            elif session.created_at < cutoff or kept >= self.max_batches_per_user:
                del self.batches[session.id]
                logger.debug(f"Evicted batch {session.id} of user {user_id}")
            else:
                kept += 1

        in_use = {s.upload_id for s in self.batches.values() if s.user_id == user_id}
        kept = 0
        for upload in reversed(list(self.uploads.values())):
            if upload.user_id != user_id:
                continue
            if upload.id in in_use:
                kept += 1
            elif upload.created_at < cutoff or kept >= self.max_uploads_per_user:
                del self.uploads[upload.id]
                logger.debug(f"Evicted upload {upload.id} of user {user_id}")
            else:
                kept += 1

    def clear(self) -> None:
        self.uploads.clear()
        self.batches.clear()
