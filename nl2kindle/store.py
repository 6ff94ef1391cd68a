"""Persistence and status transitions for conversions.

Allowed transitions::

    (new) -> pending -> completed -> (delivered_at stamped)
                     -> failed -> pending   (retry)

Field invariants are enforced on every write: file fields exist only on
completed rows, ``error`` only on failed rows.
"""

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Iterator, List, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session, sessionmaker

from .errors import InvalidTransitionError, NotFoundError
from .extraction import ConversionMetadata
from .logger import get_logger
from .models import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PENDING,
    Conversion,
    Subscription,
    UserSettings,
    new_id,
    utcnow,
)

logger = get_logger("store")


@dataclass
class ConversionStats:
    total: int = 0
    completed: int = 0
    failed: int = 0
    pending: int = 0

    @property
    def success_rate(self) -> float:
        """Completed share of all conversions, in percent with two decimals."""
        return round(self.completed / self.total * 100, 2) if self.total else 0.0

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "completed": self.completed,
            "failed": self.failed,
            "pending": self.pending,
            "successRate": self.success_rate,
        }


@dataclass
class ConversionPage:
    items: List[Conversion]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit if self.limit else 0


class ConversionStore:
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    @contextmanager
    def session(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _load(self, session: Session, conversion_id: str) -> Conversion:
        conversion = session.get(Conversion, conversion_id)
        if conversion is None:
            raise NotFoundError("Conversion not found")
        return conversion

    # -- transitions -------------------------------------------------------
    def create_pending(
        self,
        user_id: str,
        metadata: ConversionMetadata,
        *,
        source_url: Optional[str] = None,
        source_html: Optional[str] = None,
        conversion_id: Optional[str] = None,
    ) -> Conversion:
        conversion = Conversion(
            id=conversion_id or new_id(),
            user_id=user_id,
            title=metadata.title,
            author=metadata.author,
            source=metadata.source,
            source_url=source_url,
            article_date=metadata.date or None,
            word_count=metadata.word_count,
            reading_time=metadata.reading_time,
            status=STATUS_PENDING,
            source_html=source_html,
            created_at=utcnow(),
            updated_at=utcnow(),
        )
        with self.session() as session:
            session.add(conversion)
        logger.info(f"Conversion {conversion.id} created for user {user_id}: {metadata.title!r}")
        return conversion

    def mark_completed(self, conversion_id: str, file_url: str, file_size: int) -> Conversion:
        if not file_url or file_size is None or file_size < 0:
            raise ValueError("Completed conversions need a file URL and size")
        with self.session() as session:
            conversion = self._load(session, conversion_id)
            if conversion.status != STATUS_PENDING:
                raise InvalidTransitionError(
                    f"Cannot complete conversion {conversion_id} in status {conversion.status}"
                )
            now = utcnow()
            conversion.status = STATUS_COMPLETED
            conversion.file_url = file_url
            conversion.file_size = file_size
            conversion.error = None
            conversion.source_html = None
            conversion.completed_at = now
            conversion.updated_at = now
        logger.info(f"Conversion {conversion_id} completed ({file_size} bytes)")
        return conversion

    def mark_failed(self, conversion_id: str, error: str) -> Conversion:
        with self.session() as session:
            conversion = self._load(session, conversion_id)
            if conversion.status != STATUS_PENDING:
                raise InvalidTransitionError(
                    f"Cannot fail conversion {conversion_id} in status {conversion.status}"
                )
            conversion.status = STATUS_FAILED
            conversion.error = error or "Conversion failed"
            conversion.file_url = None
            conversion.file_size = None
            conversion.updated_at = utcnow()
        logger.warning(f"Conversion {conversion_id} failed: {error}")
        return conversion

    def mark_delivered(self, conversion_id: str, when: Optional[datetime] = None) -> Conversion:
        """Stamp ``delivered_at``; a second call keeps the first timestamp."""
        with self.session() as session:
            conversion = self._load(session, conversion_id)
            if conversion.status != STATUS_COMPLETED:
                raise InvalidTransitionError(
                    f"Cannot mark conversion {conversion_id} delivered in status {conversion.status}"
                )
            if conversion.delivered_at is None:
                conversion.delivered_at = when or utcnow()
                conversion.delivery_error = None
                conversion.updated_at = utcnow()
        return conversion

    def record_delivery_failure(self, conversion_id: str, error: str) -> Conversion:
        """Remember why delivery failed without touching the conversion status."""
        with self.session() as session:
            conversion = self._load(session, conversion_id)
            conversion.delivery_error = error
            conversion.updated_at = utcnow()
        return conversion

    def reset_for_retry(self, conversion_id: str) -> Conversion:
        with self.session() as session:
            conversion = self._load(session, conversion_id)
            if conversion.status != STATUS_FAILED:
                raise InvalidTransitionError(
                    f"Only failed conversions can be retried (status {conversion.status})"
                )
            conversion.status = STATUS_PENDING
            conversion.error = None
            conversion.delivery_error = None
            conversion.updated_at = utcnow()
        logger.info(f"Conversion {conversion_id} reset for retry")
        return conversion

    # -- queries -----------------------------------------------------------
    def get(self, conversion_id: str, user_id: Optional[str] = None) -> Conversion:
        """Fetch a conversion, scoped to ``user_id`` when given."""
        with self.session() as session:
            conversion = session.get(Conversion, conversion_id)
            if conversion is None or (user_id is not None and conversion.user_id != user_id):
                raise NotFoundError("Conversion not found")
            return conversion

    def list_for_user(
        self,
        user_id: str,
        *,
        page: int = 1,
        limit: int = 10,
        status: Optional[str] = None,
        search: Optional[str] = None,
    ) -> ConversionPage:
        page = max(1, page)
        limit = min(max(1, limit), 100)
        filters = [Conversion.user_id == user_id]
        if status:
            filters.append(Conversion.status == status)
        if search:
            pattern = f"%{search}%"
            filters.append(
                or_(
                    Conversion.title.ilike(pattern),
                    Conversion.author.ilike(pattern),
                    Conversion.source.ilike(pattern),
                )
            )

        with self.session() as session:
            total = session.scalar(select(func.count()).select_from(Conversion).where(*filters)) or 0
            items = list(
                session.scalars(
                    select(Conversion)
                    .where(*filters)
                    .order_by(Conversion.created_at.desc())
                    .offset((page - 1) * limit)
                    .limit(limit)
                )
            )
        return ConversionPage(items=items, total=total, page=page, limit=limit)

    def count_created_since(self, user_id: str, since: datetime) -> int:
        with self.session() as session:
            return session.scalar(
                select(func.count())
                .select_from(Conversion)
                .where(Conversion.user_id == user_id, Conversion.created_at >= since)
            ) or 0

    def stats_for_user(self, user_id: str) -> ConversionStats:
        with self.session() as session:
            rows = session.execute(
                select(Conversion.status, func.count())
                .where(Conversion.user_id == user_id)
                .group_by(Conversion.status)
            ).all()
        counts = {status: count for status, count in rows}
        return ConversionStats(
            total=sum(counts.values()),
            completed=counts.get(STATUS_COMPLETED, 0),
            failed=counts.get(STATUS_FAILED, 0),
            pending=counts.get(STATUS_PENDING, 0),
        )

    def completed_before(self, cutoff: datetime) -> List[str]:
        """Ids of completed conversions whose download window closed before ``cutoff``."""
        with self.session() as session:
            return list(
                session.scalars(
                    select(Conversion.id).where(
                        Conversion.status == STATUS_COMPLETED,
                        Conversion.completed_at < cutoff,
                    )
                )
            )

    # -- collaborator tables (read only) -----------------------------------
    def find_user_by_personal_email(self, address: str) -> Optional[UserSettings]:
        with self.session() as session:
            return session.scalar(
                select(UserSettings).where(func.lower(UserSettings.personal_email) == address.strip().lower())
            )

    def get_user_settings(self, user_id: str) -> Optional[UserSettings]:
        with self.session() as session:
            return session.get(UserSettings, user_id)

    def get_active_subscription(self, user_id: str) -> Optional[Subscription]:
        with self.session() as session:
            return session.scalar(
                select(Subscription)
                .where(Subscription.user_id == user_id, Subscription.status == "active")
                .limit(1)
            )


__all__ = ["ConversionStore", "ConversionPage", "ConversionStats"]
