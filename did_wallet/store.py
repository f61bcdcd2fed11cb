"""
Identity Store - read helpers over the DID tables
"""

from typing import Optional, List, Dict

from sqlalchemy import func, or_, select
from sqlalchemy.orm import selectinload

from .models import (
    AnchoringJob,
    AnchoringOperation,
    DIDStatus,
    DidRecord,
    JobStatus,
    PinRecord,
    VerificationRecord,
    VerificationStatus,
)


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class IdentityStore:
    """Queries against DID records and their satellite records"""

    def __init__(self, session):
        self.session = session

    # ==================== DID RECORDS ====================

    def did_for_user(self, user_id: str) -> Optional[DidRecord]:
        return self.session.scalars(
            select(DidRecord).where(DidRecord.user_id == user_id).limit(1)
        ).first()

    def did_by_id(self, did_id: str, with_children: bool = False) -> Optional[DidRecord]:
        query = select(DidRecord).where(DidRecord.id == did_id)
        if with_children:
            query = query.options(
                selectinload(DidRecord.pins),
                selectinload(DidRecord.operations),
                selectinload(DidRecord.verifications),
            )
        return self.session.scalars(query).first()

    def did_by_identifier(self, identifier: str) -> Optional[DidRecord]:
        return self.session.scalars(
            select(DidRecord).where(DidRecord.did_identifier == identifier)
        ).first()

    def search(self, query: str, limit: int = 20) -> List[DidRecord]:
        """Substring search on identifier or public key"""
        pattern = f"%{_escape_like(query.strip())}%"
        return list(self.session.scalars(
            select(DidRecord)
            .where(or_(
                DidRecord.did_identifier.ilike(pattern, escape="\\"),
                DidRecord.public_key.ilike(pattern, escape="\\"),
            ))
            .order_by(DidRecord.created_at.desc())
            .limit(limit)
        ))

    # ==================== SATELLITES ====================

    def pin_for_job(self, job_id: str) -> Optional[PinRecord]:
        return self.session.scalars(select(PinRecord).where(PinRecord.job_id == job_id)).first()

    def operation_for_job(self, job_id: str) -> Optional[AnchoringOperation]:
        return self.session.scalars(
            select(AnchoringOperation).where(AnchoringOperation.job_id == job_id)
        ).first()

    def verification_for_job(self, job_id: str) -> Optional[VerificationRecord]:
        return self.session.scalars(
            select(VerificationRecord).where(VerificationRecord.job_id == job_id)
        ).first()

    def queued_jobs(self) -> List[AnchoringJob]:
        return list(self.session.scalars(
            select(AnchoringJob)
            .where(AnchoringJob.status.in_([JobStatus.QUEUED.value, JobStatus.RUNNING.value]))
            .order_by(AnchoringJob.created_at)
        ))

    # ==================== STATISTICS ====================

    def _count(self, query) -> int:
        return self.session.scalar(query) or 0

    def user_statistics(self, user_id: str) -> Dict[str, int]:
        owned = select(DidRecord.id).where(DidRecord.user_id == user_id)
        return {
            "totalDIDs": self._count(
                select(func.count(DidRecord.id)).where(DidRecord.user_id == user_id)
            ),
            "verifiedDIDs": self._count(
                select(func.count(VerificationRecord.id)).where(
                    VerificationRecord.did_id.in_(owned),
                    VerificationRecord.status == VerificationStatus.VERIFIED.value,
                )
            ),
            "ipfsPins": self._count(
                select(func.count(PinRecord.id)).where(PinRecord.did_id.in_(owned))
            ),
            "pendingOperations": self._count(
                select(func.count(AnchoringOperation.id)).where(
                    AnchoringOperation.did_id.in_(owned),
                    AnchoringOperation.status == DIDStatus.PENDING.value,
                )
            ),
        }

    def network_statistics(self) -> Dict[str, int]:
        def by_status(status: DIDStatus) -> int:
            return self._count(select(func.count(DidRecord.id)).where(DidRecord.status == status.value))

        return {
            "total": self._count(select(func.count(DidRecord.id))),
            "anchored": by_status(DIDStatus.ANCHORED),
            "pending": by_status(DIDStatus.PENDING),
        }
