"""
Issuer applications and role administration
"""

from typing import Optional, Dict, Any, List

from sqlalchemy import select

from .auth import CurrentUser
from .db import session_scope
from .errors import ConflictError, NotFoundError, ValidationError
from .logger import get_logger
from .models import ApplicationStatus, IssuerApplication, Profile, Role, utcnow

log = get_logger("did_wallet.applications")

REVIEW_ACTIONS = {
    "approve": ApplicationStatus.APPROVED,
    "approved": ApplicationStatus.APPROVED,
    "reject": ApplicationStatus.REJECTED,
    "rejected": ApplicationStatus.REJECTED,
}

_ACTIVE = (ApplicationStatus.PENDING.value, ApplicationStatus.APPROVED.value)


class IssuerApplicationService:
    """Applicant and admin operations on issuer applications"""

    def __init__(self, Session):
        self.Session = Session

    # ==================== APPLICANT ====================

    def submit_application(
        self,
        user: CurrentUser,
        full_name: str,
        email: str,
        website_url: Optional[str] = None,
        dns_verification: bool = False,
        email_verification: bool = True
    ) -> Dict[str, Any]:
        """
        Args:
            user: applicant
            full_name: organization name
            email: organization contact email
        """
        full_name = (full_name or "").strip()
        email = (email or "").strip()
        if not full_name or not email:
            raise ValidationError("Organization name and email are required")
        if "@" not in email:
            raise ValidationError("Invalid email address")

        with session_scope(self.Session) as session:
            existing = self._active_application(session, user.id)
            if existing is not None:
                raise ConflictError(f"An application is already {existing.status}")

            application = IssuerApplication(
                user_id=user.id,
                full_name=full_name,
                email=email,
                website_url=(website_url or "").strip() or None,
                dns_verification=bool(dns_verification),
                email_verification=bool(email_verification),
                status=ApplicationStatus.PENDING.value,
            )
            session.add(application)
            session.flush()
            log.info(f"Issuer application {application.id} submitted by {user.id}")
            return application.to_dict()

    def get_own_application(self, user: CurrentUser) -> Optional[Dict[str, Any]]:
        with session_scope(self.Session) as session:
            application = session.scalars(
                select(IssuerApplication)
                .where(IssuerApplication.user_id == user.id)
                .order_by(IssuerApplication.created_at.desc())
            ).first()
            return application.to_dict() if application else None

    def withdraw_application(self, user: CurrentUser) -> None:
        """Delete the caller's pending or rejected application"""
        with session_scope(self.Session) as session:
            application = session.scalars(
                select(IssuerApplication)
                .where(IssuerApplication.user_id == user.id)
                .order_by(IssuerApplication.created_at.desc())
            ).first()
            if application is None:
                raise NotFoundError("No application found")
            if application.status == ApplicationStatus.APPROVED.value:
                raise ConflictError("Approved applications cannot be withdrawn")
            session.delete(application)

    @staticmethod
    def _active_application(session, user_id: str) -> Optional[IssuerApplication]:
        return session.scalars(
            select(IssuerApplication).where(
                IssuerApplication.user_id == user_id,
                IssuerApplication.status.in_(_ACTIVE),
            )
        ).first()

    # ==================== ADMIN ====================

    def list_applications(self, admin: CurrentUser, status: Optional[str] = None) -> List[Dict[str, Any]]:
        admin.require(Role.ADMIN)
        with session_scope(self.Session) as session:
            query = select(IssuerApplication).order_by(IssuerApplication.created_at.desc())
            if status:
                query = query.where(IssuerApplication.status == status)
            return [a.to_dict() for a in session.scalars(query)]

    def review_application(self, admin: CurrentUser, application_id: str, action: str) -> Dict[str, Any]:
        """
        Approve or reject a pending application

        Approval promotes the applicant to the issuer role in the same
        transaction.
        """
        admin.require(Role.ADMIN)
        decision = REVIEW_ACTIONS.get((action or "").strip().lower())
        if decision is None:
            raise ValidationError("Action must be 'approve' or 'reject'")

        with session_scope(self.Session) as session:
            application = session.get(IssuerApplication, application_id)
            if application is None:
                raise NotFoundError("Application not found")
            if application.status != ApplicationStatus.PENDING.value:
                raise ConflictError(f"Application is already {application.status}")

            application.status = decision.value
            application.reviewed_by = admin.id
            application.reviewed_at = utcnow()

            if decision is ApplicationStatus.APPROVED:
                applicant = session.get(Profile, application.user_id)
                if applicant is None:
                    raise NotFoundError("Applicant profile not found")
                if applicant.role != Role.ADMIN.value:
                    applicant.role = Role.ISSUER.value

            log.info(f"Application {application_id} {decision.value} by {admin.id}")
            return application.to_dict()

    def list_profiles(self, admin: CurrentUser) -> List[Dict[str, Any]]:
        admin.require(Role.ADMIN)
        with session_scope(self.Session) as session:
            return [p.to_dict() for p in session.scalars(select(Profile).order_by(Profile.created_at.desc()))]

    def set_role(self, admin: CurrentUser, user_id: str, role: str) -> Dict[str, Any]:
        admin.require(Role.ADMIN)
        try:
            new_role = Role((role or "").strip().lower())
        except ValueError as e:
            raise ValidationError(f"Unknown role: {role}") from e

        with session_scope(self.Session) as session:
            profile = session.get(Profile, user_id)
            if profile is None:
                raise NotFoundError("Profile not found")
            profile.role = new_role.value
            log.info(f"Role of {user_id} set to {new_role.value} by {admin.id}")
            return profile.to_dict()
