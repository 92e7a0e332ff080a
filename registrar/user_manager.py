import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional, Tuple, List

from sqlalchemy import or_

from shared.events import EventType, user_status_event

from .access import require_admin, require_super_admin
from .audit import AuditRecorder, AuditAction, EntityType
from .errors import AccountLocked, BadRequest, Conflict, Forbidden, NotFound, Unauthorized
from .models import db, User, UserRole, UserStatus, AuthProvider, commit_or_conflict, utcnow
from .notifications import Notifier
from .validation import FieldErrors, parse_choice, parse_email, parse_string, password_strength_errors

logger = logging.getLogger(__name__)

EMAIL_TAKEN = 'User with this email already exists'


@dataclass
class OAuthProfile:
    """Identity returned by an OAuth provider."""
    id: str
    email: str
    name: Optional[str] = None
    avatar_url: Optional[str] = None


class UserManager:
    """
    Manages accounts:
    - Email/password registration pending admin approval
    - Password login with per-account lockout
    - Admin status transitions and role changes
    - Accounts created or refreshed from OAuth providers
    """

    def __init__(
        self,
        audit: AuditRecorder,
        notifier: Notifier = None,
        lockout_threshold: int = 5,
        lockout_minutes: int = 15
    ):
        self.audit = audit
        self.notifier = notifier or Notifier()
        self.lockout_threshold = lockout_threshold
        self.lockout_minutes = lockout_minutes

    # ==================== Reads ====================

    def find_by_email(self, email: str) -> Optional[User]:
        if not email:
            return None
        return User.query.filter_by(email=email.strip().lower()).first()

    def get_user(self, user_id, principal) -> User:
        require_admin(principal)
        user = db.session.get(User, user_id)
        if user is None:
            raise NotFound('User not found')
        return user

    def list_users(
        self,
        principal,
        role: str = None,
        status: str = None,
        search: str = None,
        page: int = 1,
        limit: int = 20
    ) -> Tuple[List[User], int]:
        require_admin(principal)
        query = User.query
        if role:
            query = query.filter(User.role == role)
        if status:
            query = query.filter(User.status == status)
        if search:
            term = f"%{search}%"
            query = query.filter(or_(User.email.ilike(term), User.name.ilike(term)))

        total = query.count()
        users = query.order_by(User.created_at.desc(), User.id.desc()) \
            .offset((page - 1) * limit).limit(limit).all()
        return users, total

    # ==================== Email/password ====================

    def register(self, email, password, name=None) -> User:
        """Create a PENDING email account; the role is always USER."""
        errors = FieldErrors()
        email = parse_email(email, errors)
        name = parse_string(name, 'name', errors, max_length=100, required=False)
        problems = password_strength_errors(password)
        if problems:
            errors.add('password', '; '.join(problems))
        errors.raise_if_any()

        if self.find_by_email(email):
            raise Conflict(EMAIL_TAKEN, details={'email': EMAIL_TAKEN})

        user = User(
            email=email,
            name=name,
            role=UserRole.USER.value,
            status=UserStatus.PENDING.value,
            provider=AuthProvider.EMAIL.value,
        )
        user.set_password(password)
        db.session.add(user)
        commit_or_conflict(EMAIL_TAKEN, details={'email': EMAIL_TAKEN})

        logger.info(f"User registered: {email} (pending approval)")
        self.audit.record(EntityType.USER, user.id, AuditAction.CREATE,
                          None, user.to_dict(), user.id)
        self.notifier.dispatch(user_status_event(user, EventType.USER_REGISTERED))
        return user

    def authenticate(self, email, password) -> User:
        """
        Verify a password login.

        Checks run in order: unknown account, active lock, account status,
        password. Only wrong passwords count towards the lockout.
        """
        if not isinstance(email, str) or not isinstance(password, str) or not password:
            raise BadRequest('Email and password are required')

        user = self.find_by_email(email)
        if user is None:
            logger.warning(f"Login failed for {email}: unknown account")
            raise Unauthorized('Invalid email or password')

        now = utcnow()
        if user.is_locked(now):
            remaining = int((user.locked_until - now).total_seconds() // 60) + 1
            logger.warning(f"Login refused for {user.email}: account locked")
            raise AccountLocked(
                f'Account is locked. Try again in {remaining} minute(s).',
                details={'locked_until': user.locked_until.isoformat()}
            )

        if user.locked_until is not None:
            # Lock has lapsed; start counting afresh.
            user.locked_until = None
            user.failed_login_attempts = 0

        if user.status != UserStatus.APPROVED.value:
            db.session.commit()
            logger.warning(f"Login refused for {user.email}: status {user.status}")
            raise Forbidden(self.status_message(user.status))

        if not user.check_password(password):
            user.failed_login_attempts = (user.failed_login_attempts or 0) + 1
            if user.failed_login_attempts >= self.lockout_threshold:
                user.locked_until = now + timedelta(minutes=self.lockout_minutes)
                logger.warning(f"Account {user.email} locked after "
                               f"{user.failed_login_attempts} failed attempts")
            db.session.commit()
            logger.warning(f"Login failed for {user.email}: invalid password")
            raise Unauthorized('Invalid email or password')

        user.failed_login_attempts = 0
        user.locked_until = None
        user.last_login_at = now
        db.session.commit()

        logger.info(f"Login successful: {user.email}")
        return user

    @staticmethod
    def status_message(status: str) -> str:
        if status == UserStatus.PENDING.value:
            return 'Your account is pending approval'
        if status == UserStatus.REJECTED.value:
            return 'Your account has been rejected'
        if status == UserStatus.SUSPENDED.value:
            return 'Your account has been suspended'
        return 'Your account is not active'

    # ==================== Admin ====================

    def transition_status(self, user_id, new_status, principal, action: str = AuditAction.UPDATE_STATUS) -> User:
        """
        Move a user to a new status. Approval stamps approved_at/approved_by;
        other transitions leave any previous stamp in place.
        """
        require_admin(principal)
        errors = FieldErrors()
        new_status = parse_choice(new_status, 'status', UserStatus, errors)
        errors.raise_if_any()

        user = db.session.get(User, user_id)
        if user is None:
            raise NotFound('User not found')
        if user.status == new_status:
            raise BadRequest(f'User status is already {new_status}')

        before = user.to_dict()
        user.status = new_status
        if new_status == UserStatus.APPROVED.value:
            user.approved_at = utcnow()
            user.approved_by = principal.id
        db.session.commit()

        logger.info(f"User {user.email} status {before['status']} -> {new_status} by user {principal.id}")
        self.audit.record(EntityType.USER, user.id, action, before, user.to_dict(), principal.id)

        if new_status == UserStatus.APPROVED.value:
            self.notifier.dispatch(user_status_event(user, EventType.USER_APPROVED))
        elif new_status == UserStatus.REJECTED.value:
            self.notifier.dispatch(user_status_event(user, EventType.USER_REJECTED))
        return user

    def approve(self, user_id, principal) -> User:
        return self.transition_status(user_id, UserStatus.APPROVED.value, principal, AuditAction.APPROVE)

    def reject(self, user_id, principal) -> User:
        return self.transition_status(user_id, UserStatus.REJECTED.value, principal, AuditAction.REJECT)

    def change_role(self, user_id, role, principal) -> User:
        require_super_admin(principal)
        errors = FieldErrors()
        role = parse_choice(role, 'role', UserRole, errors)
        errors.raise_if_any()

        user = db.session.get(User, user_id)
        if user is None:
            raise NotFound('User not found')
        if user.id == principal.id:
            raise BadRequest('You cannot change your own role')
        if user.role == role:
            raise BadRequest(f'User role is already {role}')

        before = user.to_dict()
        user.role = role
        db.session.commit()

        logger.info(f"User {user.email} role {before['role']} -> {role} by user {principal.id}")
        self.audit.record(EntityType.USER, user.id, AuditAction.UPDATE, before, user.to_dict(), principal.id)
        return user

    # ==================== OAuth ====================

    def upsert_oauth_user(self, provider, profile: OAuthProfile) -> User:
        """
        Find or create the account for an OAuth login.

        New accounts start APPROVED. An existing account with the same email
        keeps its role and status; only provider details are refreshed.
        """
        provider = getattr(provider, 'value', provider)
        if not profile.email:
            raise BadRequest('The identity provider did not return an email address')

        email = profile.email.strip().lower()
        user = self.find_by_email(email)

        if user is not None:
            user.provider = provider
            user.provider_id = str(profile.id)
            if profile.avatar_url:
                user.avatar_url = profile.avatar_url
            if not user.name and profile.name:
                user.name = profile.name
            user.last_login_at = utcnow()
            db.session.commit()
            logger.info(f"OAuth login for existing user {email} via {provider}")
            return user

        user = User(
            email=email,
            name=profile.name,
            role=UserRole.USER.value,
            status=UserStatus.APPROVED.value,
            provider=provider,
            provider_id=str(profile.id),
            avatar_url=profile.avatar_url,
            approved_at=utcnow(),
            last_login_at=utcnow(),
        )
        db.session.add(user)
        commit_or_conflict(EMAIL_TAKEN, details={'email': EMAIL_TAKEN})

        logger.info(f"Created user {email} via {provider}")
        self.audit.record(EntityType.USER, user.id, AuditAction.CREATE, None, user.to_dict(), user.id)
        return user
