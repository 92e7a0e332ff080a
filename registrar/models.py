import json
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from flask_login import UserMixin
from flask_sqlalchemy import SQLAlchemy
from sqlalchemy.exc import IntegrityError
from werkzeug.security import generate_password_hash, check_password_hash

from .errors import Conflict

db = SQLAlchemy()


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def commit_or_conflict(message: str, details: dict = None) -> None:
    """Commit the session; a unique-constraint violation becomes Conflict."""
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise Conflict(message, details=details)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class UserRole(str, Enum):
    USER = "USER"
    ADMIN = "ADMIN"
    SUPER_ADMIN = "SUPER_ADMIN"


class UserStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    SUSPENDED = "SUSPENDED"


class AuthProvider(str, Enum):
    EMAIL = "EMAIL"
    GOOGLE = "GOOGLE"
    GITHUB = "GITHUB"


class TournamentStatus(str, Enum):
    DRAFT = "DRAFT"
    OPEN = "OPEN"
    IN_PROGRESS = "IN_PROGRESS"
    FINISHED = "FINISHED"


class Gender(str, Enum):
    MALE = "MALE"
    FEMALE = "FEMALE"


class AcceptanceStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class User(UserMixin, db.Model):
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    name = db.Column(db.String(100), nullable=True)
    hashed_password = db.Column(db.String(256), nullable=True)  # EMAIL provider only
    role = db.Column(db.String(20), nullable=False, default=UserRole.USER.value)
    status = db.Column(db.String(20), nullable=False, default=UserStatus.PENDING.value)
    provider = db.Column(db.String(20), nullable=False, default=AuthProvider.EMAIL.value)
    provider_id = db.Column(db.String(100), nullable=True)
    avatar_url = db.Column(db.String(500), nullable=True)

    # Account lockout
    failed_login_attempts = db.Column(db.Integer, nullable=False, default=0)
    locked_until = db.Column(db.DateTime, nullable=True)
    last_login_at = db.Column(db.DateTime, nullable=True)

    # Approval metadata; approved_by is a plain user id, not a foreign key
    approved_at = db.Column(db.DateTime, nullable=True)
    approved_by = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    def get_id(self):
        """Return the user ID for Flask-Login."""
        return str(self.id)

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.APPROVED.value

    def set_password(self, password: str):
        self.hashed_password = generate_password_hash(password)

    def check_password(self, password: str) -> bool:
        if not self.hashed_password:
            return False
        return check_password_hash(self.hashed_password, password)

    def is_locked(self, now: datetime = None) -> bool:
        now = now or utcnow()
        return self.locked_until is not None and self.locked_until > now

    def to_dict(self, include_security: bool = False) -> dict:
        data = {
            'id': self.id,
            'email': self.email,
            'name': self.name,
            'role': self.role,
            'status': self.status,
            'provider': self.provider,
            'avatar_url': self.avatar_url,
            'last_login_at': _iso(self.last_login_at),
            'approved_at': _iso(self.approved_at),
            'approved_by': self.approved_by,
            'created_at': _iso(self.created_at),
        }
        if include_security:
            data['failed_login_attempts'] = self.failed_login_attempts
            data['locked_until'] = _iso(self.locked_until)
        return data


class Tournament(db.Model):
    __tablename__ = 'tournaments'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    status = db.Column(db.String(20), nullable=False, default=TournamentStatus.DRAFT.value)

    tournament_start = db.Column(db.DateTime, nullable=False)
    tournament_end = db.Column(db.DateTime, nullable=False)
    registration_start = db.Column(db.DateTime, nullable=False)
    registration_end = db.Column(db.DateTime, nullable=False)

    proclamations = db.Column(db.String(500), nullable=True)
    chess_results = db.Column(db.String(500), nullable=True)
    categories_json = db.Column(db.Text, nullable=False, default='[]')
    has_teams = db.Column(db.Boolean, nullable=False, default=False)

    created_by = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)
    deleted_at = db.Column(db.DateTime, nullable=True, index=True)

    competitors = db.relationship('Competitor', back_populates='tournament',
                                  cascade='all, delete-orphan')

    __table_args__ = (
        db.Index(
            'uq_tournaments_live_name', 'name', unique=True,
            sqlite_where=db.text('deleted_at IS NULL'),
            postgresql_where=db.text('deleted_at IS NULL'),
        ),
    )

    @property
    def categories(self) -> List[str]:
        return json.loads(self.categories_json or '[]')

    @categories.setter
    def categories(self, value: List[str]):
        self.categories_json = json.dumps(list(value))

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def snapshot(self) -> dict:
        """Fields recorded in audit entries for delete/restore."""
        return {
            'name': self.name,
            'status': self.status,
            'deletedAt': _iso(self.deleted_at),
        }

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'name': self.name,
            'status': self.status,
            'tournament_start': _iso(self.tournament_start),
            'tournament_end': _iso(self.tournament_end),
            'registration_start': _iso(self.registration_start),
            'registration_end': _iso(self.registration_end),
            'proclamations': self.proclamations,
            'chess_results': self.chess_results,
            'categories': self.categories,
            'has_teams': self.has_teams,
            'created_by': self.created_by,
            'competitor_count': sum(1 for c in self.competitors if c.deleted_at is None),
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
            'deleted_at': _iso(self.deleted_at),
        }


class Competitor(db.Model):
    __tablename__ = 'competitors'

    id = db.Column(db.Integer, primary_key=True)
    tournament_id = db.Column(db.Integer, db.ForeignKey('tournaments.id'), nullable=False, index=True)
    personal_number = db.Column(db.Integer, nullable=False)
    first_name = db.Column(db.String(100), nullable=False)
    last_name = db.Column(db.String(100), nullable=False)
    gender = db.Column(db.String(10), nullable=False)
    category = db.Column(db.String(100), nullable=False)
    team = db.Column(db.String(100), nullable=True)
    rated_player_links_json = db.Column(db.Text, nullable=False, default='[]')
    document_url = db.Column(db.String(500), nullable=True)
    player_acceptance_status = db.Column(db.String(20), nullable=False,
                                         default=AcceptanceStatus.PENDING.value)
    admin_notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)
    deleted_at = db.Column(db.DateTime, nullable=True)

    tournament = db.relationship('Tournament', back_populates='competitors')

    __table_args__ = (
        db.UniqueConstraint('tournament_id', 'personal_number', name='uq_competitor_personal_number'),
        db.Index(
            'uq_competitors_live_name', 'tournament_id', 'first_name', 'last_name', unique=True,
            sqlite_where=db.text('deleted_at IS NULL'),
            postgresql_where=db.text('deleted_at IS NULL'),
        ),
    )

    @property
    def rated_player_links(self) -> List[str]:
        return json.loads(self.rated_player_links_json or '[]')

    @rated_player_links.setter
    def rated_player_links(self, value: List[str]):
        self.rated_player_links_json = json.dumps(list(value or []))

    def snapshot(self) -> dict:
        return {
            'personalNumber': self.personal_number,
            'firstName': self.first_name,
            'lastName': self.last_name,
            'gender': self.gender,
            'category': self.category,
            'team': self.team,
            'playerAcceptanceStatus': self.player_acceptance_status,
            'adminNotes': self.admin_notes,
            'documentUrl': self.document_url,
            'deletedAt': _iso(self.deleted_at),
        }

    def to_dict(self, include_admin: bool = False) -> dict:
        data = {
            'id': self.id,
            'tournament_id': self.tournament_id,
            'personal_number': self.personal_number,
            'first_name': self.first_name,
            'last_name': self.last_name,
            'gender': self.gender,
            'category': self.category,
            'team': self.team,
            'rated_player_links': self.rated_player_links,
            'player_acceptance_status': self.player_acceptance_status,
            'created_at': _iso(self.created_at),
        }
        if include_admin:
            data['admin_notes'] = self.admin_notes
            data['document_url'] = self.document_url
            data['updated_at'] = _iso(self.updated_at)
            data['deleted_at'] = _iso(self.deleted_at)
        return data


class AuditLog(db.Model):
    __tablename__ = 'audit_logs'

    id = db.Column(db.Integer, primary_key=True)
    entity_type = db.Column(db.String(20), nullable=False)
    entity_id = db.Column(db.String(50), nullable=False)
    action = db.Column(db.String(30), nullable=False)
    old_value = db.Column(db.Text, nullable=True)
    new_value = db.Column(db.Text, nullable=True)
    changed_by = db.Column(db.Integer, nullable=True, index=True)  # None for anonymous registrations
    changed_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)

    __table_args__ = (
        db.Index('ix_audit_logs_entity', 'entity_type', 'entity_id'),
    )

    def to_dict(self, actor: Optional[User] = None) -> dict:
        return {
            'id': self.id,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'action': self.action,
            'old_value': json.loads(self.old_value) if self.old_value else None,
            'new_value': json.loads(self.new_value) if self.new_value else None,
            'changed_by': self.changed_by,
            'changed_by_user': {
                'id': actor.id, 'name': actor.name, 'email': actor.email
            } if actor else None,
            'changed_at': _iso(self.changed_at),
        }
