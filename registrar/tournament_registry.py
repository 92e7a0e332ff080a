import logging
from dataclasses import dataclass, fields
from datetime import datetime
from typing import Optional, List

from shared.registration_window import registration_summary

from .access import require_admin, visible_tournament_statuses, can_view_tournament
from .audit import AuditRecorder, AuditAction, EntityType
from .errors import BadRequest, Conflict, NotFound
from .models import db, Tournament, TournamentStatus, commit_or_conflict, utcnow
from .validation import (
    UNSET, FieldErrors, parse_datetime, parse_string, parse_choice, parse_bool,
    parse_string_list, parse_optional_url,
)

logger = logging.getLogger(__name__)

NAME_TAKEN = 'Tournament with this name already exists'


@dataclass
class TournamentPatch:
    """Fields an update may change; anything left UNSET keeps its value."""
    name: object = UNSET
    status: object = UNSET
    tournament_start: object = UNSET
    tournament_end: object = UNSET
    registration_start: object = UNSET
    registration_end: object = UNSET
    categories: object = UNSET
    has_teams: object = UNSET
    proclamations: object = UNSET
    chess_results: object = UNSET

    @classmethod
    def from_payload(cls, data: dict, partial: bool = True) -> "TournamentPatch":
        errors = FieldErrors()
        patch = cls()

        def provided(key):
            return key in data or not partial

        if provided('name'):
            patch.name = parse_string(data.get('name'), 'name', errors)
        if 'status' in data:
            patch.status = parse_choice(data.get('status'), 'status', TournamentStatus, errors)
        for key in ('tournament_start', 'tournament_end', 'registration_start', 'registration_end'):
            if provided(key):
                setattr(patch, key, parse_datetime(data.get(key), key, errors))
        if provided('categories'):
            patch.categories = parse_string_list(data.get('categories'), 'categories', errors, min_items=1)
        if 'has_teams' in data:
            patch.has_teams = parse_bool(data.get('has_teams'), 'has_teams', errors)
        elif not partial:
            patch.has_teams = False
        for key in ('proclamations', 'chess_results'):
            if key in data:
                setattr(patch, key, parse_optional_url(data.get(key), key, errors))

        errors.raise_if_any()
        return patch

    def provided(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self) if getattr(self, f.name) is not UNSET}


def validate_schedule(values: dict) -> None:
    """registration_start < registration_end <= tournament_start < tournament_end."""
    errors = FieldErrors()
    if not values['registration_start'] < values['registration_end']:
        errors.add('registration_start', 'Registration start must be before registration end')
    if not values['registration_end'] <= values['tournament_start']:
        errors.add('registration_end', 'Registration must end no later than tournament start')
    if not values['tournament_start'] < values['tournament_end']:
        errors.add('tournament_start', 'Tournament start must be before tournament end')
    errors.raise_if_any()


class TournamentRegistry:
    """
    Manages tournament lifecycle:
    - Create/update tournaments with schedule and name invariants
    - Soft delete and restore, never hard delete
    - Role-aware visibility for reads
    """

    def __init__(self, audit: AuditRecorder):
        self.audit = audit

    # ==================== Reads ====================

    def _find(self, tournament_id) -> Optional[Tournament]:
        return db.session.get(Tournament, tournament_id)

    def get_live(self, tournament_id) -> Tournament:
        """Non-deleted tournament regardless of status, or NotFound."""
        tournament = self._find(tournament_id)
        if tournament is None or tournament.deleted_at is not None:
            raise NotFound('Tournament not found')
        return tournament

    def get_tournament(self, tournament_id, principal=None) -> Tournament:
        tournament = self._find(tournament_id)
        if not can_view_tournament(principal, tournament):
            raise NotFound('Tournament not found')
        return tournament

    def list_tournaments(
        self,
        principal=None,
        status: str = None,
        limit: int = 50,
        offset: int = 0
    ) -> List[Tournament]:
        """Live tournaments the principal may see, newest first."""
        query = Tournament.query.filter(Tournament.deleted_at.is_(None))

        allowed = visible_tournament_statuses(principal)
        if allowed is not None:
            query = query.filter(Tournament.status.in_(allowed))
        if status:
            query = query.filter(Tournament.status == status)

        query = query.order_by(Tournament.created_at.desc(), Tournament.id.desc())
        return query.offset(offset).limit(limit).all()

    def list_deleted(self, principal) -> List[Tournament]:
        require_admin(principal)
        return Tournament.query.filter(Tournament.deleted_at.isnot(None)) \
            .order_by(Tournament.deleted_at.desc()).all()

    def registration_status(self, tournament_id, principal=None, now: datetime = None) -> dict:
        tournament = self.get_tournament(tournament_id, principal)
        return registration_summary(tournament, now)

    # ==================== Mutations ====================

    def _name_taken(self, name: str, exclude_id=None) -> bool:
        query = Tournament.query.filter(
            Tournament.name == name,
            Tournament.deleted_at.is_(None)
        )
        if exclude_id is not None:
            query = query.filter(Tournament.id != exclude_id)
        return db.session.query(query.exists()).scalar()

    def create_tournament(self, data: dict, principal) -> Tournament:
        """Create a tournament owned by the acting principal."""
        require_admin(principal)
        values = TournamentPatch.from_payload(data, partial=False).provided()
        validate_schedule(values)

        if self._name_taken(values['name']):
            raise Conflict(NAME_TAKEN, details={'name': NAME_TAKEN})

        tournament = Tournament(
            status=values.pop('status', TournamentStatus.DRAFT.value),
            created_by=principal.id
        )
        for key, value in values.items():
            setattr(tournament, key, value)

        db.session.add(tournament)
        commit_or_conflict(NAME_TAKEN, details={'name': NAME_TAKEN})

        logger.info(f"Tournament {tournament.id} '{tournament.name}' created by user {principal.id}")
        self.audit.record(EntityType.TOURNAMENT, tournament.id, AuditAction.CREATE,
                          None, tournament.to_dict(), principal.id)
        return tournament

    def update_tournament(self, tournament_id, data: dict, principal) -> Tournament:
        """Merge provided fields, re-validate the result, keep created_by."""
        require_admin(principal)
        patch = TournamentPatch.from_payload(data).provided()
        tournament = self.get_live(tournament_id)
        before = tournament.to_dict()

        merged = {
            'registration_start': tournament.registration_start,
            'registration_end': tournament.registration_end,
            'tournament_start': tournament.tournament_start,
            'tournament_end': tournament.tournament_end,
        }
        merged.update({k: v for k, v in patch.items() if k in merged})
        validate_schedule(merged)

        name = patch.get('name', tournament.name)
        if self._name_taken(name, exclude_id=tournament.id):
            raise Conflict(NAME_TAKEN, details={'name': NAME_TAKEN})

        for key, value in patch.items():
            setattr(tournament, key, value)
        commit_or_conflict(NAME_TAKEN, details={'name': NAME_TAKEN})

        self.audit.record(EntityType.TOURNAMENT, tournament.id, AuditAction.UPDATE,
                          before, tournament.to_dict(), principal.id)
        return tournament

    def soft_delete_tournament(self, tournament_id, principal) -> Tournament:
        require_admin(principal)
        tournament = self.get_live(tournament_id)
        before = tournament.snapshot()

        tournament.deleted_at = utcnow()
        db.session.commit()

        logger.info(f"Tournament {tournament.id} soft-deleted by user {principal.id}")
        self.audit.record(EntityType.TOURNAMENT, tournament.id, AuditAction.SOFT_DELETE,
                          before, tournament.snapshot(), principal.id)
        return tournament

    def restore_tournament(self, tournament_id, principal) -> Tournament:
        """Undo a soft delete unless a live tournament now holds the name."""
        require_admin(principal)
        tournament = self._find(tournament_id)
        if tournament is None or tournament.deleted_at is None:
            raise NotFound('Soft-deleted tournament not found')

        if self._name_taken(tournament.name, exclude_id=tournament.id):
            message = ('A tournament with this name already exists. '
                       'Please rename the tournament before restoring.')
            raise Conflict(message, details={'name': message})

        before = tournament.snapshot()
        tournament.deleted_at = None
        commit_or_conflict(NAME_TAKEN, details={'name': NAME_TAKEN})

        logger.info(f"Tournament {tournament.id} restored by user {principal.id}")
        self.audit.record(EntityType.TOURNAMENT, tournament.id, AuditAction.RESTORE,
                          before, tournament.snapshot(), principal.id)
        return tournament

    def rename_deleted_tournament(self, tournament_id, name: str, principal) -> Tournament:
        """Rename a soft-deleted tournament so it can be restored."""
        require_admin(principal)
        tournament = self._find(tournament_id)
        if tournament is None or tournament.deleted_at is None:
            raise NotFound('Soft-deleted tournament not found')

        errors = FieldErrors()
        name = parse_string(name, 'name', errors)
        errors.raise_if_any()

        before = tournament.snapshot()
        tournament.name = name
        db.session.commit()

        self.audit.record(EntityType.TOURNAMENT, tournament.id, AuditAction.UPDATE,
                          before, tournament.snapshot(), principal.id)
        return tournament
