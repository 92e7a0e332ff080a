import logging
from dataclasses import dataclass, fields
from typing import Optional, Tuple, List

from sqlalchemy import func, or_

from shared.events import competitor_registered_event, competitor_decision_event
from shared.registration_window import is_registration_open

from .access import is_admin, require_admin, can_view_tournament
from .audit import AuditRecorder, AuditAction, EntityType
from .errors import BadRequest, Conflict, NotFound
from .models import (
    db, Tournament, Competitor, Gender, AcceptanceStatus, commit_or_conflict, utcnow,
)
from .notifications import Notifier
from .validation import (
    UNSET, FieldErrors, parse_bool, parse_string, parse_choice, parse_url_list, parse_optional_url,
)

logger = logging.getLogger(__name__)

PUBLIC_ACCEPTANCE_STATUSES = (AcceptanceStatus.PENDING.value, AcceptanceStatus.APPROVED.value)

STATUS_ACTIONS = {
    AcceptanceStatus.APPROVED.value: AuditAction.APPROVE,
    AcceptanceStatus.REJECTED.value: AuditAction.REJECT,
    AcceptanceStatus.PENDING.value: AuditAction.UPDATE_STATUS,
}


@dataclass
class CompetitorPatch:
    """Fields a competitor update may change; UNSET fields keep their value."""
    first_name: object = UNSET
    last_name: object = UNSET
    gender: object = UNSET
    category: object = UNSET
    team: object = UNSET
    rated_player_links: object = UNSET
    document_url: object = UNSET
    admin_notes: object = UNSET

    @classmethod
    def from_payload(cls, data: dict, partial: bool = True) -> "CompetitorPatch":
        errors = FieldErrors()
        patch = cls()

        def provided(key):
            return key in data or not partial

        if provided('first_name'):
            patch.first_name = parse_string(data.get('first_name'), 'first_name', errors, max_length=100)
        if provided('last_name'):
            patch.last_name = parse_string(data.get('last_name'), 'last_name', errors, max_length=100)
        if provided('gender'):
            patch.gender = parse_choice(data.get('gender'), 'gender', Gender, errors)
        if provided('category'):
            patch.category = parse_string(data.get('category'), 'category', errors, max_length=100)
        if 'team' in data:
            patch.team = parse_string(data.get('team'), 'team', errors, max_length=100, required=False)
        if 'rated_player_links' in data:
            patch.rated_player_links = parse_url_list(data.get('rated_player_links'), 'rated_player_links', errors)
        if 'document_url' in data:
            patch.document_url = parse_optional_url(data.get('document_url'), 'document_url', errors)
        if 'admin_notes' in data:
            patch.admin_notes = parse_string(data.get('admin_notes'), 'admin_notes', errors,
                                             max_length=1000, required=False)

        errors.raise_if_any()
        return patch

    def provided(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self) if getattr(self, f.name) is not UNSET}


def _name_conflict(first_name: str, last_name: str) -> Conflict:
    message = (f'A participant with the name "{first_name} {last_name}" '
               f'already exists in this tournament')
    return Conflict(message, details={'first_name': first_name, 'last_name': last_name})


class CompetitorRegistry:
    """
    Manages competitor registrations inside a tournament:
    - Registration gated by the tournament's registration window
    - Per-tournament personal numbers that are never reused
    - Admin review (approve/reject), partial updates and soft delete
    """

    def __init__(self, audit: AuditRecorder, notifier: Notifier = None):
        self.audit = audit
        self.notifier = notifier or Notifier()

    # ==================== Lookups ====================

    def _live_tournament(self, tournament_id, lock: bool = False) -> Tournament:
        query = Tournament.query.filter(Tournament.id == tournament_id, Tournament.deleted_at.is_(None))
        if lock:
            query = query.with_for_update()
        tournament = query.first()
        if tournament is None:
            raise NotFound('Tournament not found')
        return tournament

    def _live_competitor(self, competitor_id, tournament_id=None) -> Competitor:
        competitor = db.session.get(Competitor, competitor_id)
        if competitor is None or competitor.deleted_at is not None:
            raise NotFound('Competitor not found')
        if tournament_id is not None and competitor.tournament_id != int(tournament_id):
            raise NotFound('Competitor not found in this tournament')
        if competitor.tournament.deleted_at is not None:
            raise NotFound('Tournament not found')
        return competitor

    def _name_taken(self, tournament_id, first_name, last_name, exclude_id=None) -> bool:
        query = Competitor.query.filter(
            Competitor.tournament_id == tournament_id,
            Competitor.first_name == first_name,
            Competitor.last_name == last_name,
            Competitor.deleted_at.is_(None)
        )
        if exclude_id is not None:
            query = query.filter(Competitor.id != exclude_id)
        return db.session.query(query.exists()).scalar()

    def _next_personal_number(self, tournament_id) -> int:
        # Soft-deleted rows count too, so numbers are never handed out twice.
        current = db.session.query(func.max(Competitor.personal_number)) \
            .filter(Competitor.tournament_id == tournament_id).scalar()
        return (current or 0) + 1

    @staticmethod
    def _check_fields(tournament: Tournament, values: dict) -> None:
        errors = FieldErrors()
        category = values.get('category')
        if category is not None and category not in tournament.categories:
            errors.add('category', f'Category "{category}" is not available for this tournament')
        if values.get('team') and not tournament.has_teams:
            errors.add('team', 'This tournament does not accept teams')
        errors.raise_if_any()

    def get_competitor(self, competitor_id, principal=None) -> Competitor:
        competitor = db.session.get(Competitor, competitor_id)
        if competitor is None:
            raise NotFound('Competitor not found')
        if is_admin(principal):
            return competitor
        if competitor.deleted_at is not None or not can_view_tournament(principal, competitor.tournament):
            raise NotFound('Competitor not found')
        return competitor

    def list_competitors(
        self,
        tournament_id,
        principal=None,
        filters: dict = None,
        page: int = 1,
        limit: int = 50
    ) -> Tuple[List[Competitor], int]:
        """Competitors of a visible tournament ordered by personal number."""
        filters = filters or {}
        tournament = db.session.get(Tournament, tournament_id)
        admin = is_admin(principal)
        if tournament is None or (not admin and not can_view_tournament(principal, tournament)):
            raise NotFound('Tournament not found')

        query = Competitor.query.filter(Competitor.tournament_id == tournament.id)

        if admin and filters.get('deleted'):
            query = query.filter(Competitor.deleted_at.isnot(None))
        else:
            query = query.filter(Competitor.deleted_at.is_(None))

        if not admin:
            query = query.filter(Competitor.player_acceptance_status.in_(PUBLIC_ACCEPTANCE_STATUSES))
        elif filters.get('status'):
            query = query.filter(Competitor.player_acceptance_status.in_(filters['status']))

        if filters.get('categories'):
            query = query.filter(Competitor.category.in_(filters['categories']))
        if filters.get('gender'):
            query = query.filter(Competitor.gender.in_(filters['gender']))
        if filters.get('teams'):
            query = query.filter(Competitor.team.in_(filters['teams']))
        if filters.get('search'):
            term = f"%{filters['search']}%"
            query = query.filter(or_(
                Competitor.first_name.ilike(term),
                Competitor.last_name.ilike(term),
                Competitor.team.ilike(term),
            ))

        total = query.count()
        competitors = query.order_by(Competitor.personal_number.asc()) \
            .offset((page - 1) * limit).limit(limit).all()
        return competitors, total

    # ==================== Mutations ====================

    def register_competitor(self, tournament_id, data: dict, principal=None) -> Competitor:
        """
        Register a competitor. Anyone may register while the tournament's
        registration window is open; admins may register at any time.
        """
        admin = is_admin(principal)
        values = CompetitorPatch.from_payload(data, partial=False).provided()
        if not admin:
            values.pop('admin_notes', None)

        initial_status = AcceptanceStatus.PENDING.value
        if admin and 'player_acceptance_status' in data:
            errors = FieldErrors()
            initial_status = parse_choice(data['player_acceptance_status'], 'player_acceptance_status',
                                          AcceptanceStatus, errors)
            errors.raise_if_any()

        # Row lock serializes concurrent registrations computing the next number.
        tournament = self._live_tournament(tournament_id, lock=True)

        if not admin and not is_registration_open(tournament):
            db.session.rollback()
            raise BadRequest('Tournament is not open for registration')

        try:
            self._check_fields(tournament, values)
            if self._name_taken(tournament.id, values['first_name'], values['last_name']):
                raise _name_conflict(values['first_name'], values['last_name'])
        except (BadRequest, Conflict):
            db.session.rollback()
            raise

        competitor = Competitor(
            tournament_id=tournament.id,
            personal_number=self._next_personal_number(tournament.id),
            player_acceptance_status=initial_status,
        )
        for key, value in values.items():
            setattr(competitor, key, value)

        db.session.add(competitor)
        commit_or_conflict(
            'Registration conflicted with a concurrent registration, please retry',
            details={'first_name': values['first_name'], 'last_name': values['last_name']}
        )

        logger.info(f"Competitor {competitor.id} (#{competitor.personal_number}) registered "
                    f"for tournament {tournament.id}")
        self.audit.record(EntityType.COMPETITOR, competitor.id, AuditAction.CREATE,
                          None, competitor.snapshot(), principal.id if principal else None)
        self.notifier.dispatch(competitor_registered_event(competitor, tournament))
        return competitor

    def update_competitor(self, competitor_id, data: dict, principal, tournament_id=None) -> Competitor:
        """Merge provided fields. A true `_delete` flag soft-deletes instead."""
        require_admin(principal)
        if '_delete' in data:
            errors = FieldErrors()
            delete = parse_bool(data['_delete'], '_delete', errors)
            errors.raise_if_any()
            if delete:
                return self.soft_delete_competitor(competitor_id, principal, tournament_id=tournament_id)

        patch = CompetitorPatch.from_payload(data).provided()
        competitor = self._live_competitor(competitor_id, tournament_id)
        if not patch:
            return competitor
        tournament = competitor.tournament

        self._check_fields(tournament, patch)

        first_name = patch.get('first_name', competitor.first_name)
        last_name = patch.get('last_name', competitor.last_name)
        if self._name_taken(tournament.id, first_name, last_name, exclude_id=competitor.id):
            raise _name_conflict(first_name, last_name)

        before = competitor.snapshot()
        for key, value in patch.items():
            setattr(competitor, key, value)
        commit_or_conflict(
            f'A participant with the name "{first_name} {last_name}" already exists in this tournament',
            details={'first_name': first_name, 'last_name': last_name}
        )

        self.audit.record(EntityType.COMPETITOR, competitor.id, AuditAction.UPDATE,
                          before, competitor.snapshot(), principal.id)
        return competitor

    def soft_delete_competitor(self, competitor_id, principal, tournament_id=None) -> Competitor:
        require_admin(principal)
        competitor = self._live_competitor(competitor_id, tournament_id)
        before = competitor.snapshot()

        competitor.deleted_at = utcnow()
        db.session.commit()

        logger.info(f"Competitor {competitor.id} soft-deleted by user {principal.id}")
        self.audit.record(EntityType.COMPETITOR, competitor.id, AuditAction.SOFT_DELETE,
                          before, competitor.snapshot(), principal.id)
        return competitor

    def set_acceptance_status(self, competitor_id, status: str, principal,
                              admin_notes: Optional[str] = UNSET) -> Competitor:
        """Approve, reject or reset a registration."""
        require_admin(principal)
        errors = FieldErrors()
        status = parse_choice(status, 'status', AcceptanceStatus, errors)
        if admin_notes is not UNSET:
            admin_notes = parse_string(admin_notes, 'admin_notes', errors, max_length=1000, required=False)
        errors.raise_if_any()

        competitor = self._live_competitor(competitor_id)
        if competitor.player_acceptance_status == status:
            raise BadRequest(f'Competitor status is already {status}')

        before = competitor.snapshot()
        competitor.player_acceptance_status = status
        if admin_notes is not UNSET:
            competitor.admin_notes = admin_notes
        db.session.commit()

        self.audit.record(EntityType.COMPETITOR, competitor.id, STATUS_ACTIONS[status],
                          before, competitor.snapshot(), principal.id)

        if status != AcceptanceStatus.PENDING.value:
            approved = status == AcceptanceStatus.APPROVED.value
            self.notifier.dispatch(competitor_decision_event(
                competitor, competitor.tournament, approved, reason=competitor.admin_notes
            ))
        return competitor

    def attach_document(self, competitor_id, document_url: str, principal) -> Competitor:
        """Record the storage URL of an uploaded registration document."""
        require_admin(principal)
        errors = FieldErrors()
        url = parse_optional_url(document_url, 'document_url', errors)
        if url is None and 'document_url' not in errors.errors:
            errors.add('document_url', 'document_url is required')
        errors.raise_if_any()

        competitor = self._live_competitor(competitor_id)
        before = competitor.snapshot()
        competitor.document_url = url
        db.session.commit()

        self.audit.record(EntityType.COMPETITOR, competitor.id, AuditAction.UPDATE,
                          before, competitor.snapshot(), principal.id)
        return competitor
