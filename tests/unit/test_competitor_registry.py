"""
Unit tests for CompetitorRegistry class.
Tests: register_competitor, update_competitor, soft_delete_competitor,
       set_acceptance_status, attach_document, list_competitors
"""
import threading
from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from registrar.app import create_app
from registrar.errors import BadRequest, Conflict, Forbidden, NotFound
from registrar.models import db, AuditLog, Competitor, Tournament, utcnow

ANA = {'first_name': 'Ana', 'last_name': 'Popescu', 'category': 'U18', 'gender': 'FEMALE'}


def competitor(**overrides):
    data = dict(ANA)
    data.update(overrides)
    return data


class TestRegisterCompetitor:
    """Tests for register_competitor method."""

    def test_example_scenario(self, app, open_tournament_id, mock_notifier):
        """First registration gets #1, a duplicate name conflicts, an unknown category is rejected."""
        with app.app_context():
            first = app.competitors.register_competitor(open_tournament_id, ANA)
            assert first.personal_number == 1
            assert first.player_acceptance_status == 'PENDING'

            with pytest.raises(Conflict) as exc:
                app.competitors.register_competitor(open_tournament_id, ANA)
            assert exc.value.details == {'first_name': 'Ana', 'last_name': 'Popescu'}

            with pytest.raises(BadRequest) as exc:
                app.competitors.register_competitor(
                    open_tournament_id, competitor(first_name='Maria', category='Seniors')
                )
            assert 'category' in exc.value.details

    def test_numbers_increase(self, app, open_tournament_id, mock_notifier):
        with app.app_context():
            numbers = [
                app.competitors.register_competitor(open_tournament_id, competitor(first_name=name)).personal_number
                for name in ('Ana', 'Ioana', 'Elena')
            ]
            assert numbers == [1, 2, 3]

    def test_numbers_never_reused_after_delete(self, app, admin, open_tournament_id, mock_notifier):
        with app.app_context():
            app.competitors.register_competitor(open_tournament_id, competitor(first_name='A'))
            last = app.competitors.register_competitor(open_tournament_id, competitor(first_name='B'))
            app.competitors.soft_delete_competitor(last.id, admin)

            again = app.competitors.register_competitor(open_tournament_id, competitor(first_name='C'))
            assert again.personal_number == 3

    def test_name_free_after_delete(self, app, admin, open_tournament_id, mock_notifier):
        with app.app_context():
            first = app.competitors.register_competitor(open_tournament_id, ANA)
            app.competitors.soft_delete_competitor(first.id, admin)

            again = app.competitors.register_competitor(open_tournament_id, ANA)
            assert again.personal_number == 2

    def test_name_match_is_case_sensitive(self, app, open_tournament_id, mock_notifier):
        with app.app_context():
            app.competitors.register_competitor(open_tournament_id, ANA)
            other = app.competitors.register_competitor(open_tournament_id, competitor(first_name='ana'))
            assert other.personal_number == 2

    def test_numbers_are_per_tournament(self, app, make_tournament, mock_notifier):
        first = make_tournament(name='One')
        second = make_tournament(name='Two')
        with app.app_context():
            app.competitors.register_competitor(first, ANA)
            assert app.competitors.register_competitor(second, ANA).personal_number == 1

    def test_closed_window_rejected(self, app, make_tournament, mock_notifier):
        tid = make_tournament(registration_opens=timedelta(days=-5), registration_closes=timedelta(days=-1))
        with app.app_context():
            with pytest.raises(BadRequest):
                app.competitors.register_competitor(tid, ANA)

    def test_draft_tournament_rejected(self, app, make_tournament, mock_notifier):
        tid = make_tournament(status='DRAFT')
        with app.app_context():
            with pytest.raises(BadRequest):
                app.competitors.register_competitor(tid, ANA)

    def test_admin_bypasses_window(self, app, admin, make_tournament, mock_notifier):
        tid = make_tournament(status='DRAFT')
        with app.app_context():
            registered = app.competitors.register_competitor(tid, ANA, admin)
            assert registered.personal_number == 1

    def test_admin_still_needs_valid_category(self, app, admin, open_tournament_id, mock_notifier):
        with app.app_context():
            with pytest.raises(BadRequest):
                app.competitors.register_competitor(open_tournament_id, competitor(category='Seniors'), admin)

    def test_deleted_tournament_not_found(self, app, make_tournament, mock_notifier):
        tid = make_tournament(deleted=True)
        with app.app_context():
            with pytest.raises(NotFound):
                app.competitors.register_competitor(tid, ANA)

    def test_missing_tournament_not_found(self, app, db_session, mock_notifier):
        with app.app_context():
            with pytest.raises(NotFound):
                app.competitors.register_competitor(12345, ANA)

    def test_team_requires_team_tournament(self, app, open_tournament_id, mock_notifier):
        with app.app_context():
            with pytest.raises(BadRequest) as exc:
                app.competitors.register_competitor(open_tournament_id, competitor(team='CS Timisoara'))
            assert 'team' in exc.value.details

    def test_team_accepted_when_enabled(self, app, make_tournament, mock_notifier):
        tid = make_tournament(has_teams=True)
        with app.app_context():
            registered = app.competitors.register_competitor(tid, competitor(team='CS Timisoara'))
            assert registered.team == 'CS Timisoara'

    def test_invalid_gender(self, app, open_tournament_id, mock_notifier):
        with app.app_context():
            with pytest.raises(BadRequest) as exc:
                app.competitors.register_competitor(open_tournament_id, competitor(gender='X'))
            assert 'gender' in exc.value.details

    def test_public_cannot_self_approve(self, app, open_tournament_id, mock_notifier):
        with app.app_context():
            registered = app.competitors.register_competitor(
                open_tournament_id, competitor(player_acceptance_status='APPROVED', admin_notes='vip')
            )
            assert registered.player_acceptance_status == 'PENDING'
            assert registered.admin_notes is None

    def test_anonymous_registration_audited(self, app, open_tournament_id, mock_notifier):
        with app.app_context():
            registered = app.competitors.register_competitor(open_tournament_id, ANA)
            entry = AuditLog.query.filter_by(entity_type='competitor').one()
            assert entry.entity_id == str(registered.id)
            assert entry.action == 'CREATE'
            assert entry.changed_by is None

    def test_notification_dispatched(self, app, open_tournament_id, mock_notifier):
        with app.app_context():
            app.competitors.register_competitor(open_tournament_id, ANA)
            event = mock_notifier.call_args[0][0]
            assert event.type.value == 'competitor.registered'
            assert event.data['tournament_name'] == 'Spring Open'


class TestUpdateCompetitor:
    """Tests for update_competitor and soft_delete_competitor."""

    def test_partial_update_keeps_other_fields(self, app, admin, open_tournament_id, make_competitor):
        cid = make_competitor(open_tournament_id)
        with app.app_context():
            updated = app.competitors.update_competitor(cid, {'category': 'Open'}, admin)
            assert updated.category == 'Open'
            assert updated.first_name == 'Ana'
            assert updated.gender == 'FEMALE'

    def test_update_requires_admin(self, app, regular_user, open_tournament_id, make_competitor):
        cid = make_competitor(open_tournament_id)
        with app.app_context():
            with pytest.raises(Forbidden):
                app.competitors.update_competitor(cid, {'category': 'Open'}, regular_user)

    def test_update_checks_category(self, app, admin, open_tournament_id, make_competitor):
        cid = make_competitor(open_tournament_id)
        with app.app_context():
            with pytest.raises(BadRequest):
                app.competitors.update_competitor(cid, {'category': 'Seniors'}, admin)

    def test_rename_into_existing_pair(self, app, admin, open_tournament_id, make_competitor):
        make_competitor(open_tournament_id)
        other = make_competitor(open_tournament_id, first_name='Ioana')
        with app.app_context():
            with pytest.raises(Conflict):
                app.competitors.update_competitor(other, {'first_name': 'Ana'}, admin)

    def test_delete_flag_matches_delete(self, app, admin, open_tournament_id, make_competitor):
        via_flag = make_competitor(open_tournament_id)
        via_delete = make_competitor(open_tournament_id, first_name='Ioana')
        with app.app_context():
            a = app.competitors.update_competitor(via_flag, {'_delete': True, 'category': 'Open'}, admin)
            b = app.competitors.soft_delete_competitor(via_delete, admin)

            assert a.deleted_at is not None and b.deleted_at is not None
            assert a.category == 'U18'
            actions = [e.action for e in AuditLog.query.order_by(AuditLog.id).all()]
            assert actions == ['SOFT_DELETE', 'SOFT_DELETE']

    @pytest.mark.parametrize('flag', ['true', 1, None])
    def test_delete_flag_must_be_boolean(self, app, admin, open_tournament_id, make_competitor, flag):
        cid = make_competitor(open_tournament_id)
        with app.app_context():
            with pytest.raises(BadRequest) as exc:
                app.competitors.update_competitor(cid, {'_delete': flag}, admin)
            assert '_delete' in exc.value.details

            assert db.session.get(Competitor, cid).deleted_at is None
            assert AuditLog.query.count() == 0

    def test_false_delete_flag_updates(self, app, admin, open_tournament_id, make_competitor):
        cid = make_competitor(open_tournament_id)
        with app.app_context():
            updated = app.competitors.update_competitor(cid, {'_delete': False, 'category': 'Open'}, admin)
            assert updated.deleted_at is None
            assert updated.category == 'Open'

    def test_empty_update_writes_nothing(self, app, admin, open_tournament_id, make_competitor):
        cid = make_competitor(open_tournament_id)
        with app.app_context():
            unchanged = app.competitors.update_competitor(cid, {}, admin)
            assert unchanged.id == cid
            assert AuditLog.query.count() == 0

    def test_delete_twice_not_found(self, app, admin, open_tournament_id, make_competitor):
        cid = make_competitor(open_tournament_id)
        with app.app_context():
            app.competitors.soft_delete_competitor(cid, admin)
            with pytest.raises(NotFound):
                app.competitors.soft_delete_competitor(cid, admin)

    def test_wrong_tournament_not_found(self, app, admin, make_tournament, make_competitor):
        tid = make_tournament(name='One')
        other = make_tournament(name='Two')
        cid = make_competitor(tid)
        with app.app_context():
            with pytest.raises(NotFound):
                app.competitors.update_competitor(cid, {'category': 'Open'}, admin, tournament_id=other)


class TestAcceptanceStatus:
    """Tests for set_acceptance_status method."""

    def test_approve(self, app, admin, open_tournament_id, make_competitor, mock_notifier):
        cid = make_competitor(open_tournament_id)
        with app.app_context():
            approved = app.competitors.set_acceptance_status(cid, 'APPROVED', admin)
            assert approved.player_acceptance_status == 'APPROVED'

            entry = AuditLog.query.one().to_dict()
            assert entry['action'] == 'APPROVE'
            assert entry['old_value']['playerAcceptanceStatus'] == 'PENDING'
            assert mock_notifier.call_args[0][0].type.value == 'competitor.approved'

    def test_reject_with_notes(self, app, admin, open_tournament_id, make_competitor, mock_notifier):
        cid = make_competitor(open_tournament_id)
        with app.app_context():
            rejected = app.competitors.set_acceptance_status(cid, 'REJECTED', admin, admin_notes='No FIDE id')
            assert rejected.admin_notes == 'No FIDE id'
            event = mock_notifier.call_args[0][0]
            assert event.type.value == 'competitor.rejected'
            assert event.data['rejection_reason'] == 'No FIDE id'

    def test_back_to_pending(self, app, admin, open_tournament_id, make_competitor, mock_notifier):
        cid = make_competitor(open_tournament_id, status='APPROVED')
        with app.app_context():
            app.competitors.set_acceptance_status(cid, 'PENDING', admin)
            assert AuditLog.query.one().action == 'UPDATE_STATUS'
            mock_notifier.assert_not_called()

    def test_no_op_rejected(self, app, admin, open_tournament_id, make_competitor, mock_notifier):
        cid = make_competitor(open_tournament_id)
        with app.app_context():
            with pytest.raises(BadRequest):
                app.competitors.set_acceptance_status(cid, 'PENDING', admin)

    def test_requires_admin(self, app, regular_user, open_tournament_id, make_competitor):
        cid = make_competitor(open_tournament_id)
        with app.app_context():
            with pytest.raises(Forbidden):
                app.competitors.set_acceptance_status(cid, 'APPROVED', regular_user)


class TestAttachDocument:

    def test_attach(self, app, admin, open_tournament_id, make_competitor):
        cid = make_competitor(open_tournament_id)
        with app.app_context():
            updated = app.competitors.attach_document(cid, 'https://files.example.com/docs/1.pdf', admin)
            assert updated.document_url == 'https://files.example.com/docs/1.pdf'

    def test_requires_url(self, app, admin, open_tournament_id, make_competitor):
        cid = make_competitor(open_tournament_id)
        with app.app_context():
            with pytest.raises(BadRequest):
                app.competitors.attach_document(cid, 'not a url', admin)
            with pytest.raises(BadRequest):
                app.competitors.attach_document(cid, None, admin)


class TestListCompetitors:
    """Tests for list_competitors method."""

    @pytest.fixture
    def roster(self, open_tournament_id, make_competitor):
        make_competitor(open_tournament_id, first_name='Ana', status='APPROVED')
        make_competitor(open_tournament_id, first_name='Ioana', status='PENDING', category='Open')
        make_competitor(open_tournament_id, first_name='Elena', status='REJECTED')
        make_competitor(open_tournament_id, first_name='Maria', status='APPROVED', deleted=True)
        return open_tournament_id

    def test_public_view(self, app, roster):
        with app.app_context():
            competitors, total = app.competitors.list_competitors(roster, None)
            assert [c.first_name for c in competitors] == ['Ana', 'Ioana']
            assert total == 2

    def test_admin_sees_rejected(self, app, admin, roster):
        with app.app_context():
            competitors, total = app.competitors.list_competitors(roster, admin)
            assert total == 3

    def test_admin_filters(self, app, admin, roster):
        with app.app_context():
            competitors, _ = app.competitors.list_competitors(roster, admin, {'status': ['REJECTED']})
            assert [c.first_name for c in competitors] == ['Elena']

            competitors, _ = app.competitors.list_competitors(roster, admin, {'categories': ['Open']})
            assert [c.first_name for c in competitors] == ['Ioana']

            competitors, _ = app.competitors.list_competitors(roster, admin, {'search': 'ele'})
            assert [c.first_name for c in competitors] == ['Elena']

    def test_admin_deleted_view(self, app, admin, roster):
        with app.app_context():
            competitors, _ = app.competitors.list_competitors(roster, admin, {'deleted': True})
            assert [c.first_name for c in competitors] == ['Maria']

    def test_public_cannot_use_status_filter(self, app, roster):
        with app.app_context():
            _, total = app.competitors.list_competitors(roster, None, {'status': ['REJECTED']})
            assert total == 2

    def test_hidden_tournament(self, app, make_tournament):
        tid = make_tournament(status='DRAFT')
        with app.app_context():
            with pytest.raises(NotFound):
                app.competitors.list_competitors(tid, None)

    def test_pagination(self, app, admin, roster):
        with app.app_context():
            competitors, total = app.competitors.list_competitors(roster, admin, page=2, limit=2)
            assert total == 3
            assert [c.first_name for c in competitors] == ['Elena']


class TestConcurrentNumbering:

    def test_store_rejects_duplicate_number(self, app, open_tournament_id, make_competitor):
        make_competitor(open_tournament_id, personal_number=1)
        with app.app_context():
            db.session.add(Competitor(
                tournament_id=open_tournament_id, personal_number=1, first_name='X', last_name='Y',
                gender='MALE', category='Open'
            ))
            with pytest.raises(IntegrityError):
                db.session.commit()
            db.session.rollback()


@pytest.fixture
def file_app(tmp_path):
    """App on a file-backed SQLite database so worker threads share one store."""
    app = create_app('testing', test_config={
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'registrar.db'}",
        'SQLALCHEMY_ENGINE_OPTIONS': {'connect_args': {'timeout': 30}},
    })
    yield app
    with app.app_context():
        db.session.remove()
        db.engine.dispose()


class TestParallelRegistration:

    WORKERS = 8

    def test_parallel_registrations_never_share_a_number(self, file_app):
        with file_app.app_context():
            now = utcnow()
            tournament = Tournament(
                name='Parallel Open',
                status='OPEN',
                registration_start=now - timedelta(days=1),
                registration_end=now + timedelta(days=1),
                tournament_start=now + timedelta(days=2),
                tournament_end=now + timedelta(days=3),
                has_teams=False,
            )
            tournament.categories = ['Open']
            db.session.add(tournament)
            db.session.commit()
            tid = tournament.id

        barrier = threading.Barrier(self.WORKERS)
        numbers, conflicts, unexpected = [], [], []

        def register(i):
            with file_app.app_context():
                barrier.wait()
                try:
                    competitor = file_app.competitors.register_competitor(tid, {
                        'first_name': f'Player{i}', 'last_name': 'Parallel',
                        'category': 'Open', 'gender': 'MALE',
                    })
                    numbers.append(competitor.personal_number)
                except Conflict:
                    conflicts.append(i)
                except Exception as e:
                    unexpected.append(e)
                finally:
                    db.session.remove()

        threads = [threading.Thread(target=register, args=(i,)) for i in range(self.WORKERS)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=60)

        assert unexpected == []
        assert len(numbers) + len(conflicts) == self.WORKERS
        assert numbers
        assert len(set(numbers)) == len(numbers)

        with file_app.app_context():
            stored = [c.personal_number for c in Competitor.query.filter_by(tournament_id=tid).all()]
            assert sorted(stored) == sorted(numbers)
