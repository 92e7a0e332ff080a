"""
Unit tests for AuditRecorder.
Tests: record, query, user_activity, recent, cleanup
"""
from datetime import timedelta

from registrar.audit import AuditRecorder, AuditAction, EntityType
from registrar.models import db, AuditLog, Competitor, Tournament, utcnow


class TestRecord:

    def test_record_entry(self, app, admin_id):
        with app.app_context():
            AuditRecorder().record(EntityType.TOURNAMENT, 7, AuditAction.UPDATE,
                                   {'name': 'Old'}, {'name': 'New'}, admin_id)

            entry = AuditLog.query.one()
            assert entry.entity_type == 'tournament'
            assert entry.entity_id == '7'
            assert entry.action == 'UPDATE'
            assert entry.to_dict()['old_value'] == {'name': 'Old'}
            assert entry.to_dict()['new_value'] == {'name': 'New'}
            assert entry.changed_by == admin_id

    def test_record_failure_is_swallowed(self, app, db_session, mocker):
        with app.app_context():
            mocker.patch.object(db.session, 'commit', side_effect=RuntimeError('disk full'))
            AuditRecorder().record(EntityType.USER, 1, AuditAction.CREATE)

            assert AuditLog.query.count() == 0

    def test_datetimes_serialized(self, app, db_session):
        with app.app_context():
            AuditRecorder().record(EntityType.COMPETITOR, 1, AuditAction.CREATE,
                                   None, {'at': utcnow()}, None)
            assert isinstance(AuditLog.query.one().to_dict()['new_value']['at'], str)


class TestFailureDuringMutations:
    """A broken audit write never undoes the change it describes."""

    def test_tournament_created_without_audit(self, app, admin, tournament_payload, mocker):
        mocker.patch('registrar.audit.AuditLog', side_effect=RuntimeError('audit table missing'))
        with app.app_context():
            created = app.registry.create_tournament(tournament_payload(), admin)

            db.session.expire_all()
            assert Tournament.query.count() == 1
            assert db.session.get(Tournament, created.id).name == 'Spring Open'
            assert AuditLog.query.count() == 0

    def test_competitor_deleted_without_audit(self, app, admin, open_tournament_id, make_competitor, mocker):
        cid = make_competitor(open_tournament_id)
        mocker.patch('registrar.audit.AuditLog', side_effect=RuntimeError('audit table missing'))
        with app.app_context():
            app.competitors.soft_delete_competitor(cid, admin)

            db.session.expire_all()
            assert db.session.get(Competitor, cid).deleted_at is not None
            assert AuditLog.query.count() == 0


class TestQuery:

    def _seed(self, app, admin_id, user_id):
        with app.app_context():
            audit = AuditRecorder()
            audit.record(EntityType.TOURNAMENT, 1, AuditAction.CREATE, None, {'n': 1}, admin_id)
            audit.record(EntityType.TOURNAMENT, 1, AuditAction.UPDATE, {'n': 1}, {'n': 2}, admin_id)
            audit.record(EntityType.TOURNAMENT, 2, AuditAction.CREATE, None, {'n': 3}, admin_id)
            audit.record(EntityType.USER, user_id, AuditAction.APPROVE, None, None, admin_id)
            audit.record(EntityType.USER, user_id, AuditAction.CREATE, None, None, user_id)

    def test_newest_first(self, app, admin_id, user_id):
        self._seed(app, admin_id, user_id)
        with app.app_context():
            page = AuditRecorder().query()
            ids = [e['id'] for e in page['data']]
            assert ids == sorted(ids, reverse=True)
            assert page['pagination']['total'] == 5

    def test_filter_by_entity(self, app, admin_id, user_id):
        self._seed(app, admin_id, user_id)
        with app.app_context():
            page = AuditRecorder().query(entity_type='tournament', entity_id=1)
            assert [e['action'] for e in page['data']] == ['UPDATE', 'CREATE']

    def test_pagination(self, app, admin_id, user_id):
        self._seed(app, admin_id, user_id)
        with app.app_context():
            page = AuditRecorder().query(page=2, limit=2)
            assert len(page['data']) == 2
            assert page['pagination'] == {
                'page': 2, 'limit': 2, 'total': 5, 'total_pages': 3,
                'has_next': True, 'has_prev': True,
            }

    def test_actor_resolved(self, app, admin_id, user_id):
        self._seed(app, admin_id, user_id)
        with app.app_context():
            entry = AuditRecorder().query(entity_type='user', limit=1)['data'][0]
            assert entry['changed_by_user']['email'] == 'player@example.com'

    def test_user_activity(self, app, admin_id, user_id):
        self._seed(app, admin_id, user_id)
        with app.app_context():
            activity = AuditRecorder().user_activity(admin_id)
            assert activity['pagination']['total'] == 4
            assert all(e['changed_by'] == admin_id for e in activity['data'])

    def test_recent(self, app, admin_id, user_id):
        self._seed(app, admin_id, user_id)
        with app.app_context():
            assert len(AuditRecorder().recent(limit=3)) == 3


class TestCleanup:

    def test_removes_only_old_entries(self, app, db_session):
        with app.app_context():
            db.session.add(AuditLog(entity_type='user', entity_id='1', action='CREATE',
                                    changed_at=utcnow() - timedelta(days=120)))
            db.session.add(AuditLog(entity_type='user', entity_id='2', action='CREATE',
                                    changed_at=utcnow() - timedelta(days=10)))
            db.session.commit()

            removed = AuditRecorder().cleanup(days_to_keep=90)

            assert removed == 1
            assert [e.entity_id for e in AuditLog.query.all()] == ['2']
