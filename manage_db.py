#!/usr/bin/env python3
"""
Database management script for deployment.

Usage:
    python manage_db.py deploy            # apply migrations
    python manage_db.py cleanup-audit     # purge audit entries past retention
    python manage_db.py cleanup-audit 30  # ... keeping only the last 30 days
"""
import sys

from flask_migrate import upgrade

from registrar.app import create_app


def deploy():
    """Run deployment tasks."""
    print("Starting database migration...")
    app = create_app()
    with app.app_context():
        # Run Alembic upgrade to apply migrations
        try:
            upgrade()
            print("✓ Database migrations applied.")
        except Exception as e:
            print(f"Error applying migrations: {e}")
            sys.exit(1)


def cleanup_audit(days_to_keep: int = None):
    """Purge audit log entries older than the retention window."""
    app = create_app()
    with app.app_context():
        days = app.config['AUDIT_RETENTION_DAYS'] if days_to_keep is None else days_to_keep
        removed = app.audit.cleanup(days)
        print(f"✓ Removed {removed} audit entries older than {days} days.")


if __name__ == '__main__':
    command = sys.argv[1] if len(sys.argv) > 1 else 'deploy'

    if command == 'deploy':
        deploy()
    elif command == 'cleanup-audit':
        cleanup_audit(int(sys.argv[2]) if len(sys.argv) > 2 else None)
    else:
        print(f"Unknown command: {command}")
        print("Usage: python manage_db.py [deploy|cleanup-audit [days]]")
        sys.exit(1)
