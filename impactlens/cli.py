import click
from flask import current_app

from .tasks.migration import EvidenceIdsMigrationTask
from .tasks.sweeper import OrphanSweeperTask, purge_all_collections
from .utils.auth import issue_token


def _db():
    return current_app.extensions['impactlens']['db']


def register_commands(app):
    """Maintenance commands, run with ``flask --app run <command>``."""

    @app.cli.command('migrate-evidence-ids')
    def migrate_evidence_ids():
        """Move embedded impact evidence into the evidence collection."""
        stats = EvidenceIdsMigrationTask(_db()).run_migration()
        click.echo(f"Migrated {stats['migrated']} of {stats['scanned']} impacts "
                   f"({stats['skipped']} already migrated, {stats['evidence_created']} evidence created)")

    @app.cli.command('verify-migration')
    def verify_migration():
        """Report how many impacts still embed their evidence."""
        results = EvidenceIdsMigrationTask(_db()).verify()
        for key, value in results.items():
            click.echo(f"{key}: {value}")

    @app.cli.command('sweep-orphans')
    @click.option('--grace-minutes', type=int, default=None,
                  help='Leave documents younger than this alone (defaults to ORPHAN_GRACE_MINUTES).')
    def sweep_orphans(grace_minutes):
        """Delete impacts, evidence and history entries whose parent is gone."""
        if grace_minutes is None:
            grace_minutes = current_app.config.get('ORPHAN_GRACE_MINUTES', 30)
        stats = OrphanSweeperTask(_db(), grace_minutes=grace_minutes).run_sweeper()
        for key, value in stats.items():
            click.echo(f"{key}: {value}")

    @app.cli.command('purge-all')
    @click.confirmation_option(prompt='This deletes every article, impact, evidence item and history entry. Continue?')
    def purge_all():
        """Delete all analysis data."""
        deleted = purge_all_collections(_db())
        for name, count in deleted.items():
            click.echo(f"Deleted {count} documents from {name}")

    @app.cli.command('issue-token')
    @click.argument('user_id')
    def issue_token_command(user_id):
        """Print a bearer token for USER_ID."""
        click.echo(issue_token(user_id))
