# jobs.py - scheduled jobs exposed as Flask CLI commands
# Usage (cron):  flask --app app payouts sweep
import click
from flask import current_app
from flask.cli import AppGroup
from sqlalchemy.exc import IntegrityError

from extensions import db
from models import User, Wallet, PlatformSettings
from mlm.autopool import AutopoolService
from mlm.funds import expire_payouts
from mlm.global_cycle import GlobalCycleService
from mlm.payout_processor import PayoutProcessor
from utils import generate_user_code


payouts_cli = AppGroup("payouts", help="Payout queue jobs")
autopool_cli = AppGroup("autopool", help="Autopool income jobs")
cycles_cli = AppGroup("cycles", help="Global cycle jobs")
users_cli = AppGroup("users", help="User administration")


@click.command("init-db")
def init_db():
    """Create all tables and the settings row."""
    db.create_all()
    PlatformSettings.get()
    db.session.commit()
    click.echo("Database initialised")


@payouts_cli.command("sweep")
@click.option("--batch-size", type=int, default=None, help="Queue entries per run")
def sweep_payouts(batch_size):
    batch_size = batch_size or current_app.config.get("PAYOUT_BATCH_SIZE", 10)
    stats = PayoutProcessor().process_payout_queue(batch_size=batch_size)
    click.echo(
        f"processed={stats['processed']} succeeded={stats['succeeded']} "
        f"retry={stats['retry_scheduled']} rejected={stats['rejected']} removed={stats['removed']}"
    )


@payouts_cli.command("expire")
def expire_ready_payouts():
    click.echo(f"expired={expire_payouts()}")


@autopool_cli.command("generate")
@click.option("--max-positions", type=int, default=None)
def generate_autopool_income(max_positions):
    max_positions = max_positions or current_app.config.get("AUTOPOOL_BATCH_SIZE", 100)
    stats = AutopoolService.generate_pool_income(max_positions=max_positions)
    click.echo(
        f"visited={stats['visited']} credited={stats['credited']} locked={stats['locked']} "
        f"skipped={stats['skipped']} total={stats['total_amount']}"
    )


@cycles_cli.command("process")
@click.option("--limit", type=int, default=10)
def process_cycles(limit):
    result = GlobalCycleService.process_completed_cycles(limit=limit)
    click.echo(f"processed={result['processed']} failed={result['failed']}")


@cycles_cli.command("cleanup")
@click.option("--days", type=int, default=None)
def cleanup_cycles(days):
    days = days or current_app.config.get("DATA_RETENTION_DAYS", 30)
    result = GlobalCycleService.cleanup_old_data(days=days)
    click.echo(f"cycles_deleted={result['cycles_deleted']} logs_deleted={result['logs_deleted']}")


@users_cli.command("make-admin")
@click.argument("email")
@click.option("--password", default=None, help="Create the user with this password if missing")
@click.option("--name", default="Administrator")
def make_admin(email, password, name):
    """Promote EMAIL to admin, creating the account when --password is given."""
    email = email.strip().lower()
    user = User.query.filter_by(email=email).first()

    if not user:
        if not password:
            raise click.ClickException(f"No user with email {email}; pass --password to create one")
        try:
            user = User(
                user_code=generate_user_code(lambda code: User.query.filter_by(user_code=code).first() is not None),
                full_name=name,
                email=email,
            )
            user.set_password(password)
            db.session.add(user)
            db.session.flush()
            db.session.add(Wallet(user_id=user.id))
        except IntegrityError as e:
            db.session.rollback()
            raise click.ClickException(f"Could not create user: {e}")

    user.role = "admin"
    db.session.commit()
    click.echo(f"User {user.user_code} ({email}) is now admin")


def register_commands(app):
    app.cli.add_command(init_db)
    app.cli.add_command(payouts_cli)
    app.cli.add_command(autopool_cli)
    app.cli.add_command(cycles_cli)
    app.cli.add_command(users_cli)
