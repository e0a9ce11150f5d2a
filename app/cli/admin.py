import click
import json
import uuid
from app.core.database import SessionLocal
from app.core.exceptions import StoreUnavailable
from app.models.subscription_history import SubscriptionHistory
from app.services.subscription_store import SubscriptionStore
from datetime import datetime
import logging

logger = logging.getLogger(__name__)


def _describe(subscription) -> str:
    limit = "unlimited" if subscription.assignment_limit == -1 else subscription.assignment_limit
    return (f"plan: {subscription.plan_id}, status: {subscription.status.value}, "
            f"used: {subscription.assignments_used}/{limit}")


@click.group()
def cli():
    """AssignmentAI subscription admin commands"""
    pass


@cli.command()
@click.option('--id', 'user_id', required=True, help='User id (Firebase UID)')
def show(user_id):
    """Show a user's subscription record"""
    db = SessionLocal()
    try:
        subscription = SubscriptionStore(db).get_by_key(user_id)
        if not subscription:
            click.echo(f"❌ No subscription for user: {user_id}", err=True)
            return

        click.echo(f"\nSubscription for {user_id}:\n")
        click.echo(f"  Plan:               {subscription.plan_id}")
        click.echo(f"  Status:             {subscription.status.value}")
        click.echo(f"  Assignments used:   {subscription.assignments_used}")
        limit = "unlimited" if subscription.assignment_limit == -1 else subscription.assignment_limit
        click.echo(f"  Assignment limit:   {limit}")
        click.echo(f"  Calendar access:    {'yes' if subscription.has_calendar_access else 'no'}")
        click.echo(f"  Trial ends:         {subscription.trial_end_date or '-'}")
        click.echo(f"  PayPal id:          {subscription.provider_subscription_id or '-'}")
        click.echo(f"  Upgraded at:        {subscription.upgraded_at or '-'}")
    except StoreUnavailable as e:
        logger.error(f"CLI error: {e}")
        click.echo(f"❌ Error: {e}", err=True)
    finally:
        db.close()


@cli.command()
@click.option('--id', 'user_id', required=True, help='User id (Firebase UID)')
@click.option('--reason', required=False, help='Reason recorded in subscription history')
@click.option('-y', '--yes', 'confirm', is_flag=True, help='Skip confirmation')
@click.option('--dry-run', 'dry_run', is_flag=True, help='Show what would be changed without committing')
def reset_usage(user_id, reason, confirm, dry_run):
    """Reset a user's assignment usage counter to 0"""
    db = SessionLocal()
    try:
        store = SubscriptionStore(db)
        subscription = store.get_by_key(user_id)
        if not subscription:
            click.echo(f"❌ No subscription for user: {user_id}", err=True)
            return

        action_desc = f"reset usage for {user_id} ({_describe(subscription)})"

        if dry_run:
            click.echo(f"🔍 Dry run: would {action_desc}")
            return

        if not confirm:
            try:
                if not click.confirm(f"Are you sure you want to {action_desc}?", default=False):
                    click.echo("Aborted")
                    return
            except click.exceptions.Abort:
                click.echo("\nAborted")
                return

        # Write through the store directly so no Firebase/analytics init is needed
        now = datetime.utcnow()
        rows = store.reset_usage(user_id, history=SubscriptionHistory(
            id=str(uuid.uuid4()),
            user_id=user_id,
            action='usage_reset',
            from_plan=subscription.plan_id,
            to_plan=subscription.plan_id,
            details=json.dumps({
                'previous_used': subscription.assignments_used,
                'reason': reason or 'cli',
            }),
            created_at=now,
        ), now=now)
        click.echo(f"✓ Reset usage for {user_id} ({rows} row updated, was {subscription.assignments_used})")
    except StoreUnavailable as e:
        logger.error(f"CLI error: {e}")
        click.echo(f"❌ Error: {e}", err=True)
    finally:
        db.close()


@cli.command()
@click.option('--id', 'user_id', required=True, help='User id (Firebase UID)')
def history(user_id):
    """List subscription history for a user, newest first"""
    db = SessionLocal()
    try:
        entries = SubscriptionStore(db).list_history(user_id)
        if not entries:
            click.echo(f"No history for user: {user_id}")
            return

        click.echo(f"\nFound {len(entries)} history entries:\n")
        for entry in entries:
            transition = f"{entry.from_plan or '-'} -> {entry.to_plan or '-'}"
            click.echo(f"  - {entry.created_at} {entry.action}: {transition}"
                       + (f" (PayPal: {entry.provider_subscription_id})" if entry.provider_subscription_id else ""))
    except StoreUnavailable as e:
        logger.error(f"CLI error: {e}")
        click.echo(f"❌ Error: {e}", err=True)
    finally:
        db.close()


if __name__ == '__main__':
    cli()
