"""Backup commands for the nbt CLI."""

from cyclopts import App

from notebook_transfer.backup import BackupReason

backup_app = App(name="backup", help="Create and inspect store backups")


@backup_app.command
def create() -> None:
    """Snapshot every store now."""
    from notebook_transfer.cli import get_backup_manager, get_data_layer, get_user_id

    snapshot = get_backup_manager().create(get_data_layer(), get_user_id(), reason=BackupReason.MANUAL)
    print(f"Created backup {snapshot.id} with {snapshot.total_items} item(s)")


@backup_app.command(name="list")
def list_backups() -> None:
    """List the backups that exist."""
    from notebook_transfer.cli import get_backup_manager

    snapshots = get_backup_manager().list()
    if not snapshots:
        print("No backups found")
        return

    print(f"Found {len(snapshots)} backup(s):\n")
    for snapshot in snapshots:
        print(f"  {snapshot.id}  {snapshot.created_at}  {snapshot.reason.value}  {snapshot.total_items} item(s)")


@backup_app.command
def show(backup_id: str) -> None:
    """Show the contents summary of one backup."""
    from notebook_transfer.cli import get_backup_manager

    snapshot = get_backup_manager().load(backup_id)
    print(f"Backup: {snapshot.id}")
    print(f"Created: {snapshot.created_at}")
    print(f"User: {snapshot.user_id}")
    print(f"Reason: {snapshot.reason.value}")
    for kind, count in snapshot.entity_counts.items():
        if count:
            print(f"  {kind}: {count}")
