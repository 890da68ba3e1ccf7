"""
Move legacy sites that have no client under a client.

Robots move with their site. History and audit log rows recorded without a
client are re-keyed to the client name, for the robots that actually move.
When the client already has a site with the same name, robots are merged
into it and clashing RBT ids are kept on the
legacy site for manual review.

Usage:
    python scripts/migrate_sites_to_clients.py <client_name> [--dry-run]
"""
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

try:
    from dotenv import load_dotenv
    load_dotenv()
except ImportError:
    pass

try:
    from sqlalchemy.exc import SQLAlchemyError
    from rbt_dashboard.db import SessionLocal
    from rbt_dashboard.models.models import Client, Site, Robot
    from rbt_dashboard.services.audit import rekey_legacy_rows
    from rbt_dashboard.services.robots import find_client, find_site
except ImportError as e:
    print(f"ERROR: Failed to import database components: {e}")
    sys.exit(1)


def migrate(client_name: str, dry_run: bool = False):
    db = SessionLocal()
    try:
        legacy_sites = db.query(Site).filter(Site.client_id.is_(None)).order_by(Site.name.asc()).all()
        if not legacy_sites:
            print("No legacy sites found. Nothing to migrate.")
            return

        client = find_client(db, client_name)
        if not client:
            print(f"Creating client: {client_name}")
            client = Client(name=client_name.strip())
            db.add(client)
            db.flush()

        print("=" * 60)
        print(f"{'[DRY RUN] ' if dry_run else ''}Migrating {len(legacy_sites)} legacy sites -> {client.name}")
        print("=" * 60)

        for legacy in legacy_sites:
            target = find_site(db, client, legacy.name)
            if target is None:
                legacy.client_id = client.id
                # Whole site moves, so every row recorded for it follows
                moved_ids = None
                print(f"[OK] Site moved: {legacy.name} ({len(legacy.rbts)} RBTs)")
            else:
                existing = {r.rbt_id for r in target.rbts}
                moved_ids = []
                for robot in list(legacy.rbts):
                    if robot.rbt_id in existing:
                        print(f"  [SKIP] {legacy.name}/{robot.rbt_id} already exists under {client.name}")
                        continue
                    robot.site_id = target.id
                    moved_ids.append(robot.rbt_id)
                print(f"[OK] Site merged: {legacy.name} ({len(moved_ids)} RBTs moved)")

            history, logs, left = rekey_legacy_rows(db, legacy.name, client.name, moved_ids)
            if history or logs:
                print(f"  re-keyed {history} rbt_history rows, {logs} rbt_logs rows")
            if left:
                print(f"  [SKIP] {left} rbt_history rows already have a day under {client.name}")

        if dry_run:
            db.rollback()
            print("\n[DRY RUN] No changes written.")
        else:
            db.commit()
            # Legacy sites emptied by a merge are no longer needed
            for legacy in db.query(Site).filter(Site.client_id.is_(None)).all():
                if db.query(Robot).filter(Robot.site_id == legacy.id).count() == 0:
                    db.delete(legacy)
            db.commit()
            print("\nMigration completed successfully!")
    except SQLAlchemyError as e:
        db.rollback()
        print(f"ERROR: Migration failed: {e}")
        sys.exit(1)
    finally:
        db.close()


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print("Usage: python scripts/migrate_sites_to_clients.py <client_name> [--dry-run]")
        sys.exit(1)
    migrate(sys.argv[1], dry_run="--dry-run" in sys.argv)
